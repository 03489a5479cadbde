"""
Parse Log
=========
Append-only, session-scoped record of what the pipeline saw and decided.
Every entry is mirrored to the standard logger at the matching level.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from .models import LogLevel, ParseLogEntry

logger = logging.getLogger(__name__)

_LEVELS = {
    LogLevel.INFO: logging.INFO,
    LogLevel.WARNING: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


class ParseLog:
    """Ordered sequence of ParseLogEntry values."""

    def __init__(self, entries: Iterable[ParseLogEntry] = ()):
        self._entries: list[ParseLogEntry] = list(entries)

    def append(
        self, level: LogLevel, message: str, raw_data: Optional[str] = None
    ) -> ParseLogEntry:
        entry = ParseLogEntry(level=level, message=message, raw_data=raw_data)
        self._entries.append(entry)
        if raw_data:
            logger.log(_LEVELS[level], f"{message} [raw: {raw_data!r}]")
        else:
            logger.log(_LEVELS[level], message)
        return entry

    def info(self, message: str, raw_data: Optional[str] = None) -> ParseLogEntry:
        return self.append(LogLevel.INFO, message, raw_data)

    def warning(self, message: str, raw_data: Optional[str] = None) -> ParseLogEntry:
        return self.append(LogLevel.WARNING, message, raw_data)

    def error(self, message: str, raw_data: Optional[str] = None) -> ParseLogEntry:
        return self.append(LogLevel.ERROR, message, raw_data)

    @property
    def entries(self) -> list[ParseLogEntry]:
        """A copy; callers cannot rewrite history."""
        return list(self._entries)

    def count(self, level: LogLevel) -> int:
        return sum(1 for e in self._entries if e.level == level)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self):
        return iter(list(self._entries))
