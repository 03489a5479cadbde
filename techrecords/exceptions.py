"""
Import Exceptions
=================
Error taxonomy for the import pipeline.

Fatal:      UnreadablePDF, CommitFailure
Non-fatal:  EmptyTextLayer, RowFieldError (captured into the parse log)
Blocking:   BatchValidationError, DuplicateWipInBatch (commit gate,
            resolved by the user)
Misuse:     SessionBusy, InvalidTransition, UnknownRow, UnknownSession
"""

from __future__ import annotations

from typing import Any, Optional


class TechRecordsError(Exception):
    """Base exception for all import errors."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class UnreadablePDF(TechRecordsError):
    """The PDF container could not be opened or parsed."""

    def __init__(
        self,
        message: str,
        filename: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.filename = filename
        self.original_error = original_error
        if filename:
            self.details["filename"] = filename
        if original_error:
            self.details["original_error"] = str(original_error)
            self.details["error_type"] = type(original_error).__name__


class EmptyTextLayer(TechRecordsError):
    """The PDF has no extractable text (e.g. a scanned image)."""


class RowFieldError(TechRecordsError):
    """A single field of a row could not be recovered."""

    def __init__(self, message: str, field: str, raw_value: str = ""):
        super().__init__(message, {"field": field, "raw_value": raw_value})
        self.field = field
        self.raw_value = raw_value


class BatchValidationError(TechRecordsError):
    """The batch fails pre-commit validation; the user must fix it."""

    def __init__(self, problems: list[str]):
        super().__init__(
            "Batch cannot be committed: " + "; ".join(problems),
            {"problems": problems},
        )
        self.problems = problems


class DuplicateWipInBatch(BatchValidationError):
    """The batch still holds more than one committable row per WIP."""

    def __init__(self, wips: list[str], problems: Optional[list[str]] = None):
        super().__init__(
            problems or [f"Duplicate WIP number: {wip}" for wip in wips]
        )
        self.details["wips"] = wips
        self.wips = wips


class CommitFailure(TechRecordsError):
    """The job store rejected the batch; nothing was written."""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        super().__init__(message)
        self.original_error = original_error
        if original_error:
            self.details["original_error"] = str(original_error)


class SessionBusy(TechRecordsError):
    """Another import is already in flight."""


class InvalidTransition(TechRecordsError):
    """The requested operation is not allowed in the session's state."""

    def __init__(self, from_status: str, action: str):
        super().__init__(
            f"Cannot {action} while session is '{from_status}'",
            {"status": from_status, "action": action},
        )
        self.from_status = from_status
        self.action = action


class UnknownRow(TechRecordsError):
    """A row id that is not part of the session's batch."""

    def __init__(self, row_id: str):
        super().__init__(f"Unknown row: {row_id}", {"row_id": row_id})
        self.row_id = row_id


class UnknownSession(TechRecordsError):
    """A session handle that was never issued or has been discarded."""

    def __init__(self, session_id: str):
        super().__init__(
            f"Unknown import session: {session_id}", {"session_id": session_id}
        )
        self.session_id = session_id
