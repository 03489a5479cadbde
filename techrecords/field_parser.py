"""
Field Parser
============
Converts reconstructed column strings into typed ParsedJobRow fields.

Every field is parsed independently: a failure records a RowFieldError in
the parse log (with the offending raw text) and on the row, leaves the
field at its zero value, and never aborts the rest of the row.
"""

from __future__ import annotations

import logging
import re
from datetime import date, time
from typing import Callable, Optional, Union

from fuzzywuzzy import fuzz, process

from . import AW_MINUTES
from .exceptions import RowFieldError
from .models import ParsedJobRow, ReconstructedRow, VhcStatus
from .parse_log import ParseLog
from .table import AWS, DATETIME, DESCRIPTION, REG, TIME, VHC, WIP

logger = logging.getLogger(__name__)

# ─── Patterns & Tables ────────────────────────────────────────────────────────

# Letters commonly produced where a digit was printed.
OCR_DIGITS = str.maketrans({
    "O": "0", "o": "0",
    "I": "1", "l": "1", "|": "1",
    "S": "5", "s": "5",
    "B": "8",
})

# Digits commonly produced where a letter was printed.
OCR_LETTERS = str.maketrans({"0": "O", "1": "I", "5": "S", "8": "B"})

WIP_LENGTH = 5

UK_REG_PATTERNS = [
    re.compile(r"^[A-Z]{2}[0-9]{2}[A-Z]{3}$"),      # current: AB12CDE
    re.compile(r"^[A-Z][0-9]{1,3}[A-Z]{3}$"),       # prefix: A123BCD
    re.compile(r"^[A-Z]{3}[0-9]{1,3}[A-Z]$"),       # suffix: ABC123D
    re.compile(r"^[A-Z]{1,3}[0-9]{1,4}$"),          # dateless: ABC1234
    re.compile(r"^[0-9]{1,4}[A-Z]{1,3}$"),          # dateless: 1234ABC
]

VHC_ALIASES: dict[str, VhcStatus] = {
    "GREEN": VhcStatus.GREEN,
    "ORANGE": VhcStatus.ORANGE,
    "AMBER": VhcStatus.ORANGE,
    "RED": VhcStatus.RED,
    "NA": VhcStatus.NA,
    "N": VhcStatus.NA,
    "NONE": VhcStatus.NA,
}

VHC_FUZZY_THRESHOLD = 75

WORK_TIME_PATTERN = re.compile(
    r"^\s*(?:(\d+)\s*h)?\s*(?:(\d+)\s*m(?:in)?)?\s*$", re.IGNORECASE
)

DATETIME_PATTERN = re.compile(
    r"(\d{1,2})\s*/\s*(\d{1,2})\s*/\s*(\d{4})"
    r"(?:\s+(\d{1,2})\s*[:.]\s*(\d{2}))?"
)

# Field names accepted by single-cell edits.
EDITABLE_FIELDS = (
    "wip_number",
    "vehicle_reg",
    "vhc_status",
    "job_description",
    "aws",
    "work_time",
    "date_time",
)


# ─── Field Functions ──────────────────────────────────────────────────────────


def parse_wip(raw: str) -> str:
    """
    Reduce a WIP cell to exactly five digits, correcting OCR confusions.

    >>> parse_wip("O123I")
    '01231'
    """
    text = raw.strip()
    if not text:
        raise RowFieldError("Missing WIP number", "wip_number", raw)
    digits = re.sub(r"\D", "", text.translate(OCR_DIGITS))
    if len(digits) != WIP_LENGTH:
        raise RowFieldError(
            f"WIP number must be {WIP_LENGTH} digits, got {text!r}",
            "wip_number",
            raw,
        )
    return digits


def normalize_reg(raw: str) -> str:
    """Uppercase and strip all whitespace."""
    return re.sub(r"\s+", "", raw.upper())


def is_uk_reg(reg: str) -> bool:
    return any(p.match(reg) for p in UK_REG_PATTERNS)


def parse_vhc(raw: str) -> Optional[VhcStatus]:
    """Fuzzy-match a VHC cell. None when nothing in the closed set is close."""
    key = re.sub(r"[^A-Z0-9]", "", raw.upper()).translate(OCR_LETTERS)
    if not key:
        return None
    if key in VHC_ALIASES:
        return VHC_ALIASES[key]
    for alias, status in VHC_ALIASES.items():
        if len(key) >= 3 and len(alias) >= 3 and alias.startswith(key):
            return status
    best = process.extractOne(key, list(VHC_ALIASES), scorer=fuzz.ratio)
    if best and best[1] >= VHC_FUZZY_THRESHOLD:
        return VHC_ALIASES[best[0]]
    return None


def parse_aws(raw: Union[str, int]) -> int:
    if isinstance(raw, int):
        if raw < 0:
            raise RowFieldError(f"AWS must not be negative, got {raw}", "aws", str(raw))
        return raw
    text = raw.strip()
    if not text:
        raise RowFieldError("Missing AWS", "aws", raw)
    if text.startswith("-"):
        raise RowFieldError(f"AWS must not be negative, got {text!r}", "aws", raw)
    corrected = re.sub(r"\s+", "", text.translate(OCR_DIGITS))
    if not corrected.isdigit():
        raise RowFieldError(f"AWS is not a whole number: {text!r}", "aws", raw)
    return int(corrected)


def parse_work_time(raw: str) -> Optional[int]:
    """Minutes from free text like '2h 0m', or None if unrecognised."""
    text = " ".join(raw.split())
    if not text:
        return None
    match = WORK_TIME_PATTERN.match(text.translate(OCR_DIGITS))
    if not match or not (match.group(1) or match.group(2)):
        return None
    hours = int(match.group(1) or 0)
    minutes = int(match.group(2) or 0)
    return hours * 60 + minutes


def parse_datetime(raw: str) -> tuple[date, Optional[time]]:
    """
    Parse 'DD/MM/YYYY HH:mm' as local wall-clock values, taken literally.
    The time part is optional here; callers decide whether it is required.
    """
    text = " ".join(raw.split())
    if not text:
        raise RowFieldError("Missing date & time", "job_date", raw)
    match = DATETIME_PATTERN.search(text.translate(OCR_DIGITS))
    if not match:
        raise RowFieldError(
            f"Date & time not in DD/MM/YYYY HH:mm form: {text!r}", "job_date", raw
        )
    day, month, year, hour, minute = match.groups()
    try:
        job_date = date(int(year), int(month), int(day))
    except ValueError as e:
        raise RowFieldError(f"Invalid date {text!r}: {e}", "job_date", raw) from e

    job_time = None
    if hour is not None:
        try:
            job_time = time(int(hour), int(minute))
        except ValueError as e:
            raise RowFieldError(f"Invalid time {text!r}: {e}", "job_time", raw) from e
    return job_date, job_time


# ─── Row Parser ───────────────────────────────────────────────────────────────


class FieldParser:
    """
    Types the cells of ReconstructedRows and re-parses single-cell edits.
    """

    def __init__(
        self,
        parse_log: Optional[ParseLog] = None,
        time_tolerance_minutes: int = 5,
    ):
        self.parse_log = parse_log if parse_log is not None else ParseLog()
        self.time_tolerance_minutes = time_tolerance_minutes

    def parse_rows(
        self,
        rows: list[ReconstructedRow],
        progress_callback: Optional[Callable[[int, int], None]] = None,
    ) -> list[ParsedJobRow]:
        parsed = []
        total = len(rows)
        for idx, row in enumerate(rows, start=1):
            parsed.append(self.parse_row(row))
            if progress_callback:
                progress_callback(idx, total)
        return parsed

    def parse_row(self, row: ReconstructedRow) -> ParsedJobRow:
        label = f"Page {row.page_index + 1}, row {row.row_index + 1}"
        parsed = ParsedJobRow(
            id=f"row-{row.page_index + 1}-{row.row_index + 1}",
            source_page=row.page_index,
            source_row=row.row_index,
        )
        self._set_wip(parsed, row.cell(WIP), label)
        self._set_reg(parsed, row.cell(REG), label)
        self._set_vhc(parsed, row.cell(VHC), label)
        self._set_description(parsed, row.cell(DESCRIPTION))
        self._set_aws(parsed, row.cell(AWS), label)
        self._set_work_time(parsed, row.cell(TIME), label)
        self._set_datetime(parsed, row.cell(DATETIME), label)

        logger.debug(
            f"{label}: WIP={parsed.wip_number or '-'} "
            f"Reg={parsed.vehicle_reg or '-'} AWS={parsed.aws} "
            f"errors={len(parsed.validation_errors)}"
        )
        return parsed

    def apply_edit(
        self, row: ParsedJobRow, field: str, value: Union[str, int, VhcStatus]
    ):
        """Re-parse one user-edited field in place."""
        label = f"Edit {row.id}"
        if field == "wip_number":
            self._set_wip(row, str(value), label)
        elif field == "vehicle_reg":
            self._set_reg(row, str(value), label)
        elif field == "vhc_status":
            raw = value.value if isinstance(value, VhcStatus) else str(value)
            self._set_vhc(row, raw, label)
        elif field == "job_description":
            self._set_description(row, str(value))
        elif field == "aws":
            self._set_aws(row, value if isinstance(value, int) else str(value), label)
            self._check_work_time(row, label)
        elif field == "work_time":
            self._set_work_time(row, str(value), label)
        elif field == "date_time":
            self._set_datetime(row, str(value), label)
        else:
            raise ValueError(
                f"Field {field!r} is not editable "
                f"(editable: {', '.join(EDITABLE_FIELDS)})"
            )

    # ─── Per-field setters ────────────────────────────────────────────────

    def _fail(self, row: ParsedJobRow, err: RowFieldError, label: str):
        row.add_error(err.field, err.message)
        self.parse_log.error(f"{label}: {err.message}", raw_data=err.raw_value)

    def _set_wip(self, row: ParsedJobRow, raw: str, label: str):
        row.clear_errors("wip_number")
        try:
            wip = parse_wip(raw)
        except RowFieldError as e:
            row.wip_number = ""
            self._fail(row, e, label)
            return
        if wip != raw.strip():
            self.parse_log.warning(
                f"{label}: WIP corrected to {wip}", raw_data=raw
            )
        row.wip_number = wip

    def _set_reg(self, row: ParsedJobRow, raw: str, label: str):
        row.clear_errors("vehicle_reg")
        reg = normalize_reg(raw)
        row.vehicle_reg = reg
        if not reg:
            self.parse_log.warning(f"{label}: missing vehicle registration")
            return
        if not is_uk_reg(reg):
            message = f"Registration {reg!r} does not match a UK plate format"
            row.add_error("vehicle_reg", message)
            self.parse_log.warning(f"{label}: {message}", raw_data=raw)

    def _set_vhc(self, row: ParsedJobRow, raw: str, label: str):
        status = parse_vhc(raw)
        if status is None:
            row.vhc_status = VhcStatus.NA
            if raw.strip():
                self.parse_log.warning(
                    f"{label}: unrecognised VHC status, defaulting to N/A",
                    raw_data=raw,
                )
            else:
                self.parse_log.warning(f"{label}: missing VHC status, defaulting to N/A")
            return
        row.vhc_status = status

    @staticmethod
    def _set_description(row: ParsedJobRow, raw: str):
        row.job_description = " ".join(raw.split())

    def _set_aws(self, row: ParsedJobRow, raw: Union[str, int], label: str):
        row.clear_errors("aws")
        try:
            row.aws = parse_aws(raw)
        except RowFieldError as e:
            row.aws = 0
            self._fail(row, e, label)

    def _set_work_time(self, row: ParsedJobRow, raw: str, label: str):
        row.work_time_raw = " ".join(raw.split())
        self._check_work_time(row, label)

    def _check_work_time(self, row: ParsedJobRow, label: str):
        """AWS is authoritative; the Time column is only cross-checked."""
        if not row.work_time_raw:
            return
        minutes = parse_work_time(row.work_time_raw)
        if minutes is None:
            self.parse_log.warning(
                f"{label}: unrecognised work time", raw_data=row.work_time_raw
            )
            return
        expected = row.aws * AW_MINUTES
        if abs(minutes - expected) > self.time_tolerance_minutes:
            self.parse_log.warning(
                f"{label}: work time {row.work_time_raw} ({minutes} min) "
                f"disagrees with AWS {row.aws} ({expected} min)",
                raw_data=row.work_time_raw,
            )

    def _set_datetime(self, row: ParsedJobRow, raw: str, label: str):
        row.clear_errors("job_date")
        row.clear_errors("job_time")
        try:
            job_date, job_time = parse_datetime(raw)
        except RowFieldError as e:
            row.job_date = None
            row.job_time = None
            self._fail(row, e, label)
            return
        row.job_date = job_date
        row.job_time = job_time
        if job_time is None:
            self._fail(
                row, RowFieldError("Missing job time", "job_time", raw), label
            )
