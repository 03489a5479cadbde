"""
Data Models
===========
Pydantic models for the Tech Records import pipeline.
All models are serializable to JSON for the preview UI and export artifacts.
"""

from __future__ import annotations

from datetime import date, datetime, time, timezone
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, computed_field

from . import AW_MINUTES


# ─── Enums ────────────────────────────────────────────────────────────────────


class VhcStatus(str, Enum):
    """Vehicle Health Check status (closed set)."""
    RED = "Red"
    ORANGE = "Orange"
    GREEN = "Green"
    NA = "N/A"


class RowAction(str, Enum):
    """What the commit step does with a parsed row."""
    CREATE = "Create"
    UPDATE = "Update"
    SKIP = "Skip"


class LogLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class ImportStatus(str, Enum):
    """Lifecycle status of an import session."""
    IDLE = "idle"
    PARSING = "parsing"
    PREVIEW = "preview"
    IMPORTING = "importing"
    COMPLETE = "complete"
    ERROR = "error"


class Stage(str, Enum):
    """Pipeline stage reported alongside every progress update."""
    EXTRACTING = "extracting"
    RECONSTRUCTING = "reconstructing"
    PARSING = "parsing"
    SCORING = "scoring"
    RECONCILING = "reconciling"
    COMMITTING = "committing"
    DONE = "done"


class ConfidenceBucket(str, Enum):
    """Triage bucket used by the preview table."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


# ─── Extraction Models ────────────────────────────────────────────────────────


class TextFragment(BaseModel):
    """
    A positioned piece of text from the PDF text layer.
    Coordinates are PDF points, (x, y) being the top-left corner.
    """
    model_config = ConfigDict(frozen=True)

    text: str
    page_index: int = Field(ge=0)
    x: float
    y: float
    width: float = Field(default=0.0, ge=0.0)
    height: float = Field(default=0.0, ge=0.0)

    @property
    def x1(self) -> float:
        return self.x + self.width

    @property
    def y_center(self) -> float:
        return self.y + self.height / 2


class ReconstructedRow(BaseModel):
    """
    One logical table row: column name -> raw cell text.
    Wrapped cells keep their line breaks ("\\n").
    """
    page_index: int = 0
    row_index: int = 0
    cells: dict[str, str] = Field(default_factory=dict)

    def cell(self, column: str) -> str:
        return self.cells.get(column, "")

    @property
    def is_empty(self) -> bool:
        return not any(v.strip() for v in self.cells.values())


# ─── Parse Log ────────────────────────────────────────────────────────────────


class ParseLogEntry(BaseModel):
    """A single entry of the session parse log. Never mutated once appended."""
    model_config = ConfigDict(frozen=True)

    level: LogLevel
    message: str
    raw_data: Optional[str] = None


# ─── Parsed Row Model ─────────────────────────────────────────────────────────


class ParsedJobRow(BaseModel):
    """
    A fully typed job row awaiting review and commit.

    ``minutes`` is derived from ``aws`` and never stored on its own, so the
    AW-to-minutes rate holds after parsing and after every edit.
    """
    id: str
    wip_number: str = ""
    vehicle_reg: str = ""
    vhc_status: VhcStatus = VhcStatus.NA
    job_description: str = ""
    aws: int = Field(default=0, ge=0)
    work_time_raw: str = ""
    job_date: Optional[date] = None
    job_time: Optional[time] = None
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    field_errors: dict[str, list[str]] = Field(default_factory=dict)
    action: RowAction = RowAction.CREATE
    is_duplicate: bool = False
    source_page: int = 0
    source_row: int = 0

    @computed_field
    @property
    def minutes(self) -> int:
        return self.aws * AW_MINUTES

    @computed_field
    @property
    def validation_errors(self) -> list[str]:
        return [msg for msgs in self.field_errors.values() for msg in msgs]

    @property
    def has_errors(self) -> bool:
        return any(self.field_errors.values())

    def add_error(self, field: str, message: str):
        self.field_errors.setdefault(field, []).append(message)

    def clear_errors(self, field: str):
        self.field_errors.pop(field, None)

    def started_at(self) -> Optional[datetime]:
        """Naive local wall-clock start of the job; a missing time reads as midnight."""
        if self.job_date is None:
            return None
        return datetime.combine(self.job_date, self.job_time or time(0, 0))


# ─── Bulk Edits ───────────────────────────────────────────────────────────────


class SetVhc(BaseModel):
    """Set the VHC status of every selected row."""
    kind: Literal["set_vhc"] = "set_vhc"
    status: VhcStatus


class FindReplace(BaseModel):
    """Case-insensitive find/replace within the selected descriptions."""
    kind: Literal["find_replace"] = "find_replace"
    find: str = Field(min_length=1)
    replace: str = ""


class ClearAws(BaseModel):
    """Zero out AWS (and therefore minutes) on every selected row."""
    kind: Literal["clear_aws"] = "clear_aws"


BulkEdit = Annotated[
    Union[SetVhc, FindReplace, ClearAws],
    Field(discriminator="kind"),
]


# ─── Result Models ────────────────────────────────────────────────────────────


class ImportSummary(BaseModel):
    """Counters shown above the preview table."""
    total_rows: int = 0
    valid_rows: int = 0
    invalid_rows: int = 0
    duplicates: int = 0
    creates: int = 0
    updates: int = 0
    skips: int = 0
    duplicate_wips: list[str] = Field(default_factory=list)
    already_imported: bool = False


class ImportResult(BaseModel):
    """
    Complete output of a parse run.
    Handed to the caller by value; the session keeps the working copy.
    """
    session_id: str = ""
    filename: str
    file_hash: str = ""
    rows: list[ParsedJobRow] = Field(default_factory=list)
    parse_log: list[ParseLogEntry] = Field(default_factory=list)
    summary: ImportSummary = Field(default_factory=ImportSummary)
    created_at: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )


class ImportProgress(BaseModel):
    """Transient progress update. Only the latest value matters."""
    status: ImportStatus
    stage: Stage
    current_row: int = 0
    total_rows: int = 0
    message: str = ""

    @computed_field
    @property
    def percentage(self) -> float:
        if self.total_rows <= 0:
            return 0.0
        return round(self.current_row / self.total_rows * 100, 1)


# ─── Job Store Models ─────────────────────────────────────────────────────────


class Job(BaseModel):
    """A committed job record as held by the job store."""
    id: str
    wip_number: str = ""
    vehicle_registration: str = ""
    vhc_status: VhcStatus = VhcStatus.NA
    job_description: str = ""
    aw_value: int = Field(default=0, ge=0)
    job_date: Optional[date] = None
    job_time: Optional[time] = None
    source_filename: str = ""
    source_hash: str = ""
    imported_at: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    @computed_field
    @property
    def time_in_minutes(self) -> int:
        return self.aw_value * AW_MINUTES

    @classmethod
    def from_row(
        cls, row: ParsedJobRow, filename: str = "", file_hash: str = ""
    ) -> Job:
        return cls(
            id=row.id,
            wip_number=row.wip_number,
            vehicle_registration=row.vehicle_reg,
            vhc_status=row.vhc_status,
            job_description=row.job_description,
            aw_value=row.aws,
            job_date=row.job_date,
            job_time=row.job_time,
            source_filename=filename,
            source_hash=file_hash,
        )


class CommitSummary(BaseModel):
    """Outcome of a committed batch."""
    created: int = 0
    updated: int = 0
    skipped: int = 0


class ImportRecord(BaseModel):
    """A committed file, remembered by hash to detect re-imports."""
    file_hash: str
    filename: str = ""
    rows: list[ParsedJobRow] = Field(default_factory=list)
    imported_at: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
