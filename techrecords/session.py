"""
Import Session
==============
One import, from picked file to committed jobs.

States:
    idle → parsing → (preview | error) → importing → complete
    (error is reachable from any state)

The session owns its working copy of the rows. Callers receive
ImportResult snapshots by value and address the session by its handle;
every edit goes through the session so confidence and actions stay current.
"""

from __future__ import annotations

import logging
import os
import re
import threading
import uuid
from typing import Callable, Iterable, Optional, Union

from .confidence import ConfidenceScorer
from .engine import ImportConfig, ImportEngine, ProgressCallback
from .exceptions import (
    BatchValidationError,
    CommitFailure,
    DuplicateWipInBatch,
    InvalidTransition,
    SessionBusy,
    TechRecordsError,
    UnknownRow,
    UnknownSession,
)
from .field_parser import FieldParser
from .models import (
    BulkEdit,
    ClearAws,
    CommitSummary,
    FindReplace,
    ImportProgress,
    ImportRecord,
    ImportResult,
    ImportStatus,
    ImportSummary,
    Job,
    ParsedJobRow,
    SetVhc,
    Stage,
    VhcStatus,
)
from .parse_log import ParseLog
from .reconciler import Reconciler
from .text_extractor import PdfSource

logger = logging.getLogger(__name__)

_TRANSITIONS: dict[ImportStatus, set[ImportStatus]] = {
    ImportStatus.IDLE: {ImportStatus.PARSING},
    ImportStatus.PARSING: {ImportStatus.PREVIEW},
    ImportStatus.PREVIEW: {ImportStatus.IMPORTING},
    ImportStatus.IMPORTING: {ImportStatus.COMPLETE},
    ImportStatus.COMPLETE: set(),
    ImportStatus.ERROR: set(),
}


class ImportSession:
    """
    State machine around a single import.

    Args:
        config: Engine configuration.
        store: Job store (``get_all``, ``save_all``, ``get_import``).
        progress_callback: Receives every ImportProgress update.
        session_id: Handle; generated when omitted.
    """

    def __init__(
        self,
        config: Optional[ImportConfig] = None,
        store=None,
        progress_callback: Optional[ProgressCallback] = None,
        session_id: Optional[str] = None,
    ):
        self.session_id = session_id or uuid.uuid4().hex
        self.config = config or ImportConfig()
        self.store = store
        self.progress_callback = progress_callback

        self.engine = ImportEngine(self.config)
        self.parse_log = ParseLog()
        self.field_parser = FieldParser(
            parse_log=self.parse_log,
            time_tolerance_minutes=self.config.time_tolerance_minutes,
        )
        self.scorer = ConfidenceScorer(self.config.confidence)
        self.reconciler = Reconciler()

        self.status = ImportStatus.IDLE
        self.progress: Optional[ImportProgress] = None
        self.filename = ""
        self.file_hash = ""
        self.rows: list[ParsedJobRow] = []
        self.summary = ImportSummary()
        self.excluded: set[str] = set()
        self.commit_summary: Optional[CommitSummary] = None
        self._existing_jobs: list[Job] = []
        self._lock = threading.RLock()

    # ─── State ────────────────────────────────────────────────────────────

    def _transition(self, to: ImportStatus, action: str):
        if to not in _TRANSITIONS[self.status]:
            raise InvalidTransition(self.status.value, action)
        logger.debug(f"Session {self.session_id}: {self.status.value} → {to.value}")
        self.status = to

    def _require(self, status: ImportStatus, action: str):
        if self.status != status:
            raise InvalidTransition(self.status.value, action)

    def _emit(self, stage: Stage, current: int = 0, total: int = 0, message: str = ""):
        self._on_progress(ImportProgress(
            status=self.status,
            stage=stage,
            current_row=current,
            total_rows=total,
            message=message,
        ))

    def _on_progress(self, progress: ImportProgress):
        self.progress = progress
        if self.progress_callback:
            self.progress_callback(progress)

    def _fail(self, message: str):
        stage = self.progress.stage if self.progress else Stage.EXTRACTING
        self.status = ImportStatus.ERROR
        self._emit(stage, message=message)

    # ─── Parse ────────────────────────────────────────────────────────────

    def run(self, source: PdfSource, filename: str = "") -> ImportResult:
        """
        Parse a PDF into the preview state.

        Never raises for pipeline failures: an unreadable file moves the
        session to ``error`` with the cause in the parse log and in the
        final progress message. Zero rows still reaches ``preview``.
        """
        with self._lock:
            self._transition(ImportStatus.PARSING, "parse")
            if not isinstance(source, bytes):
                filename = filename or os.path.basename(str(source))
            self.filename = filename

            try:
                result = self.engine.parse(
                    source,
                    filename=filename,
                    store=self.store,
                    parse_log=self.parse_log,
                    progress_callback=self._on_progress,
                )
                self._existing_jobs = self.store.get_all() if self.store else []
            except (TechRecordsError, FileNotFoundError) as e:
                message = getattr(e, "message", str(e))
                self.parse_log.error(f"Import failed: {message}")
                self._fail(message)
                return self.result()
            except Exception as e:
                logger.exception(f"Session {self.session_id}: parse FAILED")
                self.parse_log.error(f"Import failed unexpectedly: {e}")
                self._fail(str(e))
                return self.result()

            self.file_hash = result.file_hash
            self.rows = result.rows
            self.summary = result.summary
            self._transition(ImportStatus.PREVIEW, "preview")
            self._emit(
                Stage.DONE,
                len(self.rows),
                len(self.rows),
                self._preview_message(),
            )
            return self.result()

    def _preview_message(self) -> str:
        if self.summary.already_imported:
            return "File already imported: all rows are duplicates"
        if not self.rows:
            return "No job rows found; see the parse log"
        return f"{len(self.rows)} rows ready for review"

    def result(self) -> ImportResult:
        """Snapshot of the session as an ImportResult (a deep copy)."""
        with self._lock:
            return ImportResult(
                session_id=self.session_id,
                filename=self.filename,
                file_hash=self.file_hash,
                rows=[r.model_copy(deep=True) for r in self.rows],
                parse_log=self.parse_log.entries,
                summary=self.summary.model_copy(deep=True),
            )

    # ─── Preview Edits ────────────────────────────────────────────────────

    def get_row(self, row_id: str) -> ParsedJobRow:
        for row in self.rows:
            if row.id == row_id:
                return row
        raise UnknownRow(row_id)

    def edit_cell(
        self, row_id: str, field: str, value: Union[str, int, VhcStatus]
    ) -> ParsedJobRow:
        """
        Re-parse one user-edited field and re-score the row.

        Raises:
            InvalidTransition: Outside the preview state.
            UnknownRow: If the row is not in this batch.
            ValueError: If the field is not editable.
        """
        with self._lock:
            self._require(ImportStatus.PREVIEW, "edit")
            row = self.get_row(row_id)
            self.field_parser.apply_edit(row, field, value)
            self.scorer.rescore(row)
            self._refresh()
            logger.info(f"Session {self.session_id}: edited {row_id}.{field}")
            return row.model_copy(deep=True)

    def bulk_edit(self, row_ids: Iterable[str], edit: BulkEdit) -> list[ParsedJobRow]:
        """Apply one bulk edit to the selected rows, re-scoring each."""
        with self._lock:
            self._require(ImportStatus.PREVIEW, "bulk edit")
            rows = [self.get_row(rid) for rid in row_ids]

            for row in rows:
                if isinstance(edit, SetVhc):
                    self.field_parser.apply_edit(row, "vhc_status", edit.status)
                elif isinstance(edit, FindReplace):
                    pattern = re.compile(re.escape(edit.find), re.IGNORECASE)
                    self.field_parser.apply_edit(
                        row,
                        "job_description",
                        pattern.sub(lambda _: edit.replace, row.job_description),
                    )
                elif isinstance(edit, ClearAws):
                    self.field_parser.apply_edit(row, "aws", 0)
                else:
                    raise TypeError(f"Unsupported bulk edit: {edit!r}")
                self.scorer.rescore(row)

            self.parse_log.info(f"Bulk edit '{edit.kind}' applied to {len(rows)} rows")
            self._refresh()
            return [r.model_copy(deep=True) for r in rows]

    def skip_rows(self, row_ids: Iterable[str], skip: bool = True) -> ImportSummary:
        """Exclude rows from the commit (or bring them back)."""
        with self._lock:
            self._require(ImportStatus.PREVIEW, "skip rows")
            ids = [self.get_row(rid).id for rid in row_ids]
            if skip:
                self.excluded.update(ids)
            else:
                self.excluded.difference_update(ids)
            self._refresh()
            return self.summary.model_copy(deep=True)

    def resolve_duplicate(self, wip: str, keep_row_id: str) -> ImportSummary:
        """Keep one row of a duplicated WIP and skip the others."""
        with self._lock:
            self._require(ImportStatus.PREVIEW, "resolve duplicate")
            keep = self.get_row(keep_row_id)
            if keep.wip_number != wip:
                raise ValueError(
                    f"Row {keep_row_id} has WIP {keep.wip_number or '-'}, not {wip}"
                )
            others = [r.id for r in self.rows if r.wip_number == wip and r.id != keep.id]
            self.excluded.discard(keep.id)
            self.excluded.update(others)
            self.parse_log.info(
                f"Duplicate WIP {wip}: kept {keep.id}, skipped {len(others)} row(s)"
            )
            self._refresh()
            return self.summary.model_copy(deep=True)

    def _refresh(self):
        if self.summary.already_imported:
            self.summary = self.reconciler.mark_already_imported(self.rows)
        else:
            self.summary = self.reconciler.reconcile(
                self.rows, self._existing_jobs, excluded=self.excluded
            )

    # ─── Commit ───────────────────────────────────────────────────────────

    def commit_problems(self) -> list[str]:
        with self._lock:
            return self.reconciler.commit_problems(self.rows)

    def commit(self, store=None) -> CommitSummary:
        """
        Apply the batch to the job store, all-or-nothing.

        Raises:
            InvalidTransition: Outside the preview state.
            DuplicateWipInBatch: A WIP still has more than one committable row.
            BatchValidationError: Other rows block the commit.
            CommitFailure: The store rejected the batch (session → error).
        """
        with self._lock:
            store = store or self.store
            self._require(ImportStatus.PREVIEW, "commit")
            if store is None:
                raise CommitFailure("No job store configured")

            problems = self.reconciler.commit_problems(self.rows)
            duplicates = self.reconciler.duplicate_wips(self.rows, committable_only=True)
            if duplicates:
                raise DuplicateWipInBatch(duplicates, problems)
            if problems:
                raise BatchValidationError(problems)

            self._transition(ImportStatus.IMPORTING, "commit")
            self._emit(Stage.COMMITTING, 0, len(self.rows), "Saving jobs")
            try:
                merged, pairs, summary = self.reconciler.plan_commit(
                    self.rows,
                    store.get_all(),
                    filename=self.filename,
                    file_hash=self.file_hash,
                )
                store.save_all(
                    merged,
                    import_record=ImportRecord(
                        file_hash=self.file_hash,
                        filename=self.filename,
                        rows=[r.model_copy(deep=True) for r in self.rows],
                    ),
                )
            except CommitFailure as e:
                self.parse_log.error(f"Commit failed: {e.message}")
                self._fail(e.message)
                raise
            except Exception as e:
                logger.exception(f"Session {self.session_id}: commit FAILED")
                self.parse_log.error(f"Commit failed: {e}")
                self._fail(str(e))
                raise CommitFailure(f"Commit failed: {e}", original_error=e) from e

            self.commit_summary = summary
            self._transition(ImportStatus.COMPLETE, "complete")
            message = (
                f"Committed: {summary.created} created, {summary.updated} updated, "
                f"{summary.skipped} skipped"
            )
            self.parse_log.info(message)
            self._emit(Stage.DONE, len(self.rows), len(self.rows), message)
            logger.info(
                f"Session {self.session_id}: {message} "
                f"({len(pairs)} jobs written)"
            )
            return summary.model_copy()


# ─── Session Manager ──────────────────────────────────────────────────────────


class SessionManager:
    """
    Hands out session handles and allows one parse or commit at a time.
    Owned by whoever hosts the sessions (the HTTP app, the CLI).
    At most ``keep_finished`` complete or failed sessions are retained;
    older ones are dropped as new imports start.
    """

    def __init__(
        self,
        config: Optional[ImportConfig] = None,
        store=None,
        progress_callback: Optional[Callable[[str, ImportProgress], None]] = None,
        keep_finished: int = 20,
    ):
        self.config = config or ImportConfig()
        self.store = store
        self.progress_callback = progress_callback
        self.keep_finished = keep_finished
        self._sessions: dict[str, ImportSession] = {}
        self._running: Optional[str] = None
        self._lock = threading.Lock()

    def _claim(self, session_id: str):
        with self._lock:
            if self._running is not None:
                raise SessionBusy(
                    f"Import {self._running} is still in progress",
                    {"session_id": self._running},
                )
            self._running = session_id

    def _release(self, session_id: str):
        with self._lock:
            if self._running == session_id:
                self._running = None

    @property
    def busy(self) -> bool:
        return self._running is not None

    def _evict(self):
        finished = [
            sid for sid, s in self._sessions.items()
            if s.status in (ImportStatus.COMPLETE, ImportStatus.ERROR)
        ]
        for sid in finished[:max(len(finished) - self.keep_finished, 0)]:
            del self._sessions[sid]
            logger.debug(f"Evicted finished import session {sid}")

    def start(self, source: PdfSource, filename: str = "") -> ImportSession:
        """Create a session and run the parse. Raises SessionBusy if one is running."""
        session_id = uuid.uuid4().hex
        self._claim(session_id)
        try:
            session = ImportSession(
                config=self.config,
                store=self.store,
                progress_callback=self._forward(session_id),
                session_id=session_id,
            )
            with self._lock:
                self._evict()
                self._sessions[session_id] = session
            session.run(source, filename)
            return session
        finally:
            self._release(session_id)

    def _forward(self, session_id: str) -> Optional[ProgressCallback]:
        if self.progress_callback is None:
            return None

        def forward(progress: ImportProgress):
            self.progress_callback(session_id, progress)
        return forward

    def get(self, session_id: str) -> ImportSession:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise UnknownSession(session_id)
        return session

    def commit(self, session_id: str) -> CommitSummary:
        session = self.get(session_id)
        self._claim(session_id)
        try:
            return session.commit(self.store)
        finally:
            self._release(session_id)

    def discard(self, session_id: str):
        """Drop a session and its results without committing."""
        with self._lock:
            if self._running == session_id:
                raise SessionBusy(f"Import {session_id} is still in progress")
            if self._sessions.pop(session_id, None) is None:
                raise UnknownSession(session_id)
        logger.info(f"Discarded import session {session_id}")

    def sessions(self) -> list[ImportSession]:
        with self._lock:
            return list(self._sessions.values())
