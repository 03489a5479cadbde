"""
Import Engine
=============
Main orchestrator that runs one Tech Records PDF through extraction, table
reconstruction, field parsing, confidence scoring and reconciliation.

Usage:
    engine = ImportEngine(config)
    result = engine.parse("path/to/tech_records.pdf", store=JobStore())
    # result is an ImportResult ready for the preview table

Architecture:
    PDF → TextExtractor → TextFragments → TableReconstructor →
    ReconstructedRows → FieldParser → ParsedJobRows → ConfidenceScorer →
    Reconciler → ImportResult
"""

from __future__ import annotations

import hashlib
import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional, Protocol

from .confidence import ConfidenceConfig, ConfidenceScorer
from .exceptions import EmptyTextLayer
from .field_parser import FieldParser
from .models import (
    ImportProgress,
    ImportResult,
    ImportStatus,
    Job,
    ParsedJobRow,
    Stage,
)
from .parse_log import ParseLog
from .reconciler import Reconciler
from .table import TableReconstructor, get_template
from .text_extractor import PdfSource, TextExtractor

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ImportProgress], None]

LOG_FORMAT = "[%(asctime)s] %(levelname)-8s %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


class JobSource(Protocol):
    """What the pipeline needs from the job store before commit."""

    def get_all(self) -> list[Job]: ...

    def get_import(self, file_hash: str) -> Optional[list[ParsedJobRow]]: ...


@dataclass
class ImportConfig:
    """Configuration for the import engine."""

    # Table reconstruction
    column_template: str = "tech_records"
    detect_header: bool = True
    row_tolerance: float = 0.6
    column_slack: float = 4.0
    join_gap: float = 0.8

    # Field parsing
    time_tolerance_minutes: int = 5

    # Processing
    page_range: Optional[tuple[int, int]] = None

    # Scoring
    confidence: ConfidenceConfig = field(default_factory=ConfidenceConfig)

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None


def compute_file_hash(source: PdfSource) -> str:
    """Compute SHA-256 hash of a file or of raw bytes."""
    sha256 = hashlib.sha256()
    if isinstance(source, bytes):
        sha256.update(source)
        return sha256.hexdigest()
    with open(source, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            sha256.update(chunk)
    return sha256.hexdigest()


def setup_logging(log_level: str = "INFO", log_file: Optional[str] = None):
    """Configure the techrecords package logger."""
    level = getattr(logging, log_level.upper(), logging.INFO)

    pkg_logger = logging.getLogger("techrecords")
    pkg_logger.setLevel(level)

    # Console handler
    if not any(type(h) is logging.StreamHandler for h in pkg_logger.handlers):
        console = logging.StreamHandler()
        console.setLevel(level)
        console.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT))
        pkg_logger.addHandler(console)

    # File handler
    if log_file:
        log_path = Path(log_file).absolute()
        already = any(
            isinstance(h, logging.FileHandler)
            and Path(h.baseFilename) == log_path
            for h in pkg_logger.handlers
        )
        if not already:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(str(log_path), encoding="utf-8")
            file_handler.setLevel(level)
            file_handler.setFormatter(
                logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT)
            )
            pkg_logger.addHandler(file_handler)


class ImportEngine:
    """
    Runs the parse half of an import.

    Orchestrates the full pipeline:
        1. File hash and re-import short-circuit
        2. Text layer extraction
        3. Table reconstruction
        4. Field parsing
        5. Confidence scoring
        6. Reconciliation against the job store

    The engine never touches the job store for writing; commit belongs to
    the ImportSession.
    """

    def __init__(self, config: Optional[ImportConfig] = None):
        self.config = config or ImportConfig()
        setup_logging(self.config.log_level, self.config.log_file)
        self.scorer = ConfidenceScorer(self.config.confidence)
        self.reconciler = Reconciler()

    def parse(
        self,
        source: PdfSource,
        filename: str = "",
        store: Optional[JobSource] = None,
        parse_log: Optional[ParseLog] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> ImportResult:
        """
        Parse a Tech Records PDF into reviewable job rows.

        Args:
            source: Path to the PDF or its raw bytes.
            filename: Display name; defaults to the path's basename.
            store: Existing jobs and import registry, if any.
            parse_log: Session parse log to append to.
            progress_callback: Receives an ImportProgress per page and row.

        Returns:
            ImportResult with rows, parse log and summary. Zero rows is a
            valid result (see the parse log for why).

        Raises:
            FileNotFoundError: If a path is given and doesn't exist.
            UnreadablePDF: If the PDF cannot be opened.
        """
        if not isinstance(source, bytes):
            source = os.path.abspath(source)
            if not os.path.exists(source):
                raise FileNotFoundError(f"PDF not found: {source}")
            filename = filename or os.path.basename(source)

        parse_log = parse_log if parse_log is not None else ParseLog()
        emit = self._emitter(progress_callback)
        start_time = time.time()
        logger.info(f"Starting import parse of: {filename or 'upload'}")

        # ── Step 1: Hash & re-import check ────────────────────────────
        file_hash = compute_file_hash(source)
        previous = store.get_import(file_hash) if store is not None else None
        if previous is not None:
            return self._already_imported(filename, file_hash, previous, parse_log, emit)

        existing_jobs = store.get_all() if store is not None else []

        # ── Step 2: Extract text fragments ────────────────────────────
        emit(Stage.EXTRACTING, 0, 0, "Extracting text layer")
        extractor = TextExtractor(page_range=self.config.page_range)
        try:
            fragments = extractor.extract(
                source,
                filename=filename,
                progress_callback=lambda cur, tot: emit(
                    Stage.EXTRACTING, cur, tot, f"Reading page {cur} of {tot}"
                ),
                require_text=True,
            )
            parse_log.info(
                f"Extracted {len(fragments)} text fragments from "
                f"{extractor.page_count} page(s)"
            )
        except EmptyTextLayer as e:
            # Not fatal: carry on with zero rows so the preview shows the log.
            fragments = []
            parse_log.error(e.message)

        # ── Step 3: Reconstruct table rows ────────────────────────────
        reconstructor = TableReconstructor(
            template=get_template(self.config.column_template),
            detect_header=self.config.detect_header,
            row_tolerance=self.config.row_tolerance,
            column_slack=self.config.column_slack,
            join_gap=self.config.join_gap,
            parse_log=parse_log,
        )
        table_rows = reconstructor.reconstruct(
            fragments,
            progress_callback=lambda cur, tot: emit(
                Stage.RECONSTRUCTING, cur, tot, f"Grouping line {cur} of {tot}"
            ),
        )

        # ── Step 4: Parse fields ──────────────────────────────────────
        field_parser = FieldParser(
            parse_log=parse_log,
            time_tolerance_minutes=self.config.time_tolerance_minutes,
        )
        rows = field_parser.parse_rows(
            table_rows,
            progress_callback=lambda cur, tot: emit(
                Stage.PARSING, cur, tot, f"Parsing row {cur} of {tot}"
            ),
        )
        self.reconciler.assign_ids(rows, file_hash)

        # ── Step 5: Score ─────────────────────────────────────────────
        for idx, row in enumerate(rows, start=1):
            self.scorer.rescore(row)
            emit(Stage.SCORING, idx, len(rows), f"Scoring row {idx} of {len(rows)}")

        # ── Step 6: Reconcile ─────────────────────────────────────────
        emit(Stage.RECONCILING, 0, len(rows), "Reconciling with existing jobs")
        summary = self.reconciler.reconcile(rows, existing_jobs)

        if not rows:
            parse_log.warning("No job rows found in the PDF")
        else:
            parse_log.info(
                f"Parsed {summary.total_rows} rows: {summary.valid_rows} valid, "
                f"{summary.invalid_rows} with errors"
            )
        for wip in summary.duplicate_wips:
            count = sum(1 for r in rows if r.wip_number == wip)
            parse_log.warning(
                f"Duplicate WIP number: {wip} appears {count} times"
            )

        elapsed = time.time() - start_time
        logger.info(
            f"Parse complete in {elapsed:.2f}s: {len(rows)} rows "
            f"({summary.creates} create, {summary.updates} update, "
            f"{summary.skips} skip)"
        )

        return ImportResult(
            filename=filename,
            file_hash=file_hash,
            rows=rows,
            parse_log=parse_log.entries,
            summary=summary,
        )

    def _already_imported(
        self,
        filename: str,
        file_hash: str,
        rows: list[ParsedJobRow],
        parse_log: ParseLog,
        emit: Callable,
    ) -> ImportResult:
        emit(Stage.RECONCILING, 0, len(rows), "File already imported")
        summary = self.reconciler.mark_already_imported(rows)
        parse_log.warning(
            f"File already imported (hash {file_hash[:12]}): "
            f"all {len(rows)} rows marked as duplicates"
        )
        return ImportResult(
            filename=filename,
            file_hash=file_hash,
            rows=rows,
            parse_log=parse_log.entries,
            summary=summary,
        )

    @staticmethod
    def _emitter(progress_callback: Optional[ProgressCallback]) -> Callable:
        def emit(stage: Stage, current: int, total: int, message: str):
            if progress_callback:
                progress_callback(ImportProgress(
                    status=ImportStatus.PARSING,
                    stage=stage,
                    current_row=current,
                    total_rows=total,
                    message=message,
                ))
        return emit
