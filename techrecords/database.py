"""
SQLite Job Store
================
Persistent storage for committed jobs and the registry of imported files.
No in-memory caching — always reads from disk.

The pipeline needs exactly two things from the store: ``get_all()`` before
reconciliation and ``save_all()`` at commit. ``save_all`` writes the whole
collection in one transaction so a batch lands completely or not at all.
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from datetime import date, time
from pathlib import Path
from typing import Optional

from pydantic import TypeAdapter

from .exceptions import CommitFailure
from .models import ImportRecord, Job, ParsedJobRow

logger = logging.getLogger(__name__)

# Default database path: project_root/jobs.sqlite
_DEFAULT_DB_PATH = str(Path(__file__).parent.parent / "jobs.sqlite")

_ROWS_ADAPTER = TypeAdapter(list[ParsedJobRow])


def get_db_path() -> str:
    """Return the configured database path."""
    return os.environ.get("TECHRECORDS_DB_PATH", _DEFAULT_DB_PATH)


@contextmanager
def get_connection(db_path: str = None):
    """
    Context manager for database connections.
    Ensures proper commit/rollback and connection cleanup.
    """
    db_path = db_path or get_db_path()
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def init_db(db_path: str = None):
    """
    Initialize the database schema.
    Safe to call multiple times — uses IF NOT EXISTS.
    """
    db_path = db_path or get_db_path()
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    logger.info(f"Initializing job store at: {db_path}")

    with get_connection(db_path) as conn:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS jobs (
                id TEXT PRIMARY KEY,
                wip_number TEXT DEFAULT '',
                vehicle_registration TEXT DEFAULT '',
                vhc_status TEXT DEFAULT 'N/A',
                job_description TEXT DEFAULT '',
                aw_value INTEGER DEFAULT 0,
                time_in_minutes INTEGER DEFAULT 0,
                job_date TEXT DEFAULT NULL,
                job_time TEXT DEFAULT NULL,
                source_filename TEXT DEFAULT '',
                source_hash TEXT DEFAULT '',
                imported_at TEXT DEFAULT ''
            );

            CREATE TABLE IF NOT EXISTS imports (
                file_hash TEXT PRIMARY KEY,
                filename TEXT DEFAULT '',
                imported_at TEXT DEFAULT '',
                rows_json TEXT DEFAULT '[]'
            );

            CREATE INDEX IF NOT EXISTS idx_jobs_wip
                ON jobs(wip_number);
            CREATE INDEX IF NOT EXISTS idx_jobs_reg_date
                ON jobs(vehicle_registration, job_date);
        """)

    logger.info("Job store schema initialized successfully")


# ─── Row Mapping ──────────────────────────────────────────────────────────────


def _job_to_params(job: Job) -> tuple:
    return (
        job.id,
        job.wip_number,
        job.vehicle_registration,
        job.vhc_status.value,
        job.job_description,
        job.aw_value,
        job.time_in_minutes,
        job.job_date.isoformat() if job.job_date else None,
        job.job_time.strftime("%H:%M") if job.job_time else None,
        job.source_filename,
        job.source_hash,
        job.imported_at,
    )


def _row_to_job(row: sqlite3.Row) -> Job:
    return Job(
        id=row["id"],
        wip_number=row["wip_number"] or "",
        vehicle_registration=row["vehicle_registration"] or "",
        vhc_status=row["vhc_status"] or "N/A",
        job_description=row["job_description"] or "",
        aw_value=row["aw_value"] or 0,
        job_date=date.fromisoformat(row["job_date"]) if row["job_date"] else None,
        job_time=time.fromisoformat(row["job_time"]) if row["job_time"] else None,
        source_filename=row["source_filename"] or "",
        source_hash=row["source_hash"] or "",
        imported_at=row["imported_at"] or "",
    )


# ─── Job Store ────────────────────────────────────────────────────────────────


class JobStore:
    """sqlite-backed job collection plus the imported-file registry."""

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or get_db_path()
        init_db(self.db_path)

    def get_all(self) -> list[Job]:
        """All committed jobs, most recent job date first."""
        with get_connection(self.db_path) as conn:
            rows = conn.execute(
                "SELECT * FROM jobs ORDER BY job_date DESC, job_time DESC, id"
            ).fetchall()
            return [_row_to_job(r) for r in rows]

    def count(self) -> int:
        with get_connection(self.db_path) as conn:
            row = conn.execute("SELECT COUNT(*) AS cnt FROM jobs").fetchone()
            return row["cnt"] if row else 0

    def save_all(
        self, jobs: list[Job], import_record: Optional[ImportRecord] = None
    ) -> int:
        """
        Replace the stored job collection with ``jobs``.

        Runs in a single transaction together with the optional import
        record; on any database error nothing is written.

        Returns:
            Number of jobs stored.

        Raises:
            CommitFailure: If the transaction could not be applied.
        """
        try:
            with get_connection(self.db_path) as conn:
                conn.execute("DELETE FROM jobs")
                conn.executemany(
                    """INSERT INTO jobs
                       (id, wip_number, vehicle_registration, vhc_status,
                        job_description, aw_value, time_in_minutes, job_date,
                        job_time, source_filename, source_hash, imported_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    [_job_to_params(j) for j in jobs],
                )
                if import_record is not None:
                    conn.execute(
                        """INSERT OR REPLACE INTO imports
                           (file_hash, filename, imported_at, rows_json)
                           VALUES (?, ?, ?, ?)""",
                        (
                            import_record.file_hash,
                            import_record.filename,
                            import_record.imported_at,
                            _ROWS_ADAPTER.dump_json(import_record.rows).decode("utf-8"),
                        ),
                    )
        except sqlite3.Error as e:
            logger.error(f"Job store commit failed, rolled back: {e}")
            raise CommitFailure(f"Could not save jobs: {e}", original_error=e) from e

        logger.info(f"Saved {len(jobs)} jobs to {self.db_path}")
        return len(jobs)

    # ─── Import Registry ──────────────────────────────────────────────────

    def known_hashes(self) -> set[str]:
        with get_connection(self.db_path) as conn:
            rows = conn.execute("SELECT file_hash FROM imports").fetchall()
            return {r["file_hash"] for r in rows}

    def get_import_record(self, file_hash: str) -> Optional[ImportRecord]:
        with get_connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM imports WHERE file_hash = ?", (file_hash,)
            ).fetchone()
        if row is None:
            return None
        return ImportRecord(
            file_hash=row["file_hash"],
            filename=row["filename"] or "",
            imported_at=row["imported_at"] or "",
            rows=_ROWS_ADAPTER.validate_python(json.loads(row["rows_json"] or "[]")),
        )

    def get_import(self, file_hash: str) -> Optional[list[ParsedJobRow]]:
        """Rows recorded when this exact file was committed, if ever."""
        record = self.get_import_record(file_hash)
        return record.rows if record is not None else None
