"""
Export Artifacts
================
Downloadable records of an import:

    <stem>_parse_log.json   one entry per ParseLogEntry
    <stem>_rows.csv         one line per parsed row, preview column order
"""

from __future__ import annotations

import csv
import io
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable

from .models import ImportResult, ParsedJobRow

logger = logging.getLogger(__name__)

CSV_COLUMNS = [
    "WIP",
    "Reg",
    "VHC",
    "Description",
    "AWS",
    "Minutes",
    "Time",
    "Date",
    "Confidence",
    "Action",
    "Errors",
]


def export_stem(filename: str) -> str:
    """Filesystem-safe stem of the source filename."""
    stem = Path(filename or "import").stem
    clean = "".join(c if c.isalnum() or c in "-_" else "_" for c in stem)
    return clean[:80] or "import"


# ─── Parse Log ────────────────────────────────────────────────────────────────


def parse_log_document(result: ImportResult) -> dict:
    return {
        "filename": result.filename,
        "hash": result.file_hash,
        "exported_at": datetime.now(timezone.utc).isoformat(),
        "entries": [e.model_dump(mode="json") for e in result.parse_log],
    }


def parse_log_json(result: ImportResult) -> str:
    return json.dumps(parse_log_document(result), indent=2, ensure_ascii=False)


def export_parse_log(result: ImportResult, output_dir: str) -> Path:
    """Write the parse log JSON next to the other exports. Returns its path."""
    out = Path(output_dir)
    out.mkdir(parents=True, exist_ok=True)
    path = out / f"{export_stem(result.filename)}_parse_log.json"
    path.write_text(parse_log_json(result), encoding="utf-8")
    logger.info(f"Exported parse log ({len(result.parse_log)} entries): {path}")
    return path


# ─── Rows CSV ─────────────────────────────────────────────────────────────────


def format_started(row: ParsedJobRow, missing: str = "") -> str:
    """Date and time as printed in the Tech Records export."""
    started = row.started_at()
    if started is None:
        return missing
    return started.strftime("%d/%m/%Y %H:%M" if row.job_time else "%d/%m/%Y")


def row_to_record(row: ParsedJobRow) -> dict[str, str]:
    """One CSV record with display formatting matching the preview table."""
    return {
        "WIP": row.wip_number,
        "Reg": row.vehicle_reg,
        "VHC": row.vhc_status.value,
        "Description": row.job_description,
        "AWS": str(row.aws),
        "Minutes": str(row.minutes),
        "Time": row.work_time_raw,
        "Date": format_started(row),
        "Confidence": f"{row.confidence:.2f}",
        "Action": row.action.value,
        "Errors": "; ".join(row.validation_errors),
    }


def rows_csv(rows: Iterable[ParsedJobRow]) -> str:
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=CSV_COLUMNS)
    writer.writeheader()
    for row in rows:
        writer.writerow(row_to_record(row))
    return buffer.getvalue()


def export_rows_csv(result: ImportResult, output_dir: str) -> Path:
    """Write the parsed rows as CSV. Returns its path."""
    out = Path(output_dir)
    out.mkdir(parents=True, exist_ok=True)
    path = out / f"{export_stem(result.filename)}_rows.csv"
    with open(path, "w", newline="", encoding="utf-8") as csvfile:
        csvfile.write(rows_csv(result.rows))
    logger.info(f"Exported {len(result.rows)} rows to CSV: {path}")
    return path
