"""
Filesystem Storage Manager
==========================
Where uploaded PDFs and export artifacts live.
All paths are relative to the project root for portability.

Directory Layout:
    uploads/
    └── pdfs/              # Tech Records PDFs received by the HTTP service
    exports/               # Parse logs and row CSVs
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

# Project root: one level up from /techrecords/ package
_PROJECT_ROOT = Path(__file__).parent.parent.absolute()

UPLOADS_DIR = _PROJECT_ROOT / "uploads"
PDFS_DIR = UPLOADS_DIR / "pdfs"
EXPORTS_DIR = _PROJECT_ROOT / "exports"


def init_storage(uploads_dir: Optional[Path] = None, exports_dir: Optional[Path] = None):
    """Ensure all required directories exist."""
    (Path(uploads_dir) if uploads_dir else PDFS_DIR).mkdir(parents=True, exist_ok=True)
    (Path(exports_dir) if exports_dir else EXPORTS_DIR).mkdir(parents=True, exist_ok=True)
    logger.info(f"Storage initialized: {uploads_dir or PDFS_DIR}")


def get_project_root() -> Path:
    return _PROJECT_ROOT


def sanitize_filename(filename: str) -> str:
    """Keep a PDF's name readable but safe to write anywhere."""
    name = Path(filename or "upload.pdf").name
    name = re.sub(r"[^A-Za-z0-9._-]+", "_", name).strip("._") or "upload"
    if not name.lower().endswith(".pdf"):
        name += ".pdf"
    return name


def save_upload(data: bytes, filename: str, uploads_dir: Optional[Path] = None) -> Path:
    """
    Keep a copy of an uploaded PDF.
    Returns the absolute path to the saved file.
    """
    target_dir = Path(uploads_dir) if uploads_dir else PDFS_DIR
    target_dir.mkdir(parents=True, exist_ok=True)
    dest = target_dir / sanitize_filename(filename)
    dest.write_bytes(data)
    logger.info(f"Uploaded PDF saved: {dest}")
    return dest

