"""
Shared fixtures: Tech Records PDFs generated on the fly with PyMuPDF and
a throwaway sqlite job store.
"""

from __future__ import annotations

import logging

import fitz  # PyMuPDF
import pytest

from techrecords.database import JobStore

# Left edge of each column in the portrait Tech Records export.
COLUMN_X = {
    "wip": 30,
    "reg": 80,
    "vhc": 150,
    "description": 190,
    "aws": 400,
    "time": 435,
    "datetime": 490,
}

HEADER_TEXT = {
    "wip": "WIP",
    "reg": "Reg",
    "vhc": "VHC",
    "description": "Description",
    "aws": "AWS",
    "time": "Time",
    "datetime": "Date & Time",
}

LINE_STEP = 12
FONT_SIZE = 9


def build_pdf(pages: list[list[dict]], header: bool = True, title: str = "Tech Records") -> bytes:
    """
    One list of rows per page; a row maps column -> text, and a "\\n" in
    the text continues the cell on the next printed line.
    """
    doc = fitz.open()
    for page_no, rows in enumerate(pages, start=1):
        page = doc.new_page(width=595, height=842)
        y = 50
        page.insert_text((30, y), title, fontsize=14)
        page.insert_text((480, y), f"Page {page_no} of {len(pages)}", fontsize=8)
        y += 30
        if header:
            for column, x in COLUMN_X.items():
                page.insert_text((x, y), HEADER_TEXT[column], fontsize=FONT_SIZE)
            y += LINE_STEP + 6
        for row in rows:
            parts = {c: str(t).split("\n") for c, t in row.items()}
            height = max(len(p) for p in parts.values())
            for i in range(height):
                for column, lines in parts.items():
                    if i < len(lines) and lines[i]:
                        page.insert_text(
                            (COLUMN_X[column], y), lines[i], fontsize=FONT_SIZE
                        )
                y += LINE_STEP
            y += 4
    data = doc.tobytes()
    doc.close()
    return data


def job_row(wip="12345", reg="AB12CDE", vhc="Green", description="Seatbelt recall",
            aws="10", time="0h 50m", when="17/11/2025 15:49") -> dict:
    return {
        "wip": wip,
        "reg": reg,
        "vhc": vhc,
        "description": description,
        "aws": aws,
        "time": time,
        "datetime": when,
    }


@pytest.fixture
def make_pdf():
    return build_pdf


@pytest.fixture
def make_row():
    return job_row


@pytest.fixture
def scenario_pdf() -> bytes:
    """Three rows: a job, its verbatim duplicate, and a job with no WIP and no AWS."""
    return build_pdf([[
        job_row(),
        job_row(),
        job_row(wip="", reg="XY99ZZZ", vhc="N/A", description="Brake check",
                aws="0", time="0h 0m", when="18/11/2025 09:15"),
    ]])


@pytest.fixture
def store(tmp_path) -> JobStore:
    return JobStore(str(tmp_path / "jobs.sqlite"))


@pytest.fixture(autouse=True)
def _reset_package_logger():
    """Handlers bound to a CliRunner stream must not outlive the test."""
    yield
    pkg_logger = logging.getLogger("techrecords")
    for handler in list(pkg_logger.handlers):
        pkg_logger.removeHandler(handler)
        handler.close()
