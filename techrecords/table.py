"""
Table Reconstructor
===================
Turns an unordered stream of positioned text fragments back into the rows
and columns of the Tech Records table.

    fragments → lines (y clustering) → cells (x vs column boundaries)
              → logical rows (wrapped cells and split tokens merged)

Column boundaries come from a named ColumnTemplate, refined per page from
the table header when one is found.
"""

from __future__ import annotations

import logging
import re
import statistics
from dataclasses import dataclass, field
from typing import Callable, Optional

from .models import ReconstructedRow, TextFragment
from .parse_log import ParseLog

logger = logging.getLogger(__name__)

# ─── Columns ──────────────────────────────────────────────────────────────────

WIP = "wip"
REG = "reg"
VHC = "vhc"
DESCRIPTION = "description"
AWS = "aws"
TIME = "time"
DATETIME = "datetime"

COLUMNS = (WIP, REG, VHC, DESCRIPTION, AWS, TIME, DATETIME)

# Columns whose content may wrap onto following lines.
CONTINUATION_COLUMNS = frozenset({DESCRIPTION, TIME, DATETIME})

# Checked in order against each header phrase; DATE must win over TIME.
HEADER_KEYWORDS: list[tuple[str, re.Pattern]] = [
    (DATETIME, re.compile(r"\bDATE\b", re.IGNORECASE)),
    (WIP, re.compile(r"\bWIP\b", re.IGNORECASE)),
    (REG, re.compile(r"\b(REG|VEHICLE|REGISTRATION)\b", re.IGNORECASE)),
    (VHC, re.compile(r"\bVHC\b", re.IGNORECASE)),
    (DESCRIPTION, re.compile(r"\b(DESCRIPTION|JOB)\b", re.IGNORECASE)),
    (AWS, re.compile(r"\bAWS?\b", re.IGNORECASE)),
    (TIME, re.compile(r"\bTIME\b", re.IGNORECASE)),
]

MIN_HEADER_COLUMNS = 4

# Report boilerplate that never belongs to the table body.
IGNORE_PATTERNS = [
    re.compile(r"^\s*(Page\s*)?\d+\s*(/|of)\s*\d+\s*$", re.IGNORECASE),
    re.compile(r"^\s*Tech\s+Records\b", re.IGNORECASE),
    re.compile(r"^\s*Totals?\b", re.IGNORECASE),
]

# (end of previous token, start of next token, joiner) for values that the
# export split across fragments or lines.
SPLIT_RULES: list[tuple[re.Pattern, re.Pattern, str]] = [
    (re.compile(r"^\d+\s*h$", re.IGNORECASE),
     re.compile(r"^\d+\s*m$", re.IGNORECASE), " "),
    (re.compile(r"[:/]$"), re.compile(r"^\d"), ""),
    (re.compile(r"\d$"), re.compile(r"^[:/]\d*"), ""),
]


# ─── Templates ────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ColumnTemplate:
    """
    Left x-boundaries (PDF points) of each column for one export format.
    A fragment belongs to the right-most column whose start it reaches.
    """
    name: str
    boundaries: tuple[tuple[str, float], ...]

    def __post_init__(self):
        starts = [x for _, x in self.boundaries]
        if starts != sorted(starts):
            raise ValueError(f"Template {self.name!r}: boundaries must ascend")
        if not self.boundaries:
            raise ValueError(f"Template {self.name!r}: no columns")

    @property
    def columns(self) -> list[str]:
        return [name for name, _ in self.boundaries]

    def column_for(self, x: float, slack: float = 0.0) -> str:
        chosen = self.boundaries[0][0]
        for column, start in self.boundaries:
            if x + slack >= start:
                chosen = column
            else:
                break
        return chosen


COLUMN_TEMPLATES: dict[str, ColumnTemplate] = {
    # A4 portrait export
    "tech_records": ColumnTemplate(
        name="tech_records",
        boundaries=(
            (WIP, 30.0),
            (REG, 80.0),
            (VHC, 150.0),
            (DESCRIPTION, 190.0),
            (AWS, 400.0),
            (TIME, 435.0),
            (DATETIME, 490.0),
        ),
    ),
    # A4 landscape export
    "tech_records_landscape": ColumnTemplate(
        name="tech_records_landscape",
        boundaries=(
            (WIP, 30.0),
            (REG, 100.0),
            (VHC, 200.0),
            (DESCRIPTION, 260.0),
            (AWS, 600.0),
            (TIME, 650.0),
            (DATETIME, 730.0),
        ),
    ),
}


def get_template(name: str) -> ColumnTemplate:
    try:
        return COLUMN_TEMPLATES[name]
    except KeyError:
        known = ", ".join(sorted(COLUMN_TEMPLATES))
        raise ValueError(f"Unknown column template {name!r} (known: {known})")


# ─── Line Model ───────────────────────────────────────────────────────────────


@dataclass
class _Line:
    """Fragments sharing a baseline on one page, left to right."""
    page_index: int
    fragments: list[TextFragment] = field(default_factory=list)

    @property
    def text(self) -> str:
        return " ".join(f.text for f in self.fragments)


def join_split(prev: str, nxt: str) -> Optional[str]:
    """Merge two syntactically partial tokens, or None if they are whole."""
    tail = prev.split("\n")[-1].strip()
    head = nxt.strip()
    for prev_pat, next_pat, joiner in SPLIT_RULES:
        if prev_pat.search(tail) and next_pat.search(head):
            return prev.rstrip() + joiner + head
    return None


class TableReconstructor:
    """
    Clusters fragments into rows and template columns.

    Args:
        template: Fallback column boundaries for the export format.
        detect_header: Re-derive boundaries from a header row when present.
        row_tolerance: Fraction of the median fragment height within which
            two fragments share a row.
        column_slack: Points a fragment may start left of its column.
        join_gap: Horizontal gap (points) below which fragments are glued
            without a space.
        header_gap: Horizontal gap (points) separating header phrases.
        parse_log: Session parse log for diagnostics.
    """

    def __init__(
        self,
        template: ColumnTemplate,
        detect_header: bool = True,
        row_tolerance: float = 0.6,
        column_slack: float = 4.0,
        join_gap: float = 0.8,
        header_gap: float = 6.0,
        parse_log: Optional[ParseLog] = None,
    ):
        self.template = template
        self.detect_header = detect_header
        self.row_tolerance = row_tolerance
        self.column_slack = column_slack
        self.join_gap = join_gap
        self.header_gap = header_gap
        self.parse_log = parse_log if parse_log is not None else ParseLog()

    def reconstruct(
        self,
        fragments: list[TextFragment],
        progress_callback: Optional[Callable[[int, int], None]] = None,
    ) -> list[ReconstructedRow]:
        """
        Rebuild logical table rows from fragments.

        Structurally empty rows are dropped silently.
        """
        lines = self.cluster_lines(fragments)
        total = len(lines)
        logger.info(f"Clustered {len(fragments)} fragments into {total} lines")

        rows: list[ReconstructedRow] = []
        template = self.template
        current: Optional[ReconstructedRow] = None
        page_row_counter: dict[int, int] = {}
        header_pages: set[int] = set()
        first_header_line = self._first_header_lines(lines)

        for idx, line in enumerate(lines, start=1):
            page = line.page_index
            header_at = first_header_line.get(page)

            if header_at is not None and idx - 1 < header_at:
                logger.debug(f"Page {page + 1}: skipping pre-header line {line.text!r}")
            elif header_at is not None and idx - 1 == header_at:
                template = self._template_from_header(line) or template
                header_pages.add(page)
                logger.info(
                    f"Page {page + 1}: header detected, columns "
                    f"{', '.join(template.columns)}"
                )
            elif self.detect_header and self._template_from_header(line):
                logger.debug(f"Skipping repeated header {line.text!r}")
            else:
                cells = self._cells(line, template)
                if self._is_boilerplate(line, cells, current):
                    logger.debug(f"Ignoring boilerplate line {line.text!r}")
                elif self._starts_row(cells):
                    if not (cells.get(WIP, "").strip() or cells.get(REG, "").strip()):
                        self.parse_log.warning(
                            f"Page {page + 1}: row without WIP or registration",
                            raw_data=line.text,
                        )
                    row_index = page_row_counter.get(page, 0)
                    page_row_counter[page] = row_index + 1
                    current = ReconstructedRow(
                        page_index=page,
                        row_index=row_index,
                        cells={c: "" for c in COLUMNS},
                    )
                    current.cells.update(cells)
                    rows.append(current)
                elif current is not None:
                    self._merge_continuation(current, cells)
                else:
                    self.parse_log.warning(
                        f"Page {page + 1}: text outside any row ignored",
                        raw_data=line.text,
                    )

            if progress_callback:
                progress_callback(idx, total)

        kept = [r for r in rows if not r.is_empty]
        dropped = len(rows) - len(kept)
        if dropped:
            logger.debug(f"Dropped {dropped} structurally empty rows")

        if fragments and not header_pages and self.detect_header:
            self.parse_log.info(
                f"No table header found; using template '{self.template.name}'"
            )
        logger.info(f"Reconstructed {len(kept)} table rows")
        return kept

    # ─── Clustering ───────────────────────────────────────────────────────

    def cluster_lines(self, fragments: list[TextFragment]) -> list[_Line]:
        """Group fragments into lines by y-center within the tolerance band."""
        by_page: dict[int, list[TextFragment]] = {}
        for frag in fragments:
            by_page.setdefault(frag.page_index, []).append(frag)

        lines: list[_Line] = []
        for page in sorted(by_page):
            page_frags = sorted(by_page[page], key=lambda f: (f.y_center, f.x))
            heights = [f.height for f in page_frags if f.height > 0]
            line_height = statistics.median(heights) if heights else 10.0
            tolerance = self.row_tolerance * line_height

            current: Optional[_Line] = None
            center = 0.0
            for frag in page_frags:
                if current is not None and abs(frag.y_center - center) <= tolerance:
                    current.fragments.append(frag)
                    n = len(current.fragments)
                    center += (frag.y_center - center) / n
                else:
                    current = _Line(page_index=page, fragments=[frag])
                    center = frag.y_center
                    lines.append(current)

        for line in lines:
            line.fragments.sort(key=lambda f: f.x)
        return lines

    def _cells(self, line: _Line, template: ColumnTemplate) -> dict[str, str]:
        """Assign each fragment of a line to a column and join per column."""
        cells: dict[str, str] = {}
        last: dict[str, TextFragment] = {}
        for frag in line.fragments:
            column = template.column_for(frag.x, self.column_slack)
            prev = last.get(column)
            if prev is None:
                cells[column] = frag.text
            else:
                cells[column] = self._join(cells[column], prev, frag)
            last[column] = frag
        return cells

    def _join(self, text: str, prev: TextFragment, frag: TextFragment) -> str:
        gap = frag.x - prev.x1
        if gap < self.join_gap:
            return text + frag.text
        merged = join_split(text, frag.text)
        if merged is not None:
            return merged
        return f"{text} {frag.text}"

    # ─── Row Assembly ─────────────────────────────────────────────────────

    @staticmethod
    def _is_boilerplate(
        line: _Line, cells: dict[str, str], current: Optional[ReconstructedRow]
    ) -> bool:
        """
        Report furniture such as titles, page counters and totals. Text
        that sits only in the Description column under an open row is a
        wrapped description, whatever it starts with.
        """
        if not any(p.match(line.text) for p in IGNORE_PATTERNS):
            return False
        filled = {c for c, text in cells.items() if text.strip()}
        return not (current is not None and filled == {DESCRIPTION})

    @staticmethod
    def _starts_row(cells: dict[str, str]) -> bool:
        """A line opens a new record unless it only extends wrap columns."""
        if cells.get(WIP, "").strip() or cells.get(REG, "").strip():
            return True
        return any(
            text.strip()
            for column, text in cells.items()
            if column not in CONTINUATION_COLUMNS
        )

    @staticmethod
    def _merge_continuation(row: ReconstructedRow, cells: dict[str, str]):
        for column, text in cells.items():
            if not text.strip():
                continue
            prev = row.cells.get(column, "")
            if not prev:
                row.cells[column] = text
                continue
            merged = join_split(prev, text)
            row.cells[column] = merged if merged is not None else f"{prev}\n{text}"

    # ─── Header Detection ─────────────────────────────────────────────────

    def _first_header_lines(self, lines: list[_Line]) -> dict[int, int]:
        """Global line index of the first header line on each page."""
        found: dict[int, int] = {}
        if not self.detect_header:
            return found
        for idx, line in enumerate(lines):
            if line.page_index in found:
                continue
            if self._template_from_header(line):
                found[line.page_index] = idx
        return found

    def _phrases(self, line: _Line) -> list[tuple[str, float]]:
        """Split a line into phrases separated by wide horizontal gaps."""
        phrases: list[tuple[str, float]] = []
        words: list[str] = []
        start = 0.0
        prev: Optional[TextFragment] = None
        for frag in line.fragments:
            if prev is None or frag.x - prev.x1 > self.header_gap:
                if words:
                    phrases.append((" ".join(words), start))
                words = [frag.text]
                start = frag.x
            else:
                words.append(frag.text)
            prev = frag
        if words:
            phrases.append((" ".join(words), start))
        return phrases

    def _template_from_header(self, line: _Line) -> Optional[ColumnTemplate]:
        """Build a template from a header line, or None if it is not one."""
        found: dict[str, float] = {}
        for phrase, x in self._phrases(line):
            for column, pattern in HEADER_KEYWORDS:
                if pattern.search(phrase):
                    found.setdefault(column, x)
                    break
        if WIP not in found or len(found) < MIN_HEADER_COLUMNS:
            return None
        boundaries = tuple(sorted(found.items(), key=lambda kv: kv[1]))
        try:
            return ColumnTemplate(name=f"{self.template.name}:header", boundaries=boundaries)
        except ValueError:
            return None
