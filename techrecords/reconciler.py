"""
Reconciler
==========
Decides what the commit step does with each parsed row and guards the
batch against silent duplication.

    identity key = WIP number, else vehicle registration + job date

No existing job with the key   → Create
Existing job, any field differs → Update
Existing job, identical         → Skip

WIP numbers repeated inside the batch are flagged on every row that shares
them; they block commit until the user resolves them.
"""

from __future__ import annotations

import logging
from collections import Counter
from typing import Iterable, Optional

from .models import (
    CommitSummary,
    ImportSummary,
    Job,
    ParsedJobRow,
    RowAction,
)

logger = logging.getLogger(__name__)


# ─── Identity ─────────────────────────────────────────────────────────────────


def identity_key(wip: str, reg: str, job_date) -> Optional[str]:
    if wip:
        return f"wip:{wip}"
    if reg and job_date is not None:
        return f"reg:{reg}:{job_date.isoformat()}"
    return None


def row_key(row: ParsedJobRow) -> Optional[str]:
    return identity_key(row.wip_number, row.vehicle_reg, row.job_date)


def job_key(job: Job) -> Optional[str]:
    return identity_key(job.wip_number, job.vehicle_registration, job.job_date)


def job_id_for(key: Optional[str]) -> Optional[str]:
    """Stable job id for an identity key: 'wip-12345' or 'reg-AB12CDE-2025-11-17'."""
    if key is None:
        return None
    return key.replace(":", "-")


_COMPARED_FIELDS = (
    ("wip_number", "wip_number"),
    ("vehicle_reg", "vehicle_registration"),
    ("vhc_status", "vhc_status"),
    ("job_description", "job_description"),
    ("aws", "aw_value"),
    ("job_date", "job_date"),
    ("job_time", "job_time"),
)


def differs(row: ParsedJobRow, job: Job) -> bool:
    return any(
        getattr(row, row_field) != getattr(job, job_field)
        for row_field, job_field in _COMPARED_FIELDS
    )


def _unused_id(base: str, taken) -> str:
    if base not in taken:
        return base
    n = 2
    while f"{base}-{n}" in taken:
        n += 1
    return f"{base}-{n}"


# ─── Reconciler ───────────────────────────────────────────────────────────────


class Reconciler:
    """Assigns ids and actions, flags duplicates, and plans the commit."""

    def assign_ids(self, rows: list[ParsedJobRow], file_hash: str = "") -> None:
        """
        Derive each row id from its identity key so repeated runs over the
        same table converge. Repeats in one batch get a '-2', '-3' suffix.

        Rows without an identity key are named after their position, scoped
        to the file by ``file_hash`` so two PDFs never share such an id.
        """
        seen: Counter = Counter()
        for row in rows:
            base = job_id_for(row_key(row))
            if base is None:
                base = (
                    f"row-{file_hash[:12]}-{row.source_page + 1}-{row.source_row + 1}"
                    if file_hash else row.id
                )
            seen[base] += 1
            row.id = base if seen[base] == 1 else f"{base}-{seen[base]}"

    def duplicate_wips(
        self, rows: Iterable[ParsedJobRow], committable_only: bool = False
    ) -> list[str]:
        counts = Counter(
            r.wip_number
            for r in rows
            if r.wip_number
            and not (committable_only and r.action == RowAction.SKIP)
        )
        return sorted(wip for wip, count in counts.items() if count > 1)

    def reconcile(
        self,
        rows: list[ParsedJobRow],
        existing_jobs: list[Job],
        excluded: Iterable[str] = (),
    ) -> ImportSummary:
        """
        Set action and duplicate flag on every row.

        Args:
            rows: Parsed rows of the batch.
            existing_jobs: Full current job collection.
            excluded: Row ids the user chose to skip.
        """
        excluded = set(excluded)
        index = {}
        for job in existing_jobs:
            key = job_key(job)
            if key is not None:
                index.setdefault(key, job)

        dup_wips = set(self.duplicate_wips(rows))
        for row in rows:
            row.is_duplicate = row.wip_number in dup_wips
            if row.id in excluded:
                row.action = RowAction.SKIP
                continue
            key = row_key(row)
            existing = index.get(key) if key is not None else None
            if existing is None:
                row.action = RowAction.CREATE
            elif differs(row, existing):
                row.action = RowAction.UPDATE
            else:
                row.action = RowAction.SKIP

        summary = self.summarize(rows)
        logger.info(
            f"Reconciled {summary.total_rows} rows: {summary.creates} create, "
            f"{summary.updates} update, {summary.skips} skip, "
            f"{summary.duplicates} duplicate"
        )
        return summary

    def mark_already_imported(self, rows: list[ParsedJobRow]) -> ImportSummary:
        """Re-import of an identical file: everything is a duplicate."""
        for row in rows:
            row.action = RowAction.SKIP
            row.is_duplicate = True
        return self.summarize(rows, already_imported=True)

    def summarize(
        self, rows: list[ParsedJobRow], already_imported: bool = False
    ) -> ImportSummary:
        actions = Counter(r.action for r in rows)
        invalid = sum(1 for r in rows if r.has_errors)
        return ImportSummary(
            total_rows=len(rows),
            valid_rows=len(rows) - invalid,
            invalid_rows=invalid,
            duplicates=sum(1 for r in rows if r.is_duplicate),
            creates=actions.get(RowAction.CREATE, 0),
            updates=actions.get(RowAction.UPDATE, 0),
            skips=actions.get(RowAction.SKIP, 0),
            duplicate_wips=self.duplicate_wips(rows),
            already_imported=already_imported,
        )

    # ─── Commit Gate & Plan ───────────────────────────────────────────────

    def commit_problems(self, rows: list[ParsedJobRow]) -> list[str]:
        """Reasons the batch may not be committed yet (empty when clean)."""
        problems = []
        for idx, row in enumerate(rows, start=1):
            if row.action == RowAction.SKIP:
                continue
            if not row.wip_number and not row.vehicle_reg:
                problems.append(f"Row {idx}: Missing WIP number or vehicle registration")
            if not row.vehicle_reg and row.job_date is None:
                problems.append(f"Row {idx}: Missing vehicle registration or start date")

        wip_counts = Counter(
            r.wip_number for r in rows
            if r.wip_number and r.action != RowAction.SKIP
        )
        for wip, count in sorted(wip_counts.items()):
            if count > 1:
                problems.append(f"Duplicate WIP number: {wip} appears {count} times")

        key_counts = Counter(
            row_key(r) for r in rows
            if not r.wip_number and r.action != RowAction.SKIP and row_key(r)
        )
        for key, count in sorted(key_counts.items()):
            if count > 1:
                problems.append(f"Duplicate job {key} appears {count} times")
        return problems

    def plan_commit(
        self,
        rows: list[ParsedJobRow],
        existing_jobs: list[Job],
        filename: str = "",
        file_hash: str = "",
    ) -> tuple[list[Job], list[tuple[Job, RowAction]], CommitSummary]:
        """
        Merge the batch into the job collection.

        Returns:
            (full job collection to save, (job, action) pairs, summary)
        """
        merged: dict[str, Job] = {job.id: job for job in existing_jobs}
        index = {}
        for job in existing_jobs:
            key = job_key(job)
            if key is not None:
                index.setdefault(key, job)

        pairs: list[tuple[Job, RowAction]] = []
        summary = CommitSummary()

        for row in rows:
            if row.action == RowAction.SKIP:
                summary.skipped += 1
                continue

            job = Job.from_row(row, filename=filename, file_hash=file_hash)
            key = row_key(row)
            match = index.get(key) if key is not None else None

            if match is not None:
                job = job.model_copy(update={"id": match.id})
                action = RowAction.UPDATE
            else:
                # Only an identity match may overwrite a stored job.
                job_id = _unused_id(job_id_for(key) or row.id, merged)
                job = job.model_copy(update={"id": job_id})
                action = RowAction.CREATE

            merged[job.id] = job
            pairs.append((job, action))
            if action == RowAction.UPDATE:
                summary.updated += 1
            else:
                summary.created += 1

        return list(merged.values()), pairs, summary
