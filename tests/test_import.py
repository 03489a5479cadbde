"""
Test Suite for the Import Pipeline
==================================
Extraction, reconciliation, the import session, the job store and exports.
"""

from __future__ import annotations

import csv
import io
import json
from datetime import date, time

import fitz  # PyMuPDF
import pytest

from techrecords.database import JobStore, get_db_path
from techrecords.engine import ImportConfig, ImportEngine, compute_file_hash
from techrecords.exceptions import (
    BatchValidationError,
    CommitFailure,
    DuplicateWipInBatch,
    EmptyTextLayer,
    InvalidTransition,
    SessionBusy,
    UnknownRow,
    UnknownSession,
    UnreadablePDF,
)
from techrecords.exporters import (
    CSV_COLUMNS,
    export_parse_log,
    export_rows_csv,
    format_started,
    parse_log_document,
    rows_csv,
)
from techrecords.models import (
    ClearAws,
    ConfidenceBucket,
    FindReplace,
    ImportRecord,
    ImportStatus,
    Job,
    LogLevel,
    ParsedJobRow,
    RowAction,
    SetVhc,
    Stage,
    VhcStatus,
)
from techrecords.reconciler import Reconciler, identity_key, job_id_for
from techrecords.session import ImportSession, SessionManager
from techrecords.text_extractor import TextExtractor


def _parsed(id_="r", wip="12345", reg="AB12CDE", aws=10, **extra) -> ParsedJobRow:
    values = dict(
        id=id_,
        wip_number=wip,
        vehicle_reg=reg,
        vhc_status=VhcStatus.GREEN,
        job_description="Seatbelt recall",
        aws=aws,
        job_date=date(2025, 11, 17),
        job_time=time(15, 49),
    )
    values.update(extra)
    return ParsedJobRow(**values)


def _job(**overrides) -> Job:
    row = _parsed(**{k: v for k, v in overrides.items() if k != "job_id"})
    job = Job.from_row(row, filename="old.pdf", file_hash="old")
    return job.model_copy(update={"id": overrides.get("job_id", "wip-12345")})


# ═══════════════════════════════════════════════════════════════════════════════
# TEXT EXTRACTOR TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestTextExtractor:
    """Test PDF text-layer extraction."""

    def test_extracts_positioned_words(self, scenario_pdf):
        extractor = TextExtractor()
        fragments = extractor.extract(scenario_pdf, filename="records.pdf")
        assert extractor.page_count == 1
        texts = [f.text for f in fragments]
        assert "12345" in texts
        assert "AB12CDE" in texts
        wip = next(f for f in fragments if f.text == "12345")
        assert wip.page_index == 0
        assert 28 <= wip.x <= 32
        assert wip.width > 0 and wip.height > 0

    def test_reading_order(self, scenario_pdf):
        fragments = TextExtractor().extract(scenario_pdf)
        keys = [(round(f.y, 1), f.x) for f in fragments]
        assert keys == sorted(keys)

    def test_not_a_pdf(self):
        with pytest.raises(UnreadablePDF) as exc:
            TextExtractor().extract(b"this is not a pdf", filename="notes.txt")
        assert exc.value.details["filename"] == "notes.txt"

    def test_no_text_layer(self):
        doc = fitz.open()
        doc.new_page()
        data = doc.tobytes()
        doc.close()
        assert TextExtractor().extract(data) == []
        with pytest.raises(EmptyTextLayer):
            TextExtractor().extract(data, filename="scan.pdf", require_text=True)

    def test_page_range(self, make_pdf, make_row):
        data = make_pdf([[make_row()], [make_row(wip="54321")]])
        fragments = TextExtractor(page_range=(2, 2)).extract(data)
        assert {f.page_index for f in fragments} == {1}


# ═══════════════════════════════════════════════════════════════════════════════
# RECONCILER TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestIdentity:
    """Test identity keys and job ids."""

    def test_wip_is_primary(self):
        assert identity_key("12345", "AB12CDE", date(2025, 1, 1)) == "wip:12345"

    def test_reg_and_date_fallback(self):
        assert identity_key("", "AB12CDE", date(2025, 1, 2)) == "reg:AB12CDE:2025-01-02"

    def test_no_identity(self):
        assert identity_key("", "AB12CDE", None) is None
        assert identity_key("", "", date(2025, 1, 2)) is None

    def test_job_id(self):
        assert job_id_for("wip:12345") == "wip-12345"
        assert job_id_for(None) is None

    def test_assign_ids_suffixes_repeats(self):
        rows = [_parsed("row-1-1"), _parsed("row-1-2"), _parsed("row-1-3", wip="", reg="")]
        rows[2].job_date = None
        Reconciler().assign_ids(rows)
        assert [r.id for r in rows] == ["wip-12345", "wip-12345-2", "row-1-3"]

    def test_keyless_ids_are_scoped_to_the_file(self):
        first = _parsed("row-1-1", wip="", job_date=None, source_page=0, source_row=0)
        second = _parsed("row-1-1", wip="", job_date=None, source_page=0, source_row=0)
        Reconciler().assign_ids([first], file_hash="aaaaaaaaaaaaffff")
        Reconciler().assign_ids([second], file_hash="bbbbbbbbbbbbffff")
        assert first.id == "row-aaaaaaaaaaaa-1-1"
        assert second.id == "row-bbbbbbbbbbbb-1-1"


class TestReconciler:
    """Test Create/Update/Skip decisions and the commit gate."""

    def test_create_when_unknown(self):
        rows = [_parsed("a")]
        summary = Reconciler().reconcile(rows, [])
        assert rows[0].action == RowAction.CREATE
        assert summary.creates == 1

    def test_skip_when_identical(self):
        rows = [_parsed("a")]
        Reconciler().reconcile(rows, [_job()])
        assert rows[0].action == RowAction.SKIP

    def test_update_when_changed(self):
        rows = [_parsed("a", aws=12)]
        summary = Reconciler().reconcile(rows, [_job()])
        assert rows[0].action == RowAction.UPDATE
        assert summary.updates == 1

    def test_reg_date_fallback_matches(self):
        rows = [_parsed("a", wip="", vhc_status=VhcStatus.RED)]
        existing = [_job(wip="", job_id="reg-AB12CDE-2025-11-17")]
        Reconciler().reconcile(rows, existing)
        assert rows[0].action == RowAction.UPDATE

    def test_duplicates_in_batch_are_flagged(self):
        rows = [_parsed("a"), _parsed("b"), _parsed("c", wip="54321")]
        summary = Reconciler().reconcile(rows, [])
        assert [r.is_duplicate for r in rows] == [True, True, False]
        assert summary.duplicates == 2
        assert summary.duplicate_wips == ["12345"]

    def test_excluded_rows_skip(self):
        rows = [_parsed("a"), _parsed("b")]
        summary = Reconciler().reconcile(rows, [], excluded={"b"})
        assert rows[1].action == RowAction.SKIP
        assert summary.skips == 1

    def test_commit_problems(self):
        rows = [
            _parsed("a"),
            _parsed("b"),
            _parsed("c", wip="", reg=""),
            _parsed("d", wip="", reg="", job_date=None),
        ]
        Reconciler().reconcile(rows, [])
        problems = Reconciler().commit_problems(rows)
        assert "Duplicate WIP number: 12345 appears 2 times" in problems
        assert "Row 3: Missing WIP number or vehicle registration" in problems
        assert "Row 4: Missing vehicle registration or start date" in problems

    def test_skipped_rows_do_not_block(self):
        rows = [_parsed("a"), _parsed("b")]
        Reconciler().reconcile(rows, [], excluded={"b"})
        assert Reconciler().commit_problems(rows) == []

    def test_plan_commit_merges_by_id(self):
        existing = [_job(), _job(wip="99999", job_id="wip-99999")]
        rows = [_parsed("wip-12345", aws=20), _parsed("wip-54321", wip="54321")]
        reconciler = Reconciler()
        reconciler.reconcile(rows, existing)
        merged, pairs, summary = reconciler.plan_commit(rows, existing, "new.pdf", "h")
        by_id = {j.id: j for j in merged}
        assert set(by_id) == {"wip-12345", "wip-99999", "wip-54321"}
        assert by_id["wip-12345"].aw_value == 20
        assert by_id["wip-12345"].time_in_minutes == 100
        assert (summary.created, summary.updated, summary.skipped) == (1, 1, 0)
        assert [a for _, a in pairs] == [RowAction.UPDATE, RowAction.CREATE]

    def test_plan_commit_never_overwrites_by_id_alone(self):
        stored = _job(wip="", reg="XY99ZZZ", job_date=None, job_id="row-1-1")
        rows = [_parsed("row-1-1", wip="", job_date=None)]
        reconciler = Reconciler()
        reconciler.reconcile(rows, [stored])
        assert rows[0].action == RowAction.CREATE
        merged, pairs, summary = reconciler.plan_commit(rows, [stored], "new.pdf", "h")
        by_id = {j.id: j for j in merged}
        assert set(by_id) == {"row-1-1", "row-1-1-2"}
        assert by_id["row-1-1"].vehicle_registration == "XY99ZZZ"
        assert by_id["row-1-1-2"].vehicle_registration == "AB12CDE"
        assert (summary.created, summary.updated) == (1, 0)
        assert [a for _, a in pairs] == [RowAction.CREATE]

    def test_summary_counts_rows_with_errors(self):
        rows = [_parsed("a"), _parsed("b", wip="54321")]
        rows[1].add_error("aws", "Missing AWS")
        summary = Reconciler().reconcile(rows, [])
        assert (summary.valid_rows, summary.invalid_rows) == (1, 1)

    def test_already_imported(self):
        rows = [_parsed("a"), _parsed("b", wip="54321")]
        summary = Reconciler().mark_already_imported(rows)
        assert summary.already_imported
        assert summary.duplicates == len(rows)
        assert summary.creates == summary.updates == 0


# ═══════════════════════════════════════════════════════════════════════════════
# ENGINE & SESSION TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestImportEngine:
    """Test the parse pipeline on generated PDFs."""

    def test_file_hash(self, tmp_path, scenario_pdf):
        path = tmp_path / "records.pdf"
        path.write_bytes(scenario_pdf)
        assert compute_file_hash(str(path)) == compute_file_hash(scenario_pdf)

    def test_parse_from_path(self, tmp_path, scenario_pdf):
        path = tmp_path / "records.pdf"
        path.write_bytes(scenario_pdf)
        result = ImportEngine().parse(str(path))
        assert result.filename == "records.pdf"
        assert len(result.rows) == 3

    def test_missing_path(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            ImportEngine().parse(str(tmp_path / "missing.pdf"))

    def test_wrapped_cells_from_pdf(self, make_pdf, make_row):
        data = make_pdf([[
            make_row(description="Seatbelt recall,\nvhc 6", aws="6", time="0h 30m",
                     when="17/11/2025\n15:49"),
        ]])
        result = ImportEngine().parse(data, filename="wrapped.pdf")
        assert len(result.rows) == 1
        row = result.rows[0]
        assert row.job_description == "Seatbelt recall, vhc 6"
        assert row.job_time == time(15, 49)
        assert row.minutes == 30

    def test_multi_page_with_repeated_header(self, make_pdf, make_row):
        data = make_pdf([[make_row()], [make_row(wip="54321")]])
        result = ImportEngine().parse(data, filename="two.pdf")
        assert [r.wip_number for r in result.rows] == ["12345", "54321"]

    def test_fixed_template_without_header(self, make_pdf, make_row):
        data = make_pdf([[make_row()]], header=False)
        result = ImportEngine(ImportConfig(detect_header=False)).parse(data, filename="plain.pdf")
        assert len(result.rows) == 1
        assert result.rows[0].vhc_status == VhcStatus.GREEN

    def test_wrapped_description_starting_with_total(self, make_pdf, make_row):
        data = make_pdf([[make_row(description="Replace pads\nTotal loss of brake fluid")]])
        result = ImportEngine().parse(data, filename="total.pdf")
        assert len(result.rows) == 1
        assert result.rows[0].job_description == "Replace pads Total loss of brake fluid"


class TestImportSession:
    """End-to-end import sessions."""

    def test_three_row_scenario(self, scenario_pdf, store):
        session = ImportSession(store=store)
        result = session.run(scenario_pdf, filename="records.pdf")

        assert session.status == ImportStatus.PREVIEW
        assert result.session_id == session.session_id
        row1, row2, row3 = result.rows

        assert row1.confidence == pytest.approx(1.0)
        assert row1.action == RowAction.CREATE
        assert row1.minutes == 50

        assert row1.is_duplicate and row2.is_duplicate
        assert result.summary.duplicates == 2
        assert result.summary.duplicate_wips == ["12345"]

        assert row3.wip_number == ""
        assert row3.vehicle_reg == "XY99ZZZ"
        assert row3.validation_errors
        assert row3.confidence == pytest.approx(0.7 * 0.5)
        assert session.scorer.bucket(row3.confidence) == ConfidenceBucket.LOW
        assert row3.action == RowAction.CREATE

    def test_duplicates_block_commit_until_resolved(self, scenario_pdf, store):
        session = ImportSession(store=store)
        result = session.run(scenario_pdf, filename="records.pdf")
        row1, row2, _ = result.rows

        with pytest.raises(DuplicateWipInBatch) as exc:
            session.commit()
        assert exc.value.wips == ["12345"]
        assert session.status == ImportStatus.PREVIEW
        assert store.get_all() == []

        session.resolve_duplicate("12345", row1.id)
        assert session.get_row(row2.id).action == RowAction.SKIP

        summary = session.commit()
        assert (summary.created, summary.updated, summary.skipped) == (2, 0, 1)
        assert session.status == ImportStatus.COMPLETE

        jobs = {j.wip_number: j for j in store.get_all()}
        assert jobs["12345"].time_in_minutes == 50
        assert jobs["12345"].source_filename == "records.pdf"
        assert jobs[""].vehicle_registration == "XY99ZZZ"

    def test_reimport_is_all_duplicates(self, scenario_pdf, store):
        first = ImportSession(store=store)
        rows = first.run(scenario_pdf, filename="records.pdf").rows
        first.resolve_duplicate("12345", rows[0].id)
        first.commit()

        second = ImportSession(store=store)
        result = second.run(scenario_pdf, filename="records.pdf")
        assert result.summary.already_imported
        assert result.summary.duplicates == len(result.rows) == 3
        assert all(r.action == RowAction.SKIP for r in result.rows)
        assert result.summary.creates == result.summary.updates == 0
        assert any(e.level == LogLevel.WARNING and "already imported" in e.message
                   for e in result.parse_log)

    def test_existing_job_becomes_update(self, make_pdf, make_row, store):
        store.save_all([_job(aws=8)])
        session = ImportSession(store=store)
        result = session.run(make_pdf([[make_row()]]), filename="one.pdf")
        assert result.rows[0].action == RowAction.UPDATE
        summary = session.commit()
        assert summary.updated == 1
        assert store.get_all()[0].aw_value == 10

    def test_keyless_rows_from_two_files_both_create(self, make_pdf, make_row, store):
        for reg in ("AB12CDE", "XY99ZZZ"):
            session = ImportSession(store=store)
            result = session.run(make_pdf([[make_row(wip="", reg=reg, when="")]]))
            assert result.rows[0].action == RowAction.CREATE
            assert session.commit().created == 1
        jobs = store.get_all()
        assert len(jobs) == 2
        assert {j.vehicle_registration for j in jobs} == {"AB12CDE", "XY99ZZZ"}

    def test_progress_updates(self, scenario_pdf, store):
        updates = []
        session = ImportSession(store=store, progress_callback=updates.append)
        rows = session.run(scenario_pdf, filename="records.pdf").rows

        parsing = [u for u in updates if u.stage == Stage.PARSING]
        assert len(parsing) >= len(rows)
        assert {u.stage for u in updates} >= {
            Stage.EXTRACTING, Stage.RECONSTRUCTING, Stage.SCORING, Stage.RECONCILING
        }
        assert updates[-1].status == ImportStatus.PREVIEW

        session.skip_rows([rows[1].id])
        session.commit()
        assert updates[-1].status == ImportStatus.COMPLETE
        assert updates[-1].stage == Stage.DONE

    def test_unreadable_pdf_ends_in_error(self, store):
        updates = []
        session = ImportSession(store=store, progress_callback=updates.append)
        result = session.run(b"this is not a pdf", filename="broken.pdf")
        assert session.status == ImportStatus.ERROR
        assert result.rows == []
        assert any(e.level == LogLevel.ERROR for e in result.parse_log)
        assert updates[-1].status == ImportStatus.ERROR

    def test_no_text_layer_still_previews(self, store):
        doc = fitz.open()
        doc.new_page()
        data = doc.tobytes()
        doc.close()
        session = ImportSession(store=store)
        result = session.run(data, filename="scan.pdf")
        assert session.status == ImportStatus.PREVIEW
        assert result.rows == []
        assert any("No text layer" in e.message for e in result.parse_log)

    def test_edit_rescores(self, scenario_pdf, store):
        session = ImportSession(store=store)
        row3 = session.run(scenario_pdf).rows[2]
        edited = session.edit_cell(row3.id, "wip_number", "54321")
        assert edited.wip_number == "54321"
        assert edited.validation_errors == []
        assert edited.confidence == pytest.approx(0.5)

        edited = session.edit_cell(row3.id, "aws", 4)
        assert edited.minutes == 20
        assert edited.confidence == pytest.approx(1.0)

    def test_bulk_edits(self, scenario_pdf, store):
        session = ImportSession(store=store)
        rows = session.run(scenario_pdf).rows
        ids = [rows[0].id, rows[2].id]

        edited = session.bulk_edit(ids, SetVhc(status=VhcStatus.RED))
        assert [r.vhc_status for r in edited] == [VhcStatus.RED, VhcStatus.RED]

        edited = session.bulk_edit([rows[0].id], FindReplace(find="SEATBELT", replace="Belt"))
        assert edited[0].job_description == "Belt recall"

        edited = session.bulk_edit([rows[0].id], ClearAws())
        assert edited[0].aws == 0
        assert edited[0].minutes == 0
        assert edited[0].confidence == pytest.approx(0.5)

    def test_result_is_a_copy(self, scenario_pdf, store):
        session = ImportSession(store=store)
        result = session.run(scenario_pdf)
        result.rows[0].aws = 99
        assert session.get_row(result.rows[0].id).aws == 10

    def test_misuse(self, scenario_pdf, store):
        session = ImportSession(store=store)
        with pytest.raises(InvalidTransition):
            session.edit_cell("x", "aws", 1)
        session.run(scenario_pdf)
        with pytest.raises(UnknownRow):
            session.edit_cell("nope", "aws", 1)
        with pytest.raises(InvalidTransition):
            session.run(scenario_pdf)

    def test_missing_fields_block_commit(self, make_pdf, make_row, store):
        data = make_pdf([[make_row(wip="", reg="", vhc="Green", when="")]])
        session = ImportSession(store=store)
        session.run(data)
        with pytest.raises(BatchValidationError) as exc:
            session.commit()
        assert not isinstance(exc.value, DuplicateWipInBatch)
        assert len(exc.value.problems) == 2


class TestSessionManager:
    """Test session handles and the single in-flight rule."""

    def test_start_and_get(self, scenario_pdf, store):
        manager = SessionManager(store=store)
        session = manager.start(scenario_pdf, "records.pdf")
        assert manager.get(session.session_id) is session
        assert not manager.busy

    def test_second_import_while_busy(self, scenario_pdf, store):
        manager = SessionManager(store=store)
        manager._claim("running")
        with pytest.raises(SessionBusy):
            manager.start(scenario_pdf, "records.pdf")

    def test_progress_forwarding(self, scenario_pdf, store):
        seen = []
        manager = SessionManager(store=store, progress_callback=lambda sid, p: seen.append(sid))
        session = manager.start(scenario_pdf, "records.pdf")
        assert seen and set(seen) == {session.session_id}

    def test_discard(self, scenario_pdf, store):
        manager = SessionManager(store=store)
        session = manager.start(scenario_pdf, "records.pdf")
        manager.discard(session.session_id)
        with pytest.raises(UnknownSession):
            manager.get(session.session_id)
        with pytest.raises(UnknownSession):
            manager.discard(session.session_id)

    def test_finished_sessions_are_evicted(self, store):
        manager = SessionManager(store=store, keep_finished=1)
        started = [manager.start(b"not a pdf", f"bad{i}.pdf") for i in range(3)]
        assert all(s.status == ImportStatus.ERROR for s in started)
        with pytest.raises(UnknownSession):
            manager.get(started[0].session_id)
        assert manager.sessions() == started[1:]


# ═══════════════════════════════════════════════════════════════════════════════
# JOB STORE TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestJobStore:
    """Test the sqlite job store."""

    def test_round_trip(self, store):
        store.save_all([_job()])
        jobs = store.get_all()
        assert len(jobs) == 1
        job = jobs[0]
        assert job.vhc_status == VhcStatus.GREEN
        assert job.job_date == date(2025, 11, 17)
        assert job.job_time == time(15, 49)
        assert job.time_in_minutes == 50
        assert store.count() == 1

    def test_save_all_is_atomic(self, store):
        store.save_all([_job()])
        clash = [_job(job_id="wip-1"), _job(job_id="wip-1")]
        with pytest.raises(CommitFailure):
            store.save_all(clash)
        assert [j.id for j in store.get_all()] == ["wip-12345"]

    def test_import_registry(self, store):
        record = ImportRecord(file_hash="abc", filename="a.pdf", rows=[_parsed("wip-12345")])
        store.save_all([_job()], import_record=record)
        assert store.known_hashes() == {"abc"}
        rows = store.get_import("abc")
        assert rows[0].wip_number == "12345"
        assert store.get_import("other") is None

    def test_env_db_path(self, monkeypatch, tmp_path):
        path = str(tmp_path / "env.sqlite")
        monkeypatch.setenv("TECHRECORDS_DB_PATH", path)
        assert get_db_path() == path
        assert JobStore().db_path == path


# ═══════════════════════════════════════════════════════════════════════════════
# EXPORT TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestExporters:
    """Test parse log JSON and rows CSV artifacts."""

    def test_rows_csv(self, scenario_pdf, store):
        result = ImportSession(store=store).run(scenario_pdf, filename="records.pdf")
        reader = csv.DictReader(io.StringIO(rows_csv(result.rows)))
        assert reader.fieldnames == CSV_COLUMNS
        records = list(reader)
        assert len(records) == 3
        assert records[0]["WIP"] == "12345"
        assert records[0]["Minutes"] == "50"
        assert records[0]["Date"] == "17/11/2025 15:49"
        assert records[0]["Action"] == "Create"
        assert records[2]["Errors"]

    def test_format_started(self):
        assert format_started(_parsed()) == "17/11/2025 15:49"
        assert format_started(_parsed(job_time=None)) == "17/11/2025"
        assert format_started(_parsed(job_date=None), missing="-") == "-"

    def test_parse_log_document(self, scenario_pdf, store):
        result = ImportSession(store=store).run(scenario_pdf, filename="records.pdf")
        doc = parse_log_document(result)
        assert doc["filename"] == "records.pdf"
        assert doc["hash"] == result.file_hash
        assert len(doc["entries"]) == len(result.parse_log)
        assert {"level", "message", "raw_data"} <= set(doc["entries"][0])

    def test_export_files(self, tmp_path, scenario_pdf, store):
        result = ImportSession(store=store).run(scenario_pdf, filename="Tech Records.pdf")
        log_path = export_parse_log(result, str(tmp_path))
        csv_path = export_rows_csv(result, str(tmp_path))
        assert log_path.name == "Tech_Records_parse_log.json"
        assert csv_path.name == "Tech_Records_rows.csv"
        assert json.loads(log_path.read_text(encoding="utf-8"))["entries"]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
