"""
Test Suite for the CLI
======================
"""

from __future__ import annotations

import json

import pytest
from click.testing import CliRunner

from techrecords.cli import cli


@pytest.fixture
def pdf_path(tmp_path, scenario_pdf):
    path = tmp_path / "records.pdf"
    path.write_bytes(scenario_pdf)
    return str(path)


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "jobs.sqlite")


class TestParseCommand:

    def test_json_output(self, pdf_path, db_path):
        result = CliRunner().invoke(cli, ["parse", pdf_path, "--db", db_path, "--json-output"])
        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["filename"] == "records.pdf"
        assert len(data["rows"]) == 3
        assert data["summary"]["duplicate_wips"] == ["12345"]

    def test_commit_blocked_by_duplicates(self, pdf_path, db_path):
        result = CliRunner().invoke(cli, ["parse", pdf_path, "--db", db_path, "--commit", "-y"])
        assert result.exit_code == 1
        assert "Duplicate WIP number: 12345 appears 2 times" in result.output

    def test_keep_and_commit(self, pdf_path, db_path, tmp_path):
        runner = CliRunner()
        result = runner.invoke(cli, [
            "parse", pdf_path,
            "--db", db_path,
            "--keep", "12345=wip-12345",
            "--csv", str(tmp_path / "out"),
            "--commit", "-y",
        ])
        assert result.exit_code == 0, result.output
        assert "2 created" in result.output
        assert (tmp_path / "out" / "records_rows.csv").exists()

        listed = runner.invoke(cli, ["jobs", "--db", db_path, "--json-output"])
        assert listed.exit_code == 0
        jobs = json.loads(listed.stdout)
        assert sorted(j["vehicle_registration"] for j in jobs) == ["AB12CDE", "XY99ZZZ"]

    def test_unreadable_file_exits_nonzero(self, tmp_path, db_path):
        path = tmp_path / "notes.pdf"
        path.write_bytes(b"plain text, not a pdf")
        result = CliRunner().invoke(cli, ["parse", str(path), "--db", db_path])
        assert result.exit_code == 1


class TestInfoCommand:

    def test_info(self, pdf_path):
        result = CliRunner().invoke(cli, ["info", pdf_path])
        assert result.exit_code == 0, result.output
        assert "Pages" in result.output


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
