"""Tests for the instrument-spine CLI via typer's CliRunner.

Every command runs against a throwaway SQLite file passed with
``--database``; logs are raised to ERROR so stdout stays pure JSON.
"""

from __future__ import annotations

import json

import pytest
from typer.testing import CliRunner

from instrument_spine import __version__
from instrument_spine.cli.app import app
from tests._support.instruments import AAPL, INVALID_ISIN, MSFT, row

runner = CliRunner()


def invoke(*args: str):
    return runner.invoke(app, ["--log-level", "ERROR", *args])


@pytest.fixture
def database(tmp_path):
    return str(tmp_path / "data" / "spine.db")


@pytest.fixture
def feed(tmp_path):
    def write(name, rows):
        path = tmp_path / f"{name}.jsonl"
        path.write_text("".join(json.dumps(r) + "\n" for r in rows))
        return str(path)

    return write


@pytest.fixture
def migrated(database, feed):
    """Database holding one completed run; returns its status payload."""
    path = feed("vendor_a", [row(AAPL, providerSymbols={"bloomberg": "AAPL US"}), row(MSFT)])
    result = invoke("migrate", path, "--min-throughput", "0", "-d", database, "--json")
    assert result.exit_code == 0, result.output
    return json.loads(result.stdout)


class TestRoot:
    def test_version(self):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert f"instrument-spine {__version__}" in result.output

    def test_no_args_shows_help(self):
        result = runner.invoke(app, [])
        assert "migrate" in result.output


class TestDbInit:
    def test_init_creates_store(self, database):
        result = invoke("db", "init", "-d", database, "--json")

        assert result.exit_code == 0, result.output
        assert json.loads(result.stdout) == {
            "database_url": f"sqlite:///{database}",
            "active_instruments": 0,
        }

    def test_init_is_idempotent(self, database):
        assert invoke("db", "init", "-d", database).exit_code == 0
        result = invoke("db", "init", "-d", database)
        assert result.exit_code == 0
        assert "Initialised" in result.output


class TestMigrate:
    def test_completed_run(self, migrated):
        assert migrated["state"] == "COMPLETED"
        assert migrated["halt_reason"] is None
        assert migrated["counters"]["records_per_source"] == {"vendor_a": 2}
        assert migrated["counters"]["records_committed"] == 2

    def test_table_output(self, database, feed):
        result = invoke("migrate", feed("vendor_a", [row(AAPL)]), "--min-throughput", "0", "-d", database)
        assert result.exit_code == 0, result.output
        assert "COMPLETED" in result.output
        assert "records_committed" in result.output

    def test_invalid_isin_exits_nonzero(self, database, feed):
        path = feed("vendor_a", [row(AAPL), row((INVALID_ISIN, "BAD", "US", "XNAS"))])
        result = invoke("migrate", path, "--min-throughput", "0", "-d", database, "--json")

        assert result.exit_code == 1
        payload = json.loads(result.stdout)
        assert payload["state"] == "HALTED"
        assert payload["halt_reason"] == "quality_gate:accept_rate"

    def test_relaxed_accept_rate(self, database, feed):
        path = feed("vendor_a", [row(AAPL), row((INVALID_ISIN, "BAD", "US", "XNAS"))])
        result = invoke(
            "migrate", path, "--min-accept-rate", "0.5", "--min-throughput", "0", "-d", database, "--json"
        )
        assert result.exit_code == 0, result.output

    def test_duplicate_file_stems_rejected(self, database, tmp_path):
        (tmp_path / "a").mkdir()
        (tmp_path / "b").mkdir()
        for sub in ("a", "b"):
            (tmp_path / sub / "vendor.jsonl").write_text(json.dumps(row(AAPL)) + "\n")

        result = invoke(
            "migrate", str(tmp_path / "a" / "vendor.jsonl"), str(tmp_path / "b" / "vendor.jsonl"), "-d", database
        )
        assert result.exit_code == 1

    def test_unsupported_file_type(self, database, tmp_path):
        path = tmp_path / "vendor.xlsx"
        path.write_text("")
        assert invoke("migrate", str(path), "-d", database).exit_code == 1


class TestStatus:
    def test_status_of_finished_run(self, migrated, database):
        result = invoke("status", migrated["run_id"], "-d", database, "--json")

        assert result.exit_code == 0, result.output
        payload = json.loads(result.stdout)
        assert payload["state"] == "COMPLETED"
        assert payload["counters"]["accepted"] == 2

    def test_unknown_run(self, migrated, database):
        assert invoke("status", "run_missing", "-d", database).exit_code == 1


class TestLookup:
    def test_by_isin(self, migrated, database):
        result = invoke("lookup", "--isin", "us0378331005", "-d", database, "--json")

        assert result.exit_code == 0, result.output
        [record] = json.loads(result.stdout)
        assert record["psw_id"] == "US0378331005_AAPL_US_XNAS"
        assert record["provider_symbols"] == {"bloomberg": "AAPL US"}

    def test_by_psw_id(self, migrated, database):
        result = invoke("lookup", "--psw-id", "US5949181045_MSFT_US_XNAS", "-d", database, "--json")
        assert result.exit_code == 0, result.output
        assert json.loads(result.stdout)[0]["isin"] == MSFT[0]

    def test_history(self, migrated, database, feed):
        moved = feed("vendor_b", [row((AAPL[0], "AAPL", "US", "XNYS"), "2025-09-05T00:00:00Z")])
        assert invoke("migrate", moved, "--min-throughput", "0", "-d", database).exit_code == 0

        result = invoke("lookup", "--isin", AAPL[0], "--history", "-d", database, "--json")
        records = json.loads(result.stdout)
        assert [(r["exchange_code"], r["active"]) for r in records] == [("XNAS", False), ("XNYS", True)]

    def test_not_found(self, migrated, database):
        assert invoke("lookup", "--isin", "GB0002634946", "-d", database).exit_code == 1

    def test_requires_exactly_one_key(self, migrated, database):
        assert invoke("lookup", "-d", database).exit_code == 2
        assert invoke("lookup", "--isin", AAPL[0], "--psw-id", "x", "-d", database).exit_code == 2


class TestAudit:
    def test_filtered_entries(self, migrated, database):
        result = invoke("audit", "-r", migrated["run_id"], "-k", "validation", "-d", database, "--json")

        assert result.exit_code == 0, result.output
        entries = json.loads(result.stdout)
        assert [(e["record_ref"], e["decision"]) for e in entries] == [
            ("vendor_a:US0378331005", "ACCEPTED"),
            ("vendor_a:US5949181045", "ACCEPTED"),
        ]

    def test_limit(self, migrated, database):
        result = invoke("audit", "-r", migrated["run_id"], "-n", "1", "-d", database, "--json")
        assert len(json.loads(result.stdout)) == 1

    def test_table_output(self, migrated, database):
        result = invoke("audit", "--decision", "COMPLETED", "-d", database)
        assert result.exit_code == 0, result.output
        assert "No audit entries" not in result.output
