"""
Tests for instrument_spine.store.view and the store's engine split.

The view runs on the reader engine, which SQLite opens with
``PRAGMA query_only``; every write attempt must surface as
ReadOnlyViolation.
"""

from datetime import UTC, datetime

import pytest

from instrument_spine.errors import InvalidConfigError, ReadOnlyViolation
from instrument_spine.identity.generator import generate
from instrument_spine.identity.models import CandidateRecord
from instrument_spine.store.canonical import CanonicalStore
from instrument_spine.store.session import is_memory_url
from instrument_spine.store.writer import CommitPlan
from tests._support.instruments import AAPL, BAE, MSFT, SAP


def _plan(instrument):
    isin, ticker, country, exchange = instrument
    record = CandidateRecord(
        isin=isin,
        ticker=ticker,
        country_code=country,
        exchange_code=exchange,
        source_id="vendor_a",
        updated_at=datetime(2025, 9, 1, tzinfo=UTC),
        provider_symbols=(("bloomberg", f"{ticker} XX"),),
    )
    return CommitPlan(psw_id=generate(*instrument), winner=record)


@pytest.fixture
def populated(store):
    writer = store.writer("run_view")
    writer.register_run(["*"], {})
    with writer.exclusive(timeout=1):
        writer.commit_batch(1, [_plan(AAPL), _plan(MSFT), _plan(BAE), _plan(SAP)])
    return store


class TestInstrumentView:
    def test_get_by_isin(self, populated):
        record = populated.view.get_by_isin(SAP[0])
        assert record.psw_id == "DE0007164600_SAP_DE_XETR"
        assert record.vendor_symbols == {"bloomberg": "SAP XX"}

    def test_get_by_isin_unknown(self, populated):
        assert populated.view.get_by_isin("US88160R1014") is None

    def test_get_by_psw_id(self, populated):
        assert populated.view.get_by_psw_id("GB0002634946_BA_GB_XLON").isin == BAE[0]
        assert populated.view.get_by_psw_id("GB0002634946_BA_GB_XPAR") is None

    def test_list_instruments_sorted_and_paged(self, populated):
        isins = [r.isin for r in populated.view.list_instruments()]
        assert isins == sorted(isins)
        page = populated.view.list_instruments(limit=2, offset=1)
        assert [r.isin for r in page] == isins[1:3]

    def test_list_instruments_by_isin(self, populated):
        records = populated.view.list_instruments(isins={AAPL[0], "US88160R1014"})
        assert [r.isin for r in records] == [AAPL[0]]

    def test_count_and_snapshot(self, populated):
        assert populated.view.count() == 4
        psw_ids = [r.psw_id for r in populated.view.snapshot()]
        assert psw_ids == sorted(psw_ids)

    def test_to_dict(self, populated):
        data = populated.view.get_by_isin(AAPL[0]).to_dict()
        assert data["psw_id"] == "US0378331005_AAPL_US_XNAS"
        assert data["provider_symbols"] == {"bloomberg": "AAPL XX"}
        assert data["source_updated_at"] == "2025-09-01T00:00:00+00:00"

    def test_query_reads(self, populated):
        rows = populated.view.query(
            "SELECT psw_id FROM canonical_instruments WHERE isin = :isin", {"isin": MSFT[0]}
        )
        assert rows == [{"psw_id": "US5949181045_MSFT_US_XNAS"}]


class TestReadOnlyEnforcement:
    def test_insert_through_view_rejected(self, populated):
        with pytest.raises(ReadOnlyViolation):
            populated.view.query(
                "INSERT INTO audit_log (run_id, kind, record_ref, decision, reason, created_at) "
                "VALUES ('x', 'dedup', 'x', 'DEMOTED', '', '2025-01-01 00:00:00')"
            )

    def test_update_through_view_rejected(self, populated):
        with pytest.raises(ReadOnlyViolation):
            populated.view.query("UPDATE canonical_instruments SET active = 0")
        assert populated.view.count() == 4

    def test_delete_through_view_rejected(self, populated):
        with pytest.raises(ReadOnlyViolation):
            populated.view.query("DELETE FROM provider_mappings")


class TestCanonicalStore:
    @pytest.mark.parametrize("url", ["sqlite://", "sqlite:///:memory:"])
    def test_memory_sqlite_rejected(self, url):
        assert is_memory_url(url)
        with pytest.raises(InvalidConfigError):
            CanonicalStore(url)

    def test_file_url_is_not_memory(self, tmp_path):
        assert not is_memory_url(f"sqlite:///{tmp_path / 'x.db'}")
        assert not is_memory_url("postgresql://spine@localhost/spine")

    def test_create_all_is_idempotent(self, store):
        store.create_all()
        assert store.view.count() == 0

    def test_reader_url_defaults_to_writer(self, store, settings):
        assert store.reader_url == settings.database_url
