"""Tests for CandidateRecord.from_row parsing."""

from datetime import UTC, datetime

import pytest

from instrument_spine.errors import RecordParseError
from instrument_spine.identity.models import CandidateRecord


class TestFromRow:
    def test_camel_case_keys(self):
        record = CandidateRecord.from_row(
            {
                "isin": "US0378331005",
                "ticker": "aapl",
                "countryCode": "US",
                "exchangeCode": "XNAS",
                "sourceId": "vendor_a",
                "updatedAt": "2025-09-01T00:00:00Z",
            }
        )
        assert record.country_code == "US"
        assert record.exchange_code == "XNAS"
        assert record.source_id == "vendor_a"
        assert record.updated_at == datetime(2025, 9, 1, tzinfo=UTC)

    def test_snake_case_keys_and_whitespace(self):
        record = CandidateRecord.from_row(
            {
                "isin": " US0378331005 ",
                "ticker": " AAPL",
                "country_code": "US ",
                "exchange_code": "XNAS",
                "updated_at": "2025-09-01T12:30:00+02:00",
            },
            default_source="vendor_b",
        )
        assert record.isin == "US0378331005"
        assert record.ticker == "AAPL"
        assert record.source_id == "vendor_b"
        assert record.updated_at == datetime(2025, 9, 1, 10, 30, tzinfo=UTC)

    def test_naive_datetime_treated_as_utc(self):
        record = CandidateRecord.from_row(
            {"isin": "US0378331005", "updated_at": datetime(2025, 9, 1, 8, 0)},
            default_source="vendor_a",
        )
        assert record.updated_at.tzinfo is not None
        assert record.updated_at == datetime(2025, 9, 1, 8, 0, tzinfo=UTC)

    def test_provider_symbols_from_mapping_and_columns(self):
        record = CandidateRecord.from_row(
            {
                "isin": "US0378331005",
                "updatedAt": "2025-09-01T00:00:00Z",
                "providerSymbols": {"bloomberg": "AAPL US Equity"},
                "symbol.refinitiv": "AAPL.O",
                "symbol.empty": "",
            },
            default_source="vendor_a",
        )
        assert record.vendor_symbols == {"bloomberg": "AAPL US Equity", "refinitiv": "AAPL.O"}

    def test_record_ref(self):
        record = CandidateRecord.from_row(
            {"isin": "US0378331005", "updatedAt": "2025-09-01T00:00:00Z"}, default_source="vendor_a"
        )
        assert record.record_ref == "vendor_a:US0378331005"

    def test_missing_isin(self):
        with pytest.raises(RecordParseError):
            CandidateRecord.from_row({"ticker": "AAPL", "updatedAt": "2025-09-01"}, default_source="a")

    @pytest.mark.parametrize("updated_at", [None, "", "yesterday"])
    def test_bad_updated_at(self, updated_at):
        with pytest.raises(RecordParseError):
            CandidateRecord.from_row(
                {"isin": "US0378331005", "updatedAt": updated_at}, default_source="vendor_a"
            )

    def test_missing_source(self):
        with pytest.raises(RecordParseError):
            CandidateRecord.from_row({"isin": "US0378331005", "updatedAt": "2025-09-01T00:00:00Z"})
