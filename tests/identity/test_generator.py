"""Tests for instrument_spine.identity.generator."""

import pytest

from instrument_spine.errors import FormatViolation
from instrument_spine.identity.generator import (
    PSW_ID_PATTERN,
    PswIdParts,
    generate,
    normalize_ticker,
    parse_psw_id,
)
from tests._support.instruments import AAPL, BAE, SAP


class TestNormalizeTicker:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [("aapl", "AAPL"), ("brk.b", "BRKB"), ("BT-A", "BTA"), (" sap ", "SAP"), ("...", "")],
    )
    def test_normalize(self, raw, expected):
        assert normalize_ticker(raw) == expected


class TestGenerate:
    def test_canonical_format(self):
        assert generate("US0378331005", "aapl", "US", "XNAS") == "US0378331005_AAPL_US_XNAS"

    def test_matches_grammar(self):
        for instrument in (AAPL, BAE, SAP):
            assert PSW_ID_PATTERN.match(generate(*instrument))

    def test_idempotent(self):
        first = generate("GB0002634946", "ba.", "GB", "XLON")
        again = generate(*parse_psw_id(first))
        assert again == first

    def test_grammar_violation_raises(self):
        with pytest.raises(FormatViolation) as exc_info:
            generate("US0378331005", "...", "US", "XNAS")
        assert exc_info.value.violations == ("psw_id_format",)
        assert exc_info.value.context.isin == "US0378331005"


class TestParsePswId:
    def test_round_trip(self):
        psw_id = generate("US0378331005", "aapl", "US", "XNAS")
        assert parse_psw_id(psw_id) == PswIdParts("US0378331005", "AAPL", "US", "XNAS")

    @pytest.mark.parametrize(
        "bad",
        ["", "US0378331005_AAPL_US", "US0378331005_aapl_US_XNAS", "US037833100_AAPL_US_XNAS"],
    )
    def test_malformed_raises(self, bad):
        with pytest.raises(FormatViolation):
            parse_psw_id(bad)
