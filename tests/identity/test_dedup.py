"""
Tests for instrument_spine.identity.dedup.

Covers:
- Latest updated_at wins; equal timestamps fall back to source_id
- Order independence of the outcome
- One DuplicateConflict per demoted record
"""

from datetime import UTC, datetime
from itertools import permutations

import pytest

from instrument_spine.identity.dedup import deduplicate, resolve_group
from instrument_spine.identity.models import CandidateRecord


def _record(isin="US0378331005", source="vendor_a", day=1, ticker="AAPL", exchange="XNAS"):
    return CandidateRecord(
        isin=isin,
        ticker=ticker,
        country_code="US",
        exchange_code=exchange,
        source_id=source,
        updated_at=datetime(2025, 9, day, tzinfo=UTC),
    )


class TestResolveGroup:
    def test_latest_update_wins(self):
        older = _record(source="vendor_a", day=1)
        newer = _record(source="vendor_b", day=2)
        winner, demoted = resolve_group([older, newer])
        assert winner is newer
        assert demoted == (older,)

    def test_equal_timestamps_smallest_source_wins(self):
        a = _record(source="alpha")
        b = _record(source="beta")
        winner, _ = resolve_group([b, a])
        assert winner is a

    def test_full_tie_broken_by_fields(self):
        xnas = _record(exchange="XNAS")
        xnys = _record(exchange="XNYS")
        winner, demoted = resolve_group([xnys, xnas])
        assert winner is xnas
        assert demoted == (xnys,)

    def test_empty_group_rejected(self):
        with pytest.raises(ValueError):
            resolve_group([])

    def test_mixed_isins_rejected(self):
        with pytest.raises(ValueError):
            resolve_group([_record(), _record(isin="US5949181045")])


class TestDeduplicate:
    def test_groups_sorted_by_isin(self):
        outcome = deduplicate([_record(isin="US5949181045"), _record(isin="DE0007164600")])
        assert [g.isin for g in outcome.groups] == ["DE0007164600", "US5949181045"]
        assert outcome.demoted_count == 0

    def test_conflict_per_demoted_record(self):
        records = [_record(source="a", day=1), _record(source="b", day=2), _record(source="c", day=3)]
        outcome = deduplicate(records)
        conflicts = outcome.conflicts
        assert len(conflicts) == 2
        assert {c.demoted.source_id for c in conflicts} == {"a", "b"}
        assert all(c.winner.source_id == "c" for c in conflicts)
        assert all(c.reason == "duplicate_of:US0378331005" for c in conflicts)

    def test_order_independent(self):
        records = [
            _record(source="a", day=1),
            _record(source="b", day=2),
            _record(source="c", day=2),
            _record(isin="US5949181045", ticker="MSFT", source="a"),
        ]
        baseline = deduplicate(records).groups
        for ordering in permutations(records):
            assert deduplicate(ordering).groups == baseline

    def test_winners(self):
        outcome = deduplicate([_record(), _record(isin="US5949181045", ticker="MSFT")])
        assert [w.ticker for w in outcome.winners] == ["AAPL", "MSFT"]
