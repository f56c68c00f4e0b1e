"""
Tests for the append-only audit log writer.
"""

from datetime import UTC, datetime

import pytest

from instrument_spine.audit import (
    ACCEPTED,
    BATCH_COMMITTED,
    DEMOTED,
    KIND_DEDUP,
    KIND_MIGRATION,
    KIND_VALIDATION,
    REJECTED,
    AuditDraft,
    AuditLog,
    dedup_draft,
    validation_draft,
)
from instrument_spine.identity.dedup import DuplicateConflict
from instrument_spine.identity.models import CandidateRecord
from instrument_spine.identity.validator import validate_record


def _record(isin="US0378331005", source_id="vendor_a", day=1, ticker="AAPL"):
    return CandidateRecord(
        isin=isin,
        ticker=ticker,
        country_code="US",
        exchange_code="XNAS",
        source_id=source_id,
        updated_at=datetime(2025, 9, day, tzinfo=UTC),
    )


@pytest.fixture
def audit(store):
    return AuditLog(store.writer_engine, "run-audit")


class TestDrafts:
    def test_accepted_validation(self):
        draft = validation_draft(_record(), validate_record(_record()), "US0378331005_AAPL_US_XNAS")
        assert (draft.kind, draft.record_ref, draft.decision, draft.reason) == (
            KIND_VALIDATION,
            "vendor_a:US0378331005",
            ACCEPTED,
            "",
        )
        assert draft.details == {"psw_id": "US0378331005_AAPL_US_XNAS"}

    def test_rejected_validation_names_every_rule(self):
        record = _record(isin="INVALID12345", ticker="")
        draft = validation_draft(record, validate_record(record))

        assert draft.decision == REJECTED
        assert draft.reason == "violations:isin_check_digit,ticker_required,psw_id_format"
        assert [v["rule"] for v in draft.details["violations"]] == [
            "isin_check_digit",
            "ticker_required",
            "psw_id_format",
        ]

    def test_dedup(self):
        conflict = DuplicateConflict(winner=_record(source_id="vendor_b", day=2), demoted=_record())
        draft = dedup_draft(conflict)

        assert (draft.kind, draft.record_ref, draft.decision, draft.reason) == (
            KIND_DEDUP,
            "vendor_a:US0378331005",
            DEMOTED,
            "duplicate_of:US0378331005",
        )
        assert draft.details["winner"] == "vendor_b:US0378331005"


class TestAuditLog:
    def test_entries_are_persisted_in_order(self, audit, store):
        audit.record_validation(_record(), validate_record(_record()), "US0378331005_AAPL_US_XNAS")
        audit.record_migration("run-audit:b0001", BATCH_COMMITTED, batch_id="run-audit:b0001", details={"n": 1})

        entries = store.view.audit_entries(run_id="run-audit")
        assert [(e.kind, e.decision) for e in entries] == [
            (KIND_VALIDATION, ACCEPTED),
            (KIND_MIGRATION, BATCH_COMMITTED),
        ]
        assert entries[1].batch_id == "run-audit:b0001"
        assert entries[1].details == {"n": 1}
        assert entries[0].timestamp.tzinfo is not None
        assert audit.count == 2

    def test_record_many(self, audit, store):
        drafts = [AuditDraft(KIND_VALIDATION, f"vendor_a:{i}", ACCEPTED) for i in range(3)]
        assert audit.record_many(drafts) == 3
        assert audit.record_many([]) == 0
        assert len(store.view.audit_entries(kind=KIND_VALIDATION)) == 3

    def test_record_dedup(self, audit, store):
        conflicts = [
            DuplicateConflict(winner=_record(source_id="vendor_c", day=3), demoted=_record(source_id=s))
            for s in ("vendor_a", "vendor_b")
        ]
        assert audit.record_dedup(conflicts) == 2
        assert [e.record_ref for e in store.view.audit_entries(decision=DEMOTED)] == [
            "vendor_a:US0378331005",
            "vendor_b:US0378331005",
        ]

    def test_filters_isolate_runs(self, store):
        AuditLog(store.writer_engine, "run-1").record(KIND_MIGRATION, "run-1", "COMPLETED")
        AuditLog(store.writer_engine, "run-2").record(KIND_MIGRATION, "run-2", "HALTED", "cancelled")

        entries = store.view.audit_entries(run_id="run-2")
        assert [(e.decision, e.reason) for e in entries] == [("HALTED", "cancelled")]
