"""
Append-only audit log for migration decisions.

Every decision a migration run takes about a record is written here:
validation outcomes, duplicate demotions, batch commits and reverts, and
one terminal summary per run. The audit trail is what makes a halted or
rolled-back run explainable after the fact.

Manifesto:
    Audit entries must be:
    - **Immutable:** storage triggers abort any UPDATE or DELETE
    - **Independent:** each write commits in its own transaction, so
      entries survive a halted or rolled-back run
    - **Classified:** ``kind`` + ``decision`` + ``reason`` for aggregation
    - **Traceable:** ``run_id`` and ``batch_id`` on every row

Architecture:
    ::

        AuditLog(writer_engine, run_id)
            │
            ├── record_dedup(conflict)          kind=dedup       DEMOTED
            ├── record_validation(rec, result)  kind=validation  ACCEPTED | REJECTED
            ├── record_migration(ref, decision) kind=migration   BATCH_COMMITTED |
            │                                                    BATCH_FAILED |
            │                                                    BATCH_REVERTED |
            │                                                    <terminal state>
            └── record / record_many            raw entries
                        │
                        ▼
                  audit_log (append-only)

Examples:
    >>> audit = AuditLog(store.writer_engine, run_id="run-1")
    >>> audit.record_validation(record, validate_record(record))
    >>> audit.count
    1

Tags:
    audit-trail, append-only, lineage, instrument-spine

Doc-Types:
    - API Reference
    - Data Quality Guide
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError

from instrument_spine.errors import StorageUnavailable
from instrument_spine.identity.dedup import DuplicateConflict
from instrument_spine.identity.models import CandidateRecord
from instrument_spine.identity.validator import ValidationResult
from instrument_spine.store.tables import AuditLogTable
from instrument_spine.timestamps import utc_now

KIND_VALIDATION = "validation"
KIND_DEDUP = "dedup"
KIND_MIGRATION = "migration"

ACCEPTED = "ACCEPTED"
REJECTED = "REJECTED"
DEMOTED = "DEMOTED"
BATCH_COMMITTED = "BATCH_COMMITTED"
BATCH_REVERTED = "BATCH_REVERTED"
BATCH_FAILED = "BATCH_FAILED"


@dataclass
class AuditDraft:
    """An audit entry not yet written.

    Attributes:
        kind: validation | dedup | migration
        record_ref: What the decision is about (``source:isin``, ``run_id``)
        decision: ACCEPTED, REJECTED, DEMOTED, BATCH_COMMITTED, ...
        reason: Machine-readable reason (``violations:...``, ``duplicate_of:...``)
        batch_id: Batch reference, if the decision belongs to one batch
        details: JSON payload
    """

    kind: str
    record_ref: str
    decision: str
    reason: str = ""
    batch_id: str | None = None
    details: dict[str, Any] | None = field(default=None)


class AuditLog:
    """Append-only writer over ``audit_log`` for one migration run."""

    def __init__(self, engine: Engine, run_id: str) -> None:
        self.engine = engine
        self.run_id = run_id
        self._count = 0

    @property
    def count(self) -> int:
        """Number of entries written through this handle."""
        return self._count

    def record(
        self,
        kind: str,
        record_ref: str,
        decision: str,
        reason: str = "",
        *,
        batch_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.record_many([AuditDraft(kind, record_ref, decision, reason, batch_id, details)])

    def record_many(self, drafts: Iterable[AuditDraft]) -> int:
        """Write several entries in one transaction; returns how many."""
        now = utc_now()
        rows = [
            {
                "run_id": self.run_id,
                "batch_id": d.batch_id,
                "kind": d.kind,
                "record_ref": d.record_ref,
                "decision": d.decision,
                "reason": d.reason,
                "details": d.details,
                "created_at": now,
            }
            for d in drafts
        ]
        if not rows:
            return 0
        try:
            with self.engine.begin() as conn:
                conn.execute(insert(AuditLogTable), rows)
        except OperationalError as e:
            raise StorageUnavailable("Audit log unavailable", cause=e).with_context(
                run_id=self.run_id
            ) from e
        self._count += len(rows)
        return len(rows)

    # --- typed helpers ---

    def record_dedup(self, conflicts: Iterable[DuplicateConflict]) -> int:
        """One ``dedup`` entry per demoted record."""
        return self.record_many(dedup_draft(c) for c in conflicts)

    def record_validation(self, record: CandidateRecord, result: ValidationResult, psw_id: str | None = None) -> None:
        self.record_many([validation_draft(record, result, psw_id)])

    def record_migration(
        self,
        record_ref: str,
        decision: str,
        reason: str = "",
        *,
        batch_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.record(KIND_MIGRATION, record_ref, decision, reason, batch_id=batch_id, details=details)


def dedup_draft(conflict: DuplicateConflict) -> AuditDraft:
    demoted = conflict.demoted
    return AuditDraft(
        kind=KIND_DEDUP,
        record_ref=demoted.record_ref,
        decision=DEMOTED,
        reason=conflict.reason,
        details={
            "winner": conflict.winner.record_ref,
            "winner_updated_at": conflict.winner.updated_at.isoformat(),
            "demoted_updated_at": demoted.updated_at.isoformat(),
        },
    )


def validation_draft(
    record: CandidateRecord,
    result: ValidationResult,
    psw_id: str | None = None,
) -> AuditDraft:
    if result.valid:
        return AuditDraft(
            kind=KIND_VALIDATION,
            record_ref=record.record_ref,
            decision=ACCEPTED,
            details={"psw_id": psw_id} if psw_id else None,
        )
    return AuditDraft(
        kind=KIND_VALIDATION,
        record_ref=record.record_ref,
        decision=REJECTED,
        reason=result.reason(),
        details={"violations": [{"rule": v.rule, "message": v.message} for v in result.violations]},
    )
