"""
The canonical store's only write path.

Manifesto:
    Exactly one object writes canonical instruments, aliases and provider
    mappings: the ``CanonicalWriter`` a migration run obtains from
    ``CanonicalStore.writer(run_id)``. Every batch is one transaction, and
    every committed batch leaves behind a ``BatchJournal`` listing what it
    changed, so a breach later in the run can undo the committed prefix
    batch by batch in reverse order.

Architecture:
    ::

        commit_batch(batch_no, plans)
          ┌──────────────────────────────────────────────────────────┐
          │ BEGIN                                                     │
          │   refresh commit lock TTL        → LockLost if taken over │
          │   for plan in plans (isin ascending):                     │
          │     active psw_id already stored?  → no-op (replay)       │
          │     other active record for isin?  → mark superseded      │
          │     INSERT canonical row           → IntegrityError maps  │
          │                                      to ConstraintViolation│
          │     INSERT missing aliases / provider mappings            │
          │   before_commit(journal)           → may raise a breach   │
          │ COMMIT                             → BatchJournal         │
          └──────────────────────────────────────────────────────────┘

        revert_batch(journal)  (run state must be ROLLING_BACK)
          delete inserted mappings → restore mapping flags →
          delete inserted aliases → delete inserted canonical rows →
          re-activate superseded rows

Error mapping:
    ``IntegrityError``   → ``ConstraintViolation`` (fatal, not retryable)
    ``OperationalError`` → ``StorageUnavailable`` (retryable)

Tags:
    instrument-spine, writer, transactions, undo-journal, supersession

Doc-Types:
    api-reference, architecture-diagram
"""

from __future__ import annotations

from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from instrument_spine.errors import (
    ConstraintViolation,
    OrchestrationError,
    StorageUnavailable,
)
from instrument_spine.identity.generator import normalize_ticker
from instrument_spine.identity.models import CandidateRecord
from instrument_spine.logging import get_logger
from instrument_spine.store.tables import (
    ROLLING_BACK,
    AliasTable,
    CanonicalInstrumentTable,
    MigrationRunTable,
    ProviderMappingTable,
)
from instrument_spine.timestamps import utc_now

if TYPE_CHECKING:
    from instrument_spine.store.canonical import CanonicalStore

logger = get_logger(__name__)


@dataclass(frozen=True)
class CommitPlan:
    """One accepted, deduplicated instrument ready to be written.

    Attributes:
        psw_id: Canonical identifier generated for ``winner``
        winner: The record that becomes (or confirms) the canonical row
        demoted: Records of the same ISIN that lost deduplication
    """

    psw_id: str
    winner: CandidateRecord
    demoted: tuple[CandidateRecord, ...] = ()

    @property
    def isin(self) -> str:
        return self.winner.isin

    def merged_symbols(self) -> dict[str, str]:
        """Vendor symbols of the group; the winner's symbols take precedence."""
        symbols: dict[str, str] = {}
        for record in reversed(self.demoted):
            symbols.update(record.vendor_symbols)
        symbols.update(self.winner.vendor_symbols)
        return symbols


@dataclass
class BatchJournal:
    """Undo journal of one committed batch (row ids per change kind)."""

    run_id: str
    batch_no: int
    inserted_instruments: list[int] = field(default_factory=list)
    superseded_instruments: list[int] = field(default_factory=list)
    inserted_aliases: list[int] = field(default_factory=list)
    inserted_mappings: list[int] = field(default_factory=list)
    deactivated_mappings: list[int] = field(default_factory=list)
    reactivated_mappings: list[int] = field(default_factory=list)
    unchanged: int = 0

    @property
    def records_written(self) -> int:
        return len(self.inserted_instruments)

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_no": self.batch_no,
            "inserted_instruments": len(self.inserted_instruments),
            "superseded_instruments": len(self.superseded_instruments),
            "inserted_aliases": len(self.inserted_aliases),
            "inserted_mappings": len(self.inserted_mappings),
            "deactivated_mappings": len(self.deactivated_mappings),
            "reactivated_mappings": len(self.reactivated_mappings),
            "unchanged": self.unchanged,
        }


BeforeCommit = Callable[[BatchJournal], None]


class CanonicalWriter:
    """Write handle bound to one migration run.

    Run bookkeeping (``register_run`` / ``set_state``) may be used at any
    time. ``commit_batch`` and ``revert_batch`` require the exclusive commit
    lock, taken with ``with writer.exclusive(timeout): ...``.
    """

    def __init__(self, store: CanonicalStore, run_id: str) -> None:
        self.store = store
        self.run_id = run_id
        self._sessions = store.writer_sessions
        self._holding_lock = False

    # === Run bookkeeping ===

    def register_run(
        self,
        source_selector: Sequence[str],
        gate_config: dict[str, Any],
        *,
        state: str = "PENDING",
        started_at: datetime | None = None,
    ) -> None:
        with self._storage_errors():
            with self.store.writer_engine.begin() as conn:
                conn.execute(
                    insert(MigrationRunTable).values(
                        run_id=self.run_id,
                        state=state,
                        source_selector=list(source_selector),
                        gate_config=gate_config,
                        counters={},
                        started_at=started_at or utc_now(),
                    )
                )

    def set_state(
        self,
        state: str,
        *,
        counters: dict[str, Any] | None = None,
        halt_reason: str | None = None,
        finished: bool = False,
    ) -> None:
        values: dict[str, Any] = {"state": state}
        if counters is not None:
            values["counters"] = counters
        if halt_reason is not None:
            values["halt_reason"] = halt_reason
        if finished:
            values["finished_at"] = utc_now()
        with self._storage_errors():
            with self.store.writer_engine.begin() as conn:
                conn.execute(
                    update(MigrationRunTable)
                    .where(MigrationRunTable.run_id == self.run_id)
                    .values(**values)
                )

    # === Commit lock ===

    @contextmanager
    def exclusive(self, timeout: float) -> Iterator[CanonicalWriter]:
        """Hold the store's exclusive commit lock for this run."""
        self.store.lock.acquire(self.run_id, timeout=timeout)
        self._holding_lock = True
        try:
            yield self
        finally:
            self._holding_lock = False
            self.store.lock.release(self.run_id)

    def reclaim_lock(self, timeout: float) -> None:
        """Wait to get the lock row back after ``LockLost``."""
        self._require_lock()
        self.store.lock.reclaim(self.run_id, timeout=timeout)

    def _require_lock(self) -> None:
        if not self._holding_lock:
            raise OrchestrationError("Commit lock not held").with_context(run_id=self.run_id)

    # === Commit path ===

    def commit_batch(
        self,
        batch_no: int,
        plans: Sequence[CommitPlan],
        *,
        before_commit: BeforeCommit | None = None,
    ) -> BatchJournal:
        """Write one batch atomically and return its undo journal.

        ``before_commit`` runs after all writes are flushed and before the
        transaction commits; anything it raises aborts the whole batch.

        Raises:
            ConstraintViolation: the store rejected a write (nothing committed)
            StorageUnavailable: transient failure (nothing committed)
            LockLost: the commit lock expired and another run holds it
        """
        self._require_lock()
        journal = BatchJournal(run_id=self.run_id, batch_no=batch_no)
        now = utc_now()
        with self._storage_errors(batch_no):
            with self._sessions() as session, session.begin():
                self.store.lock.refresh(self.run_id, session.connection())
                for plan in plans:
                    self._apply(session, plan, batch_no, journal, now)
                session.flush()
                if before_commit is not None:
                    before_commit(journal)
        logger.debug("batch_written", **journal.to_dict())
        return journal

    def begin_rollback(self) -> None:
        """Switch the run to ROLLING_BACK so storage guards allow its deletes."""
        self._require_lock()
        self.set_state(ROLLING_BACK)

    def revert_batch(self, journal: BatchJournal) -> None:
        """Undo one committed batch in its own transaction."""
        self._require_lock()
        with self._storage_errors(journal.batch_no):
            with self._sessions() as session, session.begin():
                self.store.lock.refresh(self.run_id, session.connection())
                if journal.inserted_mappings:
                    session.execute(
                        delete(ProviderMappingTable).where(
                            ProviderMappingTable.id.in_(journal.inserted_mappings)
                        )
                    )
                if journal.reactivated_mappings:
                    session.execute(
                        update(ProviderMappingTable)
                        .where(ProviderMappingTable.id.in_(journal.reactivated_mappings))
                        .values(active=False)
                    )
                if journal.deactivated_mappings:
                    session.execute(
                        update(ProviderMappingTable)
                        .where(ProviderMappingTable.id.in_(journal.deactivated_mappings))
                        .values(active=True)
                    )
                if journal.inserted_aliases:
                    session.execute(
                        delete(AliasTable).where(AliasTable.id.in_(journal.inserted_aliases))
                    )
                if journal.inserted_instruments:
                    session.execute(
                        delete(CanonicalInstrumentTable).where(
                            CanonicalInstrumentTable.id.in_(journal.inserted_instruments)
                        )
                    )
                if journal.superseded_instruments:
                    session.execute(
                        update(CanonicalInstrumentTable)
                        .where(CanonicalInstrumentTable.id.in_(journal.superseded_instruments))
                        .values(active=True, superseded_by=None, superseded_at=None)
                    )
        logger.info("batch_reverted", **journal.to_dict())

    # === Internals ===

    def _apply(
        self,
        session: Session,
        plan: CommitPlan,
        batch_no: int,
        journal: BatchJournal,
        now: datetime,
    ) -> None:
        winner = plan.winner
        existing = session.scalars(
            select(CanonicalInstrumentTable).where(CanonicalInstrumentTable.psw_id == plan.psw_id)
        ).one_or_none()

        if existing is not None and existing.active:
            instrument = existing
            journal.unchanged += 1
        else:
            current = session.scalars(
                select(CanonicalInstrumentTable).where(
                    CanonicalInstrumentTable.isin == plan.isin,
                    CanonicalInstrumentTable.active.is_(True),
                )
            ).one_or_none()
            if current is not None:
                current.active = False
                current.superseded_by = plan.psw_id
                current.superseded_at = now
                session.flush()
                journal.superseded_instruments.append(current.id)

            # A reused inactive psw_id fails here on the unique constraint.
            instrument = CanonicalInstrumentTable(
                psw_id=plan.psw_id,
                isin=winner.isin,
                ticker=normalize_ticker(winner.ticker),
                country_code=winner.country_code,
                exchange_code=winner.exchange_code,
                active=True,
                source_id=winner.source_id,
                source_updated_at=winner.updated_at,
                run_id=self.run_id,
                batch_no=batch_no,
                created_at=now,
            )
            session.add(instrument)
            session.flush()
            journal.inserted_instruments.append(instrument.id)

            if current is not None:
                self._add_alias(
                    session,
                    journal,
                    instrument,
                    alias_type="superseded",
                    alias_symbol=current.ticker,
                    linked_psw_id=current.psw_id,
                    source_id=current.source_id,
                    country_code=current.country_code,
                    exchange_code=current.exchange_code,
                    observed_at=current.source_updated_at,
                    now=now,
                )

        for record in plan.demoted:
            self._add_alias(
                session,
                journal,
                instrument,
                alias_type="duplicate",
                alias_symbol=normalize_ticker(record.ticker),
                linked_psw_id=None,
                source_id=record.source_id,
                country_code=record.country_code,
                exchange_code=record.exchange_code,
                observed_at=record.updated_at,
                now=now,
            )

        for provider, symbol in sorted(plan.merged_symbols().items()):
            self._set_mapping(session, journal, instrument, provider, symbol, now)

    def _add_alias(
        self,
        session: Session,
        journal: BatchJournal,
        instrument: CanonicalInstrumentTable,
        *,
        alias_type: str,
        alias_symbol: str,
        linked_psw_id: str | None,
        source_id: str,
        country_code: str | None,
        exchange_code: str | None,
        observed_at: datetime | None,
        now: datetime,
    ) -> None:
        found = session.scalars(
            select(AliasTable.id).where(
                AliasTable.instrument_id == instrument.id,
                AliasTable.alias_type == alias_type,
                AliasTable.alias_symbol == alias_symbol,
                AliasTable.source_id == source_id,
            )
        ).first()
        if found is not None:
            return
        alias = AliasTable(
            instrument_id=instrument.id,
            alias_symbol=alias_symbol,
            alias_type=alias_type,
            linked_psw_id=linked_psw_id,
            source_id=source_id,
            country_code=country_code,
            exchange_code=exchange_code,
            observed_at=observed_at,
            active=True,
            run_id=self.run_id,
            created_at=now,
        )
        session.add(alias)
        session.flush()
        journal.inserted_aliases.append(alias.id)

    def _set_mapping(
        self,
        session: Session,
        journal: BatchJournal,
        instrument: CanonicalInstrumentTable,
        provider: str,
        symbol: str,
        now: datetime,
    ) -> None:
        rows = session.scalars(
            select(ProviderMappingTable).where(
                ProviderMappingTable.instrument_id == instrument.id,
                ProviderMappingTable.provider == provider,
            )
        ).all()
        active = next((r for r in rows if r.active), None)
        if active is not None and active.symbol == symbol:
            return
        if active is not None:
            active.active = False
            session.flush()
            journal.deactivated_mappings.append(active.id)

        previous = next((r for r in rows if r.symbol == symbol), None)
        if previous is not None:
            previous.active = True
            session.flush()
            journal.reactivated_mappings.append(previous.id)
            return

        mapping = ProviderMappingTable(
            instrument_id=instrument.id,
            provider=provider,
            symbol=symbol,
            active=True,
            run_id=self.run_id,
            created_at=now,
        )
        session.add(mapping)
        session.flush()
        journal.inserted_mappings.append(mapping.id)

    @contextmanager
    def _storage_errors(self, batch_no: int | None = None) -> Iterator[None]:
        try:
            yield
        except IntegrityError as e:
            raise ConstraintViolation(
                f"Store rejected write: {e.orig}", cause=e
            ).with_context(run_id=self.run_id, batch_no=batch_no) from e
        except OperationalError as e:
            raise StorageUnavailable(
                f"Store unavailable: {e.orig}", cause=e
            ).with_context(run_id=self.run_id, batch_no=batch_no) from e
