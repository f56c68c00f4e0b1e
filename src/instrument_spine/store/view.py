"""
Read-only query surface over the canonical store.

Every collaborator outside the migration commit path reads through an
``InstrumentView``. It is bound to the reader engine, whose connections
are opened read-only, and it returns frozen dataclasses rather than live
ORM objects so nothing handed out can be mutated and flushed back.

A write reaching the reader engine (for example through ``query``) is
refused by the database and surfaces as ``ReadOnlyViolation``.

Tags:
    instrument-spine, view, read-only, query, audit-stream

Doc-Types:
    api-reference
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.orm import Session, selectinload

from instrument_spine.errors import ReadOnlyViolation, StorageUnavailable
from instrument_spine.store.session import store_session_factory
from instrument_spine.store.tables import (
    AuditLogTable,
    CanonicalInstrumentTable,
    MigrationRunTable,
)
from instrument_spine.timestamps import ensure_utc


def _utc(value: datetime | None) -> datetime | None:
    return ensure_utc(value) if value is not None else None


def _is_read_only_error(error: DBAPIError) -> bool:
    if getattr(error.orig, "pgcode", None) == "25006":
        return True
    message = str(error.orig).lower()
    return "readonly" in message or "read-only" in message


@dataclass(frozen=True)
class AliasRecord:
    alias_symbol: str
    alias_type: str
    linked_psw_id: str | None
    source_id: str
    country_code: str | None
    exchange_code: str | None
    observed_at: datetime | None
    active: bool
    run_id: str


@dataclass(frozen=True)
class ProviderMappingRecord:
    provider: str
    symbol: str
    active: bool
    run_id: str


@dataclass(frozen=True)
class InstrumentRecord:
    """A canonical instrument with its aliases and provider mappings."""

    psw_id: str
    isin: str
    ticker: str
    country_code: str
    exchange_code: str
    active: bool
    superseded_by: str | None
    superseded_at: datetime | None
    source_id: str
    source_updated_at: datetime
    run_id: str
    batch_no: int
    aliases: tuple[AliasRecord, ...] = ()
    provider_mappings: tuple[ProviderMappingRecord, ...] = ()

    @property
    def vendor_symbols(self) -> dict[str, str]:
        """Active vendor symbols keyed by provider."""
        return {m.provider: m.symbol for m in self.provider_mappings if m.active}

    def to_dict(self) -> dict[str, Any]:
        return {
            "psw_id": self.psw_id,
            "isin": self.isin,
            "ticker": self.ticker,
            "country_code": self.country_code,
            "exchange_code": self.exchange_code,
            "active": self.active,
            "superseded_by": self.superseded_by,
            "superseded_at": self.superseded_at.isoformat() if self.superseded_at else None,
            "source_id": self.source_id,
            "source_updated_at": self.source_updated_at.isoformat(),
            "run_id": self.run_id,
            "batch_no": self.batch_no,
            "aliases": [
                {
                    "alias_symbol": a.alias_symbol,
                    "alias_type": a.alias_type,
                    "linked_psw_id": a.linked_psw_id,
                    "source_id": a.source_id,
                    "active": a.active,
                }
                for a in self.aliases
            ],
            "provider_symbols": self.vendor_symbols,
        }


@dataclass(frozen=True)
class AuditEntry:
    """One immutable audit log row."""

    id: int
    run_id: str
    batch_id: str | None
    kind: str
    record_ref: str
    decision: str
    reason: str
    details: dict[str, Any] | None
    timestamp: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "run_id": self.run_id,
            "batch_id": self.batch_id,
            "kind": self.kind,
            "record_ref": self.record_ref,
            "decision": self.decision,
            "reason": self.reason,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class RunRecord:
    """Persisted bookkeeping row of one migration run."""

    run_id: str
    state: str
    source_selector: list[str] = field(default_factory=list)
    gate_config: dict[str, Any] = field(default_factory=dict)
    counters: dict[str, Any] = field(default_factory=dict)
    halt_reason: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None


class InstrumentView:
    """Read-only handle over the canonical store.

    Example:
        >>> view = store.view
        >>> view.get_by_isin("US0378331005").psw_id
        'US0378331005_AAPL_US_XNAS'
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self._sessions = store_session_factory(engine)

    # --- instruments ---

    def get_by_isin(self, isin: str) -> InstrumentRecord | None:
        """Active record for ``isin`` with its active aliases and mappings."""
        stmt = self._instrument_query().where(
            CanonicalInstrumentTable.isin == isin,
            CanonicalInstrumentTable.active.is_(True),
        )
        with self._reading() as session:
            row = session.scalars(stmt).first()
            return _to_record(row, active_only=True) if row is not None else None

    def get_by_psw_id(self, psw_id: str) -> InstrumentRecord | None:
        """Record for ``psw_id``, active or superseded."""
        stmt = self._instrument_query().where(CanonicalInstrumentTable.psw_id == psw_id)
        with self._reading() as session:
            row = session.scalars(stmt).first()
            return _to_record(row, active_only=row.active) if row is not None else None

    def history(self, isin: str) -> list[InstrumentRecord]:
        """Every canonical record ever committed for ``isin``, oldest first."""
        stmt = (
            self._instrument_query()
            .where(CanonicalInstrumentTable.isin == isin)
            .order_by(CanonicalInstrumentTable.id)
        )
        with self._reading() as session:
            return [_to_record(r, active_only=False) for r in session.scalars(stmt)]

    def list_instruments(
        self,
        *,
        active_only: bool = True,
        isins: Iterable[str] | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[InstrumentRecord]:
        stmt = self._instrument_query().order_by(CanonicalInstrumentTable.isin, CanonicalInstrumentTable.id)
        if active_only:
            stmt = stmt.where(CanonicalInstrumentTable.active.is_(True))
        if isins is not None:
            stmt = stmt.where(CanonicalInstrumentTable.isin.in_(sorted(set(isins))))
        if offset:
            stmt = stmt.offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        with self._reading() as session:
            return [_to_record(r, active_only=active_only) for r in session.scalars(stmt)]

    def snapshot(self) -> tuple[InstrumentRecord, ...]:
        """Full canonical state (all rows, all aliases and mappings), ordered by ``psw_id``."""
        stmt = self._instrument_query().order_by(CanonicalInstrumentTable.psw_id)
        with self._reading() as session:
            return tuple(_to_record(r, active_only=False) for r in session.scalars(stmt))

    def count(self, *, active_only: bool = True) -> int:
        return len(self.list_instruments(active_only=active_only))

    # --- audit stream / runs ---

    def audit_entries(
        self,
        *,
        run_id: str | None = None,
        kind: str | None = None,
        decision: str | None = None,
    ) -> list[AuditEntry]:
        """Audit log rows in insertion order, optionally filtered."""
        stmt = select(AuditLogTable).order_by(AuditLogTable.id)
        if run_id is not None:
            stmt = stmt.where(AuditLogTable.run_id == run_id)
        if kind is not None:
            stmt = stmt.where(AuditLogTable.kind == kind)
        if decision is not None:
            stmt = stmt.where(AuditLogTable.decision == decision)
        with self._reading() as session:
            return [
                AuditEntry(
                    id=r.id,
                    run_id=r.run_id,
                    batch_id=r.batch_id,
                    kind=r.kind,
                    record_ref=r.record_ref,
                    decision=r.decision,
                    reason=r.reason,
                    details=r.details,
                    timestamp=ensure_utc(r.created_at),
                )
                for r in session.scalars(stmt)
            ]

    def get_run(self, run_id: str) -> RunRecord | None:
        with self._reading() as session:
            row = session.get(MigrationRunTable, run_id)
            return _to_run(row) if row is not None else None

    def list_runs(self, limit: int = 20) -> list[RunRecord]:
        stmt = select(MigrationRunTable).order_by(MigrationRunTable.started_at.desc()).limit(limit)
        with self._reading() as session:
            return [_to_run(r) for r in session.scalars(stmt)]

    # --- raw reads ---

    def query(self, sql: str, params: Mapping[str, Any] | None = None) -> list[dict[str, Any]]:
        """Run an ad-hoc SQL statement on the reader engine.

        Raises:
            ReadOnlyViolation: if the statement attempts to write.
        """
        with self._reading() as session:
            result = session.execute(text(sql), dict(params or {}))
            if not result.returns_rows:
                return []
            return [dict(row._mapping) for row in result]

    # --- internals ---

    @staticmethod
    def _instrument_query():
        return select(CanonicalInstrumentTable).options(
            selectinload(CanonicalInstrumentTable.aliases),
            selectinload(CanonicalInstrumentTable.provider_mappings),
        )

    @contextmanager
    def _reading(self) -> Iterator[Session]:
        session = self._sessions()
        try:
            yield session
            session.commit()
        except DBAPIError as e:
            session.rollback()
            if _is_read_only_error(e):
                raise ReadOnlyViolation(
                    "Write attempted through the read-only view", cause=e
                ) from e
            if isinstance(e, OperationalError):
                raise StorageUnavailable(f"Store unavailable: {e.orig}", cause=e) from e
            raise
        finally:
            session.close()


def _to_record(row: CanonicalInstrumentTable, *, active_only: bool) -> InstrumentRecord:
    aliases = tuple(
        AliasRecord(
            alias_symbol=a.alias_symbol,
            alias_type=a.alias_type,
            linked_psw_id=a.linked_psw_id,
            source_id=a.source_id,
            country_code=a.country_code,
            exchange_code=a.exchange_code,
            observed_at=_utc(a.observed_at),
            active=a.active,
            run_id=a.run_id,
        )
        for a in row.aliases
        if a.active or not active_only
    )
    mappings = tuple(
        ProviderMappingRecord(provider=m.provider, symbol=m.symbol, active=m.active, run_id=m.run_id)
        for m in row.provider_mappings
        if m.active or not active_only
    )
    return InstrumentRecord(
        psw_id=row.psw_id,
        isin=row.isin,
        ticker=row.ticker,
        country_code=row.country_code,
        exchange_code=row.exchange_code,
        active=row.active,
        superseded_by=row.superseded_by,
        superseded_at=_utc(row.superseded_at),
        source_id=row.source_id,
        source_updated_at=ensure_utc(row.source_updated_at),
        run_id=row.run_id,
        batch_no=row.batch_no,
        aliases=aliases,
        provider_mappings=mappings,
    )


def _to_run(row: MigrationRunTable) -> RunRecord:
    return RunRecord(
        run_id=row.run_id,
        state=row.state,
        source_selector=list(row.source_selector or []),
        gate_config=dict(row.gate_config or {}),
        counters=dict(row.counters or {}),
        halt_reason=row.halt_reason,
        started_at=_utc(row.started_at),
        finished_at=_utc(row.finished_at),
    )
