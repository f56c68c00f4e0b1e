"""Declarative base and table definitions for the canonical instrument store.

Uses SQLAlchemy 2.0 ``DeclarativeBase`` with a ``type_annotation_map`` so
``Mapped`` columns can use plain Python types.

Structural invariants that must hold regardless of which code path touches
the database are installed as storage guards (``install_guards``):

* ``audit_log`` rows can never be updated or deleted;
* identity columns of ``canonical_instruments`` (``psw_id``, ``isin``,
  ``ticker``, ``country_code``, ``exchange_code``) can never be updated;
* canonical, alias and provider-mapping rows can only be deleted while the
  run that created them is ``ROLLING_BACK``.

Tags:
    instrument-spine, orm, sqlalchemy, tables, triggers

Doc-Types:
    api-reference, data-model
"""

from __future__ import annotations

import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.engine import Connection
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class StoreBase(DeclarativeBase):
    """Shared declarative base for every instrument-spine table."""

    type_annotation_map = {
        str: Text,
        int: Integer,
        bool: Boolean,
        datetime.datetime: DateTime(timezone=True),
        dict: JSON,
        list: JSON,
    }


class CanonicalInstrumentTable(StoreBase):
    __tablename__ = "canonical_instruments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    psw_id: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    isin: Mapped[str] = mapped_column(Text, nullable=False)
    ticker: Mapped[str] = mapped_column(Text, nullable=False)
    country_code: Mapped[str] = mapped_column(Text, nullable=False)
    exchange_code: Mapped[str] = mapped_column(Text, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    superseded_by: Mapped[str | None] = mapped_column(Text)
    superseded_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True))
    source_id: Mapped[str] = mapped_column(Text, nullable=False)
    source_updated_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    run_id: Mapped[str] = mapped_column(Text, nullable=False)
    batch_no: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # --- relationships ---
    aliases: Mapped[list[AliasTable]] = relationship(
        "AliasTable", back_populates="instrument", order_by="AliasTable.id"
    )
    provider_mappings: Mapped[list[ProviderMappingTable]] = relationship(
        "ProviderMappingTable", back_populates="instrument", order_by="ProviderMappingTable.id"
    )

    __table_args__ = (
        Index("ix_canonical_isin", "isin"),
        Index(
            "uq_canonical_active_isin",
            "isin",
            unique=True,
            sqlite_where=text("active = 1"),
            postgresql_where=text("active"),
        ),
    )


class AliasTable(StoreBase):
    __tablename__ = "instrument_aliases"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    instrument_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("canonical_instruments.id"), nullable=False
    )
    alias_symbol: Mapped[str] = mapped_column(Text, nullable=False)
    alias_type: Mapped[str] = mapped_column(Text, nullable=False)  # duplicate | superseded
    linked_psw_id: Mapped[str | None] = mapped_column(Text)
    source_id: Mapped[str] = mapped_column(Text, nullable=False)
    country_code: Mapped[str | None] = mapped_column(Text)
    exchange_code: Mapped[str | None] = mapped_column(Text)
    observed_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True))
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    run_id: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    instrument: Mapped[CanonicalInstrumentTable] = relationship(
        "CanonicalInstrumentTable", back_populates="aliases"
    )

    __table_args__ = (
        UniqueConstraint("instrument_id", "alias_type", "alias_symbol", "source_id", name="uq_alias"),
    )


class ProviderMappingTable(StoreBase):
    __tablename__ = "provider_mappings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    instrument_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("canonical_instruments.id"), nullable=False
    )
    provider: Mapped[str] = mapped_column(Text, nullable=False)
    symbol: Mapped[str] = mapped_column(Text, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    run_id: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    instrument: Mapped[CanonicalInstrumentTable] = relationship(
        "CanonicalInstrumentTable", back_populates="provider_mappings"
    )

    __table_args__ = (
        UniqueConstraint("instrument_id", "provider", "symbol", name="uq_provider_mapping"),
        Index(
            "uq_provider_mapping_active",
            "instrument_id",
            "provider",
            unique=True,
            sqlite_where=text("active = 1"),
            postgresql_where=text("active"),
        ),
    )


class AuditLogTable(StoreBase):
    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(Text, nullable=False)
    batch_id: Mapped[str | None] = mapped_column(Text)
    kind: Mapped[str] = mapped_column(Text, nullable=False)  # validation | dedup | migration
    record_ref: Mapped[str] = mapped_column(Text, nullable=False)
    decision: Mapped[str] = mapped_column(Text, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False, default="")
    details: Mapped[dict | None] = mapped_column(JSON)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (Index("ix_audit_run_kind", "run_id", "kind"),)


class MigrationRunTable(StoreBase):
    __tablename__ = "migration_runs"

    run_id: Mapped[str] = mapped_column(Text, primary_key=True)
    state: Mapped[str] = mapped_column(Text, nullable=False)
    source_selector: Mapped[list | None] = mapped_column(JSON)
    gate_config: Mapped[dict | None] = mapped_column(JSON)
    counters: Mapped[dict | None] = mapped_column(JSON)
    halt_reason: Mapped[str | None] = mapped_column(Text)
    started_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    finished_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True))


class RunLockTable(StoreBase):
    __tablename__ = "migration_run_locks"

    lock_id: Mapped[str] = mapped_column(Text, primary_key=True)
    run_id: Mapped[str] = mapped_column(Text, nullable=False)
    acquired_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False)


# ── Storage guards ───────────────────────────────────────────────────────

ROLLING_BACK = "ROLLING_BACK"

_ROLLING_BACK_ONLY = (
    "WHEN NOT EXISTS (SELECT 1 FROM migration_runs "
    "WHERE migration_runs.run_id = OLD.run_id "
    f"AND migration_runs.state = '{ROLLING_BACK}')"
)

SQLITE_GUARDS: tuple[str, ...] = (
    """
    CREATE TRIGGER IF NOT EXISTS trg_audit_log_no_update
    BEFORE UPDATE ON audit_log
    BEGIN SELECT RAISE(ABORT, 'audit_log is append-only'); END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS trg_audit_log_no_delete
    BEFORE DELETE ON audit_log
    BEGIN SELECT RAISE(ABORT, 'audit_log is append-only'); END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS trg_canonical_identity_immutable
    BEFORE UPDATE OF psw_id, isin, ticker, country_code, exchange_code ON canonical_instruments
    BEGIN SELECT RAISE(ABORT, 'canonical identity columns are immutable'); END
    """,
    f"""
    CREATE TRIGGER IF NOT EXISTS trg_canonical_no_delete
    BEFORE DELETE ON canonical_instruments {_ROLLING_BACK_ONLY}
    BEGIN SELECT RAISE(ABORT, 'canonical instruments are never deleted'); END
    """,
    f"""
    CREATE TRIGGER IF NOT EXISTS trg_alias_no_delete
    BEFORE DELETE ON instrument_aliases {_ROLLING_BACK_ONLY}
    BEGIN SELECT RAISE(ABORT, 'aliases are never deleted'); END
    """,
    f"""
    CREATE TRIGGER IF NOT EXISTS trg_provider_mapping_no_delete
    BEFORE DELETE ON provider_mappings {_ROLLING_BACK_ONLY}
    BEGIN SELECT RAISE(ABORT, 'provider mappings are never deleted'); END
    """,
)


def install_guards(conn: Connection) -> None:
    """Install storage guards for the connected dialect.

    Only SQLite guards ship with the package; server databases enforce the
    same rules through role grants on the reader/writer credentials.
    """
    if conn.dialect.name != "sqlite":
        return
    for ddl in SQLITE_GUARDS:
        conn.exec_driver_sql(ddl)
