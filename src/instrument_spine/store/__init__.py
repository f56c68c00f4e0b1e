"""Canonical instrument store: tables, writer path, read-only view."""

from instrument_spine.store.canonical import CanonicalStore
from instrument_spine.store.locks import RunLock
from instrument_spine.store.session import create_store_engine
from instrument_spine.store.tables import (
    AliasTable,
    AuditLogTable,
    CanonicalInstrumentTable,
    MigrationRunTable,
    ProviderMappingTable,
    RunLockTable,
    StoreBase,
    install_guards,
)
from instrument_spine.store.view import (
    AliasRecord,
    AuditEntry,
    InstrumentRecord,
    InstrumentView,
    ProviderMappingRecord,
    RunRecord,
)
from instrument_spine.store.writer import BatchJournal, CanonicalWriter, CommitPlan

__all__ = [
    "AliasRecord",
    "AliasTable",
    "AuditEntry",
    "AuditLogTable",
    "BatchJournal",
    "CanonicalInstrumentTable",
    "CanonicalStore",
    "CanonicalWriter",
    "CommitPlan",
    "InstrumentRecord",
    "InstrumentView",
    "MigrationRunTable",
    "ProviderMappingRecord",
    "ProviderMappingTable",
    "RunLock",
    "RunLockTable",
    "RunRecord",
    "StoreBase",
    "create_store_engine",
    "install_guards",
]
