"""
CanonicalStore: one database, two capabilities.

Architecture:
    ::

        ┌────────────────────────────── CanonicalStore ──────────────────────────┐
        │                                                                        │
        │  writer_engine (database_url)           reader_engine (reader_url)     │
        │     │                                      │  PRAGMA query_only /      │
        │     │                                      │  postgresql_readonly      │
        │     ├── CanonicalWriter(run_id)            └── InstrumentView          │
        │     │     commit_batch / revert_batch            get_by_isin ...       │
        │     ├── RunLock (migration_run_locks)                                  │
        │     └── AuditLog (audit_log, own transactions)                         │
        └────────────────────────────────────────────────────────────────────────┘

    Only the migration orchestrator is handed a writer. Everything else
    gets ``store.view``.

Tags:
    instrument-spine, store, capability-split, sqlalchemy

Doc-Types:
    api-reference, architecture-diagram
"""

from __future__ import annotations

from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from instrument_spine.errors import InvalidConfigError
from instrument_spine.logging import get_logger
from instrument_spine.settings import InstrumentSpineSettings
from instrument_spine.store.locks import RunLock
from instrument_spine.store.session import (
    StoreSession,
    create_store_engine,
    is_memory_url,
    store_session_factory,
)
from instrument_spine.store.tables import StoreBase, install_guards
from instrument_spine.store.view import InstrumentView
from instrument_spine.store.writer import CanonicalWriter

logger = get_logger(__name__)


class CanonicalStore:
    """Owns the writer and reader engines of the canonical instrument store."""

    def __init__(
        self,
        database_url: str,
        *,
        reader_url: str | None = None,
        echo: bool = False,
        lock_ttl_seconds: int = 600,
    ) -> None:
        if is_memory_url(database_url):
            raise InvalidConfigError(
                "In-memory SQLite cannot be shared by the writer and reader engines; use a file URL"
            ).with_context(database_url=database_url)

        self.database_url = database_url
        self.reader_url = reader_url or database_url
        self.writer_engine: Engine = create_store_engine(database_url, echo=echo)
        self.reader_engine: Engine = create_store_engine(self.reader_url, read_only=True, echo=echo)
        self.writer_sessions: sessionmaker[StoreSession] = store_session_factory(self.writer_engine)
        self.lock = RunLock(self.writer_engine, ttl_seconds=lock_ttl_seconds)
        self.view = InstrumentView(self.reader_engine)

    @classmethod
    def from_settings(cls, settings: InstrumentSpineSettings) -> CanonicalStore:
        return cls(
            settings.database_url,
            reader_url=settings.reader_url,
            echo=settings.database_echo,
            lock_ttl_seconds=settings.lock_ttl_seconds,
        )

    def create_all(self) -> None:
        """Create tables and install storage guards (idempotent)."""
        StoreBase.metadata.create_all(self.writer_engine)
        with self.writer_engine.begin() as conn:
            install_guards(conn)
        logger.info("store_initialized", url=self.writer_engine.url.render_as_string(hide_password=True))

    def writer(self, run_id: str) -> CanonicalWriter:
        """Write handle for one migration run."""
        return CanonicalWriter(self, run_id)

    def dispose(self) -> None:
        self.writer_engine.dispose()
        self.reader_engine.dispose()
