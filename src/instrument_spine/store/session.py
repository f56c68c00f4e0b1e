"""SQLAlchemy engine and session factories for the canonical store.

Manifesto:
    Write access and read access are two different engines, not two
    conventions over one engine. The reader engine is opened read-only at
    the connection level so that a stray write through the view layer is
    rejected by the database itself.

This module provides:

* ``create_store_engine``   -- Create a writer or reader engine from a URL.
* ``StoreSession``          -- A ``Session`` with ``expire_on_commit=False``.
* ``store_session_factory`` -- ``sessionmaker`` producing ``StoreSession``.
* ``is_memory_url``         -- Detect private in-memory SQLite URLs.

Tags:
    instrument-spine, orm, sqlalchemy, session, engine, read-only

Doc-Types:
    api-reference
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import create_engine as _sa_create_engine
from sqlalchemy import event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker


def is_memory_url(url: str) -> bool:
    """True for SQLite URLs whose database only lives inside one connection pool."""
    parsed = make_url(url)
    if not parsed.drivername.startswith("sqlite"):
        return False
    database = parsed.database or ""
    return database in ("", ":memory:") or database.startswith("file::memory:")


def create_store_engine(
    url: str,
    *,
    read_only: bool = False,
    echo: bool = False,
    **kwargs: Any,
) -> Engine:
    """Create a SQLAlchemy engine for the writer or the reader side.

    Parameters
    ----------
    url:
        Database URL (``sqlite:///…``, ``postgresql://…``).
    read_only:
        Open every connection read-only. SQLite gets ``PRAGMA query_only``,
        PostgreSQL gets ``postgresql_readonly`` transactions.
    echo:
        If ``True``, log all SQL.
    kwargs:
        Passed through to ``sqlalchemy.create_engine``.
    """
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False, "timeout": 30})
        engine = _sa_create_engine(url, echo=echo, **kwargs)

        @event.listens_for(engine, "connect")
        def _set_sqlite_pragma(dbapi_connection: Any, _rec: Any) -> None:
            cursor = dbapi_connection.cursor()
            if not is_memory_url(url):
                cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            if read_only:
                cursor.execute("PRAGMA query_only=ON")
            cursor.close()

        return engine

    kwargs.setdefault("pool_pre_ping", True)
    engine = _sa_create_engine(url, echo=echo, **kwargs)
    if read_only and engine.dialect.name == "postgresql":
        engine = engine.execution_options(postgresql_readonly=True)
    return engine


class StoreSession(Session):
    """Pre-configured session with ``expire_on_commit=False``.

    Rows loaded inside a batch transaction stay readable after commit,
    which the undo journal relies on.
    """

    def __init__(self, bind: Engine | None = None, **kwargs: Any) -> None:
        kwargs.setdefault("expire_on_commit", False)
        super().__init__(bind=bind, **kwargs)


def store_session_factory(engine: Engine) -> sessionmaker[StoreSession]:
    """Return a ``sessionmaker`` bound to *engine* producing ``StoreSession`` instances."""
    return sessionmaker(bind=engine, class_=StoreSession)
