"""
Commit-lock helpers: simulate a lock row whose TTL has lapsed.

Usage::

    from tests._support.locks import expire_commit_lock

    store.lock.acquire("run_a")
    expire_commit_lock(store)   # another process may now take the row over
"""

from __future__ import annotations

from datetime import timedelta

from sqlalchemy import update

from instrument_spine.store.canonical import CanonicalStore
from instrument_spine.store.tables import RunLockTable
from instrument_spine.timestamps import utc_now


def expire_commit_lock(store: CanonicalStore) -> None:
    """Move the commit lock row's expiry into the past."""
    with store.writer_engine.begin() as conn:
        conn.execute(
            update(RunLockTable)
            .where(RunLockTable.lock_id == store.lock.lock_id)
            .values(expires_at=utc_now() - timedelta(seconds=1))
        )
