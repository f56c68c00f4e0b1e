"""Exclusive commit lock for migration runs.

Manifesto:
    Two migration runs must never commit to the canonical store at the same
    time. The lock combines an in-process ``threading.Lock`` (cheap fast
    path for runs sharing one store object) with a database lock row
    (``migration_run_locks``) so runs in different processes exclude each
    other too. The lock row carries a TTL so a crashed process cannot wedge
    the store forever. INSERT-or-fail on the primary key gives atomic
    conflict detection.

    The holder extends the TTL with ``refresh`` inside every batch
    transaction. A holder whose row expired and was taken over gets
    ``LockLost`` there and writes nothing more until it ``reclaim``s the row.

    Readers never touch this lock.

Tags:
    instrument-spine, locking, TTL, concurrency, commit-lock

Doc-Types:
    api-reference
"""

from __future__ import annotations

import threading
import time
from datetime import timedelta

from sqlalchemy import delete, insert, select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, OperationalError

from instrument_spine.errors import LockLost, LockUnavailable, StorageUnavailable
from instrument_spine.logging import get_logger
from instrument_spine.store.tables import RunLockTable
from instrument_spine.timestamps import utc_now

logger = get_logger(__name__)

COMMIT_LOCK_ID = "canonical-commit"


class RunLock:
    """Database-backed exclusive lock with TTL.

    Example:
        >>> lock = RunLock(engine, ttl_seconds=600)
        >>> lock.acquire("run_20260202T150022_a1b2c3d4", timeout=30)
        >>> try:
        ...     ...  # commit batches
        ... finally:
        ...     lock.release("run_20260202T150022_a1b2c3d4")
    """

    def __init__(
        self,
        engine: Engine,
        *,
        ttl_seconds: int = 600,
        lock_id: str = COMMIT_LOCK_ID,
        poll_interval: float = 0.05,
    ) -> None:
        self.engine = engine
        self.ttl_seconds = ttl_seconds
        self.lock_id = lock_id
        self.poll_interval = poll_interval
        self._local = threading.Lock()
        self._holder: str | None = None

    @property
    def holder(self) -> str | None:
        """Run id holding the in-process side of the lock, if any."""
        return self._holder

    def acquire(self, run_id: str, timeout: float = 30.0) -> None:
        """Acquire the lock for ``run_id``, waiting up to ``timeout`` seconds.

        Raises:
            LockUnavailable: if another run still holds the lock at the deadline.
        """
        deadline = time.monotonic() + max(timeout, 0.0)
        if not self._local.acquire(timeout=max(timeout, 0.0)):
            raise LockUnavailable(
                f"Commit lock held in-process by {self._holder}"
            ).with_context(run_id=run_id, holder=self._holder)

        try:
            self._wait_for_row(run_id, deadline)
        except BaseException:
            self._local.release()
            raise
        self._holder = run_id
        logger.debug("commit_lock_acquired", run_id=run_id, lock_id=self.lock_id)

    def refresh(self, run_id: str, connection: Connection | None = None) -> None:
        """Push the lock row's expiry ``ttl_seconds`` into the future.

        Pass ``connection`` to refresh inside an open transaction, so the
        row stays locked until that transaction ends.

        Raises:
            LockLost: the row no longer names ``run_id``
        """
        stmt = (
            update(RunLockTable)
            .where(RunLockTable.lock_id == self.lock_id, RunLockTable.run_id == run_id)
            .values(expires_at=utc_now() + timedelta(seconds=self.ttl_seconds))
        )
        if connection is not None:
            rowcount = connection.execute(stmt).rowcount
        else:
            try:
                with self.engine.begin() as conn:
                    rowcount = conn.execute(stmt).rowcount
            except OperationalError as e:
                raise StorageUnavailable("Lock table unavailable", cause=e).with_context(
                    run_id=run_id
                ) from e
        if rowcount == 0:
            logger.error("commit_lock_lost", run_id=run_id, lock_id=self.lock_id)
            raise LockLost("Commit lock expired and was taken over").with_context(run_id=run_id)

    def reclaim(self, run_id: str, timeout: float = 30.0) -> None:
        """Wait for the lock row again after ``LockLost``.

        The in-process side stays with ``run_id`` throughout.

        Raises:
            LockUnavailable: ``run_id`` does not hold the in-process side, or
                the row is still taken at the deadline
        """
        if self._holder != run_id:
            raise LockUnavailable("Commit lock not held in-process").with_context(
                run_id=run_id, holder=self._holder
            )
        self._wait_for_row(run_id, time.monotonic() + max(timeout, 0.0))
        logger.info("commit_lock_reclaimed", run_id=run_id, lock_id=self.lock_id)

    def release(self, run_id: str) -> None:
        """Release the lock if ``run_id`` holds it."""
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    delete(RunLockTable).where(
                        RunLockTable.lock_id == self.lock_id,
                        RunLockTable.run_id == run_id,
                    )
                )
        finally:
            if self._holder == run_id:
                self._holder = None
                self._local.release()
                logger.debug("commit_lock_released", run_id=run_id, lock_id=self.lock_id)

    def current_holder(self) -> str | None:
        """Run id recorded in the lock row, if any."""
        with self.engine.connect() as conn:
            return conn.execute(
                select(RunLockTable.run_id).where(RunLockTable.lock_id == self.lock_id)
            ).scalar_one_or_none()

    def _wait_for_row(self, run_id: str, deadline: float) -> None:
        while not self._try_acquire_row(run_id):
            if time.monotonic() >= deadline:
                raise LockUnavailable(
                    "Commit lock held by another migration run"
                ).with_context(run_id=run_id, holder=self.current_holder())
            time.sleep(self.poll_interval)

    def _try_acquire_row(self, run_id: str) -> bool:
        now = utc_now()
        expires = now + timedelta(seconds=self.ttl_seconds)
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    delete(RunLockTable).where(
                        RunLockTable.lock_id == self.lock_id,
                        RunLockTable.expires_at < now,
                    )
                )
                conn.execute(
                    insert(RunLockTable).values(
                        lock_id=self.lock_id,
                        run_id=run_id,
                        acquired_at=now,
                        expires_at=expires,
                    )
                )
            return True
        except IntegrityError:
            pass
        except OperationalError as e:
            raise StorageUnavailable("Lock table unavailable", cause=e).with_context(
                run_id=run_id
            ) from e

        # Re-entrant for the same run: refresh the expiry.
        with self.engine.begin() as conn:
            result = conn.execute(
                update(RunLockTable)
                .where(RunLockTable.lock_id == self.lock_id, RunLockTable.run_id == run_id)
                .values(expires_at=expires)
            )
        return result.rowcount > 0
