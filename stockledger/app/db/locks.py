"""
Transaction-scoped locks.

PostgreSQL
    - row lock: SELECT ... FOR UPDATE (issued by the caller's query)
    - advisory lock: pg_advisory_xact_lock(hashtext(key))

Other dialects (SQLite / embedded)
    - both become an in-process keyed mutex, held until the session's
      outermost transaction ends (commit, rollback or close)

Locks are re-entrant within one session transaction.
"""

from __future__ import annotations

import logging
import threading

from sqlalchemy import event, text
from sqlalchemy.orm import Session, SessionTransaction

from stockledger.app.core.config import get_settings
from stockledger.app.core.errors import LockTimeout

logger = logging.getLogger(__name__)

_HELD_KEY = "stockledger.held_locks"


class KeyedMutex:
    """One threading.Lock per key, dropped when nobody holds or waits on it."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._refs: dict[str, int] = {}

    def acquire(self, key: str, timeout: float | None = None) -> bool:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._refs[key] = self._refs.get(key, 0) + 1

        acquired = lock.acquire(timeout=-1 if timeout is None else timeout)
        if not acquired:
            self._unref(key)
        return acquired

    def release(self, key: str) -> None:
        with self._guard:
            lock = self._locks[key]
        lock.release()
        self._unref(key)

    def _unref(self, key: str) -> None:
        with self._guard:
            self._refs[key] -= 1
            if self._refs[key] == 0:
                del self._refs[key]
                del self._locks[key]

    def is_locked(self, key: str) -> bool:
        with self._guard:
            lock = self._locks.get(key)
        return lock is not None and lock.locked()


process_locks = KeyedMutex()


def _is_postgres(db: Session) -> bool:
    return db.get_bind().dialect.name == "postgresql"


def _held(db: Session) -> dict[str, KeyedMutex]:
    return db.info.setdefault(_HELD_KEY, {})


def _acquire_process_lock(db: Session, key: str) -> None:
    held = _held(db)
    if key in held:
        return
    if not db.in_transaction():
        db.begin()

    timeout = get_settings().lock_timeout_seconds
    if not process_locks.acquire(key, timeout=timeout):
        raise LockTimeout(f"Timed out after {timeout}s waiting for lock {key!r}", lock_key=key)
    held[key] = process_locks


def lock_row(db: Session, table: str, row_id: int) -> None:
    """
    Serialize writers of one row for the rest of the transaction.

    On PostgreSQL this is a no-op: the caller reads the row with
    .with_for_update(), which takes the real row lock.
    """
    if _is_postgres(db):
        return
    _acquire_process_lock(db, f"{table}:{row_id}")


def advisory_xact_lock(db: Session, key: str) -> None:
    """Mutual exclusion on an arbitrary key until the transaction ends."""
    if _is_postgres(db):
        db.execute(text("SELECT pg_advisory_xact_lock(hashtext(:key))"), {"key": key})
        return
    _acquire_process_lock(db, f"advisory:{key}")


@event.listens_for(Session, "after_transaction_end")
def _release_on_transaction_end(session: Session, transaction: SessionTransaction) -> None:
    # savepoints end inside the outer transaction; locks live until the outer one ends
    if transaction.parent is not None:
        return

    held = session.info.pop(_HELD_KEY, None)
    if not held:
        return

    for key, registry in held.items():
        registry.release(key)
    logger.debug("released %d process lock(s)", len(held))
