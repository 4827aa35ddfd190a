"""Transaction-scoped locks keyed by business, schedule or employee id.

A lock taken through :func:`lock_for_transaction` is held until the owning
session's outermost transaction ends, by commit or rollback. Two layers:

* an in-process lock per key, so worker threads sharing one database
  serialize even on backends that ignore ``SELECT ... FOR UPDATE``;
* ``pg_advisory_xact_lock`` on PostgreSQL, which serializes across processes
  and is released by the database at transaction end.

Callers take these locks first in a transaction, before any writes.
Lock ordering is business -> schedule -> employee -> job; never acquire a
business lock while holding a schedule lock of a different business. Several
employee locks are taken in ascending id order.
"""

from __future__ import annotations

import logging
import threading
from typing import Any
from uuid import UUID

from sqlalchemy import Select, event, text
from sqlalchemy.orm import Session, SessionTransaction

from disbursement_engine.errors import LockTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TIMEOUT = 30.0

_HELD_KEY = "disbursement_engine.held_locks"


class KeyedLocks:
    """Process-wide registry of one lock per key.

    An entry exists only while some thread holds or waits for its key.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._users: dict[str, int] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def acquire(self, key: str, timeout: float) -> bool:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            self._users[key] = self._users.get(key, 0) + 1
        if lock.acquire(timeout=timeout):
            return True
        with self._guard:
            self._drop_user(key)
        return False

    def release(self, key: str) -> None:
        with self._guard:
            self._locks[key].release()
            self._drop_user(key)

    def _drop_user(self, key: str) -> None:
        remaining = self._users[key] - 1
        if remaining:
            self._users[key] = remaining
        else:
            del self._users[key]
            del self._locks[key]


_registry = KeyedLocks()


def lock_key(namespace: str, subject_id: UUID | str) -> str:
    return f"{namespace}:{subject_id}"


def _release_held(session: Session, transaction: SessionTransaction) -> None:
    if transaction.parent is not None:
        return
    held: list[str] = session.info.pop(_HELD_KEY, [])
    for key in reversed(held):
        _registry.release(key)
        logger.debug("Released lock %s", key)


def lock_for_transaction(
    session: Session,
    namespace: str,
    subject_id: UUID | str,
    timeout: float = DEFAULT_LOCK_TIMEOUT,
) -> None:
    """Acquire the lock for ``namespace:subject_id`` until the transaction ends.

    Re-acquiring a key already held by this session's transaction is a no-op.
    Raises LockTimeoutError if the key stays held elsewhere past ``timeout``.
    """
    key = lock_key(namespace, subject_id)
    held: list[str] = session.info.setdefault(_HELD_KEY, [])
    if key in held:
        return

    if not event.contains(session, "after_transaction_end", _release_held):
        event.listen(session, "after_transaction_end", _release_held)
    if not session.in_transaction():
        session.begin()

    if not _registry.acquire(key, timeout):
        raise LockTimeoutError(key, timeout)
    held.append(key)

    if session.get_bind().dialect.name == "postgresql":
        session.execute(
            text("SELECT pg_advisory_xact_lock(hashtext(:key))"),
            {"key": key},
        )
    logger.debug("Acquired lock %s", key)


def lock_for_update(stmt: Select[Any]) -> Select[Any]:
    """Apply row-level locking; SQLite ignores FOR UPDATE."""
    return stmt.with_for_update()
