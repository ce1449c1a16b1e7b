from __future__ import annotations

import logging
import os
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field

from sqlalchemy import text
from sqlmodel import Session

from backoffice.domain.errors import ConflictError
from backoffice.infra.db import is_postgresql
from backoffice.infra.redis_state import build_lock

logger = logging.getLogger(__name__)

CUSTOMER_LOCK_BACKEND = os.getenv("CUSTOMER_LOCK_BACKEND", "local")
CUSTOMER_LOCK_TIMEOUT_SECONDS = float(os.getenv("CUSTOMER_LOCK_TIMEOUT_SECONDS", "30"))


class LockTimeoutError(ConflictError):
    pass


@dataclass
class _LocalLock:
    lock: threading.RLock = field(default_factory=threading.RLock)
    users: int = 0


_registry_guard = threading.Lock()
_local_locks: dict[str, _LocalLock] = {}


def _lock_key(customer_id: str) -> str:
    return f"customer:{customer_id}"


def _checkout_local_lock(key: str) -> threading.RLock:
    with _registry_guard:
        entry = _local_locks.get(key)
        if entry is None:
            entry = _LocalLock()
            _local_locks[key] = entry
        entry.users += 1
        return entry.lock


def _checkin_local_lock(key: str) -> None:
    # Dropped once no thread holds or waits on it.
    with _registry_guard:
        entry = _local_locks[key]
        entry.users -= 1
        if entry.users == 0:
            del _local_locks[key]


@contextmanager
def customer_lock(customer_id: str) -> Iterator[None]:
    key = _lock_key(customer_id)
    if CUSTOMER_LOCK_BACKEND == "redis":
        redis_lock = build_lock(
            key,
            timeout=CUSTOMER_LOCK_TIMEOUT_SECONDS,
            blocking_timeout=CUSTOMER_LOCK_TIMEOUT_SECONDS,
        )
        if not redis_lock.acquire():
            logger.warning("customer_lock_timeout", extra={"customer_id": customer_id, "backend": "redis"})
            raise LockTimeoutError(f"Customer {customer_id} is busy, retry later")
        try:
            yield
        finally:
            redis_lock.release()
        return

    local_lock = _checkout_local_lock(key)
    try:
        if not local_lock.acquire(timeout=CUSTOMER_LOCK_TIMEOUT_SECONDS):
            logger.warning("customer_lock_timeout", extra={"customer_id": customer_id, "backend": "local"})
            raise LockTimeoutError(f"Customer {customer_id} is busy, retry later")
        try:
            yield
        finally:
            local_lock.release()
    finally:
        _checkin_local_lock(key)


def serialize_customer_writes(session: Session, customer_id: str) -> None:
    # Advisory lock on PostgreSQL so separate processes also serialize.
    if not is_postgresql(session.get_bind()):
        return
    session.connection(execution_options={"isolation_level": "REPEATABLE READ"})
    session.execute(
        text("SELECT pg_advisory_xact_lock(hashtext(:key))"),
        {"key": _lock_key(customer_id)},
    )
