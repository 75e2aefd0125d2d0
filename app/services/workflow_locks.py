"""
Workflow concurrency guards.

Two lock families, both in-process (one registry per worker):

    application_guard(application_id)
        Serialises state-changing operations on one application. It is
        acquired without waiting by default; a caller that loses the race
        gets ConcurrentModificationError and must re-read before retrying.
        Across processes the Application.version column catches the same
        race at commit time. An id keeps its registry entry only while
        someone holds or waits for it.

    role_pool_guard(role)
        Serialises the workload read + AssignmentHistory insert for one
        officer role, so two applications cannot both pick the same
        "least loaded" officer. Held until the surrounding commit.

Lock order is always application → role pool.

Usage:
    with application_guard(app_id, timeout=0):
        with role_pool_guard("ExecutiveEngineer", app_id):
            ...
            db.session.commit()
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager

from app.core.exceptions import ConcurrentModificationError

logger = logging.getLogger(__name__)

_registry_lock = threading.Lock()
# application id → [lock, holders + waiters]; the entry goes when the count hits 0
_application_locks: dict[int, list] = {}
_role_pool_locks: dict[str, threading.Lock] = {}


def _lock_for(registry: dict, key) -> threading.Lock:
    with _registry_lock:
        lock = registry.get(key)
        if lock is None:
            lock = threading.Lock()
            registry[key] = lock
        return lock


def _checkout(application_id: int) -> threading.Lock:
    with _registry_lock:
        entry = _application_locks.setdefault(application_id, [threading.Lock(), 0])
        entry[1] += 1
        return entry[0]


def _checkin(application_id: int) -> None:
    with _registry_lock:
        entry = _application_locks.get(application_id)
        if entry is None:
            return
        entry[1] -= 1
        if entry[1] <= 0:
            del _application_locks[application_id]


def _acquire(lock: threading.Lock, timeout: float) -> bool:
    if timeout and timeout > 0:
        return lock.acquire(timeout=timeout)
    return lock.acquire(blocking=False)


@contextmanager
def application_guard(application_id: int, timeout: float = 0.0):
    """Hold the per-application lock or raise ConcurrentModificationError."""
    application_id = int(application_id)
    lock = _checkout(application_id)
    if not _acquire(lock, timeout):
        _checkin(application_id)
        logger.info(
            "Application %s busy, rejecting concurrent action", application_id,
            extra={"application_id": application_id, "event_type": "lock_contention"},
        )
        raise ConcurrentModificationError(application_id, "another action is in progress")
    try:
        yield
    finally:
        lock.release()
        _checkin(application_id)


@contextmanager
def role_pool_guard(role: str, application_id: int, timeout: float = 10.0):
    """Hold the assignment lock for one officer role pool."""
    lock = _lock_for(_role_pool_locks, str(role))
    if not lock.acquire(timeout=timeout if timeout and timeout > 0 else -1):
        raise ConcurrentModificationError(application_id, f"assignment pool '{role}' is busy")
    try:
        yield
    finally:
        lock.release()


def is_application_locked(application_id: int) -> bool:
    with _registry_lock:
        entry = _application_locks.get(int(application_id))
    return bool(entry and entry[0].locked())


def tracked_applications() -> int:
    """Number of application ids that currently have a lock entry."""
    with _registry_lock:
        return len(_application_locks)


def reset_locks() -> None:
    """Drop every registered lock (tests recreate ids per test)."""
    with _registry_lock:
        _application_locks.clear()
        _role_pool_locks.clear()
