"""Per-key mutual exclusion.

WHAT:
    `KeyedLockManager.hold(key)` is a context manager that serialises work on
    one key (`trip:<trip_id>`, `ledger:<user_id>`) while leaving other keys
    free to run in parallel.

WHY:
    Reconciliation of one trip id and ledger updates for one user must never
    interleave, but a batch for user A must not wait on user B.

BACKENDS:
    - local: in-process `threading.Lock` registry. Entries are reference
      counted and dropped once no holder or waiter remains.
    - redis: redis-py `Lock` (SET NX PX + token) for multi-process API/worker
      deployments.

A lock that cannot be acquired within the timeout raises `StoreUnavailable`,
which callers report as a retryable SERVER_ERROR for that unit only.
"""

import logging
import threading
from contextlib import contextmanager
from functools import lru_cache
from typing import Dict, Iterator, Optional

from redis import Redis
from redis.exceptions import LockError, RedisError

from tripsync.errors import StoreUnavailable

logger = logging.getLogger(__name__)


def trip_key(trip_id: str) -> str:
    return f"trip:{trip_id}"


def ledger_key(user_id: str) -> str:
    return f"ledger:{user_id}"


class KeyedLockManager:
    """Interface shared by both backends."""

    def __init__(self, timeout_seconds: float = 10.0):
        self.timeout_seconds = timeout_seconds

    @contextmanager
    def hold(self, key: str, timeout: Optional[float] = None) -> Iterator[None]:
        raise NotImplementedError


class LocalLockManager(KeyedLockManager):
    def __init__(self, timeout_seconds: float = 10.0):
        super().__init__(timeout_seconds)
        self._registry_lock = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._refs: Dict[str, int] = {}

    def _checkout(self, key: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
                self._refs[key] = 0
            self._refs[key] += 1
            return lock

    def _checkin(self, key: str) -> None:
        with self._registry_lock:
            self._refs[key] -= 1
            if self._refs[key] == 0:
                del self._refs[key]
                del self._locks[key]

    @contextmanager
    def hold(self, key: str, timeout: Optional[float] = None) -> Iterator[None]:
        wait = self.timeout_seconds if timeout is None else timeout
        lock = self._checkout(key)
        try:
            if not lock.acquire(timeout=wait):
                logger.warning("[LOCK] Timed out after %.1fs waiting for %s", wait, key)
                raise StoreUnavailable(f"Timed out waiting for lock {key}")
            try:
                yield
            finally:
                lock.release()
        finally:
            self._checkin(key)

    def active_keys(self) -> int:
        with self._registry_lock:
            return len(self._locks)


class RedisLockManager(KeyedLockManager):
    """Distributed locks. The lease outlives the wait so a crashed holder frees the key."""

    def __init__(self, client: Redis, timeout_seconds: float = 10.0, lease_seconds: float = 60.0):
        super().__init__(timeout_seconds)
        self.client = client
        self.lease_seconds = lease_seconds

    @contextmanager
    def hold(self, key: str, timeout: Optional[float] = None) -> Iterator[None]:
        wait = self.timeout_seconds if timeout is None else timeout
        lock = self.client.lock(f"tripsync:lock:{key}", timeout=self.lease_seconds, blocking_timeout=wait)
        try:
            acquired = lock.acquire()
        except RedisError as exc:
            logger.error("[LOCK] Redis unavailable while locking %s: %s", key, exc)
            raise StoreUnavailable(f"Lock backend unavailable for {key}") from exc
        if not acquired:
            logger.warning("[LOCK] Timed out after %.1fs waiting for %s", wait, key)
            raise StoreUnavailable(f"Timed out waiting for lock {key}")
        try:
            yield
        finally:
            try:
                lock.release()
            except LockError:
                # Lease expired while held; another holder may already own it.
                logger.warning("[LOCK] Lease for %s expired before release", key)


def build_lock_manager(backend: str, *, timeout_seconds: float, redis_url: str) -> KeyedLockManager:
    if backend == "redis":
        logger.info("[LOCK] Using Redis lock backend")
        return RedisLockManager(Redis.from_url(redis_url), timeout_seconds=timeout_seconds)
    if backend != "local":
        raise ValueError(f"Unknown LOCK_BACKEND: {backend}")
    return LocalLockManager(timeout_seconds=timeout_seconds)


@lru_cache()
def get_lock_manager() -> KeyedLockManager:
    """Process-wide lock manager built from settings."""
    from tripsync.deps import get_settings

    settings = get_settings()
    return build_lock_manager(
        settings.LOCK_BACKEND,
        timeout_seconds=settings.LOCK_TIMEOUT_SECONDS,
        redis_url=settings.REDIS_URL,
    )
