"""Per-resource critical sections for booking and rescheduling.

Every operation that creates or moves an active appointment holds one lock
per doctor, unit and patient it touches. Keys are always acquired in the
canonical order (doctors, then units, then patients, each ascending by id)
so two operations that share resources can never deadlock.
"""

import asyncio
import os
import time
import uuid
import logging
from contextlib import asynccontextmanager
from typing import Dict, Iterable, List, Optional, Tuple

from redis.exceptions import RedisError

from app.exceptions import BusyError
from app.observability.metrics import observe_lock_wait

logger = logging.getLogger(__name__)

LOCK_TTL_MS = int(os.getenv("SCHED_LOCK_TTL_MS", "30000"))

# Lua script for atomic compare-and-delete
COMPARE_AND_DELETE = """
if redis.call("get", KEYS[1]) == ARGV[1] then
  return redis.call("del", KEYS[1])
else
  return 0
end
"""

LockKey = Tuple[str, str]

_KIND_ORDER = {"doctor": 0, "unit": 1, "patient": 2}


def resource_keys(
    doctor_ids: Iterable[str] = (),
    unit_ids: Iterable[str] = (),
    patient_ids: Iterable[str] = (),
) -> List[LockKey]:
    """Build the de-duplicated, canonically ordered key list for an operation."""
    keys = set()
    keys.update(("doctor", d) for d in doctor_ids if d)
    keys.update(("unit", u) for u in unit_ids if u)
    keys.update(("patient", p) for p in patient_ids if p)
    return canonical_order(keys)


def canonical_order(keys: Iterable[LockKey]) -> List[LockKey]:
    return sorted(set(keys), key=lambda k: (_KIND_ORDER.get(k[0], 99), k[1]))


class ResourceLockManager:
    """In-process per-key mutexes (single worker deployments and tests)."""

    backend = "memory"

    def __init__(self, timeout_seconds: float = 5.0):
        self.timeout_seconds = timeout_seconds
        self._locks: Dict[LockKey, asyncio.Lock] = {}
        self._refs: Dict[LockKey, int] = {}

    @asynccontextmanager
    async def hold(self, keys: Iterable[LockKey], timeout: Optional[float] = None):
        """
        Hold every lock in ``keys`` for the duration of the block.

        Raises:
            BusyError: If all locks cannot be acquired within the timeout
        """
        ordered = canonical_order(keys)
        budget = self.timeout_seconds if timeout is None else timeout
        started = time.monotonic()
        deadline = started + budget
        acquired: List[LockKey] = []
        referenced: List[LockKey] = []

        try:
            for key in ordered:
                lock = self._locks.get(key)
                if lock is None:
                    lock = self._locks[key] = asyncio.Lock()
                self._refs[key] = self._refs.get(key, 0) + 1
                referenced.append(key)

                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise BusyError(f"Timed out waiting for {key[0]} {key[1]}")
                try:
                    await asyncio.wait_for(lock.acquire(), timeout=remaining)
                except asyncio.TimeoutError:
                    raise BusyError(f"Timed out waiting for {key[0]} {key[1]}")
                acquired.append(key)

            observe_lock_wait(self.backend, time.monotonic() - started)
            yield
        finally:
            for key in reversed(acquired):
                self._locks[key].release()
            for key in referenced:
                self._refs[key] -= 1
                if self._refs[key] == 0:
                    del self._refs[key]
                    del self._locks[key]


class RedisResourceLockManager:
    """Token-based distributed locks for multi-worker deployments."""

    backend = "redis"

    def __init__(self, redis_client, timeout_seconds: float = 5.0,
                 ttl_ms: int = LOCK_TTL_MS, prefix: str = "sched_lock"):
        """
        Args:
            redis_client: Synchronous Redis client (redis-py)
            timeout_seconds: Maximum time to wait for all locks
            ttl_ms: Lock TTL so a crashed holder cannot block forever
            prefix: Redis key prefix
        """
        self.redis = redis_client
        self.timeout_seconds = timeout_seconds
        self.ttl_ms = ttl_ms
        self.prefix = prefix

    def _redis_key(self, key: LockKey) -> str:
        return f"{self.prefix}:{key[0]}:{key[1]}"

    @asynccontextmanager
    async def hold(self, keys: Iterable[LockKey], timeout: Optional[float] = None):
        """
        Acquire distributed locks with automatic release.

        Raises:
            BusyError: If a lock stays taken past the timeout or Redis fails
        """
        ordered = canonical_order(keys)
        budget = self.timeout_seconds if timeout is None else timeout
        token = str(uuid.uuid4())  # Unique token for this acquisition
        started = time.monotonic()
        deadline = started + budget
        acquired: List[str] = []

        try:
            for key in ordered:
                redis_key = self._redis_key(key)
                attempt = 0
                while True:
                    try:
                        # NX = only if not exists, PX = TTL in ms
                        if self.redis.set(redis_key, token, nx=True, px=self.ttl_ms):
                            break
                    except RedisError as e:
                        raise BusyError(f"Lock store unavailable: {e}")

                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        raise BusyError(f"Timed out waiting for {key[0]} {key[1]}")
                    attempt += 1
                    # Linear backoff (50ms, 100ms, 150ms...) capped by the remaining budget
                    await asyncio.sleep(min(0.05 * attempt, remaining))

                acquired.append(redis_key)
                logger.debug(f"🔒 Acquired lock: {redis_key} (token: {token[:8]})")

            observe_lock_wait(self.backend, time.monotonic() - started)
            yield
        finally:
            for redis_key in reversed(acquired):
                try:
                    # Only delete if we still own the lock (compare-and-delete)
                    self.redis.eval(COMPARE_AND_DELETE, 1, redis_key, token)
                    logger.debug(f"🔓 Released lock: {redis_key}")
                except Exception as e:
                    logger.warning(f"Failed to release lock {redis_key}: {e}")
