"""
Per-contact mutual exclusion for the run loop.

Every entry point that mutates an execution row (start, resume, timer
firing) holds the contact lock for the duration of its run loop. Locks
carry a short lease so a crashed holder cannot block a contact forever.

Backends:
- RedisLockManager: SET NX EX with an owner token, released through a
  compare-and-delete script so an expired lease is never released by
  the wrong owner.
- InMemoryLockManager: same contract, process-local. Only suitable for
  single-process deployments and tests.
"""

import time
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import structlog

from core.exceptions import ExecutionLockedError

logger = structlog.get_logger(__name__)

LOCK_PREFIX = "execution:lock"

_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


def contact_lock_key(tenant_id: str, session_id: str, contact_id: str) -> str:
    """Lock key for one (tenant, session, contact) conversation."""
    return f"{LOCK_PREFIX}:{tenant_id}:{session_id}:{contact_id}"


class LockManager(ABC):
    """Lease-based lock contract used by the execution engine.

    ``acquire`` hands back an owner token; ``release`` only frees the key
    while that token still owns it, so a holder whose lease lapsed cannot
    release a lock that was taken over by someone else.
    """

    @abstractmethod
    async def acquire(self, key: str, lease_seconds: int) -> Optional[str]:
        """Try once to take the lock. Returns the owner token, or None if busy."""

    @abstractmethod
    async def release(self, key: str, token: str) -> bool:
        """Release the lock if ``token`` still owns it. Returns True if released."""

    async def close(self) -> None:
        return None

    @asynccontextmanager
    async def hold(self, key: str, lease_seconds: int) -> AsyncIterator[str]:
        """Scoped acquisition: raises ExecutionLockedError on contention,
        releases on every exit path."""
        token = await self.acquire(key, lease_seconds)
        if token is None:
            raise ExecutionLockedError(key)
        try:
            yield token
        finally:
            try:
                if not await self.release(key, token):
                    logger.warning("Lock lease lapsed before release", key=key)
            except Exception as e:
                # Lease expiry frees the key eventually.
                logger.error("Lock release failed", key=key, error=str(e))


class RedisLockManager(LockManager):
    """Distributed lock on top of redis.asyncio."""

    def __init__(self, redis_client):
        self._redis = redis_client

    @classmethod
    def from_url(cls, url: str) -> "RedisLockManager":
        import redis.asyncio as aioredis

        return cls(aioredis.from_url(url, decode_responses=True))

    async def acquire(self, key: str, lease_seconds: int) -> Optional[str]:
        token = uuid.uuid4().hex
        acquired = await self._redis.set(key, token, nx=True, ex=max(1, int(lease_seconds)))
        if acquired:
            return token
        logger.debug("Lock busy", key=key)
        return None

    async def release(self, key: str, token: str) -> bool:
        return bool(await self._redis.eval(_RELEASE_SCRIPT, 1, key, token))

    async def close(self) -> None:
        await self._redis.aclose()


class InMemoryLockManager(LockManager):
    """Process-local lock table with lease expiry."""

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._held: dict[str, tuple[str, float]] = {}

    def _expired(self, key: str) -> bool:
        entry = self._held.get(key)
        return entry is None or entry[1] <= self._clock()

    async def acquire(self, key: str, lease_seconds: int) -> Optional[str]:
        if not self._expired(key):
            return None
        token = uuid.uuid4().hex
        self._held[key] = (token, self._clock() + lease_seconds)
        return token

    async def release(self, key: str, token: str) -> bool:
        entry = self._held.get(key)
        if entry is None or entry[0] != token:
            return False
        del self._held[key]
        return True

    def is_locked(self, key: str) -> bool:
        return not self._expired(key)


def build_lock_manager(backend: str, redis_url: Optional[str] = None) -> LockManager:
    if backend == "memory":
        return InMemoryLockManager()
    if backend == "redis":
        return RedisLockManager.from_url(redis_url)
    raise ValueError(f"Unknown lock backend: {backend}")
