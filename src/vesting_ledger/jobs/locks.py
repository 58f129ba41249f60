"""Advisory locks serializing runs of the same job type.

With Redis configured the lock is a `SET key token NX PX ttl` entry,
released by a compare-and-delete script so a run never frees a lock that
expired and was taken by someone else. Without Redis, runs in the same
process serialize on an asyncio.Lock.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from redis.asyncio import Redis

from vesting_ledger.errors import JobLockedError

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TTL_SECONDS = 3600
LOCK_KEY_PREFIX = "vesting_ledger:lock:"

_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class JobLock:
    """A named, non-blocking mutual-exclusion lock."""

    def __init__(
        self,
        name: str,
        *,
        redis: Redis | None = None,
        ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS,
        local_lock: asyncio.Lock | None = None,
    ) -> None:
        self.name = name
        self._redis = redis
        self._ttl_ms = int(ttl_seconds * 1000)
        self._local_lock = local_lock or asyncio.Lock()
        self._token: str | None = None

    @property
    def key(self) -> str:
        return f"{LOCK_KEY_PREFIX}{self.name}"

    async def acquire(self) -> bool:
        """Try to take the lock without waiting. Returns True on success."""
        if self._redis is None:
            if self._local_lock.locked():
                return False
            await self._local_lock.acquire()
            return True

        token = secrets.token_hex(16)
        acquired = await self._redis.set(self.key, token, nx=True, px=self._ttl_ms)
        if not acquired:
            return False
        self._token = token
        return True

    async def release(self) -> None:
        if self._redis is None:
            if self._local_lock.locked():
                self._local_lock.release()
            return

        if self._token is None:
            return
        token, self._token = self._token, None
        released = await self._redis.eval(_RELEASE_SCRIPT, 1, self.key, token)
        if not released:
            logger.warning("Lock %s expired before release", self.name)

    @asynccontextmanager
    async def hold(self) -> AsyncIterator[None]:
        """Hold the lock for the duration of the block.

        Raises:
            JobLockedError: If another run holds the lock.
        """
        if not await self.acquire():
            raise JobLockedError(self.name)
        try:
            yield
        finally:
            await self.release()


class JobLocks:
    """Hands out JobLocks that share one backend (Redis or local locks)."""

    def __init__(
        self, *, redis: Redis | None = None, ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS
    ) -> None:
        self._redis = redis
        self._ttl_seconds = ttl_seconds
        self._local: dict[str, asyncio.Lock] = {}

    def get(self, name: str, *, ttl_seconds: int | None = None) -> JobLock:
        local_lock = None
        if self._redis is None:
            local_lock = self._local.setdefault(name, asyncio.Lock())
        return JobLock(
            name,
            redis=self._redis,
            ttl_seconds=ttl_seconds or self._ttl_seconds,
            local_lock=local_lock,
        )
