"""Caches used by the price oracle and the claim side effects.

TTLCache is an explicitly constructed in-process cache with its own TTL,
LRU eviction and injectable clock; callers own the instance. ClaimantCache
holds per-claimant derived views (vault lists, portfolios, the aggregate
value locked) in Redis when configured, otherwise in a local TTLCache.
"""

from __future__ import annotations

import json
import logging
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from redis.asyncio import Redis

logger = logging.getLogger(__name__)

K = TypeVar("K")
V = TypeVar("V")

DEFAULT_MAX_ENTRIES = 1024
DEFAULT_CLAIMANT_TTL_SECONDS = 300


@dataclass
class _Entry(Generic[V]):
    value: V
    expires_at: float


class TTLCache(Generic[K, V]):
    """Bounded in-memory cache with per-entry expiry and LRU eviction."""

    def __init__(
        self,
        *,
        ttl_seconds: float,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[K, _Entry[V]] = OrderedDict()

    def get(self, key: K) -> V | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            del self._entries[key]
            return None
        self._entries.move_to_end(key)
        return entry.value

    def set(self, key: K, value: V, *, ttl_seconds: float | None = None) -> None:
        ttl = self._ttl if ttl_seconds is None else ttl_seconds
        self._entries[key] = _Entry(value=value, expires_at=self._clock() + ttl)
        self._entries.move_to_end(key)
        while len(self._entries) > self._max_entries:
            self._entries.popitem(last=False)

    def delete(self, key: K) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, key: object) -> bool:
        return self.get(key) is not None  # type: ignore[arg-type]

    def __len__(self) -> int:
        return len(self._entries)


class ClaimantCache:
    """Derived per-claimant views, invalidated when a claim lands."""

    TVL_KEY = "stats:tvl"

    def __init__(
        self,
        *,
        redis: Redis | None = None,
        ttl_seconds: int = DEFAULT_CLAIMANT_TTL_SECONDS,
        local: TTLCache[str, str] | None = None,
    ) -> None:
        self._redis = redis
        self._ttl = ttl_seconds
        self._local: TTLCache[str, str] = local or TTLCache(ttl_seconds=ttl_seconds)

    @staticmethod
    def vaults_key(address: str) -> str:
        return f"user_vaults_{address.lower()}"

    @staticmethod
    def portfolio_key(address: str) -> str:
        return f"user_portfolio:{address.lower()}"

    def keys_for_claimant(self, address: str) -> list[str]:
        return [self.vaults_key(address), self.portfolio_key(address)]

    async def get_json(self, key: str) -> Any | None:
        raw: str | None
        if self._redis is not None:
            try:
                value = await self._redis.get(key)
            except Exception as e:
                logger.warning("Cache get failed for %s: %s", key, e)
                return None
            raw = value.decode() if isinstance(value, bytes) else value
        else:
            raw = self._local.get(key)
        return json.loads(raw) if raw is not None else None

    async def set_json(self, key: str, value: Any, ttl: int | None = None) -> None:
        raw = json.dumps(value, default=str)
        if self._redis is None:
            self._local.set(key, raw, ttl_seconds=ttl or self._ttl)
            return
        try:
            await self._redis.set(key, raw, ex=ttl or self._ttl)
        except Exception as e:
            logger.warning("Cache set failed for %s: %s", key, e)

    async def invalidate_claimant(self, address: str) -> int:
        """Drop cached views for a claimant. Returns the number of keys removed."""
        keys = self.keys_for_claimant(address)
        if self._redis is None:
            return sum(1 for key in keys if self._local.delete(key))
        return int(await self._redis.delete(*keys))
