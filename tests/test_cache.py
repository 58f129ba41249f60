"""Tests for the TTL cache and claimant cache."""

from unittest.mock import AsyncMock

import pytest

from vesting_ledger.cache import ClaimantCache, TTLCache


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class TestTTLCache:
    def test_expires_after_ttl(self) -> None:
        clock = FakeClock()
        cache: TTLCache[str, int] = TTLCache(ttl_seconds=60, clock=clock)
        cache.set("a", 1)

        clock.now += 59
        assert cache.get("a") == 1
        clock.now += 1
        assert cache.get("a") is None
        assert len(cache) == 0

    def test_per_entry_ttl(self) -> None:
        clock = FakeClock()
        cache: TTLCache[str, int] = TTLCache(ttl_seconds=60, clock=clock)
        cache.set("short", 1, ttl_seconds=5)
        cache.set("long", 2)

        clock.now += 10
        assert "short" not in cache
        assert "long" in cache

    def test_evicts_least_recently_used(self) -> None:
        cache: TTLCache[str, int] = TTLCache(ttl_seconds=60, max_entries=2, clock=FakeClock())
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")
        cache.set("c", 3)

        assert cache.get("a") == 1
        assert cache.get("b") is None
        assert cache.get("c") == 3

    def test_instances_are_independent(self) -> None:
        first: TTLCache[str, int] = TTLCache(ttl_seconds=60)
        second: TTLCache[str, int] = TTLCache(ttl_seconds=60)
        first.set("a", 1)
        assert second.get("a") is None

    def test_delete_and_clear(self) -> None:
        cache: TTLCache[str, int] = TTLCache(ttl_seconds=60)
        cache.set("a", 1)
        cache.set("b", 2)
        assert cache.delete("a") is True
        assert cache.delete("a") is False
        cache.clear()
        assert len(cache) == 0

    @pytest.mark.parametrize("kwargs", [{"ttl_seconds": 0}, {"ttl_seconds": 1, "max_entries": 0}])
    def test_rejects_bad_bounds(self, kwargs: dict) -> None:
        with pytest.raises(ValueError):
            TTLCache(**kwargs)


class TestClaimantCache:
    @pytest.mark.asyncio
    async def test_local_round_trip(self) -> None:
        cache = ClaimantCache()
        await cache.set_json("k", {"a": 1})
        assert await cache.get_json("k") == {"a": 1}
        assert await cache.get_json("missing") is None

    @pytest.mark.asyncio
    async def test_invalidate_claimant_local(self) -> None:
        cache = ClaimantCache()
        address = "0x" + "B" * 40
        await cache.set_json(cache.vaults_key(address), [])

        assert await cache.invalidate_claimant(address) == 1
        assert await cache.get_json(cache.vaults_key(address)) is None

    @pytest.mark.asyncio
    async def test_invalidate_claimant_redis(self) -> None:
        redis = AsyncMock()
        redis.delete.return_value = 2
        cache = ClaimantCache(redis=redis)
        address = "0x" + "b" * 40

        assert await cache.invalidate_claimant(address) == 2
        redis.delete.assert_awaited_once_with(
            f"user_vaults_{address}", f"user_portfolio:{address}"
        )

    @pytest.mark.asyncio
    async def test_redis_errors_degrade_to_miss(self) -> None:
        redis = AsyncMock()
        redis.get.side_effect = ConnectionError("redis down")
        cache = ClaimantCache(redis=redis)
        assert await cache.get_json("k") is None
