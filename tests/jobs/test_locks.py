"""Tests for job locks."""

from unittest.mock import AsyncMock

import pytest

from vesting_ledger.errors import JobLockedError
from vesting_ledger.jobs.locks import LOCK_KEY_PREFIX, JobLock, JobLocks


class TestLocalLocks:
    @pytest.mark.asyncio
    async def test_second_holder_is_refused(self) -> None:
        locks = JobLocks()
        async with locks.get("reconcile").hold():
            with pytest.raises(JobLockedError):
                async with locks.get("reconcile").hold():
                    pass

    @pytest.mark.asyncio
    async def test_released_after_block(self) -> None:
        locks = JobLocks()
        async with locks.get("reconcile").hold():
            pass
        async with locks.get("reconcile").hold():
            pass

    @pytest.mark.asyncio
    async def test_released_on_error(self) -> None:
        locks = JobLocks()
        with pytest.raises(RuntimeError):
            async with locks.get("reconcile").hold():
                raise RuntimeError("boom")
        assert await locks.get("reconcile").acquire() is True

    @pytest.mark.asyncio
    async def test_different_names_do_not_conflict(self) -> None:
        locks = JobLocks()
        async with locks.get("a").hold():
            async with locks.get("b").hold():
                pass


class TestRedisLock:
    @pytest.mark.asyncio
    async def test_acquire_uses_set_nx_with_expiry(self) -> None:
        redis = AsyncMock()
        redis.set.return_value = True
        redis.eval.return_value = 1
        lock = JobLock("reconcile", redis=redis, ttl_seconds=30)

        async with lock.hold():
            pass

        key = f"{LOCK_KEY_PREFIX}reconcile"
        _, kwargs = redis.set.call_args
        assert redis.set.call_args.args[0] == key
        assert kwargs == {"nx": True, "px": 30_000}
        token = redis.set.call_args.args[1]
        assert redis.eval.call_args.args[1:] == (1, key, token)

    @pytest.mark.asyncio
    async def test_held_elsewhere(self) -> None:
        redis = AsyncMock()
        redis.set.return_value = None
        lock = JobLock("reconcile", redis=redis)

        with pytest.raises(JobLockedError):
            async with lock.hold():
                pass
        redis.eval.assert_not_called()
