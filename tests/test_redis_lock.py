"""
Tests for the sweep and per-subscriber Redis locks.
"""

import asyncio

import pytest
import redis
from fakeredis import aioredis as fake_aioredis

from subscription_lifecycle.core import redis_lock
from subscription_lifecycle.core.config import settings
from subscription_lifecycle.core.exceptions import InvalidStateError
from subscription_lifecycle.core.redis_lock import (
    blocking_subscription_lock,
    distributed_lock,
    subscription_lock,
)


@pytest.fixture
def shared_redis(monkeypatch):
    """One in-memory Redis shared by every coroutine in the test"""
    client = fake_aioredis.FakeRedis(decode_responses=True)
    monkeypatch.setattr(redis_lock, "get_async_redis_client", lambda: client)
    return client


class TestSubscriptionLock:

    @pytest.mark.asyncio
    async def test_acquires_and_releases(self, fake_async_redis):
        async with subscription_lock("subscriber-1"):
            pass

        assert fake_async_redis.lock.call_args.args[0] == "subscription_lock:subscriber-1"
        fake_async_redis.lock.return_value.release.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_nested_acquire_is_reentrant(self, fake_async_redis):
        async with subscription_lock("subscriber-1"):
            async with subscription_lock("subscriber-1"):
                pass

        assert fake_async_redis.lock.call_count == 1

    @pytest.mark.asyncio
    async def test_busy_lock_raises(self, fake_async_redis):
        fake_async_redis.lock.return_value.acquire.return_value = False

        with pytest.raises(InvalidStateError) as exc_info:
            async with subscription_lock("subscriber-1"):
                pass

        assert exc_info.value.code == "subscription_busy"

    @pytest.mark.asyncio
    async def test_redis_outage_fails_open(self, fake_async_redis):
        fake_async_redis.lock.side_effect = redis.exceptions.ConnectionError("refused")
        ran = []

        async with subscription_lock("subscriber-1"):
            ran.append(True)

        assert ran == [True]


class TestSubscriptionLockContention:

    @pytest.mark.asyncio
    async def test_overlapping_changes_run_one_after_another(self, shared_redis, monkeypatch):
        monkeypatch.setattr(settings, "SUBSCRIPTION_LOCK_BLOCKING_SECONDS", 2)
        events = []

        async def holder():
            async with subscription_lock("subscriber-1"):
                events.append("holder acquired")
                await asyncio.sleep(0.2)
                events.append("holder done")

        async def waiter():
            await asyncio.sleep(0.05)
            async with subscription_lock("subscriber-1"):
                events.append("waiter acquired")

        await asyncio.gather(holder(), waiter())

        assert events == ["holder acquired", "holder done", "waiter acquired"]
        assert await shared_redis.get("subscription_lock:subscriber-1") is None

    @pytest.mark.asyncio
    async def test_waiter_gives_up_while_holder_keeps_running(self, shared_redis, monkeypatch):
        monkeypatch.setattr(settings, "SUBSCRIPTION_LOCK_BLOCKING_SECONDS", 0.1)
        events = []

        async def holder():
            async with subscription_lock("subscriber-1"):
                for _ in range(5):
                    await asyncio.sleep(0.05)
                    events.append("holder tick")

        async def waiter():
            await asyncio.sleep(0.01)
            async with subscription_lock("subscriber-1"):
                events.append("waiter acquired")

        results = await asyncio.gather(holder(), waiter(), return_exceptions=True)

        assert results[0] is None
        assert isinstance(results[1], InvalidStateError)
        assert results[1].code == "subscription_busy"
        assert events == ["holder tick"] * 5

    @pytest.mark.asyncio
    async def test_different_subscribers_do_not_wait(self, shared_redis):
        events = []

        async def change(subscriber_id):
            async with subscription_lock(subscriber_id):
                events.append(f"{subscriber_id} acquired")
                await asyncio.sleep(0.1)
                events.append(f"{subscriber_id} done")

        await asyncio.gather(change("subscriber-1"), change("subscriber-2"))

        assert events[:2] == ["subscriber-1 acquired", "subscriber-2 acquired"]


class TestBlockingSubscriptionLock:

    def test_acquires_and_releases(self, fake_redis):
        with blocking_subscription_lock("subscriber-1"):
            pass

        assert fake_redis.lock.call_args.args[0] == "subscription_lock:subscriber-1"
        fake_redis.lock.return_value.release.assert_called_once()

    def test_busy_lock_raises(self, fake_redis):
        fake_redis.lock.return_value.acquire.return_value = False

        with pytest.raises(InvalidStateError) as exc_info:
            with blocking_subscription_lock("subscriber-1"):
                pass

        assert exc_info.value.code == "subscription_busy"

    @pytest.mark.asyncio
    async def test_passes_through_inside_async_lock(self, fake_redis, fake_async_redis):
        async with subscription_lock("subscriber-1"):
            with blocking_subscription_lock("subscriber-1"):
                pass

        fake_redis.lock.assert_not_called()


class TestDistributedLock:

    def test_yields_false_when_held_elsewhere(self, fake_redis):
        fake_redis.lock.return_value.acquire.return_value = False

        with distributed_lock("process_automatic_resumes") as acquired:
            assert acquired is False

        fake_redis.lock.return_value.release.assert_not_called()

    def test_release_error_is_not_raised(self, fake_redis):
        fake_redis.lock.return_value.release.side_effect = redis.exceptions.LockError("expired")

        with distributed_lock("process_period_renewals") as acquired:
            assert acquired is True
