"""
Tests for the OAuth state and session TTL stores.
"""

import asyncio
from unittest.mock import AsyncMock, Mock, patch

import pytest

from social.graze.handles.app.metrics import NoOpMetricsClient
from social.graze.handles.store.ttl import (
    MemoryTTLStore,
    RedisTTLStore,
    normalize_redis_string,
    ttl_sweep_task,
)


class TestMemoryTTLStore:
    """Expiry semantics of the in-process store."""

    async def test_set_then_get(self, fake_clock):
        store = MemoryTTLStore("state", 3600, clock=fake_clock)
        await store.set("k", {"v": 1})
        assert await store.get("k") == {"v": 1}

    async def test_set_overwrites_and_restamps(self, fake_clock):
        store = MemoryTTLStore("state", 10, clock=fake_clock)
        await store.set("k", "first")
        fake_clock.advance(8)
        await store.set("k", "second")
        fake_clock.advance(8)
        assert await store.get("k") == "second"

    async def test_get_at_exact_ttl_is_still_live(self, fake_clock):
        store = MemoryTTLStore("state", 10, clock=fake_clock)
        await store.set("k", "v")
        fake_clock.advance(10)
        assert await store.get("k") == "v"

    async def test_expired_get_returns_none_and_evicts(self, fake_clock):
        store = MemoryTTLStore("state", 10, clock=fake_clock)
        await store.set("k", "v")
        fake_clock.advance(11)

        assert len(store) == 1
        assert await store.get("k") is None
        assert len(store) == 0

    async def test_get_missing(self, fake_clock):
        store = MemoryTTLStore("state", 10, clock=fake_clock)
        assert await store.get("missing") is None

    async def test_delete_is_idempotent(self, fake_clock):
        store = MemoryTTLStore("state", 10, clock=fake_clock)
        await store.set("k", "v")
        await store.delete("k")
        await store.delete("k")
        assert await store.get("k") is None
        assert len(store) == 0

    async def test_pop_removes_and_returns(self, fake_clock):
        store = MemoryTTLStore("state", 10, clock=fake_clock)
        await store.set("k", "v")

        assert await store.pop("k") == "v"
        assert await store.pop("k") is None
        assert len(store) == 0

    async def test_pop_expired(self, fake_clock):
        store = MemoryTTLStore("state", 10, clock=fake_clock)
        await store.set("k", "v")
        fake_clock.advance(11)

        assert await store.pop("k") is None
        assert len(store) == 0

    async def test_concurrent_pops_yield_one_value(self, fake_clock):
        store = MemoryTTLStore("state", 10, clock=fake_clock)
        await store.set("k", "v")

        results = await asyncio.gather(*(store.pop("k") for _ in range(10)))
        assert results.count("v") == 1

    async def test_sweep_removes_only_expired(self, fake_clock):
        store = MemoryTTLStore("state", 10, clock=fake_clock)
        await store.set("old", 1)
        fake_clock.advance(6)
        await store.set("new", 2)
        fake_clock.advance(6)

        assert await store.sweep() == 1
        assert len(store) == 1
        assert await store.get("new") == 2

    async def test_concurrent_writers_and_readers(self, fake_clock):
        store = MemoryTTLStore("state", 10, clock=fake_clock)

        async def writer(i: int):
            await store.set(f"k{i}", i)
            return await store.get(f"k{i}")

        results = await asyncio.gather(*(writer(i) for i in range(50)), store.sweep())
        assert results[:50] == list(range(50))
        assert len(store) == 50


class TestRedisTTLStore:
    """The Redis store delegates expiry to Redis."""

    async def test_set_get_delete(self, fake_redis_client):
        store = RedisTTLStore("state", 3600, fake_redis_client)
        await store.set("k", '{"did": "did:plc:AAA"}')
        assert await store.get("k") == '{"did": "did:plc:AAA"}'

        await store.delete("k")
        assert await store.get("k") is None

    async def test_pop(self, fake_redis_client):
        store = RedisTTLStore("state", 3600, fake_redis_client)
        await store.set("k", "v")

        assert await store.pop("k") == "v"
        assert await store.pop("k") is None
        assert await fake_redis_client.exists("ttl_store:state:k") == 0

    async def test_keys_are_namespaced_and_expire(self, fake_redis_client):
        store = RedisTTLStore("oauth_state", 60, fake_redis_client)
        await store.set("abc", "v")

        ttl = await fake_redis_client.ttl("ttl_store:oauth_state:abc")
        assert 0 < ttl <= 60

    async def test_fractional_ttl_rounds_up(self, fake_redis_client):
        store = RedisTTLStore("oauth_state", 0.2, fake_redis_client)
        await store.set("abc", "v")
        assert await fake_redis_client.ttl("ttl_store:oauth_state:abc") == 1

    async def test_sweep_is_noop(self, fake_redis_client):
        store = RedisTTLStore("state", 60, fake_redis_client)
        await store.set("k", "v")
        assert await store.sweep() == 0
        assert await store.get("k") == "v"


class TestNormalizeRedisString:
    def test_bytes(self):
        assert normalize_redis_string(b"abc") == "abc"

    def test_str(self):
        assert normalize_redis_string("abc") == "abc"


class TestSweepTask:
    """The background sweep runs once per TTL period."""

    async def test_sleeps_ttl_then_sweeps(self, fake_clock):
        store = MemoryTTLStore("state", 30, clock=fake_clock)
        await store.set("k", "v")
        fake_clock.advance(31)

        metrics_client = Mock(spec=NoOpMetricsClient)
        sleep = AsyncMock(side_effect=[None, asyncio.CancelledError()])

        with patch("social.graze.handles.store.ttl.asyncio.sleep", sleep):
            with pytest.raises(asyncio.CancelledError):
                await ttl_sweep_task(store, metrics_client)

        sleep.assert_any_await(30)
        assert len(store) == 0
        metrics_client.increment.assert_called_once_with(
            "handles.task.ttl_sweep.removed", 1, tag_dict={"store": "state"}
        )

    async def test_sweep_failure_keeps_running(self):
        store = Mock()
        store.name = "state"
        store.ttl = 5
        store.sweep = AsyncMock(side_effect=[RuntimeError("boom"), 0])
        sleep = AsyncMock(side_effect=[None, None, asyncio.CancelledError()])

        with patch("social.graze.handles.store.ttl.asyncio.sleep", sleep), patch(
            "social.graze.handles.store.ttl.sentry_sdk.capture_exception"
        ) as capture_exception:
            with pytest.raises(asyncio.CancelledError):
                await ttl_sweep_task(store, NoOpMetricsClient())

        assert store.sweep.await_count == 2
        capture_exception.assert_called_once()
