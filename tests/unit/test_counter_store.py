"""Counter store tests: bounded in-process fallback and Redis degradation."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from readtrack.ratelimit.store import (
    KEY_PREFIX,
    CounterValue,
    DeferredWrites,
    FallbackCounterStore,
    MemoryCounterStore,
    RedisCounterStore,
)


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class TestMemoryCounters:
    @pytest.mark.asyncio
    async def test_incr_counts_within_window(self):
        store = MemoryCounterStore(clock=FakeClock())
        assert (await store.incr("a", 60)).count == 1
        assert (await store.incr("a", 60)).count == 2

    @pytest.mark.asyncio
    async def test_window_expiry_restarts_count(self):
        clock = FakeClock()
        store = MemoryCounterStore(clock=clock)
        await store.incr("a", 5)
        await store.incr("a", 5)
        clock.advance(5)
        value = await store.incr("a", 5)
        assert value.count == 1
        assert value.ttl_ms == 5000

    @pytest.mark.asyncio
    async def test_ttl_counts_down(self):
        clock = FakeClock()
        store = MemoryCounterStore(clock=clock)
        await store.incr("a", 10)
        clock.advance(4)
        assert (await store.incr("a", 10)).ttl_ms == 6000

    @pytest.mark.asyncio
    async def test_full_map_evicts_expired_first(self):
        clock = FakeClock()
        store = MemoryCounterStore(max_counters=10, clock=clock)
        for i in range(5):
            await store.incr(f"short:{i}", 1)
        for i in range(5):
            await store.incr(f"long:{i}", 100)
        clock.advance(2)

        await store.incr("new", 100)
        assert store.counter_count == 6
        assert (await store.incr("long:0", 100)).count == 2

    @pytest.mark.asyncio
    async def test_full_map_evicts_oldest_tenth(self):
        clock = FakeClock()
        store = MemoryCounterStore(max_counters=20, clock=clock)
        for i in range(20):
            await store.incr(f"k:{i}", 100 + i)

        await store.incr("new", 500)
        # Two oldest (earliest expiry) evicted, one added
        assert store.counter_count == 19
        assert (await store.incr("k:0", 100)).count == 1
        assert (await store.incr("k:19", 100)).count == 2


class TestMemoryValues:
    @pytest.mark.asyncio
    async def test_value_expires(self):
        clock = FakeClock()
        store = MemoryCounterStore(clock=clock)
        await store.set("v", "5.0", 60)
        assert await store.get("v") == "5.0"
        clock.advance(60)
        assert await store.get("v") is None

    @pytest.mark.asyncio
    async def test_value_map_bounded(self):
        store = MemoryCounterStore(max_values=10, clock=FakeClock())
        for i in range(25):
            await store.set(f"v:{i}", str(i), 60)
        assert store.value_count <= 10
        assert await store.get("v:24") == "24"
        assert await store.get("v:0") is None

    @pytest.mark.asyncio
    async def test_push_recent_keeps_newest_first(self):
        store = MemoryCounterStore(clock=FakeClock())
        for i in range(7):
            items = await store.push_recent("list", str(i), 5, 60)
        assert items == ["6", "5", "4", "3", "2"]

    @pytest.mark.asyncio
    async def test_peek_does_not_count(self):
        clock = FakeClock()
        store = MemoryCounterStore(clock=clock)
        assert await store.peek("a") == CounterValue(count=0, ttl_ms=0)
        await store.incr("a", 5)
        assert (await store.peek("a")).count == 1
        assert (await store.peek("a")).count == 1
        clock.advance(5)
        assert (await store.peek("a")).count == 0

    @pytest.mark.asyncio
    async def test_recent_reads_list(self):
        store = MemoryCounterStore(clock=FakeClock())
        assert await store.recent("list") == []
        await store.push_recent("list", "a", 5, 60)
        await store.push_recent("list", "b", 5, 60)
        assert await store.recent("list") == ["b", "a"]


class TestRedisStore:
    @pytest.mark.asyncio
    async def test_incr_sets_expiry_on_new_key(self):
        redis = MagicMock()
        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=[1, -1])
        redis.pipeline.return_value = pipe
        redis.pexpire = AsyncMock()

        value = await RedisCounterStore(redis).incr("rl:x", 5)

        assert value.count == 1
        assert value.ttl_ms == 5000
        redis.pexpire.assert_awaited_once_with(KEY_PREFIX + "rl:x", 5000)

    @pytest.mark.asyncio
    async def test_incr_keeps_existing_ttl(self):
        redis = MagicMock()
        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=[3, 1200])
        redis.pipeline.return_value = pipe
        redis.pexpire = AsyncMock()

        value = await RedisCounterStore(redis).incr("rl:x", 5)

        assert value == value.__class__(count=3, ttl_ms=1200)
        redis.pexpire.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_peek_missing_key_is_zero(self):
        redis = MagicMock()
        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=[None, -2])
        redis.pipeline.return_value = pipe

        assert await RedisCounterStore(redis).peek("rl:x") == CounterValue(count=0, ttl_ms=0)

    @pytest.mark.asyncio
    async def test_peek_reads_count_and_ttl(self):
        redis = MagicMock()
        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=["4", 2500])
        redis.pipeline.return_value = pipe

        assert await RedisCounterStore(redis).peek("rl:x") == CounterValue(count=4, ttl_ms=2500)
        pipe.get.assert_called_once_with(KEY_PREFIX + "rl:x")


class TestFallback:
    @pytest.mark.asyncio
    async def test_no_primary_uses_memory(self):
        store = FallbackCounterStore(None)
        assert (await store.incr("a", 60)).count == 1
        assert (await store.incr("a", 60)).count == 2

    @pytest.mark.asyncio
    async def test_redis_failure_degrades_to_memory(self):
        primary = MagicMock()
        primary.incr = AsyncMock(side_effect=RedisConnectionError("down"))
        primary.get = AsyncMock(side_effect=OSError("unreachable"))
        fallback = MemoryCounterStore()
        store = FallbackCounterStore(primary, fallback)

        assert (await store.incr("a", 60)).count == 1
        assert (await store.incr("a", 60)).count == 2
        assert await store.get("missing") is None
        assert fallback.counter_count == 1

    @pytest.mark.asyncio
    async def test_reads_degrade_to_memory(self):
        primary = MagicMock()
        primary.peek = AsyncMock(side_effect=RedisConnectionError("down"))
        primary.recent = AsyncMock(side_effect=OSError("unreachable"))
        fallback = MemoryCounterStore()
        await fallback.incr("a", 60)
        store = FallbackCounterStore(primary, fallback)

        assert (await store.peek("a")).count == 1
        assert await store.recent("list") == []

    @pytest.mark.asyncio
    async def test_healthy_primary_is_used(self):
        primary = MemoryCounterStore()
        fallback = MemoryCounterStore()
        store = FallbackCounterStore(primary, fallback)
        await store.set("k", "v", 60)
        assert await primary.get("k") == "v"
        assert await fallback.get("k") is None


class TestDeferredWrites:
    @pytest.mark.asyncio
    async def test_nothing_lands_before_flush(self):
        store = MemoryCounterStore()
        writes = DeferredWrites()
        writes.incr("c", 60)
        writes.set("k", "v", 60)
        writes.push_recent("list", "x", 5, 60)

        assert len(writes) == 3
        assert (await store.peek("c")).count == 0
        assert await store.get("k") is None

        await writes.flush(store)

        assert len(writes) == 0
        assert (await store.peek("c")).count == 1
        assert await store.get("k") == "v"
        assert await store.recent("list") == ["x"]

    @pytest.mark.asyncio
    async def test_writes_apply_in_order(self):
        store = MemoryCounterStore()
        writes = DeferredWrites()
        writes.set("k", "first", 60)
        writes.set("k", "second", 60)
        await writes.flush(store)
        assert await store.get("k") == "second"
