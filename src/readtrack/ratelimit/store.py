"""Counter store used for rate limiting, abuse history, and cache invalidation.

``RedisCounterStore`` is the shared store. ``MemoryCounterStore`` is a bounded
per-process stand-in with the same semantics minus cross-process sharing.
``FallbackCounterStore`` routes every call to Redis and degrades to the
memory store whenever Redis is missing or failing.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

KEY_PREFIX = "readtrack:"


@dataclass(frozen=True)
class CounterValue:
    """Result of an increment: the new count and milliseconds until the window resets."""

    count: int
    ttl_ms: int


class CounterStore(Protocol):
    """Atomic increment-with-expiry plus short-lived values and bounded lists, with read-only peeks."""

    async def incr(self, key: str, window_seconds: float | None = None) -> CounterValue: ...

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str, ttl_seconds: float) -> None: ...

    async def push_recent(self, key: str, value: str, max_len: int, ttl_seconds: float) -> list[str]: ...

    async def peek(self, key: str) -> CounterValue: ...

    async def recent(self, key: str) -> list[str]: ...


# ---------------------------------------------------------------------------
# Redis
# ---------------------------------------------------------------------------


class RedisCounterStore:
    """Counter store backed by the shared Redis instance."""

    def __init__(self, redis: Any) -> None:  # noqa: ANN401
        self.redis = redis

    async def incr(self, key: str, window_seconds: float | None = None) -> CounterValue:
        full_key = KEY_PREFIX + key
        pipe = self.redis.pipeline()
        pipe.incr(full_key)
        pipe.pttl(full_key)
        results: list[Any] = await pipe.execute()

        count = int(results[0])
        ttl_ms = int(results[1]) if results[1] is not None else -1
        if window_seconds is not None and ttl_ms < 0:
            ttl_ms = int(window_seconds * 1000)
            await self.redis.pexpire(full_key, ttl_ms)
        return CounterValue(count=count, ttl_ms=max(ttl_ms, 0))

    async def get(self, key: str) -> str | None:
        value = await self.redis.get(KEY_PREFIX + key)
        if value is None:
            return None
        return value if isinstance(value, str) else value.decode()

    async def set(self, key: str, value: str, ttl_seconds: float) -> None:
        await self.redis.set(KEY_PREFIX + key, value, px=int(ttl_seconds * 1000))

    async def push_recent(self, key: str, value: str, max_len: int, ttl_seconds: float) -> list[str]:
        full_key = KEY_PREFIX + key
        pipe = self.redis.pipeline()
        pipe.lpush(full_key, value)
        pipe.ltrim(full_key, 0, max_len - 1)
        pipe.pexpire(full_key, int(ttl_seconds * 1000))
        pipe.lrange(full_key, 0, -1)
        results: list[Any] = await pipe.execute()
        return [v if isinstance(v, str) else v.decode() for v in results[3]]

    async def peek(self, key: str) -> CounterValue:
        full_key = KEY_PREFIX + key
        pipe = self.redis.pipeline()
        pipe.get(full_key)
        pipe.pttl(full_key)
        results: list[Any] = await pipe.execute()
        if results[0] is None:
            return CounterValue(count=0, ttl_ms=0)
        return CounterValue(count=int(results[0]), ttl_ms=max(int(results[1] or 0), 0))

    async def recent(self, key: str) -> list[str]:
        values = await self.redis.lrange(KEY_PREFIX + key, 0, -1)
        return [v if isinstance(v, str) else v.decode() for v in values]


# ---------------------------------------------------------------------------
# In-process fallback
# ---------------------------------------------------------------------------


class MemoryCounterStore:
    """Bounded, self-evicting in-process counters and values.

    When a map is full, expired entries are evicted first, then the oldest
    10% by expiry. A ``threading.Lock`` guards every mutation.
    """

    EVICT_FRACTION = 0.1

    def __init__(
        self,
        max_counters: int = 10_000,
        max_values: int = 5_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_counters = max_counters
        self.max_values = max_values
        self._clock = clock
        self._lock = threading.Lock()
        # key -> (count, expires_at or None)
        self._counters: dict[str, tuple[int, float | None]] = {}
        # key -> (value, expires_at); insertion order is age order
        self._values: OrderedDict[str, tuple[Any, float]] = OrderedDict()

    def __len__(self) -> int:
        return len(self._counters) + len(self._values)

    @property
    def counter_count(self) -> int:
        return len(self._counters)

    @property
    def value_count(self) -> int:
        return len(self._values)

    async def incr(self, key: str, window_seconds: float | None = None) -> CounterValue:
        now = self._clock()
        with self._lock:
            record = self._counters.get(key)
            if record is None or (record[1] is not None and now >= record[1]):
                if key not in self._counters and len(self._counters) >= self.max_counters:
                    self._make_room_counters(now)
                expires_at = now + window_seconds if window_seconds is not None else None
                self._counters[key] = (1, expires_at)
                return CounterValue(count=1, ttl_ms=_ttl_ms(expires_at, now))

            count, expires_at = record
            self._counters[key] = (count + 1, expires_at)
            return CounterValue(count=count + 1, ttl_ms=_ttl_ms(expires_at, now))

    async def get(self, key: str) -> str | None:
        value = self._get_value(key)
        return value if value is None else str(value)

    async def set(self, key: str, value: str, ttl_seconds: float) -> None:
        self._set_value(key, value, ttl_seconds)

    async def push_recent(self, key: str, value: str, max_len: int, ttl_seconds: float) -> list[str]:
        with self._lock:
            now = self._clock()
            existing = self._values.get(key)
            items: list[str] = list(existing[0]) if existing and existing[1] > now else []
            items.insert(0, value)
            del items[max_len:]
            self._store_value(key, items, now + ttl_seconds, now)
            return list(items)

    async def peek(self, key: str) -> CounterValue:
        now = self._clock()
        with self._lock:
            record = self._counters.get(key)
            if record is None or (record[1] is not None and now >= record[1]):
                return CounterValue(count=0, ttl_ms=0)
            return CounterValue(count=record[0], ttl_ms=_ttl_ms(record[1], now))

    async def recent(self, key: str) -> list[str]:
        items = self._get_value(key)
        return list(items) if items else []

    def _get_value(self, key: str) -> Any:  # noqa: ANN401
        with self._lock:
            entry = self._values.get(key)
            if entry is None:
                return None
            if entry[1] <= self._clock():
                del self._values[key]
                return None
            return entry[0]

    def _set_value(self, key: str, value: Any, ttl_seconds: float) -> None:  # noqa: ANN401
        with self._lock:
            now = self._clock()
            self._store_value(key, value, now + ttl_seconds, now)

    def _store_value(self, key: str, value: Any, expires_at: float, now: float) -> None:  # noqa: ANN401
        # Caller holds the lock.
        if key in self._values:
            del self._values[key]
        elif len(self._values) >= self.max_values:
            self._make_room_values(now)
        self._values[key] = (value, expires_at)

    def _make_room_counters(self, now: float) -> None:
        expired = [k for k, (_, exp) in self._counters.items() if exp is not None and now >= exp]
        for k in expired:
            del self._counters[k]
        if len(self._counters) < self.max_counters:
            return
        n = max(1, int(self.max_counters * self.EVICT_FRACTION))
        oldest = sorted(
            self._counters.items(),
            key=lambda item: item[1][1] if item[1][1] is not None else float("inf"),
        )[:n]
        for k, _ in oldest:
            del self._counters[k]
        logger.warning("Fallback counter map full, evicted %d oldest counters", len(oldest))

    def _make_room_values(self, now: float) -> None:
        expired = [k for k, (_, exp) in self._values.items() if exp <= now]
        for k in expired:
            del self._values[k]
        if len(self._values) < self.max_values:
            return
        n = max(1, int(self.max_values * self.EVICT_FRACTION))
        for _ in range(n):
            self._values.popitem(last=False)
        logger.warning("Fallback value map full, evicted %d oldest values", n)

    def clear(self) -> None:
        with self._lock:
            self._counters.clear()
            self._values.clear()


def _ttl_ms(expires_at: float | None, now: float) -> int:
    if expires_at is None:
        return 0
    return max(0, int((expires_at - now) * 1000))


# ---------------------------------------------------------------------------
# Degrading wrapper
# ---------------------------------------------------------------------------


class FallbackCounterStore:
    """Use Redis when reachable, the memory store otherwise."""

    def __init__(
        self,
        primary: CounterStore | None,
        fallback: MemoryCounterStore | None = None,
    ) -> None:
        self.primary = primary
        self.fallback = fallback or MemoryCounterStore()

    async def _call(self, op: str, *args: Any) -> Any:  # noqa: ANN401
        if self.primary is not None:
            try:
                return await getattr(self.primary, op)(*args)
            except (RedisError, OSError) as e:
                logger.warning("Counter store %s failed, using in-process fallback: %s", op, e)
        return await getattr(self.fallback, op)(*args)

    async def incr(self, key: str, window_seconds: float | None = None) -> CounterValue:
        return await self._call("incr", key, window_seconds)

    async def get(self, key: str) -> str | None:
        return await self._call("get", key)

    async def set(self, key: str, value: str, ttl_seconds: float) -> None:
        await self._call("set", key, value, ttl_seconds)

    async def push_recent(self, key: str, value: str, max_len: int, ttl_seconds: float) -> list[str]:
        return await self._call("push_recent", key, value, max_len, ttl_seconds)

    async def peek(self, key: str) -> CounterValue:
        return await self._call("peek", key)

    async def recent(self, key: str) -> list[str]:
        return await self._call("recent", key)


# ---------------------------------------------------------------------------
# Deferred writes
# ---------------------------------------------------------------------------


class DeferredWrites:
    """Counter-store writes held back until the surrounding transaction commits.

    Abuse heuristics and the reward budget read their history up front and
    queue the updates here. The commit engine flushes the queue once the
    database commit succeeds and drops it on rollback, so a retried request
    is judged against the same history as the attempt that failed.
    """

    def __init__(self) -> None:
        self._ops: list[tuple[str, tuple[Any, ...]]] = []

    def __len__(self) -> int:
        return len(self._ops)

    def incr(self, key: str, window_seconds: float | None = None) -> None:
        self._ops.append(("incr", (key, window_seconds)))

    def set(self, key: str, value: str, ttl_seconds: float) -> None:
        self._ops.append(("set", (key, value, ttl_seconds)))

    def push_recent(self, key: str, value: str, max_len: int, ttl_seconds: float) -> None:
        self._ops.append(("push_recent", (key, value, max_len, ttl_seconds)))

    async def flush(self, store: CounterStore) -> None:
        """Apply queued writes in order. The queue is empty afterwards even if a write fails."""
        ops, self._ops = self._ops, []
        for op, args in ops:
            await getattr(store, op)(*args)
