"""Redis connection pool and arq job queue pool.

Both are optional at runtime: counters fall back to process memory and
deferred achievement retries are dropped with a warning when absent.
"""

import redis.asyncio as redis
from arq import create_pool
from arq.connections import ArqRedis, RedisSettings

_pool: redis.Redis | None = None
_arq_pool: ArqRedis | None = None


async def init_redis(url: str) -> None:
    """Initialize the Redis connection pool."""
    global _pool  # noqa: PLW0603
    _pool = redis.from_url(  # type: ignore[no-untyped-call]
        url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=50,
    )


async def close_redis() -> None:
    """Close the Redis connection pool."""
    global _pool  # noqa: PLW0603
    if _pool:
        await _pool.aclose()
        _pool = None


def get_redis_or_none() -> redis.Redis | None:
    """Get the Redis client if initialized, else None (callers degrade)."""
    return _pool


async def init_arq(url: str) -> None:
    """Initialize the arq pool used to enqueue deferred jobs."""
    global _arq_pool  # noqa: PLW0603
    _arq_pool = await create_pool(RedisSettings.from_dsn(url))


async def close_arq() -> None:
    """Close the arq pool."""
    global _arq_pool  # noqa: PLW0603
    if _arq_pool:
        await _arq_pool.aclose()
        _arq_pool = None


def get_arq() -> ArqRedis | None:
    """Get the arq pool, or None when the queue is unavailable."""
    return _arq_pool
