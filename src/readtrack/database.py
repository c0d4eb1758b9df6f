"""Async SQLAlchemy engine and session management.

Progress commits hold row locks for the whole transaction, so the pool is
sized for concurrent commits plus the read endpoints. SQLite URLs (tests,
local tooling) get the default pool without asyncpg connect args.
"""

from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def build_engine(url: str, *, pool_size: int = 20, max_overflow: int = 10) -> AsyncEngine:
    """Create an engine with pool options suited to the URL's dialect."""
    if url.startswith("sqlite"):
        return create_async_engine(url)
    return create_async_engine(
        url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
        # pgbouncer in transaction mode cannot share prepared statements
        connect_args={"statement_cache_size": 0},
    )


async def init_db(url: str, *, pool_size: int = 20, max_overflow: int = 10) -> None:
    global _engine, _session_factory  # noqa: PLW0603
    _engine = build_engine(url, pool_size=pool_size, max_overflow=max_overflow)
    _session_factory = async_sessionmaker(_engine, class_=AsyncSession, expire_on_commit=False)


async def close_db() -> None:
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Session factory shared by the commit engine, health checks and workers."""
    if _session_factory is None:
        msg = "Database not initialized. Call init_db() first."
        raise RuntimeError(msg)
    return _session_factory


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield a request-scoped session. Handlers commit explicitly."""
    async with get_session_factory()() as session:
        yield session
