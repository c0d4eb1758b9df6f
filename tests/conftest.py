"""Shared test fixtures.

Every test gets its own file-backed SQLite database, an in-process counter
store and a mocked arq pool, so the suite runs without PostgreSQL or Redis.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import jwt
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from readtrack.config import get_settings
from readtrack.database import build_engine, get_session
from readtrack.db.base import Base
from readtrack.db.models import Chapter, LibraryEntry, Series, User
from readtrack.gamification.seed import seed_achievements
from readtrack.main import create_app
from readtrack.progress.engine import ProgressCommitEngine
from readtrack.ratelimit.limiter import (
    PROGRESS_MINUTE_BUDGET,
    REWARD_BURST_BUDGET,
    REWARD_MINUTE_BUDGET,
    Budget,
    RateLimiter,
)
from readtrack.ratelimit.store import MemoryCounterStore

CHAPTERS_IN_SERIES = 60
PAGES_PER_CHAPTER = 20


@dataclass
class World:
    """A reader with one library entry on a 60-chapter series, plus a second reader."""

    user_id: uuid.UUID
    other_user_id: uuid.UUID
    series_id: uuid.UUID
    entry_id: uuid.UUID
    other_entry_id: uuid.UUID
    chapter_ids: dict[float, uuid.UUID] = field(default_factory=dict)


def make_token(user_id: uuid.UUID, *, is_admin: bool = False, token_type: str = "access") -> str:
    """Sign an access token the way the account service does."""
    settings = get_settings()
    payload = {
        "sub": str(user_id),
        "type": token_type,
        "is_admin": is_admin,
        "exp": datetime.now(timezone.utc) + timedelta(hours=1),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def auth_headers(user_id: uuid.UUID, *, is_admin: bool = False) -> dict[str, str]:
    return {"Authorization": f"Bearer {make_token(user_id, is_admin=is_admin)}"}


@pytest_asyncio.fixture
async def db_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """Fresh SQLite database with the full schema."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'readtrack.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Direct database session for setup and assertions."""
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def world(session_factory) -> World:
    """Seed achievements, two users, a series with chapters 1..60 and library entries."""
    async with session_factory() as db:
        await seed_achievements(db)

        reader = User(username="reader")
        other = User(username="other-reader")
        series = Series(title="The Long Road")
        db.add_all([reader, other, series])
        await db.flush()

        chapter_ids = {}
        for n in range(1, CHAPTERS_IN_SERIES + 1):
            chapter = Chapter(
                series_id=series.id,
                chapter_number=float(n),
                chapter_slug=f"chapter-{n}",
                page_count=PAGES_PER_CHAPTER,
            )
            db.add(chapter)
            await db.flush()
            chapter_ids[float(n)] = chapter.id

        entry = LibraryEntry(user_id=reader.id, series_id=series.id)
        other_entry = LibraryEntry(user_id=other.id, series_id=series.id)
        db.add_all([entry, other_entry])
        await db.commit()

        return World(
            user_id=reader.id,
            other_user_id=other.id,
            series_id=series.id,
            entry_id=entry.id,
            other_entry_id=other_entry.id,
            chapter_ids=chapter_ids,
        )


@pytest.fixture
def counter_store() -> MemoryCounterStore:
    return MemoryCounterStore()


@pytest.fixture
def arq_pool() -> AsyncMock:
    """Stand-in for the arq pool; records enqueued jobs."""
    pool = AsyncMock()
    pool.enqueue_job = AsyncMock(return_value="job-1")
    return pool


@pytest.fixture
def generous_limiter(counter_store) -> RateLimiter:
    """Limiter whose reward budget never runs out within a test."""
    return RateLimiter(
        counter_store,
        request_budgets=(Budget(PROGRESS_MINUTE_BUDGET, 1000, 60),),
        reward_budgets=(
            Budget(REWARD_MINUTE_BUDGET, 1000, 60),
            Budget(REWARD_BURST_BUDGET, 1000, 10),
        ),
    )


@pytest_asyncio.fixture
async def engine(session_factory, counter_store, generous_limiter, arq_pool) -> AsyncGenerator[ProgressCommitEngine, None]:
    """Commit engine wired to the test database, memory store and mocked queue."""
    commit_engine = ProgressCommitEngine(
        session_factory,
        counter_store,
        generous_limiter,
        arq=arq_pool,
        achievement_retry_delay_seconds=5,
    )
    yield commit_engine
    await commit_engine.effects.drain()


@pytest_asyncio.fixture
async def client(session_factory, counter_store, arq_pool) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client against the app with production budgets and the test database."""
    app = create_app()
    commit_engine = ProgressCommitEngine.from_settings(
        get_settings(), session_factory, counter_store, arq=arq_pool,
    )
    app.state.counter_store = counter_store
    app.state.progress_engine = commit_engine

    async def _session() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = _session

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    await commit_engine.effects.drain()
