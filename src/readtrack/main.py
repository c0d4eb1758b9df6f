"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from readtrack.config import get_settings
from readtrack.database import close_db, get_session_factory, init_db
from readtrack.gamification.router import router as rewards_router
from readtrack.gamification.seed import seed_achievements
from readtrack.health import router as health_router
from readtrack.middleware import setup_middleware
from readtrack.progress.engine import ProgressCommitEngine
from readtrack.progress.router import router as progress_router
from readtrack.ratelimit.store import FallbackCounterStore, MemoryCounterStore, RedisCounterStore
from readtrack.redis_client import (
    close_arq,
    close_redis,
    get_arq,
    get_redis_or_none,
    init_arq,
    init_redis,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup and shutdown lifecycle."""
    settings = get_settings()
    await init_db(settings.database_url, pool_size=settings.db_pool_size, max_overflow=settings.db_max_overflow)
    await init_redis(settings.redis_url)
    try:
        await init_arq(settings.arq_redis_url)
    except (RedisError, OSError):
        logger.warning("Job queue unavailable, achievement retries will be dropped", exc_info=True)

    # Seed achievement definitions (idempotent)
    factory = get_session_factory()
    try:
        async with factory() as db:
            await seed_achievements(db)
    except SQLAlchemyError:
        logger.warning("Achievement seeding failed (tables may not exist yet)", exc_info=True)

    redis = get_redis_or_none()
    store = FallbackCounterStore(
        RedisCounterStore(redis) if redis is not None else None,
        MemoryCounterStore(settings.fallback_max_counters, settings.fallback_max_values),
    )
    engine = ProgressCommitEngine.from_settings(settings, factory, store, redis=redis, arq=get_arq())
    app.state.counter_store = store
    app.state.progress_engine = engine

    yield

    await engine.effects.drain()
    await close_arq()
    await close_db()
    await close_redis()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="ReadTrack Progress API",
        description="Reading progress, rewards and anti-abuse integrity engine",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    setup_middleware(app, settings)
    app.include_router(health_router, tags=["Health"])
    app.include_router(progress_router)
    app.include_router(rewards_router)

    return app


app = create_app()
