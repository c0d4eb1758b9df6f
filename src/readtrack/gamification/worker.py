"""Reward arq worker: deferred achievement retries and the daily trust recovery.

Run with ``arq readtrack.gamification.worker.WorkerSettings``.
"""

from __future__ import annotations

import logging
import uuid

from arq import cron
from arq.connections import RedisSettings

from readtrack.config import get_settings
from readtrack.database import close_db, get_session_factory, init_db
from readtrack.gamification.achievement_service import TRIGGER_TO_CRITERIA, evaluate_achievements
from readtrack.gamification.trust_service import process_daily_decay

logger = logging.getLogger(__name__)


async def worker_startup(ctx: dict) -> None:  # type: ignore[type-arg]
    """Initialize DB connections on worker startup."""
    settings = get_settings()
    await init_db(settings.database_url, pool_size=settings.db_pool_size, max_overflow=settings.db_max_overflow)
    ctx["session_factory"] = get_session_factory()
    logger.info("Reward worker started")


async def worker_shutdown(ctx: dict) -> None:  # type: ignore[type-arg]
    """Clean up on worker shutdown."""
    await close_db()
    logger.info("Reward worker shut down")


async def retry_achievement_check(ctx: dict, payload: dict) -> int:  # type: ignore[type-arg]
    """Re-run achievement evaluation after a failed in-transaction check.

    Payload: ``{user_id, trigger, entry_id, timestamp}``. Idempotent: unlocks
    are insert-if-absent, so a retry after success grants nothing.
    """
    user_id = uuid.UUID(payload["user_id"])
    first = payload.get("trigger")
    # The failed evaluation may have covered several triggers; check them all.
    triggers = [first] if first in TRIGGER_TO_CRITERIA else []
    triggers += [t for t in TRIGGER_TO_CRITERIA if t not in triggers]

    factory = ctx["session_factory"]
    unlocked = []
    async with factory() as db:
        for trigger in triggers:
            unlocked += await evaluate_achievements(db, user_id, trigger)
        await db.commit()

    logger.info(
        "Achievement retry for user %s (entry %s): %d unlocked",
        user_id, payload.get("entry_id"), len(unlocked),
    )
    return len(unlocked)


async def daily_trust_decay(ctx: dict) -> int:  # type: ignore[type-arg]
    """Scheduled task: recover trust scores every day at 00:05 UTC."""
    factory = ctx["session_factory"]
    async with factory() as db:
        return await process_daily_decay(db)


class WorkerSettings:
    """arq worker settings for reward jobs."""

    functions = [retry_achievement_check]
    cron_jobs = [cron(daily_trust_decay, hour=0, minute=5, unique=True)]
    on_startup = worker_startup
    on_shutdown = worker_shutdown
    redis_settings = RedisSettings.from_dsn(get_settings().arq_redis_url)
    max_jobs = 10
    max_tries = 5
