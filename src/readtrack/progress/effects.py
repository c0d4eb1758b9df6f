"""Best-effort side effects that run after a progress commit.

Nothing here may fail a request: every effect runs as a tracked task whose
exception is logged and dropped.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Coroutine
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from readtrack.db.models import ReadTelemetry

logger = logging.getLogger(__name__)

FEED_VERSION_KEY = "feed:v:{user_id}"


class BackgroundEffects:
    """Fire-and-forget task set. Holds task references until they finish."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(self, name: str, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._done)
        return task

    def _done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Background effect %s failed: %r", task.get_name(), exc)

    async def drain(self) -> None:
        """Wait for every pending effect (shutdown and tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


async def invalidate_feed(redis: Any, user_id: uuid.UUID) -> None:  # noqa: ANN401
    """Bump the user's feed version so cached feed pages are ignored."""
    await redis.incr(FEED_VERSION_KEY.format(user_id=user_id))


async def record_telemetry(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    user_id: uuid.UUID,
    series_id: uuid.UUID,
    chapter_number: float,
    read_duration_seconds: int,
    page_count: int | None,
    device_id: str | None,
    flagged: bool,
) -> None:
    async with session_factory() as db:
        db.add(ReadTelemetry(
            user_id=user_id,
            series_id=series_id,
            chapter_number=chapter_number,
            read_duration_seconds=read_duration_seconds,
            page_count=page_count,
            device_id=device_id,
            flagged=flagged,
            created_at=datetime.now(timezone.utc),
        ))
        await db.commit()


async def enqueue_achievement_retry(arq: Any, payload: dict, delay_seconds: int) -> None:  # noqa: ANN401
    job = await arq.enqueue_job(
        "retry_achievement_check",
        payload,
        _defer_by=timedelta(seconds=delay_seconds),
    )
    logger.info("Scheduled achievement retry for user %s (job=%s)", payload.get("user_id"), job)
