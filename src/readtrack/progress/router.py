"""Progress API endpoints."""

from __future__ import annotations

import logging
import uuid

from fastapi import APIRouter, Depends, Response
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from readtrack.auth.dependencies import CurrentUser, get_admin_user, get_current_user
from readtrack.dependencies import get_db, get_progress_engine
from readtrack.exceptions import RateLimitedError
from readtrack.gamification.trust_score import ViolationKind
from readtrack.gamification.trust_service import record_violation_for_user
from readtrack.progress.engine import ProgressCommand, ProgressCommitEngine
from readtrack.progress.schemas import (
    AchievementUnlockResponse,
    LibraryEntryResponse,
    ProgressResetRequest,
    ProgressResponse,
    ProgressUpdateRequest,
)
from readtrack.ratelimit.limiter import PROGRESS_BURST_BUDGET, RateLimitResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/library", tags=["Progress"])


async def _reject_over_budget(db: AsyncSession, user_id: uuid.UUID, limit: RateLimitResult) -> None:
    """Penalize the caller's trust score, then raise 429."""
    kind = ViolationKind.RAPID_READS if limit.budget == PROGRESS_BURST_BUDGET else ViolationKind.API_SPAM
    try:
        await record_violation_for_user(db, user_id, kind, {"budget": limit.budget, "limit": limit.limit})
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        logger.warning("Could not record %s violation for user %s", kind.value, user_id, exc_info=True)

    raise RateLimitedError(
        "Too many progress updates. Slow down.",
        retry_after=limit.retry_after,
        remaining=limit.remaining,
        reset_at=limit.reset_at,
    )


@router.patch("/{entry_id}/progress", response_model=ProgressResponse)
async def update_progress(
    entry_id: uuid.UUID,
    body: ProgressUpdateRequest,
    response: Response,
    user: CurrentUser = Depends(get_current_user),
    engine: ProgressCommitEngine = Depends(get_progress_engine),
    db: AsyncSession = Depends(get_db),
):
    """Record reading progress for a library entry."""
    limit = await engine.limiter.check_request(str(user.id))
    if not limit.allowed:
        await _reject_over_budget(db, user.id, limit)

    outcome = await engine.commit(ProgressCommand(
        user_id=user.id,
        entry_id=entry_id,
        chapter_number=body.chapter_number,
        chapter_slug=body.chapter_slug,
        is_read=body.is_read,
        timestamp=body.timestamp,
        device_id=body.device_id,
        source_id=body.source_id,
        read_duration_seconds=body.reading_time_seconds,
    ))

    response.headers["X-RateLimit-Remaining"] = str(limit.remaining)
    response.headers["X-RateLimit-Reset"] = str(int(limit.reset_at))
    return ProgressResponse(
        entry=LibraryEntryResponse.model_validate(outcome.entry),
        xp_gained=outcome.xp_gained,
        new_streak=outcome.new_streak,
        new_level=outcome.new_level,
        achievements=[
            AchievementUnlockResponse(
                code=a.code,
                name=a.name,
                xp_reward=a.xp_reward,
                rarity=a.rarity,
                is_seasonal=a.is_seasonal,
            )
            for a in outcome.achievements
        ],
        units_backfilled=outcome.units_backfilled,
    )


@router.post("/{entry_id}/progress/reset", response_model=LibraryEntryResponse)
async def reset_progress(
    entry_id: uuid.UUID,
    body: ProgressResetRequest,
    admin: CurrentUser = Depends(get_admin_user),
    engine: ProgressCommitEngine = Depends(get_progress_engine),
):
    """Move an entry's cursor back (admin only). Read records are kept."""
    entry = await engine.reset_progress(entry_id, body.chapter_number)
    logger.info("Admin %s reset entry %s to %s", admin.id, entry_id, body.chapter_number)
    return LibraryEntryResponse.model_validate(entry)
