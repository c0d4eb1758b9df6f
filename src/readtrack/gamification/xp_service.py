"""Reward profile access and XP accounting."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from readtrack.db.dialect import supports_row_locks, upsert
from readtrack.db.models import UserRewardProfile
from readtrack.gamification.levels import add_xp, calculate_level
from readtrack.gamification.seasons import calculate_season_xp_update

logger = logging.getLogger(__name__)


async def get_or_create_profile(db: AsyncSession, user_id: uuid.UUID) -> UserRewardProfile:
    """Get or create the denormalized reward row for a user (no lock)."""
    result = await db.execute(
        select(UserRewardProfile).where(UserRewardProfile.user_id == user_id)
    )
    profile = result.scalar_one_or_none()
    if profile is None:
        profile = UserRewardProfile(
            user_id=user_id,
            updated_at=datetime.now(timezone.utc),
        )
        db.add(profile)
        await db.flush()
    return profile


async def lock_profile(db: AsyncSession, user_id: uuid.UUID) -> UserRewardProfile:
    """Load the reward row under ``FOR UPDATE``, creating it if missing.

    Creation goes through ``ON CONFLICT DO NOTHING`` so two first commits
    for the same user cannot both insert.
    """
    stmt = (
        select(UserRewardProfile)
        .where(UserRewardProfile.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    if supports_row_locks(db):
        stmt = stmt.with_for_update()

    profile = (await db.execute(stmt)).scalar_one_or_none()
    if profile is None:
        insert_stmt = upsert(db, UserRewardProfile).values(
            user_id=user_id,
            updated_at=datetime.now(timezone.utc),
        )
        await db.execute(insert_stmt.on_conflict_do_nothing(index_elements=["user_id"]))
        profile = (await db.execute(stmt)).scalar_one()
    return profile


def apply_xp(profile: UserRewardProfile, amount: int, now: datetime) -> None:
    """Add ``amount`` to lifetime and seasonal XP and recompute the level.

    The season bucket rolls over even for zero grants so a stale season
    never carries into a new one.
    """
    old_level = profile.level
    profile.xp = add_xp(profile.xp or 0, amount)
    profile.level = calculate_level(profile.xp)

    season = calculate_season_xp_update(profile.season_xp, profile.current_season, amount, now)
    profile.season_xp = season.season_xp
    profile.current_season = season.current_season
    profile.updated_at = now

    if profile.level > old_level:
        logger.info("User %s reached level %d", profile.user_id, profile.level)
