"""Achievement evaluation with duplicate-safe unlocks.

An unlock is a row in ``user_achievements`` inserted with
``ON CONFLICT DO NOTHING RETURNING``: XP is granted only when a row comes
back, so concurrent evaluations and retries never grant twice.
Seasonal achievements are keyed by the active season code and can be
earned again next season.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from readtrack.db.dialect import upsert
from readtrack.db.models import Achievement, ActivityLog, UserAchievement, UserRewardProfile
from readtrack.gamification.activity import (
    ACHIEVEMENT_UNLOCKED,
    CHAPTER_READ,
    SEASONAL_ACHIEVEMENT_UNLOCKED,
    log_activity,
)
from readtrack.gamification.seasons import get_current_season, season_date_range
from readtrack.gamification.xp_service import apply_xp, lock_profile

logger = logging.getLogger(__name__)

TRIGGER_CHAPTER_READ = "chapter_read"
TRIGGER_STREAK_REACHED = "streak_reached"

TRIGGER_TO_CRITERIA: dict[str, tuple[str, ...]] = {
    TRIGGER_CHAPTER_READ: ("chapter_count",),
    TRIGGER_STREAK_REACHED: ("streak_count",),
}


@dataclass(frozen=True)
class UnlockedAchievement:
    code: str
    name: str
    xp_reward: int
    rarity: str
    is_seasonal: bool = False
    season_key: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


async def _unlocked_keys(db: AsyncSession, user_id: uuid.UUID) -> set[tuple[int, str]]:
    result = await db.execute(
        select(UserAchievement.achievement_id, UserAchievement.season_key).where(
            UserAchievement.user_id == user_id
        )
    )
    return {(row[0], row[1]) for row in result.all()}


async def _season_chapter_count(db: AsyncSession, user_id: uuid.UUID, season: str) -> int:
    """Chapters that earned XP during ``season`` (from the activity feed)."""
    bounds = season_date_range(season)
    if bounds is None:
        return 0
    start, end = bounds
    result = await db.execute(
        select(func.count(ActivityLog.id)).where(
            ActivityLog.user_id == user_id,
            ActivityLog.activity_type == CHAPTER_READ,
            ActivityLog.created_at >= start,
            ActivityLog.created_at < end,
        )
    )
    return result.scalar_one()


async def _stat_value(
    db: AsyncSession,
    profile: UserRewardProfile,
    achievement: Achievement,
    season: str,
    current_streak: int | None,
) -> int:
    if achievement.criteria_type == "streak_count":
        return current_streak if current_streak is not None else profile.streak_days
    if achievement.is_seasonal:
        return await _season_chapter_count(db, profile.user_id, season)
    return profile.chapters_read_count


async def _insert_unlock(
    db: AsyncSession,
    user_id: uuid.UUID,
    achievement: Achievement,
    season_key: str,
    now: datetime,
) -> bool:
    stmt = (
        upsert(db, UserAchievement)
        .values(
            user_id=user_id,
            achievement_id=achievement.id,
            season_key=season_key,
            unlocked_at=now,
        )
        .on_conflict_do_nothing(index_elements=["user_id", "achievement_id", "season_key"])
        .returning(UserAchievement.id)
    )
    result = await db.execute(stmt)
    return result.scalar_one_or_none() is not None


async def evaluate_achievements(
    db: AsyncSession,
    user_id: uuid.UUID,
    trigger: str,
    current_streak: int | None = None,
    now: datetime | None = None,
) -> list[UnlockedAchievement]:
    """Unlock every achievement whose threshold the user now meets.

    Runs inside the caller's transaction. Achievement XP goes to lifetime and
    seasonal XP on the locked profile row.
    """
    criteria_types = TRIGGER_TO_CRITERIA.get(trigger)
    if not criteria_types:
        return []
    if now is None:
        now = datetime.now(timezone.utc)
    season = get_current_season(now)

    candidates = (
        await db.execute(
            select(Achievement)
            .where(
                Achievement.is_active.is_(True),
                Achievement.criteria_type.in_(criteria_types),
            )
            .order_by(Achievement.sort_order, Achievement.id)
        )
    ).scalars().all()
    if not candidates:
        return []

    unlocked = await _unlocked_keys(db, user_id)
    profile = await lock_profile(db, user_id)

    newly_unlocked: list[UnlockedAchievement] = []
    total_xp = 0
    for achievement in candidates:
        season_key = season if achievement.is_seasonal else ""
        if (achievement.id, season_key) in unlocked:
            continue

        value = await _stat_value(db, profile, achievement, season, current_streak)
        if value < achievement.threshold:
            continue

        if not await _insert_unlock(db, user_id, achievement, season_key, now):
            # Another transaction won the insert.
            continue

        log_activity(
            db,
            user_id,
            SEASONAL_ACHIEVEMENT_UNLOCKED if achievement.is_seasonal else ACHIEVEMENT_UNLOCKED,
            metadata={
                "code": achievement.code,
                "xp_reward": achievement.xp_reward,
                "season": season_key or None,
            },
            now=now,
        )
        total_xp += achievement.xp_reward
        newly_unlocked.append(
            UnlockedAchievement(
                code=achievement.code,
                name=achievement.name,
                xp_reward=achievement.xp_reward,
                rarity=achievement.rarity,
                is_seasonal=achievement.is_seasonal,
                season_key=season_key,
            )
        )

    if total_xp > 0:
        apply_xp(profile, total_xp, now)
        await db.flush()

    if newly_unlocked:
        logger.info(
            "User %s unlocked %s (+%d XP)",
            user_id, ",".join(a.code for a in newly_unlocked), total_xp,
        )
    return newly_unlocked
