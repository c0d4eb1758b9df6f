"""Reward, trust and leaderboard endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from readtrack.auth.dependencies import CurrentUser, get_current_user
from readtrack.dependencies import get_db
from readtrack.db.models import UserAchievement
from readtrack.gamification.leaderboard import get_leaderboard, resolve_season
from readtrack.gamification.levels import compute_level
from readtrack.gamification.schemas import (
    LeaderboardEntry,
    LeaderboardResponse,
    RewardSummaryResponse,
    TrustStatusResponse,
    UnlockedAchievementResponse,
)
from readtrack.gamification.seasons import season_display_name
from readtrack.gamification.trust_service import get_trust_status
from readtrack.gamification.xp_service import get_or_create_profile

router = APIRouter(prefix="/api/v1", tags=["Rewards"])


@router.get("/users/me/rewards", response_model=RewardSummaryResponse)
async def get_my_rewards(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Current user's XP, level progress, streak, season bucket and achievements."""
    profile = await get_or_create_profile(db, user.id)
    await db.commit()
    level_info = compute_level(profile.xp)

    result = await db.execute(
        select(UserAchievement)
        .where(UserAchievement.user_id == user.id)
        .order_by(UserAchievement.unlocked_at.desc())
    )
    achievements = [
        UnlockedAchievementResponse(
            code=ua.achievement.code,
            name=ua.achievement.name,
            rarity=ua.achievement.rarity,
            xp_reward=ua.achievement.xp_reward,
            season=ua.season_key or None,
            unlocked_at=ua.unlocked_at,
        )
        for ua in result.scalars().unique()
    ]

    return RewardSummaryResponse(
        xp=profile.xp,
        level=level_info["level"],
        level_title=level_info["title"],
        xp_into_level=level_info["xp_into_level"],
        xp_for_level=level_info["xp_for_level"],
        next_level=level_info["next_level"],
        streak_days=profile.streak_days,
        longest_streak=profile.longest_streak,
        last_read_at=profile.last_read_at,
        season_xp=profile.season_xp,
        current_season=profile.current_season,
        season_name=season_display_name(profile.current_season) if profile.current_season else None,
        chapters_read_count=profile.chapters_read_count,
        achievements=achievements,
    )


@router.get("/users/me/trust", response_model=TrustStatusResponse)
async def get_my_trust(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Current user's trust score and recovery outlook."""
    status = await get_trust_status(db, user.id)
    await db.commit()
    return TrustStatusResponse(**status)


@router.get("/leaderboard", response_model=LeaderboardResponse)
async def leaderboard(
    season: str | None = Query(default=None, max_length=10),
    limit: int = Query(default=50, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
):
    """Top readers by trust-weighted XP, all-time or for one season."""
    season_code = resolve_season(season)
    entries = await get_leaderboard(db, season=season_code, limit=limit)
    return LeaderboardResponse(
        season=season_code,
        entries=[LeaderboardEntry(**e) for e in entries],
    )
