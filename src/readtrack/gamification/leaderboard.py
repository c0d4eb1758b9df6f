"""Leaderboard ranked by trust-weighted XP.

Low-trust accounts are demoted, never removed: ordering uses
``xp * trust_score`` while the stored XP stays untouched.
"""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from readtrack.db.models import User, UserRewardProfile
from readtrack.exceptions import ValidationFailedError
from readtrack.gamification.seasons import get_current_season, parse_season
from readtrack.gamification.trust_score import clamp_trust, effective_xp

MAX_LEADERBOARD_LIMIT = 100


def resolve_season(season: str | None) -> str | None:
    """``None`` means all-time, ``"current"`` the active season."""
    if season is None:
        return None
    if season == "current":
        return get_current_season()
    if parse_season(season) is None:
        raise ValidationFailedError(f"Invalid season code: {season}")
    return season


async def get_leaderboard(
    db: AsyncSession,
    *,
    season: str | None = None,
    limit: int = 50,
) -> list[dict]:
    limit = max(1, min(limit, MAX_LEADERBOARD_LIMIT))
    xp_col = UserRewardProfile.season_xp if season else UserRewardProfile.xp

    stmt = (
        select(UserRewardProfile, User.username)
        .join(User, User.id == UserRewardProfile.user_id)
        .where(User.deleted_at.is_(None), xp_col > 0)
    )
    if season:
        stmt = stmt.where(UserRewardProfile.current_season == season)
    stmt = stmt.order_by(
        (xp_col * UserRewardProfile.trust_score).desc(),
        xp_col.desc(),
        User.username,
    ).limit(limit)

    rows = (await db.execute(stmt)).all()
    entries = []
    for rank, (profile, username) in enumerate(rows, start=1):
        xp = profile.season_xp if season else profile.xp
        entries.append({
            "rank": rank,
            "user_id": profile.user_id,
            "username": username,
            "xp": xp,
            "effective_xp": effective_xp(xp, profile.trust_score),
            "level": profile.level,
            "trust_score": clamp_trust(profile.trust_score),
        })
    return entries
