"""Trust score persistence: violation recording, daily recovery and status."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from readtrack.db.models import TrustViolation, UserRewardProfile
from readtrack.gamification.trust_score import (
    DECAY_PER_DAY,
    TRUST_SCORE_MAX,
    VIOLATION_COOLDOWN_SECONDS,
    ViolationKind,
    apply_penalty,
    clamp_trust,
    days_until_full_recovery,
    penalty_for,
)
from readtrack.gamification.xp_service import get_or_create_profile, lock_profile

logger = logging.getLogger(__name__)

# Float tolerance when deciding whether one more day reaches the cap.
_EPSILON = 1e-9


async def in_cooldown(
    db: AsyncSession,
    user_id: uuid.UUID,
    kind: ViolationKind,
    now: datetime,
) -> bool:
    """Check whether ``kind`` was already recorded for the user within the cooldown window."""
    since = now - timedelta(seconds=VIOLATION_COOLDOWN_SECONDS)
    result = await db.execute(
        select(TrustViolation.id)
        .where(
            TrustViolation.user_id == user_id,
            TrustViolation.violation_type == kind.value,
            TrustViolation.created_at > since,
        )
        .limit(1)
    )
    return result.scalar_one_or_none() is not None


async def record_violation(
    db: AsyncSession,
    profile: UserRewardProfile,
    kind: ViolationKind | str,
    metadata: dict | None = None,
    now: datetime | None = None,
) -> TrustViolation | None:
    """Apply a penalty to an already locked profile row.

    Returns the audit row, or None when the same kind is still cooling down.
    Stored XP is never touched.
    """
    kind = ViolationKind(kind)
    if now is None:
        now = datetime.now(timezone.utc)

    if await in_cooldown(db, profile.user_id, kind, now):
        logger.debug("Violation %s for user %s skipped (cooldown)", kind.value, profile.user_id)
        return None

    previous = clamp_trust(profile.trust_score)
    magnitude = penalty_for(kind)
    new_score = apply_penalty(previous, magnitude)

    profile.trust_score = new_score
    profile.trust_score_updated_at = now

    violation = TrustViolation(
        user_id=profile.user_id,
        violation_type=kind.value,
        severity=magnitude,
        previous_score=previous,
        new_score=new_score,
        violation_metadata=metadata or {},
        created_at=now,
    )
    db.add(violation)
    await db.flush()

    logger.warning(
        "Trust violation %s for user %s: %.4f -> %.4f",
        kind.value, profile.user_id, previous, new_score,
    )
    return violation


async def record_violation_for_user(
    db: AsyncSession,
    user_id: uuid.UUID,
    kind: ViolationKind | str,
    metadata: dict | None = None,
) -> TrustViolation | None:
    """Lock the user's profile and record a violation. Caller commits."""
    profile = await lock_profile(db, user_id)
    return await record_violation(db, profile, kind, metadata)


async def process_daily_decay(db: AsyncSession, now: datetime | None = None) -> int:
    """Recover every score below the maximum by one day. Returns rows touched.

    Scores within one day of the cap are set to the cap first, then the rest
    move up by ``DECAY_PER_DAY``. The order keeps a row from being raised twice.
    """
    if now is None:
        now = datetime.now(timezone.utc)
    threshold = TRUST_SCORE_MAX - DECAY_PER_DAY - _EPSILON

    capped = await db.execute(
        update(UserRewardProfile)
        .where(
            UserRewardProfile.trust_score >= threshold,
            UserRewardProfile.trust_score < TRUST_SCORE_MAX,
        )
        .values(trust_score=TRUST_SCORE_MAX, trust_score_updated_at=now)
        .execution_options(synchronize_session=False)
    )
    raised = await db.execute(
        update(UserRewardProfile)
        .where(UserRewardProfile.trust_score < threshold)
        .values(
            trust_score=UserRewardProfile.trust_score + DECAY_PER_DAY,
            trust_score_updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()

    total = (capped.rowcount or 0) + (raised.rowcount or 0)
    logger.info("Daily trust recovery: %d profiles updated", total)
    return total


async def get_trust_status(
    db: AsyncSession,
    user_id: uuid.UUID,
    now: datetime | None = None,
) -> dict:
    """Trust summary for the current user."""
    if now is None:
        now = datetime.now(timezone.utc)
    profile = await get_or_create_profile(db, user_id)
    score = clamp_trust(profile.trust_score)

    recent = await db.execute(
        select(func.count(TrustViolation.id)).where(
            TrustViolation.user_id == user_id,
            TrustViolation.created_at > now - timedelta(hours=24),
        )
    )

    return {
        "trust_score": score,
        "leaderboard_multiplier": score,
        "violations_last_24h": recent.scalar_one(),
        "is_fully_trusted": score >= TRUST_SCORE_MAX,
        "days_until_full_recovery": days_until_full_recovery(score),
        "last_updated": profile.trust_score_updated_at,
    }
