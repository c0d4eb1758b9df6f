"""Daily reading streaks.

Streak days are UTC calendar days: reading at 23:59 and again at 00:01
counts as two consecutive days.
"""

from __future__ import annotations

from datetime import date, datetime, timezone

STREAK_BONUS_PER_DAY = 5
MAX_STREAK_BONUS = 50


def ensure_utc(dt: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite returns them naive)."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def utc_day(dt: datetime) -> date:
    return ensure_utc(dt).date()


def calculate_new_streak(
    current_streak: int,
    last_read_at: datetime | None,
    now: datetime | None = None,
) -> int:
    """Streak after a read at ``now``.

    Same day keeps the streak, the next day extends it, anything else
    starts over at 1.
    """
    if now is None:
        now = datetime.now(timezone.utc)
    if last_read_at is None:
        return 1

    gap = (utc_day(now) - utc_day(last_read_at)).days
    if gap == 0:
        return max(1, current_streak)
    if gap == 1:
        return max(0, current_streak) + 1
    if gap < 0:
        # Out-of-order client timestamp; keep what we have.
        return max(1, current_streak)
    return 1


def calculate_streak_bonus(streak: int) -> int:
    """5 XP per streak day, capped at 50."""
    if streak <= 0:
        return 0
    return min(streak * STREAK_BONUS_PER_DAY, MAX_STREAK_BONUS)
