"""Quarterly reading seasons and seasonal XP rollover.

Seasons follow the anime broadcast calendar, in UTC:
Winter = Q1 (Jan-Mar), Spring = Q2, Summer = Q3, Fall = Q4.
Season codes look like ``2026-Q4``. Lifetime XP never resets; season XP
resets to the new delta on the first gain in a new season.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone

SEASON_NAMES = {1: "Winter", 2: "Spring", 3: "Summer", 4: "Fall"}

_QUARTER_RE = re.compile(r"^(\d{4})-Q([1-4])$")
_LEGACY_MONTH_RE = re.compile(r"^(\d{4})-(\d{2})$")


@dataclass(frozen=True)
class SeasonXpUpdate:
    season_xp: int
    current_season: str


def quarter_for_month(month: int) -> int:
    return (month - 1) // 3 + 1


def get_current_season(now: datetime | None = None) -> str:
    """Season code for ``now`` (default: current UTC time)."""
    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is not None:
        now = now.astimezone(timezone.utc)
    return f"{now.year}-Q{quarter_for_month(now.month)}"


def parse_season(code: str) -> tuple[int, int] | None:
    """Parse ``YYYY-Q[1-4]`` (or legacy monthly ``YYYY-MM``) into (year, quarter)."""
    m = _QUARTER_RE.match(code)
    if m:
        return int(m.group(1)), int(m.group(2))
    m = _LEGACY_MONTH_RE.match(code)
    if m:
        month = int(m.group(2))
        if 1 <= month <= 12:
            return int(m.group(1)), quarter_for_month(month)
    return None


def season_display_name(code: str) -> str | None:
    parsed = parse_season(code)
    if parsed is None:
        return None
    year, quarter = parsed
    return f"{SEASON_NAMES[quarter]} {year}"


def season_date_range(code: str) -> tuple[datetime, datetime] | None:
    """[start, end) of a season in UTC."""
    parsed = parse_season(code)
    if parsed is None:
        return None
    year, quarter = parsed
    start = datetime(year, (quarter - 1) * 3 + 1, 1, tzinfo=timezone.utc)
    if quarter == 4:
        end = datetime(year + 1, 1, 1, tzinfo=timezone.utc)
    else:
        end = datetime(year, quarter * 3 + 1, 1, tzinfo=timezone.utc)
    return start, end


def needs_season_rollover(user_season: str | None, now: datetime | None = None) -> bool:
    if not user_season:
        return True
    return user_season != get_current_season(now)


def calculate_season_xp_update(
    current_season_xp: int | None,
    user_season: str | None,
    xp_to_add: int,
    now: datetime | None = None,
) -> SeasonXpUpdate:
    """New (season_xp, season) after adding ``xp_to_add``.

    A season change resets the bucket to just the new delta.
    """
    active = get_current_season(now)
    if needs_season_rollover(user_season, now):
        return SeasonXpUpdate(season_xp=max(0, xp_to_add), current_season=active)
    return SeasonXpUpdate(
        season_xp=max(0, (current_season_xp or 0) + xp_to_add),
        current_season=active,
    )
