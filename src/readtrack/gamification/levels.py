"""XP constants, level thresholds and computation.

Level N starts at ``(N - 1)^2 * 100`` XP: 0, 100, 400, 900, ...
These values MUST match the client's level bar.
"""

from __future__ import annotations

import math

XP_PER_CHAPTER = 1
MAX_XP = 999_999_999
MAX_LEVEL = 100

LEVEL_TITLES: list[dict] = [
    {"min_level": 1, "title": "Page Turner"},
    {"min_level": 3, "title": "Casual Reader"},
    {"min_level": 5, "title": "Chapter Chaser"},
    {"min_level": 10, "title": "Binge Reader"},
    {"min_level": 20, "title": "Arc Veteran"},
    {"min_level": 35, "title": "Archivist"},
    {"min_level": 50, "title": "Living Library"},
    {"min_level": 75, "title": "Omniscient Reader"},
]


def xp_for_level(level: int) -> int:
    """Cumulative XP required to reach ``level``."""
    if level <= 1:
        return 0
    level = min(level, MAX_LEVEL)
    return (level - 1) ** 2 * 100


def calculate_level(xp: int) -> int:
    """Level for a lifetime XP total. Negative XP counts as zero."""
    xp = clamp_xp(xp)
    return min(MAX_LEVEL, math.isqrt(xp // 100) + 1)


def level_title(level: int) -> str:
    title = LEVEL_TITLES[0]["title"]
    for row in LEVEL_TITLES:
        if level >= row["min_level"]:
            title = row["title"]
    return title


def compute_level(total_xp: int) -> dict:
    """Compute level info from total XP."""
    level = calculate_level(total_xp)
    current = xp_for_level(level)
    next_level = min(level + 1, MAX_LEVEL)
    xp_for_this_level = xp_for_level(next_level) - current

    # At max level, avoid division by zero
    if xp_for_this_level == 0:
        xp_for_this_level = 1

    return {
        "level": level,
        "title": level_title(level),
        "xp_into_level": clamp_xp(total_xp) - current,
        "xp_for_level": xp_for_this_level,
        "next_level": next_level,
        "next_title": level_title(next_level),
    }


def clamp_xp(xp: int) -> int:
    return max(0, min(MAX_XP, int(xp)))


def add_xp(current: int, delta: int) -> int:
    """Add XP with overflow protection. Lifetime XP never decreases."""
    return clamp_xp(current + max(0, delta))
