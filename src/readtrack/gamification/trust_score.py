"""Trust score ledger. Pure functions, no I/O.

A trust score is a soft credibility multiplier in [0.5, 1.0]:

* it affects leaderboard ranking only (effective XP = XP x trust score),
* it never reduces stored XP,
* it recovers by a fixed amount per day regardless of behaviour, so no
  account is punished permanently.

Large chapter jumps are not a violation; imports and binge reading are
trusted because XP is already capped at one grant per request.
"""

from __future__ import annotations

import enum
import math

TRUST_SCORE_MIN = 0.5
TRUST_SCORE_MAX = 1.0
TRUST_SCORE_DEFAULT = 1.0

# Upward recovery per day.
DECAY_PER_DAY = 0.02

# Same violation kind is recorded at most once per window.
VIOLATION_COOLDOWN_SECONDS = 60

_PRECISION = 4


class ViolationKind(str, enum.Enum):
    REPEATED_SAME_CHAPTER = "repeated_same_chapter"
    SPEED_READ = "speed_read"
    STATUS_TOGGLE = "status_toggle"
    BULK_SPEED_READ = "bulk_speed_read"
    RAPID_READS = "rapid_reads"
    PATTERN_REPETITION = "pattern_repetition"
    API_SPAM = "api_spam"


# Ordered by severity.
VIOLATION_PENALTIES: dict[ViolationKind, float] = {
    ViolationKind.REPEATED_SAME_CHAPTER: 0.01,
    ViolationKind.SPEED_READ: 0.02,
    ViolationKind.STATUS_TOGGLE: 0.03,
    ViolationKind.BULK_SPEED_READ: 0.04,
    ViolationKind.RAPID_READS: 0.05,
    ViolationKind.PATTERN_REPETITION: 0.08,
    ViolationKind.API_SPAM: 0.10,
}

MAX_PENALTY = max(VIOLATION_PENALTIES.values())


def clamp_trust(score: float) -> float:
    return round(max(TRUST_SCORE_MIN, min(TRUST_SCORE_MAX, score)), _PRECISION)


def apply_penalty(score: float, magnitude: float) -> float:
    """Lower ``score`` by ``magnitude``, never below the floor."""
    return clamp_trust(score - magnitude)


def apply_decay(score: float, elapsed_days: float = 1) -> float:
    """Recover ``score`` by ``elapsed_days`` worth of daily recovery, capped at the maximum."""
    return clamp_trust(score + max(0.0, elapsed_days) * DECAY_PER_DAY)


def penalty_for(kind: ViolationKind | str) -> float:
    return VIOLATION_PENALTIES[ViolationKind(kind)]


def effective_xp(xp: int, score: float) -> int:
    """XP used for leaderboard ordering. Stored XP is never changed."""
    return math.floor(xp * clamp_trust(score))


def days_until_full_recovery(score: float) -> int:
    if score >= TRUST_SCORE_MAX:
        return 0
    deficit = round(TRUST_SCORE_MAX - score, _PRECISION)
    return math.ceil(round(deficit / DECAY_PER_DAY, _PRECISION))
