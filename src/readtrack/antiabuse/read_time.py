"""Read-time plausibility check.

Soft validation only: a chapter marked read faster than a human could
read it lowers the trust score, but never blocks the write and never
denies XP.

Minimum plausible time is ``max(30, pages * 3)`` seconds, assuming 18
pages when the page count is unknown.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime

from readtrack.gamification.streak_service import ensure_utc
from readtrack.gamification.trust_score import ViolationKind
from readtrack.ratelimit.store import CounterStore, DeferredWrites

logger = logging.getLogger(__name__)

MIN_READ_TIME_SECONDS = 30
SECONDS_PER_PAGE = 3
DEFAULT_PAGE_COUNT = 18
AVERAGE_SECONDS_PER_PAGE = 8

BULK_SPEED_READ_COUNT = 3
BULK_SPEED_READ_WINDOW_SECONDS = 300

# Only small forward steps are judged; larger jumps are imports or catch-up.
MAX_VALIDATED_JUMP = 2


@dataclass(frozen=True)
class ReadTimeResult:
    is_suspicious: bool
    expected_min_seconds: int
    actual_seconds: float
    violation: ViolationKind | None = None

    def metadata(self, chapter: float, page_count: int | None) -> dict:
        return {
            "chapter": chapter,
            "expected_min_seconds": self.expected_min_seconds,
            "actual_seconds": round(self.actual_seconds, 1),
            "page_count": page_count or DEFAULT_PAGE_COUNT,
            "deficit_seconds": round(self.expected_min_seconds - self.actual_seconds, 1),
        }


def calculate_minimum_read_time(page_count: int | None = None) -> int:
    pages = page_count or DEFAULT_PAGE_COUNT
    return max(MIN_READ_TIME_SECONDS, pages * SECONDS_PER_PAGE)


def estimated_read_time(page_count: int | None = None) -> dict:
    """Client-facing hints: minimum, average and a display string."""
    pages = page_count or DEFAULT_PAGE_COUNT
    minimum = calculate_minimum_read_time(pages)
    average = pages * AVERAGE_SECONDS_PER_PAGE
    minutes = max(1, round(average / 60))
    return {
        "min_seconds": minimum,
        "avg_seconds": average,
        "display": f"~{minutes} min",
    }


def should_validate(current_cursor: float, target: float) -> bool:
    """Skip cold starts and bulk jumps."""
    if current_cursor <= 0:
        return False
    jump = target - current_cursor
    return 1 <= jump <= MAX_VALIDATED_JUMP


def elapsed_seconds(
    explicit_seconds: int | None,
    last_read_at: datetime | None,
    now: datetime,
) -> float | None:
    """Explicit duration if given, else time since the profile's last read."""
    if explicit_seconds is not None:
        return float(explicit_seconds)
    if last_read_at is None:
        return None
    return max(0.0, (ensure_utc(now) - ensure_utc(last_read_at)).total_seconds())


class ReadTimeValidator:
    """Flags implausibly fast reads. Tracks recent speed reads for bulk detection."""

    def __init__(self, store: CounterStore) -> None:
        self.store = store

    async def validate(
        self,
        user_id: uuid.UUID | str,
        actual_seconds: float,
        page_count: int | None = None,
        *,
        writes: DeferredWrites | None = None,
    ) -> ReadTimeResult:
        """Judge one read. The speed-read counter is queued on ``writes`` when given."""
        expected = calculate_minimum_read_time(page_count)
        if actual_seconds >= expected:
            return ReadTimeResult(
                is_suspicious=False,
                expected_min_seconds=expected,
                actual_seconds=actual_seconds,
            )

        key = f"read-time:speed-reads:{user_id}"
        # Count including this read.
        recent = (await self.store.peek(key)).count + 1
        if writes is None:
            await self.store.incr(key, BULK_SPEED_READ_WINDOW_SECONDS)
        else:
            writes.incr(key, BULK_SPEED_READ_WINDOW_SECONDS)
        is_bulk = recent > BULK_SPEED_READ_COUNT
        violation = ViolationKind.BULK_SPEED_READ if is_bulk else ViolationKind.SPEED_READ
        logger.info(
            "Suspicious read time for user %s: %.1fs < %ds (%s)",
            user_id, actual_seconds, expected, violation.value,
        )
        return ReadTimeResult(
            is_suspicious=True,
            expected_min_seconds=expected,
            actual_seconds=actual_seconds,
            violation=violation,
        )
