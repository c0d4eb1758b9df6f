"""Bot-pattern heuristics over recent per-user action history.

History lives in the counter store so every API process sees the same
signals. The detector only reports; the commit engine records violations
and decides the reward. Jump magnitude is never evaluated: bulk imports
and binge reading are legitimate.
"""

from __future__ import annotations

import logging
import statistics
import time
import uuid
from dataclasses import dataclass, field

from readtrack.gamification.trust_score import ViolationKind
from readtrack.ratelimit.store import CounterStore, DeferredWrites

logger = logging.getLogger(__name__)

# Exact-repeat targeting
REPEAT_TARGET_TTL_SECONDS = 60

# Timing regularity
PATTERN_INTERVAL_COUNT = 5
PATTERN_STD_DEV_THRESHOLD = 2.0
PATTERN_MAX_MEAN_SECONDS = 300.0
PATTERN_MIN_INTERVAL_SECONDS = 5.0
PATTERN_HISTORY_TTL_SECONDS = 600

# Status toggle spam
STATUS_TOGGLE_LIMIT = 3
STATUS_TOGGLE_WINDOW_SECONDS = 300
STATUS_TTL_SECONDS = 3600


@dataclass
class BotCheckResult:
    """Outcome of one detector pass.

    ``deny_reward`` is only set by the hard-gate heuristics (exact repeat and
    timing regularity). Status toggling is recorded but never gates reward.
    """

    deny_reward: bool = False
    violations: list[tuple[ViolationKind, dict]] = field(default_factory=list)

    @property
    def reasons(self) -> list[str]:
        return [kind.value for kind, _ in self.violations]

    def flag(self, kind: ViolationKind, metadata: dict, *, deny: bool) -> None:
        self.violations.append((kind, metadata))
        if deny:
            self.deny_reward = True


def interval_stats(intervals: list[float]) -> tuple[float, float]:
    """Mean and population standard deviation."""
    return statistics.fmean(intervals), statistics.pstdev(intervals)


def is_regular_pattern(intervals: list[float]) -> bool:
    """True for machine-like cadence: enough samples, tiny spread, short mean."""
    if len(intervals) < PATTERN_INTERVAL_COUNT:
        return False
    mean, std_dev = interval_stats(intervals[:PATTERN_INTERVAL_COUNT])
    return std_dev < PATTERN_STD_DEV_THRESHOLD and mean < PATTERN_MAX_MEAN_SECONDS


class BotDetector:
    """Advisory bot-pattern detector backed by a ``CounterStore``.

    Checks only read history. Updates go to ``writes`` when the caller
    passes a ``DeferredWrites`` queue, and straight to the store otherwise.
    """

    def __init__(self, store: CounterStore) -> None:
        self.store = store

    async def check(
        self,
        user_id: uuid.UUID | str,
        entry_id: uuid.UUID | str,
        target: float | None,
        *,
        is_read: bool,
        is_new_progress: bool,
        now: float | None = None,
        writes: DeferredWrites | None = None,
    ) -> BotCheckResult:
        """Run every heuristic for one progress action."""
        if now is None:
            now = time.time()
        result = BotCheckResult()
        if target is None:
            return result

        queue = writes if writes is not None else DeferredWrites()
        await self._check_repeat_target(result, queue, user_id, entry_id, target)
        await self._check_status_toggle(result, queue, user_id, entry_id, is_read)
        if is_read and is_new_progress:
            await self._check_timing(result, queue, user_id, target, now)
        if writes is None:
            await queue.flush(self.store)

        if result.violations:
            logger.info(
                "Bot heuristics flagged user %s entry %s: %s",
                user_id, entry_id, ",".join(result.reasons),
            )
        return result

    async def _check_repeat_target(
        self,
        result: BotCheckResult,
        writes: DeferredWrites,
        user_id: uuid.UUID | str,
        entry_id: uuid.UUID | str,
        target: float,
    ) -> None:
        key = f"bot:last-target:{user_id}:{entry_id}"
        last = await self.store.get(key)
        if last is not None and float(last) == target:
            result.flag(
                ViolationKind.REPEATED_SAME_CHAPTER,
                {"chapter": target, "entry_id": str(entry_id)},
                deny=True,
            )
            return
        writes.set(key, repr(float(target)), REPEAT_TARGET_TTL_SECONDS)

    async def _check_status_toggle(
        self,
        result: BotCheckResult,
        writes: DeferredWrites,
        user_id: uuid.UUID | str,
        entry_id: uuid.UUID | str,
        is_read: bool,
    ) -> None:
        key = f"bot:last-status:{user_id}:{entry_id}"
        status = "read" if is_read else "unread"
        last = await self.store.get(key)
        if last is not None and last != status:
            toggles_key = f"bot:toggles:{user_id}:{entry_id}"
            # Count including this toggle.
            toggles = (await self.store.peek(toggles_key)).count + 1
            writes.incr(toggles_key, STATUS_TOGGLE_WINDOW_SECONDS)
            if toggles > STATUS_TOGGLE_LIMIT:
                result.flag(
                    ViolationKind.STATUS_TOGGLE,
                    {"from": last, "to": status, "entry_id": str(entry_id)},
                    deny=False,
                )
        writes.set(key, status, STATUS_TTL_SECONDS)

    async def _check_timing(
        self,
        result: BotCheckResult,
        writes: DeferredWrites,
        user_id: uuid.UUID | str,
        target: float,
        now: float,
    ) -> None:
        last_key = f"bot:last-action:{user_id}"
        last = await self.store.get(last_key)
        writes.set(last_key, repr(now), PATTERN_HISTORY_TTL_SECONDS)
        if last is None:
            return

        interval = now - float(last)
        if interval < PATTERN_MIN_INTERVAL_SECONDS:
            return

        intervals_key = f"bot:intervals:{user_id}"
        # Newest first, as the store keeps them.
        previous = await self.store.recent(intervals_key)
        intervals = [interval] + [float(v) for v in previous[: PATTERN_INTERVAL_COUNT - 1]]
        writes.push_recent(intervals_key, repr(interval), PATTERN_INTERVAL_COUNT, PATTERN_HISTORY_TTL_SECONDS)
        if is_regular_pattern(intervals):
            mean, std_dev = interval_stats(intervals)
            result.flag(
                ViolationKind.PATTERN_REPETITION,
                {
                    "chapter": target,
                    "detection_method": "interval_std_dev",
                    "mean_interval": round(mean, 3),
                    "std_dev": round(std_dev, 3),
                },
                deny=True,
            )
