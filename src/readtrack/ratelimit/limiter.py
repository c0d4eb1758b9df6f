"""Fixed-window rate limiter with separate request and reward-grant budgets."""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass

from readtrack.config import Settings
from readtrack.ratelimit.store import CounterStore, CounterValue, DeferredWrites

logger = logging.getLogger(__name__)

PROGRESS_MINUTE_BUDGET = "progress:min"
PROGRESS_BURST_BUDGET = "progress:burst"
REWARD_MINUTE_BUDGET = "xp:global"
REWARD_BURST_BUDGET = "xp:burst"


@dataclass(frozen=True)
class Budget:
    """``limit`` actions per ``window_seconds``."""

    name: str
    limit: int
    window_seconds: float


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float
    retry_after: int
    budget: str = ""


def budget_key(budget: Budget, subject: str) -> str:
    return f"rl:{budget.name}:{subject}"


async def peek(store: CounterStore, subject: str, budget: Budget) -> CounterValue:
    """Current count for ``subject`` against ``budget`` without spending it."""
    return await store.peek(budget_key(budget, subject))


async def hit(store: CounterStore, key: str, budget: Budget, now: float | None = None) -> RateLimitResult:
    """Count one action against ``budget`` and report whether it is allowed."""
    if now is None:
        now = time.time()
    value = await store.incr(budget_key(budget, key), budget.window_seconds)
    ttl_seconds = value.ttl_ms / 1000 if value.ttl_ms else budget.window_seconds
    return RateLimitResult(
        allowed=value.count <= budget.limit,
        limit=budget.limit,
        remaining=max(0, budget.limit - value.count),
        reset_at=now + ttl_seconds,
        retry_after=max(1, math.ceil(ttl_seconds)),
        budget=budget.name,
    )


class RateLimiter:
    """Per-user progress budgets.

    The request budget caps write attempts and rejects the request when
    exhausted. The reward budget caps XP grants and only zeroes the reward.
    """

    def __init__(
        self,
        store: CounterStore,
        request_budgets: tuple[Budget, ...],
        reward_budgets: tuple[Budget, ...],
    ) -> None:
        if not request_budgets or not reward_budgets:
            raise ValueError("at least one budget required")
        self.store = store
        self.request_budgets = request_budgets
        self.reward_budgets = reward_budgets

    @classmethod
    def from_settings(cls, store: CounterStore, settings: Settings) -> RateLimiter:
        return cls(
            store,
            request_budgets=(
                Budget(PROGRESS_MINUTE_BUDGET, settings.progress_requests_per_minute, 60),
                Budget(
                    PROGRESS_BURST_BUDGET,
                    settings.progress_burst_requests,
                    settings.progress_burst_window_seconds,
                ),
            ),
            reward_budgets=(
                Budget(REWARD_MINUTE_BUDGET, settings.reward_grants_per_minute, 60),
                Budget(
                    REWARD_BURST_BUDGET,
                    settings.reward_burst_grants,
                    settings.reward_burst_window_seconds,
                ),
            ),
        )

    async def check_request(self, user_id: str) -> RateLimitResult:
        """Count a progress write attempt. Returns the first exhausted budget, else the tightest."""
        return await self._check(user_id, self.request_budgets)

    async def consume_reward(self, user_id: str, *, writes: DeferredWrites | None = None) -> bool:
        """Count a reward grant. False means the grant budget is exhausted.

        A denied grant spends nothing. With ``writes`` the spend is queued
        and only lands if the caller commits.
        """
        for budget in self.reward_budgets:
            if (await peek(self.store, user_id, budget)).count >= budget.limit:
                logger.info("Reward budget exhausted for user %s (%s)", user_id, budget.name)
                return False
        for budget in self.reward_budgets:
            key = budget_key(budget, user_id)
            if writes is None:
                await self.store.incr(key, budget.window_seconds)
            else:
                writes.incr(key, budget.window_seconds)
        return True

    async def _check(self, user_id: str, budgets: tuple[Budget, ...]) -> RateLimitResult:
        results: list[RateLimitResult] = []
        for budget in budgets:
            result = await hit(self.store, user_id, budget)
            if not result.allowed:
                return result
            results.append(result)
        return min(results, key=lambda r: r.remaining)
