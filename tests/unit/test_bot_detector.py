"""Bot-pattern heuristic tests."""

from __future__ import annotations

import pytest

from readtrack.antiabuse.bot_detector import (
    STATUS_TOGGLE_LIMIT,
    BotDetector,
    interval_stats,
    is_regular_pattern,
)
from readtrack.gamification.trust_score import ViolationKind
from readtrack.ratelimit.store import DeferredWrites, MemoryCounterStore


class TestIntervalMath:
    def test_stats(self):
        mean, std_dev = interval_stats([10.0, 10.0, 10.0, 10.0])
        assert mean == 10.0
        assert std_dev == 0.0

    def test_needs_five_samples(self):
        assert not is_regular_pattern([30.0] * 4)
        assert is_regular_pattern([30.0] * 5)

    def test_human_spread_is_not_regular(self):
        assert not is_regular_pattern([20.0, 95.0, 41.0, 12.0, 180.0])

    def test_stats_population_spread(self):
        assert interval_stats([2.0, 4.0, 4.0, 4.0, 5.0, 5.0, 7.0, 9.0]) == (5.0, 2.0)

    def test_slow_cadence_is_not_regular(self):
        assert not is_regular_pattern([400.0] * 5)


class TestRepeatTarget:
    @pytest.mark.asyncio
    async def test_same_target_twice_denies_reward(self):
        detector = BotDetector(MemoryCounterStore())
        first = await detector.check("u", "e", 5.0, is_read=True, is_new_progress=True, now=0.0)
        second = await detector.check("u", "e", 5.0, is_read=True, is_new_progress=False, now=1.0)

        assert not first.deny_reward
        assert second.deny_reward
        assert second.reasons == [ViolationKind.REPEATED_SAME_CHAPTER.value]

    @pytest.mark.asyncio
    async def test_different_entries_are_independent(self):
        detector = BotDetector(MemoryCounterStore())
        await detector.check("u", "e1", 5.0, is_read=True, is_new_progress=True, now=0.0)
        result = await detector.check("u", "e2", 5.0, is_read=True, is_new_progress=True, now=1.0)
        assert not result.deny_reward

    @pytest.mark.asyncio
    async def test_unresolved_target_is_not_checked(self):
        detector = BotDetector(MemoryCounterStore())
        result = await detector.check("u", "e", None, is_read=True, is_new_progress=False)
        assert result.violations == []


class TestTimingRegularity:
    @pytest.mark.asyncio
    async def test_metronome_cadence_flags_pattern(self):
        detector = BotDetector(MemoryCounterStore())
        results = []
        for i in range(7):
            results.append(
                await detector.check("u", "e", float(i + 1), is_read=True, is_new_progress=True, now=i * 30.0)
            )

        # Five intervals are needed: the sixth action is the first that can match.
        assert not any(r.deny_reward for r in results[:5])
        assert results[5].deny_reward
        assert ViolationKind.PATTERN_REPETITION.value in results[5].reasons

    @pytest.mark.asyncio
    async def test_irregular_cadence_passes(self):
        detector = BotDetector(MemoryCounterStore())
        times = [0.0, 20.0, 95.0, 110.0, 260.0, 270.0, 400.0]
        for i, t in enumerate(times):
            result = await detector.check("u", "e", float(i + 1), is_read=True, is_new_progress=True, now=t)
            assert not result.deny_reward

    @pytest.mark.asyncio
    async def test_sub_five_second_intervals_are_ignored(self):
        detector = BotDetector(MemoryCounterStore())
        for i in range(10):
            result = await detector.check("u", "e", float(i + 1), is_read=True, is_new_progress=True, now=i * 1.0)
            assert ViolationKind.PATTERN_REPETITION.value not in result.reasons

    @pytest.mark.asyncio
    async def test_non_progress_actions_do_not_feed_timing(self):
        detector = BotDetector(MemoryCounterStore())
        for i in range(7):
            result = await detector.check("u", "e", float(i + 1), is_read=True, is_new_progress=False, now=i * 30.0)
            assert not result.deny_reward


class TestStatusToggle:
    @pytest.mark.asyncio
    async def test_toggle_spam_is_flagged_without_denying(self):
        detector = BotDetector(MemoryCounterStore())
        flagged = []
        for i in range(STATUS_TOGGLE_LIMIT + 3):
            is_read = i % 2 == 0
            # Alternate targets so the repeat heuristic stays quiet
            result = await detector.check("u", "e", float(i + 1), is_read=is_read, is_new_progress=False, now=float(i))
            flagged.append(ViolationKind.STATUS_TOGGLE.value in result.reasons)
            assert not result.deny_reward

        # First call sets the baseline; toggles 1..3 are tolerated, the 4th is flagged
        assert flagged[: STATUS_TOGGLE_LIMIT + 1] == [False] * (STATUS_TOGGLE_LIMIT + 1)
        assert flagged[STATUS_TOGGLE_LIMIT + 1]


class TestDeferredHistory:
    @pytest.mark.asyncio
    async def test_unflushed_history_is_invisible(self):
        store = MemoryCounterStore()
        detector = BotDetector(store)

        # First attempt's history is queued but never flushed (rolled back).
        await detector.check("u", "e", 5.0, is_read=True, is_new_progress=True, now=0.0, writes=DeferredWrites())
        retry = await detector.check("u", "e", 5.0, is_read=True, is_new_progress=True, now=1.0)

        assert not retry.deny_reward
        assert retry.violations == []

    @pytest.mark.asyncio
    async def test_flushed_history_is_seen(self):
        store = MemoryCounterStore()
        detector = BotDetector(store)
        writes = DeferredWrites()

        await detector.check("u", "e", 5.0, is_read=True, is_new_progress=True, now=0.0, writes=writes)
        assert len(writes) > 0
        await writes.flush(store)
        second = await detector.check("u", "e", 5.0, is_read=True, is_new_progress=False, now=1.0)

        assert second.deny_reward
