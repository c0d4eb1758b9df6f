"""Integration tests for the progress commit engine: rewards, backfill, locking, failures."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from readtrack.db.models import (
    ActivityLog,
    LibraryEntry,
    ReadTelemetry,
    TrustViolation,
    UserAchievement,
    UserChapterRead,
    UserRewardProfile,
)
from readtrack.exceptions import EntryNotFoundError, TransientError, ValidationFailedError
from readtrack.gamification.levels import XP_PER_CHAPTER
from readtrack.gamification.streak_service import calculate_streak_bonus
from readtrack.gamification.trust_score import ViolationKind
from readtrack.progress.engine import ProgressCommand, ProgressCommitEngine
from readtrack.ratelimit.limiter import Budget, RateLimiter, budget_key

FIRST_READ_XP = XP_PER_CHAPTER + calculate_streak_bonus(1)


async def _read_count(session_factory, user_id) -> int:
    async with session_factory() as db:
        result = await db.execute(
            select(func.count(UserChapterRead.id)).where(
                UserChapterRead.user_id == user_id,
                UserChapterRead.is_read.is_(True),
            )
        )
        return result.scalar_one()


async def _profile(session_factory, user_id) -> UserRewardProfile:
    async with session_factory() as db:
        result = await db.execute(select(UserRewardProfile).where(UserRewardProfile.user_id == user_id))
        return result.scalar_one()


async def _violations(session_factory, user_id) -> list[str]:
    async with session_factory() as db:
        result = await db.execute(
            select(TrustViolation.violation_type).where(TrustViolation.user_id == user_id)
        )
        return list(result.scalars().all())


class TestRewardScenarios:
    """Jump, replay and concurrency scenarios."""

    @pytest.mark.asyncio
    async def test_jump_to_fifty_grants_once_and_backfills(self, engine, world, session_factory):
        """0 -> 50 grants one reward plus the streak bonus and marks 50 chapters read."""
        outcome = await engine.commit(ProgressCommand(
            user_id=world.user_id, entry_id=world.entry_id, chapter_number=50,
        ))

        assert outcome.xp_gained == FIRST_READ_XP
        assert outcome.units_backfilled == 50
        assert outcome.new_streak == 1
        assert outcome.entry.last_read_chapter == 50
        assert await _read_count(session_factory, world.user_id) == 50

    @pytest.mark.asyncio
    async def test_jump_size_does_not_multiply_reward(self, engine, world):
        small = await engine.commit(ProgressCommand(
            user_id=world.other_user_id, entry_id=world.other_entry_id, chapter_number=1,
        ))
        big = await engine.commit(ProgressCommand(
            user_id=world.user_id, entry_id=world.entry_id, chapter_number=60,
        ))
        assert small.xp_gained == big.xp_gained == FIRST_READ_XP

    @pytest.mark.asyncio
    async def test_replay_grants_nothing(self, engine, world, session_factory):
        cmd = ProgressCommand(user_id=world.user_id, entry_id=world.entry_id, chapter_number=50)
        await engine.commit(cmd)
        profile_before = await _profile(session_factory, world.user_id)

        replay = await engine.commit(cmd)

        assert replay.xp_gained == 0
        assert replay.units_backfilled == 0
        assert await _read_count(session_factory, world.user_id) == 50
        profile_after = await _profile(session_factory, world.user_id)
        assert profile_after.xp == profile_before.xp
        assert profile_after.chapters_read_count == 1
        assert ViolationKind.REPEATED_SAME_CHAPTER.value in await _violations(session_factory, world.user_id)

    @pytest.mark.asyncio
    async def test_ten_concurrent_identical_requests_grant_once(self, engine, world, session_factory):
        cmd = ProgressCommand(user_id=world.user_id, entry_id=world.entry_id, chapter_number=10)

        outcomes = await asyncio.gather(*[engine.commit(cmd) for _ in range(10)])

        granted = [o for o in outcomes if o.xp_gained > 0]
        assert len(granted) == 1
        assert sum(o.units_backfilled for o in outcomes) == 10
        profile = await _profile(session_factory, world.user_id)
        assert profile.chapters_read_count == 1
        assert len(engine.locks) == 0

    @pytest.mark.asyncio
    async def test_reward_budget_exhaustion_still_writes_progress(self, world, session_factory, counter_store):
        limiter = RateLimiter(
            counter_store,
            request_budgets=(Budget("req", 100, 60),),
            reward_budgets=(Budget("grant", 1, 60),),
        )
        engine = ProgressCommitEngine(session_factory, counter_store, limiter)

        first = await engine.commit(ProgressCommand(
            user_id=world.user_id, entry_id=world.entry_id, chapter_number=3,
        ))
        second = await engine.commit(ProgressCommand(
            user_id=world.user_id, entry_id=world.entry_id, chapter_number=8,
        ))
        await engine.effects.drain()

        assert first.xp_gained > 0
        assert second.xp_gained == 0
        assert second.entry.last_read_chapter == 8
        assert second.units_backfilled == 5


class TestCursor:
    @pytest.mark.asyncio
    async def test_cursor_never_regresses(self, engine, world):
        await engine.commit(ProgressCommand(user_id=world.user_id, entry_id=world.entry_id, chapter_number=10))
        back = await engine.commit(ProgressCommand(user_id=world.user_id, entry_id=world.entry_id, chapter_number=5))

        assert back.entry.last_read_chapter == 10
        assert back.xp_gained == 0
        assert not back.is_new_progress

    @pytest.mark.asyncio
    async def test_slug_resolves_within_series(self, engine, world):
        outcome = await engine.commit(ProgressCommand(
            user_id=world.user_id, entry_id=world.entry_id, chapter_slug="chapter-7",
        ))
        assert outcome.entry.last_read_chapter == 7
        assert outcome.units_backfilled == 7

    @pytest.mark.asyncio
    async def test_number_wins_over_slug(self, engine, world):
        outcome = await engine.commit(ProgressCommand(
            user_id=world.user_id, entry_id=world.entry_id, chapter_number=4, chapter_slug="chapter-9",
        ))
        assert outcome.entry.last_read_chapter == 4

    @pytest.mark.asyncio
    async def test_unknown_slug_is_a_no_op(self, engine, world):
        outcome = await engine.commit(ProgressCommand(
            user_id=world.user_id, entry_id=world.entry_id, chapter_slug="does-not-exist",
        ))
        assert outcome.entry.last_read_chapter == 0
        assert outcome.xp_gained == 0
        assert outcome.units_backfilled == 0

    @pytest.mark.asyncio
    async def test_missing_target_is_rejected(self, engine, world):
        with pytest.raises(ValidationFailedError):
            await engine.commit(ProgressCommand(user_id=world.user_id, entry_id=world.entry_id))

    @pytest.mark.asyncio
    async def test_future_timestamp_is_clamped(self, engine, world):
        future = datetime.now(timezone.utc) + timedelta(days=3)
        outcome = await engine.commit(ProgressCommand(
            user_id=world.user_id, entry_id=world.entry_id, chapter_number=2, timestamp=future,
        ))
        assert outcome.entry.last_read_at <= datetime.now(timezone.utc)

    @pytest.mark.asyncio
    async def test_mark_unread_keeps_cursor(self, engine, world, session_factory):
        await engine.commit(ProgressCommand(user_id=world.user_id, entry_id=world.entry_id, chapter_number=5))
        outcome = await engine.commit(ProgressCommand(
            user_id=world.user_id,
            entry_id=world.entry_id,
            chapter_number=3,
            is_read=False,
            timestamp=datetime.now(timezone.utc),
        ))

        assert outcome.entry.last_read_chapter == 5
        assert outcome.xp_gained == 0
        async with session_factory() as db:
            row = (await db.execute(
                select(UserChapterRead).where(
                    UserChapterRead.user_id == world.user_id,
                    UserChapterRead.chapter_id == world.chapter_ids[3.0],
                )
            )).scalar_one()
        assert row.is_read is False
        assert row.read_at is not None


class TestOwnership:
    @pytest.mark.asyncio
    async def test_foreign_entry_is_not_found(self, engine, world):
        with pytest.raises(EntryNotFoundError):
            await engine.commit(ProgressCommand(
                user_id=world.user_id, entry_id=world.other_entry_id, chapter_number=1,
            ))

    @pytest.mark.asyncio
    async def test_deleted_entry_is_not_found(self, engine, world, session_factory):
        async with session_factory() as db:
            entry = await db.get(LibraryEntry, world.entry_id)
            entry.deleted_at = datetime.now(timezone.utc)
            await db.commit()

        with pytest.raises(EntryNotFoundError):
            await engine.commit(ProgressCommand(
                user_id=world.user_id, entry_id=world.entry_id, chapter_number=1,
            ))


class TestReset:
    @pytest.mark.asyncio
    async def test_reset_moves_cursor_back_and_keeps_records(self, engine, world, session_factory):
        await engine.commit(ProgressCommand(user_id=world.user_id, entry_id=world.entry_id, chapter_number=20))

        entry = await engine.reset_progress(world.entry_id, 5)

        assert entry.last_read_chapter == 5
        assert await _read_count(session_factory, world.user_id) == 20

    @pytest.mark.asyncio
    async def test_reset_cannot_move_forward(self, engine, world):
        await engine.commit(ProgressCommand(user_id=world.user_id, entry_id=world.entry_id, chapter_number=5))
        with pytest.raises(ValidationFailedError):
            await engine.reset_progress(world.entry_id, 30)


class TestAdvisoryChecks:
    @pytest.mark.asyncio
    async def test_speed_read_lowers_trust_but_keeps_reward(self, engine, world, session_factory):
        await engine.commit(ProgressCommand(user_id=world.user_id, entry_id=world.entry_id, chapter_number=1))
        outcome = await engine.commit(ProgressCommand(
            user_id=world.user_id, entry_id=world.entry_id, chapter_number=2, read_duration_seconds=5,
        ))

        assert outcome.suspicious_read
        assert outcome.xp_gained > 0
        profile = await _profile(session_factory, world.user_id)
        assert profile.trust_score == pytest.approx(0.98)
        assert ViolationKind.SPEED_READ.value in await _violations(session_factory, world.user_id)

    @pytest.mark.asyncio
    async def test_violation_cooldown(self, engine, world, session_factory):
        await engine.commit(ProgressCommand(user_id=world.user_id, entry_id=world.entry_id, chapter_number=1))
        for n in (2, 3):
            await engine.commit(ProgressCommand(
                user_id=world.user_id, entry_id=world.entry_id, chapter_number=n, read_duration_seconds=5,
            ))

        kinds = await _violations(session_factory, world.user_id)
        assert kinds.count(ViolationKind.SPEED_READ.value) == 1

    @pytest.mark.asyncio
    async def test_telemetry_written_after_commit(self, engine, world, session_factory):
        await engine.commit(ProgressCommand(
            user_id=world.user_id, entry_id=world.entry_id, chapter_number=4, device_id="tablet",
        ))
        await engine.effects.drain()

        async with session_factory() as db:
            rows = (await db.execute(select(ReadTelemetry))).scalars().all()
        assert len(rows) == 1
        assert rows[0].chapter_number == 4
        assert rows[0].device_id == "tablet"
        assert rows[0].page_count == 20


class TestAchievements:
    @pytest.mark.asyncio
    async def test_first_read_unlocks_first_chapter(self, engine, world, session_factory):
        outcome = await engine.commit(ProgressCommand(
            user_id=world.user_id, entry_id=world.entry_id, chapter_number=1,
        ))

        assert [a.code for a in outcome.achievements] == ["first_chapter"]
        profile = await _profile(session_factory, world.user_id)
        assert profile.xp == FIRST_READ_XP + outcome.achievements[0].xp_reward
        async with session_factory() as db:
            types = (await db.execute(
                select(ActivityLog.activity_type).where(ActivityLog.user_id == world.user_id)
            )).scalars().all()
        assert sorted(types) == ["achievement_unlocked", "chapter_read"]

    @pytest.mark.asyncio
    async def test_achievement_unlocks_once(self, engine, world, session_factory):
        await engine.commit(ProgressCommand(user_id=world.user_id, entry_id=world.entry_id, chapter_number=1))
        second = await engine.commit(ProgressCommand(
            user_id=world.user_id, entry_id=world.entry_id, chapter_number=2,
        ))

        assert second.achievements == []
        async with session_factory() as db:
            count = (await db.execute(
                select(func.count(UserAchievement.id)).where(UserAchievement.user_id == world.user_id)
            )).scalar_one()
        assert count == 1

    @pytest.mark.asyncio
    async def test_failure_keeps_progress_and_schedules_retry(self, engine, world, session_factory, arq_pool):
        failing = AsyncMock(side_effect=RuntimeError("achievement store offline"))
        with patch("readtrack.progress.engine.evaluate_achievements", failing):
            outcome = await engine.commit(ProgressCommand(
                user_id=world.user_id, entry_id=world.entry_id, chapter_number=3,
            ))
        await engine.effects.drain()

        assert outcome.achievement_check_failed
        assert outcome.xp_gained == FIRST_READ_XP
        assert outcome.entry.last_read_chapter == 3
        profile = await _profile(session_factory, world.user_id)
        assert profile.xp == FIRST_READ_XP

        arq_pool.enqueue_job.assert_awaited_once()
        args, kwargs = arq_pool.enqueue_job.call_args
        assert args[0] == "retry_achievement_check"
        assert args[1]["user_id"] == str(world.user_id)
        assert args[1]["trigger"] == "chapter_read"
        assert kwargs["_defer_by"] == timedelta(seconds=5)


class TestTimeout:
    @pytest.mark.asyncio
    async def test_lock_wait_past_timeout_is_transient(self, world, session_factory, counter_store, generous_limiter):
        engine = ProgressCommitEngine(
            session_factory, counter_store, generous_limiter, commit_timeout_seconds=0.05,
        )
        async with engine.locks.hold(world.entry_id):
            with pytest.raises(TransientError) as exc_info:
                await engine.commit(ProgressCommand(
                    user_id=world.user_id, entry_id=world.entry_id, chapter_number=1,
                ))
        assert exc_info.value.retryable


def _dropped_connection() -> AsyncMock:
    return AsyncMock(side_effect=OperationalError("INSERT", {}, ConnectionResetError("connection reset")))


class TestRetryAfterRollback:
    """A retried request after a rolled-back attempt is judged as if it were the first."""

    @pytest.mark.asyncio
    async def test_retry_after_transient_failure_still_grants(self, engine, world, session_factory):
        await engine.commit(ProgressCommand(user_id=world.user_id, entry_id=world.entry_id, chapter_number=5))
        cmd = ProgressCommand(user_id=world.user_id, entry_id=world.entry_id, chapter_number=20)

        with patch("readtrack.progress.engine.backfill_reads", _dropped_connection()):
            with pytest.raises(TransientError):
                await engine.commit(cmd)

        retry = await engine.commit(cmd)

        assert retry.xp_gained == FIRST_READ_XP
        assert retry.bot_reasons == []
        assert retry.entry.last_read_chapter == 20
        profile = await _profile(session_factory, world.user_id)
        assert profile.trust_score == 1.0
        assert await _violations(session_factory, world.user_id) == []

    @pytest.mark.asyncio
    async def test_rolled_back_attempt_does_not_spend_reward_budget(self, world, session_factory, counter_store):
        grant_budget = Budget("grant", 1, 60)
        limiter = RateLimiter(
            counter_store,
            request_budgets=(Budget("req", 100, 60),),
            reward_budgets=(grant_budget,),
        )
        engine = ProgressCommitEngine(session_factory, counter_store, limiter)
        cmd = ProgressCommand(user_id=world.user_id, entry_id=world.entry_id, chapter_number=3)

        with patch("readtrack.progress.engine.backfill_reads", _dropped_connection()):
            with pytest.raises(TransientError):
                await engine.commit(cmd)
        assert (await counter_store.peek(budget_key(grant_budget, str(world.user_id)))).count == 0

        retry = await engine.commit(cmd)

        assert retry.xp_gained == FIRST_READ_XP
        assert (await counter_store.peek(budget_key(grant_budget, str(world.user_id)))).count == 1
        await engine.effects.drain()
