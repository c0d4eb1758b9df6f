"""Progress commit engine.

Applies one "mark chapter N as read" action atomically:

1. lock the library entry (in-process mutex + ``FOR UPDATE``) and the
   reward profile,
2. resolve the target chapter and decide whether it is new progress,
3. run the advisory anti-abuse checks, which only ever touch the trust
   score or the reward,
4. grant at most one reward, whatever the size of the jump,
5. advance the monotonic cursor and backfill every skipped chapter,
6. evaluate achievements in a savepoint,
7. commit, then apply the queued abuse-history and reward-budget updates
   and fire best-effort effects (feed invalidation, telemetry, achievement
   retry).

Counter-store history is only written after a successful commit, and
replaying a committed action yields zero reward, so every failure here is
safe for the client to retry.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from redis.exceptions import RedisError
from sqlalchemy import select, text
from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from readtrack.antiabuse.bot_detector import BotCheckResult, BotDetector
from readtrack.antiabuse.read_time import ReadTimeValidator, elapsed_seconds, should_validate
from readtrack.config import Settings
from readtrack.db.dialect import supports_row_locks
from readtrack.db.models import Chapter, LibraryEntry, UserChapterRead, UserRewardProfile
from readtrack.exceptions import (
    ConflictError,
    EntryNotFoundError,
    ReadTrackError,
    TransientError,
    ValidationFailedError,
)
from readtrack.gamification.achievement_service import (
    TRIGGER_CHAPTER_READ,
    TRIGGER_STREAK_REACHED,
    UnlockedAchievement,
    evaluate_achievements,
)
from readtrack.gamification.activity import CHAPTER_READ, log_activity
from readtrack.gamification.levels import XP_PER_CHAPTER
from readtrack.gamification.streak_service import (
    calculate_new_streak,
    calculate_streak_bonus,
    ensure_utc,
)
from readtrack.gamification.trust_service import record_violation
from readtrack.gamification.xp_service import apply_xp, lock_profile
from readtrack.progress.backfill import backfill_reads, upsert_read_states
from readtrack.progress.effects import (
    BackgroundEffects,
    enqueue_achievement_retry,
    invalidate_feed,
    record_telemetry,
)
from readtrack.progress.locks import EntryLockRegistry
from readtrack.ratelimit.limiter import RateLimiter
from readtrack.ratelimit.store import CounterStore, DeferredWrites

logger = logging.getLogger(__name__)

# PostgreSQL SQLSTATEs worth retrying: lock_not_available, query_canceled,
# serialization_failure, deadlock_detected.
LOCK_NOT_AVAILABLE = "55P03"
TRANSIENT_SQLSTATES = frozenset({LOCK_NOT_AVAILABLE, "57014", "40001", "40P01"})

DEFAULT_TELEMETRY_SECONDS_PER_PAGE = 8
DEFAULT_TELEMETRY_SECONDS = 144


@dataclass
class ProgressCommand:
    """One progress action. ``chapter_number`` wins over ``chapter_slug``."""

    user_id: uuid.UUID
    entry_id: uuid.UUID
    chapter_number: float | None = None
    chapter_slug: str | None = None
    is_read: bool = True
    timestamp: datetime | None = None
    device_id: str | None = None
    source_id: uuid.UUID | None = None
    read_duration_seconds: int | None = None


@dataclass
class ProgressOutcome:
    entry: LibraryEntry
    xp_gained: int
    new_streak: int
    new_level: int
    achievements: list[UnlockedAchievement] = field(default_factory=list)
    units_backfilled: int = 0
    is_new_progress: bool = False
    achievement_check_failed: bool = False
    bot_reasons: list[str] = field(default_factory=list)
    suspicious_read: bool = False
    target_chapter: float | None = None
    page_count: int | None = None
    read_seconds: float | None = None

    def telemetry_duration(self) -> int:
        """Reported or measured read time, else an estimate from the page count."""
        if self.read_seconds is not None:
            return int(self.read_seconds)
        if self.page_count:
            return self.page_count * DEFAULT_TELEMETRY_SECONDS_PER_PAGE
        return DEFAULT_TELEMETRY_SECONDS


@dataclass
class _Target:
    number: float
    chapter: Chapter | None
    resolved: bool


def sqlstate(exc: DBAPIError) -> str | None:
    orig = exc.orig
    return getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)


def is_transient_db_error(exc: DBAPIError) -> bool:
    if isinstance(exc, (OperationalError, InterfaceError)) or exc.connection_invalidated:
        return True
    return sqlstate(exc) in TRANSIENT_SQLSTATES


class ProgressCommitEngine:
    """Orchestrates the progress transaction and its follow-up effects."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        store: CounterStore,
        limiter: RateLimiter,
        *,
        redis: Any = None,  # noqa: ANN401
        arq: Any = None,  # noqa: ANN401
        effects: BackgroundEffects | None = None,
        locks: EntryLockRegistry | None = None,
        commit_timeout_seconds: float = 15.0,
        lock_timeout_ms: int = 5000,
        achievement_retry_delay_seconds: int = 5,
    ) -> None:
        self.session_factory = session_factory
        self.store = store
        self.limiter = limiter
        self.bot_detector = BotDetector(store)
        self.read_time = ReadTimeValidator(store)
        self.redis = redis
        self.arq = arq
        self.effects = effects or BackgroundEffects()
        self.locks = locks or EntryLockRegistry()
        self.commit_timeout_seconds = commit_timeout_seconds
        self.lock_timeout_ms = lock_timeout_ms
        self.achievement_retry_delay_seconds = achievement_retry_delay_seconds

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        store: CounterStore,
        **kwargs: Any,  # noqa: ANN401
    ) -> ProgressCommitEngine:
        return cls(
            session_factory,
            store,
            RateLimiter.from_settings(store, settings),
            commit_timeout_seconds=settings.commit_timeout_seconds,
            lock_timeout_ms=settings.lock_timeout_ms,
            achievement_retry_delay_seconds=settings.achievement_retry_delay_seconds,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def commit(self, cmd: ProgressCommand) -> ProgressOutcome:
        """Apply a progress action. Classified failures raise ``ReadTrackError`` subclasses."""
        if cmd.chapter_number is None and not cmd.chapter_slug:
            raise ValidationFailedError("chapter_number or chapter_slug is required")

        received_at = datetime.now(timezone.utc)
        writes = DeferredWrites()
        outcome = await self._run_locked(cmd.entry_id, self._apply, cmd, received_at, writes, writes=writes)
        self._after_commit(cmd, outcome, received_at)
        return outcome

    async def reset_progress(self, entry_id: uuid.UUID, chapter_number: float) -> LibraryEntry:
        """Administrative reset: the only way the cursor may move backwards.

        Read records are kept.
        """
        return await self._run_locked(entry_id, self._apply_reset, entry_id, chapter_number)

    # ------------------------------------------------------------------
    # Transaction plumbing
    # ------------------------------------------------------------------

    async def _run_locked(
        self,
        entry_id: uuid.UUID,
        fn: Any,  # noqa: ANN401
        *args: Any,  # noqa: ANN401
        writes: DeferredWrites | None = None,
    ) -> Any:  # noqa: ANN401
        """Run ``fn(db, *args)`` in one transaction under the entry mutex, bounded by the commit timeout.

        ``writes`` is flushed to the counter store only after the commit succeeds.
        """

        async def locked() -> Any:  # noqa: ANN401
            async with self.locks.hold(entry_id):
                result = await self._in_transaction(fn, *args)
                if writes is not None:
                    await self._flush_writes(writes)
                return result

        try:
            return await asyncio.wait_for(locked(), timeout=self.commit_timeout_seconds)
        except asyncio.TimeoutError as e:
            logger.warning("Progress transaction for entry %s timed out", entry_id)
            raise TransientError("Progress update timed out, please retry") from e

    async def _flush_writes(self, writes: DeferredWrites) -> None:
        try:
            await writes.flush(self.store)
        except (RedisError, OSError):
            logger.warning("Counter store update after commit failed", exc_info=True)

    async def _in_transaction(self, fn: Any, *args: Any) -> Any:  # noqa: ANN401
        async with self.session_factory() as db:
            try:
                if supports_row_locks(db):
                    await db.execute(text(f"SET LOCAL lock_timeout = '{int(self.lock_timeout_ms)}ms'"))
                result = await fn(db, *args)
                await db.commit()
                return result
            except ReadTrackError:
                await db.rollback()
                raise
            except IntegrityError as e:
                await db.rollback()
                logger.warning("Progress write conflict: %s", e.orig)
                raise ConflictError("Concurrent update conflict, please retry") from e
            except DBAPIError as e:
                await db.rollback()
                if is_transient_db_error(e):
                    logger.warning("Transient database failure: %s", e.orig)
                    raise TransientError("Database temporarily unavailable") from e
                raise
            except OSError as e:
                await db.rollback()
                logger.warning("Database connection failure: %s", e)
                raise TransientError("Database temporarily unavailable") from e

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _lock_entry(self, db: AsyncSession, entry_id: uuid.UUID) -> LibraryEntry | None:
        stmt = (
            select(LibraryEntry)
            .where(LibraryEntry.id == entry_id)
            .execution_options(populate_existing=True)
        )
        if supports_row_locks(db):
            stmt = stmt.with_for_update()
        return (await db.execute(stmt)).scalar_one_or_none()

    async def _resolve_target(
        self,
        db: AsyncSession,
        entry: LibraryEntry,
        cmd: ProgressCommand,
    ) -> _Target:
        cursor = entry.last_read_chapter or 0.0
        if cmd.chapter_number is not None:
            number = float(cmd.chapter_number)
            chapter = None
            if entry.series_id is not None:
                chapter = (
                    await db.execute(
                        select(Chapter).where(
                            Chapter.series_id == entry.series_id,
                            Chapter.chapter_number == number,
                        )
                    )
                ).scalar_one_or_none()
            return _Target(number=number, chapter=chapter, resolved=True)

        if entry.series_id is None:
            return _Target(number=cursor, chapter=None, resolved=False)
        chapter = (
            await db.execute(
                select(Chapter).where(
                    Chapter.series_id == entry.series_id,
                    Chapter.chapter_slug == cmd.chapter_slug,
                )
            )
        ).scalar_one_or_none()
        if chapter is None:
            logger.info("Unknown chapter slug %r for entry %s", cmd.chapter_slug, entry.id)
            return _Target(number=cursor, chapter=None, resolved=False)
        return _Target(number=chapter.chapter_number, chapter=chapter, resolved=True)

    async def _target_already_read(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        chapter_id: uuid.UUID,
    ) -> bool:
        """Point lookup of the target's read row.

        On PostgreSQL the row is taken with ``NOWAIT``; if another transaction
        holds it, that transaction owns the grant and this one treats the
        chapter as already read.
        """
        stmt = select(UserChapterRead.is_read).where(
            UserChapterRead.user_id == user_id,
            UserChapterRead.chapter_id == chapter_id,
        )
        if not supports_row_locks(db):
            return bool((await db.execute(stmt)).scalar_one_or_none())

        try:
            async with db.begin_nested():
                row = (await db.execute(stmt.with_for_update(nowait=True))).scalar_one_or_none()
        except DBAPIError as e:
            if sqlstate(e) != LOCK_NOT_AVAILABLE:
                raise
            logger.info("Target chapter %s locked by a concurrent commit", chapter_id)
            return True
        return bool(row)

    async def _run_advisory_checks(
        self,
        db: AsyncSession,
        cmd: ProgressCommand,
        profile: UserRewardProfile,
        target: _Target,
        cursor: float,
        is_new_progress: bool,
        timestamp: datetime,
        received_at: datetime,
        writes: DeferredWrites,
    ) -> tuple[BotCheckResult, bool, float | None]:
        """Returns the bot result, the suspicious-read flag and the measured read time (if validated)."""
        suspicious = False
        measured: float | None = None

        if cmd.is_read and is_new_progress and target.resolved and should_validate(cursor, target.number):
            measured = elapsed_seconds(cmd.read_duration_seconds, profile.last_read_at, timestamp)
            if measured is not None:
                page_count = target.chapter.page_count if target.chapter else None
                check = await self.read_time.validate(cmd.user_id, measured, page_count, writes=writes)
                if check.is_suspicious and check.violation is not None:
                    suspicious = True
                    await record_violation(
                        db, profile, check.violation,
                        check.metadata(target.number, page_count), now=received_at,
                    )

        bot = await self.bot_detector.check(
            cmd.user_id,
            cmd.entry_id,
            target.number if target.resolved else None,
            is_read=cmd.is_read,
            is_new_progress=is_new_progress,
            writes=writes,
        )
        for kind, metadata in bot.violations:
            await record_violation(db, profile, kind, metadata, now=received_at)

        return bot, suspicious, measured

    async def _apply(
        self,
        db: AsyncSession,
        cmd: ProgressCommand,
        received_at: datetime,
        writes: DeferredWrites,
    ) -> ProgressOutcome:
        # Client clocks may run ahead; never accept a future timestamp.
        timestamp = min(ensure_utc(cmd.timestamp), received_at) if cmd.timestamp else received_at

        entry = await self._lock_entry(db, cmd.entry_id)
        if entry is None or entry.user_id != cmd.user_id or entry.deleted_at is not None:
            raise EntryNotFoundError("Library entry not found")
        profile = await lock_profile(db, cmd.user_id)

        target = await self._resolve_target(db, entry, cmd)
        cursor = entry.last_read_chapter or 0.0
        is_new_progress = target.number > cursor

        already_read = False
        if target.chapter is not None:
            already_read = await self._target_already_read(db, cmd.user_id, target.chapter.id)

        bot, suspicious, measured = await self._run_advisory_checks(
            db, cmd, profile, target, cursor, is_new_progress, timestamp, received_at, writes,
        )

        eligible = cmd.is_read and is_new_progress and not already_read and not bot.deny_reward
        grant = eligible and await self.limiter.consume_reward(str(cmd.user_id), writes=writes)

        old_streak = profile.streak_days or 0
        new_streak = old_streak
        if cmd.is_read:
            new_streak = calculate_new_streak(old_streak, profile.last_read_at, timestamp)
        xp_gained = XP_PER_CHAPTER + calculate_streak_bonus(new_streak) if grant else 0

        # Cursor
        if cmd.is_read and is_new_progress:
            entry.last_read_chapter = target.number
            entry.last_read_at = timestamp
            entry.updated_at = received_at

        # Profile
        if cmd.is_read:
            profile.streak_days = new_streak
            profile.longest_streak = max(profile.longest_streak or 0, new_streak)
            if profile.last_read_at is None or ensure_utc(profile.last_read_at) < timestamp:
                profile.last_read_at = timestamp
        apply_xp(profile, xp_gained, received_at)
        if grant:
            profile.chapters_read_count = (profile.chapters_read_count or 0) + 1
            log_activity(
                db,
                cmd.user_id,
                CHAPTER_READ,
                series_id=entry.series_id,
                metadata={"chapter_number": target.number, "xp": xp_gained},
                now=received_at,
            )

        # Read records
        units_backfilled = 0
        if target.resolved and entry.series_id is not None:
            if cmd.is_read:
                units_backfilled = await backfill_reads(
                    db,
                    cmd.user_id,
                    entry.series_id,
                    target.number,
                    timestamp=timestamp,
                    received_at=received_at,
                    device_id=cmd.device_id,
                    source_id=cmd.source_id,
                )
            elif target.chapter is not None:
                await upsert_read_states(
                    db,
                    cmd.user_id,
                    [target.chapter.id],
                    is_read=False,
                    timestamp=timestamp,
                    received_at=received_at,
                    device_id=cmd.device_id,
                    source_id=cmd.source_id,
                )
        await db.flush()

        # Achievements
        achievements: list[UnlockedAchievement] = []
        achievement_check_failed = False
        streak_increased = new_streak > old_streak
        if grant or streak_increased:
            try:
                async with db.begin_nested():
                    if grant:
                        achievements += await evaluate_achievements(
                            db, cmd.user_id, TRIGGER_CHAPTER_READ, now=received_at,
                        )
                    if streak_increased:
                        achievements += await evaluate_achievements(
                            db, cmd.user_id, TRIGGER_STREAK_REACHED,
                            current_streak=new_streak, now=received_at,
                        )
            except Exception:
                logger.exception("Achievement evaluation failed for user %s", cmd.user_id)
                achievements = []
                achievement_check_failed = True
                await db.refresh(profile)

        logger.info(
            "Progress user=%s entry=%s target=%s new=%s xp=%d backfilled=%d",
            cmd.user_id, entry.id, target.number, is_new_progress, xp_gained, units_backfilled,
        )
        return ProgressOutcome(
            entry=entry,
            xp_gained=xp_gained,
            new_streak=profile.streak_days,
            new_level=profile.level,
            achievements=achievements,
            units_backfilled=units_backfilled,
            is_new_progress=is_new_progress,
            achievement_check_failed=achievement_check_failed,
            bot_reasons=bot.reasons,
            suspicious_read=suspicious,
            target_chapter=target.number if target.resolved else None,
            page_count=target.chapter.page_count if target.chapter else None,
            read_seconds=cmd.read_duration_seconds if cmd.read_duration_seconds is not None else measured,
        )

    async def _apply_reset(
        self,
        db: AsyncSession,
        entry_id: uuid.UUID,
        chapter_number: float,
    ) -> LibraryEntry:
        entry = await self._lock_entry(db, entry_id)
        if entry is None or entry.deleted_at is not None:
            raise EntryNotFoundError("Library entry not found")
        cursor = entry.last_read_chapter or 0.0
        if chapter_number > cursor:
            raise ValidationFailedError("Reset cannot move the cursor forward")

        entry.last_read_chapter = chapter_number
        entry.updated_at = datetime.now(timezone.utc)
        await db.flush()
        logger.warning("Progress reset for entry %s: %s -> %s", entry_id, cursor, chapter_number)
        return entry

    # ------------------------------------------------------------------
    # After commit
    # ------------------------------------------------------------------

    def _after_commit(self, cmd: ProgressCommand, outcome: ProgressOutcome, received_at: datetime) -> None:
        if self.redis is not None:
            self.effects.submit("feed-invalidate", invalidate_feed(self.redis, cmd.user_id))

        entry = outcome.entry
        if cmd.is_read and entry.series_id is not None and outcome.target_chapter is not None:
            self.effects.submit(
                "read-telemetry",
                record_telemetry(
                    self.session_factory,
                    user_id=cmd.user_id,
                    series_id=entry.series_id,
                    chapter_number=outcome.target_chapter,
                    read_duration_seconds=outcome.telemetry_duration(),
                    page_count=outcome.page_count,
                    device_id=cmd.device_id,
                    flagged=outcome.suspicious_read,
                ),
            )

        if outcome.achievement_check_failed:
            if self.arq is None:
                logger.error("Achievement retry for user %s dropped: job queue unavailable", cmd.user_id)
                return
            payload = {
                "user_id": str(cmd.user_id),
                "trigger": TRIGGER_CHAPTER_READ,
                "entry_id": str(cmd.entry_id),
                "timestamp": received_at.isoformat(),
            }
            self.effects.submit(
                "achievement-retry",
                enqueue_achievement_retry(self.arq, payload, self.achievement_retry_delay_seconds),
            )
