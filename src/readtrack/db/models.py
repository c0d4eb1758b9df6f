"""ORM models for the reading-progress and reward schema.

Table definitions mirror alembic/versions/001_progress_core.py. Column types
stay portable (Uuid, JSON) so the same models run on SQLite in tests.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from readtrack.db.base import Base, BigIntPK

JSONType = JSON().with_variant(JSONB(), "postgresql")


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class User(Base):
    """Maps to the 'users' table. Accounts are owned by the auth service."""

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    username: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    reward_profile: Mapped[UserRewardProfile | None] = relationship(
        "UserRewardProfile", back_populates="user", uselist=False,
    )


class UserRewardProfile(Base):
    """Denormalized reward summary. Single row per user, mutated once per commit."""

    __tablename__ = "user_reward_profiles"

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True,
    )
    xp: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    level: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    streak_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    longest_streak: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    last_read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    season_xp: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    current_season: Mapped[str | None] = mapped_column(String(10), nullable=True)
    chapters_read_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    trust_score: Mapped[float] = mapped_column(Float, nullable=False, default=1.0, server_default="1.0")
    trust_score_updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), default=func.now(),
    )

    user: Mapped[User] = relationship("User", back_populates="reward_profile")


# ---------------------------------------------------------------------------
# Catalog (read-only for this service)
# ---------------------------------------------------------------------------


class Series(Base):
    """A serialized publication."""

    __tablename__ = "series"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    title: Mapped[str] = mapped_column(String(512), nullable=False)


class Chapter(Base):
    """One content unit of a series."""

    __tablename__ = "chapters"
    __table_args__ = (
        UniqueConstraint("series_id", "chapter_number", name="chapters_series_id_chapter_number_key"),
        UniqueConstraint("series_id", "chapter_slug", name="chapters_series_id_chapter_slug_key"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    series_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("series.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    chapter_number: Mapped[float] = mapped_column(Float, nullable=False)
    chapter_slug: Mapped[str | None] = mapped_column(String(128), nullable=True)
    page_count: Mapped[int | None] = mapped_column(Integer, nullable=True)


# ---------------------------------------------------------------------------
# Library & reads
# ---------------------------------------------------------------------------


class LibraryEntry(Base):
    """A user's relationship to one series. ``last_read_chapter`` is the read cursor."""

    __tablename__ = "library_entries"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    series_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("series.id", ondelete="SET NULL"), nullable=True,
    )
    last_read_chapter: Mapped[float] = mapped_column(Float, nullable=False, default=0.0, server_default="0")
    last_read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), default=func.now(),
    )
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class UserChapterRead(Base):
    """Per-user read state of one chapter. UNIQUE(user_id, chapter_id), last-write-wins."""

    __tablename__ = "user_chapter_reads"
    __table_args__ = (
        UniqueConstraint("user_id", "chapter_id", name="user_chapter_reads_user_id_chapter_id_key"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False,
    )
    chapter_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("chapters.id", ondelete="CASCADE"), nullable=False,
    )
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    device_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    source_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    server_received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(),
    )


# ---------------------------------------------------------------------------
# Trust
# ---------------------------------------------------------------------------


class TrustViolation(Base):
    """Immutable log of trust-score penalties, also used for cooldown checks."""

    __tablename__ = "trust_violations"
    __table_args__ = (
        Index("idx_trust_violations_user_kind_created", "user_id", "violation_type", "created_at"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False,
    )
    violation_type: Mapped[str] = mapped_column(String(32), nullable=False)
    severity: Mapped[float] = mapped_column(Float, nullable=False)
    previous_score: Mapped[float] = mapped_column(Float, nullable=False)
    new_score: Mapped[float] = mapped_column(Float, nullable=False)
    violation_metadata: Mapped[dict[str, Any]] = mapped_column("metadata", JSONType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


# ---------------------------------------------------------------------------
# Achievements
# ---------------------------------------------------------------------------


class Achievement(Base):
    """Achievement definition with a single threshold criterion."""

    __tablename__ = "achievements"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    xp_reward: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    rarity: Mapped[str] = mapped_column(String(16), nullable=False, default="common")
    criteria_type: Mapped[str] = mapped_column(String(32), nullable=False)
    threshold: Mapped[int] = mapped_column(Integer, nullable=False)
    is_seasonal: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class UserAchievement(Base):
    """Unlocked achievements. UNIQUE(user_id, achievement_id, season_key) prevents duplicates.

    ``season_key`` is the empty string for permanent achievements so the
    uniqueness constraint holds without NULL semantics.
    """

    __tablename__ = "user_achievements"
    __table_args__ = (
        UniqueConstraint(
            "user_id", "achievement_id", "season_key",
            name="user_achievements_user_id_achievement_id_season_key_key",
        ),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False,
    )
    achievement_id: Mapped[int] = mapped_column(Integer, ForeignKey("achievements.id"), nullable=False)
    season_key: Mapped[str] = mapped_column(String(10), nullable=False, default="")
    unlocked_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    achievement: Mapped[Achievement] = relationship("Achievement", lazy="joined")


# ---------------------------------------------------------------------------
# Activity & telemetry (insert-only)
# ---------------------------------------------------------------------------


class ActivityLog(Base):
    """Activity feed source rows."""

    __tablename__ = "activity_log"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    activity_type: Mapped[str] = mapped_column(String(48), nullable=False)
    series_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    activity_metadata: Mapped[dict[str, Any]] = mapped_column("metadata", JSONType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class ReadTelemetry(Base):
    """One row per read event, for analytics and anti-cheat tuning. Never mutated."""

    __tablename__ = "read_telemetry"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    series_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    chapter_number: Mapped[float] = mapped_column(Float, nullable=False)
    read_duration_seconds: Mapped[int] = mapped_column(Integer, nullable=False)
    page_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    device_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    flagged: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
