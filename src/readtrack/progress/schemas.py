"""Pydantic request/response models for progress endpoints."""

from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, model_validator

MAX_CHAPTER_NUMBER = 100_000
MAX_READING_TIME_SECONDS = 86_400


class ProgressUpdateRequest(BaseModel):
    """Mark a chapter read (or unread). ``chapter_number`` wins over ``chapter_slug``."""

    model_config = ConfigDict(extra="forbid")

    chapter_number: float | None = Field(default=None, ge=0, le=MAX_CHAPTER_NUMBER, allow_inf_nan=False)
    chapter_slug: str | None = Field(default=None, min_length=1, max_length=128)
    is_read: bool = True
    timestamp: datetime | None = None
    device_id: str | None = Field(default=None, max_length=100)
    source_id: uuid.UUID | None = None
    reading_time_seconds: int | None = Field(default=None, ge=0, le=MAX_READING_TIME_SECONDS)

    @model_validator(mode="after")
    def require_target(self) -> ProgressUpdateRequest:
        if self.chapter_number is None and self.chapter_slug is None:
            raise ValueError("chapter_number or chapter_slug is required")
        return self


class ProgressResetRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    chapter_number: float = Field(ge=0, le=MAX_CHAPTER_NUMBER, allow_inf_nan=False)


class LibraryEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    series_id: uuid.UUID | None
    last_read_chapter: float
    last_read_at: datetime | None
    updated_at: datetime


class AchievementUnlockResponse(BaseModel):
    code: str
    name: str
    xp_reward: int
    rarity: str
    is_seasonal: bool = False


class ProgressResponse(BaseModel):
    entry: LibraryEntryResponse
    xp_gained: int
    new_streak: int
    new_level: int
    achievements: list[AchievementUnlockResponse] = []
    units_backfilled: int = 0
