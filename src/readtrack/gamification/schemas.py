"""Pydantic response models for reward endpoints."""

from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel


# --- Rewards ---


class UnlockedAchievementResponse(BaseModel):
    code: str
    name: str
    rarity: str
    xp_reward: int
    season: str | None = None
    unlocked_at: datetime


class RewardSummaryResponse(BaseModel):
    xp: int
    level: int
    level_title: str
    xp_into_level: int
    xp_for_level: int
    next_level: int
    streak_days: int
    longest_streak: int
    last_read_at: datetime | None = None
    season_xp: int
    current_season: str | None = None
    season_name: str | None = None
    chapters_read_count: int
    achievements: list[UnlockedAchievementResponse] = []


# --- Trust ---


class TrustStatusResponse(BaseModel):
    trust_score: float
    leaderboard_multiplier: float
    violations_last_24h: int
    is_fully_trusted: bool
    days_until_full_recovery: int
    last_updated: datetime | None = None


# --- Leaderboard ---


class LeaderboardEntry(BaseModel):
    rank: int
    user_id: uuid.UUID
    username: str
    xp: int
    effective_xp: int
    level: int
    trust_score: float


class LeaderboardResponse(BaseModel):
    season: str | None = None
    entries: list[LeaderboardEntry]
