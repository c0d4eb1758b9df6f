"""Insert-only activity feed rows."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from readtrack.db.models import ActivityLog

CHAPTER_READ = "chapter_read"
ACHIEVEMENT_UNLOCKED = "achievement_unlocked"
SEASONAL_ACHIEVEMENT_UNLOCKED = "seasonal_achievement_unlocked"


def log_activity(
    db: AsyncSession,
    user_id: uuid.UUID,
    activity_type: str,
    *,
    series_id: uuid.UUID | None = None,
    metadata: dict | None = None,
    now: datetime | None = None,
) -> ActivityLog:
    row = ActivityLog(
        user_id=user_id,
        activity_type=activity_type,
        series_id=series_id,
        activity_metadata=metadata or {},
        created_at=now or datetime.now(timezone.utc),
    )
    db.add(row)
    return row
