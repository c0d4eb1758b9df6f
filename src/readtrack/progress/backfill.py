"""Bulk read-state writes with last-write-wins semantics."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from readtrack.db.dialect import upsert
from readtrack.db.models import Chapter, UserChapterRead

logger = logging.getLogger(__name__)

MAX_CHAPTERS_PER_BULK = 2000
# Rows per INSERT statement; keeps bind parameters under driver limits.
UPSERT_CHUNK_SIZE = 500


async def _count_read(db: AsyncSession, user_id: uuid.UUID, chapter_ids: list[uuid.UUID]) -> int:
    total = 0
    for i in range(0, len(chapter_ids), UPSERT_CHUNK_SIZE):
        chunk = chapter_ids[i:i + UPSERT_CHUNK_SIZE]
        result = await db.execute(
            select(func.count(UserChapterRead.id)).where(
                UserChapterRead.user_id == user_id,
                UserChapterRead.chapter_id.in_(chunk),
                UserChapterRead.is_read.is_(True),
            )
        )
        total += result.scalar_one()
    return total


async def upsert_read_states(
    db: AsyncSession,
    user_id: uuid.UUID,
    chapter_ids: list[uuid.UUID],
    *,
    is_read: bool,
    timestamp: datetime,
    received_at: datetime,
    device_id: str | None = None,
    source_id: uuid.UUID | None = None,
) -> None:
    """Insert or update read rows. A stored row with a newer ``updated_at`` wins."""
    table = UserChapterRead.__table__
    for i in range(0, len(chapter_ids), UPSERT_CHUNK_SIZE):
        chunk = chapter_ids[i:i + UPSERT_CHUNK_SIZE]
        stmt = upsert(db, UserChapterRead).values([
            {
                "user_id": user_id,
                "chapter_id": chapter_id,
                "is_read": is_read,
                "updated_at": timestamp,
                "read_at": timestamp if is_read else None,
                "device_id": device_id,
                "source_id": source_id,
                "server_received_at": received_at,
            }
            for chapter_id in chunk
        ])
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_id", "chapter_id"],
            set_={
                "is_read": stmt.excluded.is_read,
                "updated_at": stmt.excluded.updated_at,
                "read_at": func.coalesce(table.c.read_at, stmt.excluded.read_at),
                "device_id": stmt.excluded.device_id,
                "source_id": stmt.excluded.source_id,
                "server_received_at": stmt.excluded.server_received_at,
            },
            where=table.c.updated_at <= stmt.excluded.updated_at,
        )
        await db.execute(stmt)


async def backfill_reads(
    db: AsyncSession,
    user_id: uuid.UUID,
    series_id: uuid.UUID,
    target: float,
    *,
    timestamp: datetime,
    received_at: datetime,
    device_id: str | None = None,
    source_id: uuid.UUID | None = None,
) -> int:
    """Mark every chapter numbered ``(0, target]`` as read.

    Returns how many chapters went from unread (or missing) to read.
    Grants no XP.
    """
    result = await db.execute(
        select(Chapter.id)
        .where(
            Chapter.series_id == series_id,
            Chapter.chapter_number > 0,
            Chapter.chapter_number <= target,
        )
        .order_by(Chapter.chapter_number)
        .limit(MAX_CHAPTERS_PER_BULK)
    )
    chapter_ids = list(result.scalars().all())
    if not chapter_ids:
        return 0
    if len(chapter_ids) == MAX_CHAPTERS_PER_BULK:
        logger.warning(
            "Backfill for user %s series %s capped at %d chapters",
            user_id, series_id, MAX_CHAPTERS_PER_BULK,
        )

    before = await _count_read(db, user_id, chapter_ids)
    await upsert_read_states(
        db,
        user_id,
        chapter_ids,
        is_read=True,
        timestamp=timestamp,
        received_at=received_at,
        device_id=device_id,
        source_id=source_id,
    )
    after = await _count_read(db, user_id, chapter_ids)
    return after - before
