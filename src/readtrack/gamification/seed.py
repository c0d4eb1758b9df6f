"""Achievement seed data."""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from readtrack.db.dialect import upsert
from readtrack.db.models import Achievement

logger = logging.getLogger(__name__)

ACHIEVEMENT_SEED_DATA: list[dict] = [
    # Reading milestones
    {
        "code": "first_chapter",
        "name": "First Page",
        "description": "Read your first chapter",
        "xp_reward": 10,
        "rarity": "common",
        "criteria_type": "chapter_count",
        "threshold": 1,
        "sort_order": 1,
    },
    {
        "code": "chapters_10",
        "name": "Getting Hooked",
        "description": "Read 10 chapters",
        "xp_reward": 25,
        "rarity": "common",
        "criteria_type": "chapter_count",
        "threshold": 10,
        "sort_order": 2,
    },
    {
        "code": "chapters_100",
        "name": "Centurion",
        "description": "Read 100 chapters",
        "xp_reward": 100,
        "rarity": "rare",
        "criteria_type": "chapter_count",
        "threshold": 100,
        "sort_order": 3,
    },
    {
        "code": "chapters_1000",
        "name": "Bookworm",
        "description": "Read 1,000 chapters",
        "xp_reward": 500,
        "rarity": "epic",
        "criteria_type": "chapter_count",
        "threshold": 1000,
        "sort_order": 4,
    },
    # Streaks
    {
        "code": "streak_7",
        "name": "Week Warrior",
        "description": "Read every day for 7 days",
        "xp_reward": 50,
        "rarity": "common",
        "criteria_type": "streak_count",
        "threshold": 7,
        "sort_order": 10,
    },
    {
        "code": "streak_30",
        "name": "Monthly Devotion",
        "description": "Read every day for 30 days",
        "xp_reward": 200,
        "rarity": "rare",
        "criteria_type": "streak_count",
        "threshold": 30,
        "sort_order": 11,
    },
    {
        "code": "streak_365",
        "name": "Year of Reading",
        "description": "Read every day for a whole year",
        "xp_reward": 1000,
        "rarity": "legendary",
        "criteria_type": "streak_count",
        "threshold": 365,
        "sort_order": 12,
    },
    # Seasonal, earnable once per season
    {
        "code": "seasonal_reader_25",
        "name": "Season Starter",
        "description": "Read 25 chapters this season",
        "xp_reward": 50,
        "rarity": "common",
        "criteria_type": "chapter_count",
        "threshold": 25,
        "is_seasonal": True,
        "sort_order": 20,
    },
    {
        "code": "seasonal_reader_150",
        "name": "Season Binger",
        "description": "Read 150 chapters this season",
        "xp_reward": 200,
        "rarity": "rare",
        "criteria_type": "chapter_count",
        "threshold": 150,
        "is_seasonal": True,
        "sort_order": 21,
    },
    {
        "code": "seasonal_streak_14",
        "name": "Seasonal Regular",
        "description": "Reach a 14 day streak this season",
        "xp_reward": 200,
        "rarity": "rare",
        "criteria_type": "streak_count",
        "threshold": 14,
        "is_seasonal": True,
        "sort_order": 22,
    },
]


async def seed_achievements(db: AsyncSession) -> int:
    """Upsert all achievement definitions. Returns number seeded."""
    seeded = 0
    for data in ACHIEVEMENT_SEED_DATA:
        values = {"is_seasonal": False, "is_active": True, **data}
        stmt = upsert(db, Achievement).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["code"],
            set_={
                "name": stmt.excluded.name,
                "description": stmt.excluded.description,
                "xp_reward": stmt.excluded.xp_reward,
                "rarity": stmt.excluded.rarity,
                "criteria_type": stmt.excluded.criteria_type,
                "threshold": stmt.excluded.threshold,
                "is_seasonal": stmt.excluded.is_seasonal,
                "sort_order": stmt.excluded.sort_order,
            },
        )
        await db.execute(stmt)
        seeded += 1

    await db.commit()
    logger.info("Seeded %d achievement definitions", seeded)
    return seeded
