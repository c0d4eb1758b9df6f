"""Progress core: users, catalog, library entries, read records, rewards, trust, achievements.

Revision ID: 001_progress_core
Revises:
Create Date: 2026-10-18
"""

from collections.abc import Sequence

import sqlalchemy as sa  # noqa: F401
from alembic import op

revision: str = "001_progress_core"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE IF NOT EXISTS users (
            id          UUID PRIMARY KEY,
            username    VARCHAR(64) NOT NULL UNIQUE,
            created_at  TIMESTAMPTZ NOT NULL DEFAULT now(),
            deleted_at  TIMESTAMPTZ
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS user_reward_profiles (
            user_id                 UUID PRIMARY KEY REFERENCES users(id) ON DELETE CASCADE,
            xp                      INT NOT NULL DEFAULT 0 CHECK (xp >= 0),
            level                   INT NOT NULL DEFAULT 1,
            streak_days             INT NOT NULL DEFAULT 0,
            longest_streak          INT NOT NULL DEFAULT 0,
            last_read_at            TIMESTAMPTZ,
            season_xp               INT NOT NULL DEFAULT 0,
            current_season          VARCHAR(10),
            chapters_read_count     INT NOT NULL DEFAULT 0,
            trust_score             DOUBLE PRECISION NOT NULL DEFAULT 1.0
                                    CHECK (trust_score >= 0.5 AND trust_score <= 1.0),
            trust_score_updated_at  TIMESTAMPTZ,
            updated_at              TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_reward_profiles_trust_below_max
        ON user_reward_profiles (trust_score)
        WHERE trust_score < 1.0
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS series (
            id     UUID PRIMARY KEY,
            title  VARCHAR(512) NOT NULL
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS chapters (
            id              UUID PRIMARY KEY,
            series_id       UUID NOT NULL REFERENCES series(id) ON DELETE CASCADE,
            chapter_number  DOUBLE PRECISION NOT NULL,
            chapter_slug    VARCHAR(128),
            page_count      INT,
            CONSTRAINT chapters_series_id_chapter_number_key UNIQUE (series_id, chapter_number),
            CONSTRAINT chapters_series_id_chapter_slug_key UNIQUE (series_id, chapter_slug)
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS ix_chapters_series_id ON chapters (series_id)")

    op.execute("""
        CREATE TABLE IF NOT EXISTS library_entries (
            id                 UUID PRIMARY KEY,
            user_id            UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            series_id          UUID REFERENCES series(id) ON DELETE SET NULL,
            last_read_chapter  DOUBLE PRECISION NOT NULL DEFAULT 0,
            last_read_at       TIMESTAMPTZ,
            created_at         TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at         TIMESTAMPTZ NOT NULL DEFAULT now(),
            deleted_at         TIMESTAMPTZ
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS ix_library_entries_user_id ON library_entries (user_id)")

    op.execute("""
        CREATE TABLE IF NOT EXISTS user_chapter_reads (
            id                  BIGSERIAL PRIMARY KEY,
            user_id             UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            chapter_id          UUID NOT NULL REFERENCES chapters(id) ON DELETE CASCADE,
            is_read             BOOLEAN NOT NULL DEFAULT TRUE,
            updated_at          TIMESTAMPTZ NOT NULL,
            read_at             TIMESTAMPTZ,
            device_id           VARCHAR(100),
            source_id           UUID,
            server_received_at  TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT user_chapter_reads_user_id_chapter_id_key UNIQUE (user_id, chapter_id)
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS trust_violations (
            id              BIGSERIAL PRIMARY KEY,
            user_id         UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            violation_type  VARCHAR(32) NOT NULL,
            severity        DOUBLE PRECISION NOT NULL,
            previous_score  DOUBLE PRECISION NOT NULL,
            new_score       DOUBLE PRECISION NOT NULL,
            metadata        JSONB NOT NULL DEFAULT '{}'::jsonb,
            created_at      TIMESTAMPTZ NOT NULL
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_trust_violations_user_kind_created
        ON trust_violations (user_id, violation_type, created_at)
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS achievements (
            id             SERIAL PRIMARY KEY,
            code           VARCHAR(64) NOT NULL UNIQUE,
            name           VARCHAR(128) NOT NULL,
            description    TEXT NOT NULL DEFAULT '',
            xp_reward      INT NOT NULL DEFAULT 0,
            rarity         VARCHAR(16) NOT NULL DEFAULT 'common',
            criteria_type  VARCHAR(32) NOT NULL,
            threshold      INT NOT NULL,
            is_seasonal    BOOLEAN NOT NULL DEFAULT FALSE,
            is_active      BOOLEAN NOT NULL DEFAULT TRUE,
            sort_order     INT NOT NULL DEFAULT 0
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS user_achievements (
            id              BIGSERIAL PRIMARY KEY,
            user_id         UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            achievement_id  INT NOT NULL REFERENCES achievements(id),
            season_key      VARCHAR(10) NOT NULL DEFAULT '',
            unlocked_at     TIMESTAMPTZ NOT NULL,
            CONSTRAINT user_achievements_user_id_achievement_id_season_key_key
                UNIQUE (user_id, achievement_id, season_key)
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS activity_log (
            id             BIGSERIAL PRIMARY KEY,
            user_id        UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            activity_type  VARCHAR(48) NOT NULL,
            series_id      UUID,
            metadata       JSONB NOT NULL DEFAULT '{}'::jsonb,
            created_at     TIMESTAMPTZ NOT NULL
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_activity_log_user_id
        ON activity_log (user_id, created_at DESC)
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS read_telemetry (
            id                     BIGSERIAL PRIMARY KEY,
            user_id                UUID NOT NULL,
            series_id              UUID NOT NULL,
            chapter_number         DOUBLE PRECISION NOT NULL,
            read_duration_seconds  INT NOT NULL,
            page_count             INT,
            device_id              VARCHAR(100),
            flagged                BOOLEAN NOT NULL DEFAULT FALSE,
            created_at             TIMESTAMPTZ NOT NULL
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS ix_read_telemetry_user_id ON read_telemetry (user_id)")


def downgrade() -> None:
    for table in (
        "read_telemetry",
        "activity_log",
        "user_achievements",
        "achievements",
        "trust_violations",
        "user_chapter_reads",
        "library_entries",
        "chapters",
        "series",
        "user_reward_profiles",
        "users",
    ):
        op.execute(f"DROP TABLE IF EXISTS {table} CASCADE")
