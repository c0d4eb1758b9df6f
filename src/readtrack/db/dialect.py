"""Dialect-specific statement helpers.

Production runs on PostgreSQL; the test-suite runs the same code on SQLite.
Both dialects support ``INSERT ... ON CONFLICT``, but only PostgreSQL
honours row locks, so lock clauses are skipped elsewhere.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession


def dialect_name(db: AsyncSession) -> str:
    """Return the dialect name of the session's bind."""
    return db.get_bind().dialect.name


def upsert(db: AsyncSession, table: Any) -> Any:  # noqa: ANN401
    """Return a dialect-aware ``insert()`` that supports ``on_conflict_*``."""
    if dialect_name(db) == "postgresql":
        return pg_insert(table)
    return sqlite_insert(table)


def supports_row_locks(db: AsyncSession) -> bool:
    """True when ``SELECT ... FOR UPDATE [NOWAIT]`` is meaningful."""
    return dialect_name(db) == "postgresql"
