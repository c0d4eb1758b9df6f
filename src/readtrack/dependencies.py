"""Shared FastAPI dependencies."""

from fastapi import Request

from readtrack.database import get_session as _get_session
from readtrack.progress.engine import ProgressCommitEngine
from readtrack.ratelimit.store import CounterStore

get_db = _get_session


def get_counter_store(request: Request) -> CounterStore:
    """Counter store built at startup (Redis with in-process fallback)."""
    return request.app.state.counter_store


def get_progress_engine(request: Request) -> ProgressCommitEngine:
    """Process-wide commit engine; owns the entry lock registry."""
    return request.app.state.progress_engine
