"""Middleware registration."""

from fastapi import FastAPI

from readtrack.config import Settings
from readtrack.middleware.cors import setup_cors
from readtrack.middleware.error_handler import setup_error_handlers
from readtrack.middleware.logging import setup_logging
from readtrack.middleware.rate_limit import RateLimitMiddleware
from readtrack.middleware.request_guards import RequestGuardMiddleware
from readtrack.middleware.request_id import RequestIdMiddleware


def setup_middleware(app: FastAPI, settings: Settings) -> None:
    """Register all middleware in the correct order.

    Starlette runs middleware in reverse-add order (last added = outermost).
    Guards run inside the IP limiter so rejected payloads still count, and
    CORS is outermost so 4xx responses carry CORS headers.
    """
    setup_logging(settings)
    setup_error_handlers(app)
    app.add_middleware(
        RequestGuardMiddleware,
        allowed_origins=settings.allowed_origins or settings.cors_origins,
        max_body_bytes=settings.max_progress_payload_bytes,
    )
    app.add_middleware(
        RateLimitMiddleware,
        requests_per_window=settings.rate_limit_requests,
        window_seconds=settings.rate_limit_window_seconds,
    )
    app.add_middleware(RequestIdMiddleware)
    setup_cors(app, settings)
