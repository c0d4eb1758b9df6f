"""Per-IP fixed-window rate limiting on the shared counter store."""

from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from readtrack.exceptions import RateLimitedError
from readtrack.middleware.error_handler import error_response
from readtrack.ratelimit.limiter import Budget, hit

# Paths exempt from rate limiting
_EXEMPT_PATHS = frozenset({"/health", "/ready"})


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Rate limit requests per client IP.

    Uses ``app.state.counter_store``, which degrades to in-process counters
    when Redis is down. Before the store exists (startup) requests pass.
    """

    def __init__(self, app: Any, requests_per_window: int = 100, window_seconds: int = 60) -> None:  # noqa: ANN401
        super().__init__(app)
        self.budget = Budget("ip", requests_per_window, window_seconds)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        """Check rate limit, return 429 if exceeded."""
        store = getattr(request.app.state, "counter_store", None)
        if request.url.path in _EXEMPT_PATHS or store is None:
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        result = await hit(store, client_ip, self.budget)
        if not result.allowed:
            response = error_response(RateLimitedError(
                "Rate limit exceeded. Try again later.",
                retry_after=result.retry_after,
                remaining=0,
                reset_at=result.reset_at,
            ))
            response.headers["X-RateLimit-Limit"] = str(result.limit)
            return response

        response = await call_next(request)
        # Per-user progress budgets set their own, tighter values.
        response.headers.setdefault("X-RateLimit-Remaining", str(result.remaining))
        response.headers.setdefault("X-RateLimit-Limit", str(result.limit))
        return response
