"""Cheap checks on write requests before any body parsing.

* ``Origin`` (when sent) must be an allowed origin, else 403.
* ``Content-Type`` must be JSON, else 415.
* The body must fit the payload limit, else 413.
"""

from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from readtrack.exceptions import (
    OriginRejectedError,
    PayloadTooLargeError,
    ReadTrackError,
    UnsupportedMediaTypeError,
)
from readtrack.middleware.error_handler import error_response

_GUARDED_METHODS = frozenset({"POST", "PATCH", "PUT"})


class RequestGuardMiddleware(BaseHTTPMiddleware):
    """Guard JSON write endpoints under ``path_prefix``."""

    def __init__(
        self,
        app: Any,  # noqa: ANN401
        allowed_origins: list[str],
        max_body_bytes: int = 1024,
        path_prefix: str = "/api/v1/library/",
    ) -> None:
        super().__init__(app)
        self.allowed_origins = frozenset(o.rstrip("/") for o in allowed_origins)
        self.max_body_bytes = max_body_bytes
        self.path_prefix = path_prefix

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.method not in _GUARDED_METHODS or not request.url.path.startswith(self.path_prefix):
            return await call_next(request)
        try:
            await self.check(request)
        except ReadTrackError as exc:
            return error_response(exc)
        return await call_next(request)

    async def check(self, request: Request) -> None:
        origin = request.headers.get("origin")
        if origin is not None and origin.rstrip("/") not in self.allowed_origins:
            raise OriginRejectedError(f"Origin {origin} is not allowed")

        content_type = request.headers.get("content-type", "")
        if content_type.split(";")[0].strip().lower() != "application/json":
            raise UnsupportedMediaTypeError("Content-Type must be application/json")

        declared = request.headers.get("content-length")
        if declared is not None and declared.isdigit() and int(declared) > self.max_body_bytes:
            raise PayloadTooLargeError(f"Payload exceeds {self.max_body_bytes} bytes")
        body = await request.body()
        if len(body) > self.max_body_bytes:
            raise PayloadTooLargeError(f"Payload exceeds {self.max_body_bytes} bytes")
