"""Classified errors raised by the progress pipeline.

Each error carries the HTTP status it maps to and whether a caller may
safely retry it. Retrying is always safe for ``retryable`` errors because
the commit is idempotent with respect to reward.
"""

from __future__ import annotations


class ReadTrackError(Exception):
    """Base class for all classified errors."""

    status_code: int = 500
    code: str = "INTERNAL_ERROR"
    retryable: bool = False

    def __init__(self, detail: str | None = None) -> None:
        self.detail = detail or self.__class__.__doc__ or self.code
        super().__init__(self.detail)


class ValidationFailedError(ReadTrackError):
    """Malformed input."""

    status_code = 400
    code = "VALIDATION_ERROR"


class EntryNotFoundError(ReadTrackError):
    """Library entry not found."""

    status_code = 404
    code = "NOT_FOUND"


class OriginRejectedError(ReadTrackError):
    """Cross-origin request rejected."""

    status_code = 403
    code = "FORBIDDEN_ORIGIN"


class PayloadTooLargeError(ReadTrackError):
    """Request payload too large."""

    status_code = 413
    code = "PAYLOAD_TOO_LARGE"


class UnsupportedMediaTypeError(ReadTrackError):
    """Content type must be application/json."""

    status_code = 415
    code = "UNSUPPORTED_MEDIA_TYPE"


class ConflictError(ReadTrackError):
    """Concurrent write hit a uniqueness constraint."""

    status_code = 409
    code = "CONFLICT"


class RateLimitedError(ReadTrackError):
    """Too many requests."""

    status_code = 429
    code = "RATE_LIMITED"

    def __init__(
        self,
        detail: str | None = None,
        *,
        retry_after: int = 1,
        remaining: int = 0,
        reset_at: float | None = None,
    ) -> None:
        super().__init__(detail)
        self.retry_after = max(1, retry_after)
        self.remaining = remaining
        self.reset_at = reset_at


class TransientError(ReadTrackError):
    """Temporary infrastructure failure, safe to retry."""

    status_code = 503
    code = "TRANSIENT_FAILURE"
    retryable = True

    def __init__(self, detail: str | None = None, *, retry_after: int = 1) -> None:
        super().__init__(detail)
        self.retry_after = retry_after
