"""Global error handlers. Every error leaves as ``{"detail", "code", "retryable"}`` JSON."""

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from readtrack.exceptions import RateLimitedError, ReadTrackError, TransientError

logger = structlog.get_logger()


def error_response(exc: ReadTrackError) -> JSONResponse:
    """Render a classified error, adding ``Retry-After`` where a retry makes sense."""
    headers: dict[str, str] = {}
    if isinstance(exc, RateLimitedError):
        headers["Retry-After"] = str(exc.retry_after)
        headers["X-RateLimit-Remaining"] = str(exc.remaining)
        if exc.reset_at is not None:
            headers["X-RateLimit-Reset"] = str(int(exc.reset_at))
    elif isinstance(exc, TransientError):
        headers["Retry-After"] = str(exc.retry_after)

    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "code": exc.code, "retryable": exc.retryable},
        headers=headers or None,
    )


def setup_error_handlers(app: FastAPI) -> None:
    """Register global exception handlers."""

    @app.exception_handler(ReadTrackError)
    async def readtrack_exception_handler(request: Request, exc: ReadTrackError) -> JSONResponse:
        """Handle classified pipeline errors."""
        log = logger.warning if exc.status_code >= 500 else logger.info
        log(
            "request_failed",
            path=request.url.path,
            status=exc.status_code,
            code=exc.code,
            detail=exc.detail,
        )
        return error_response(exc)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(_request: Request, exc: StarletteHTTPException) -> JSONResponse:
        """Handle HTTP exceptions with consistent JSON format."""
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail, "code": "HTTP_ERROR", "retryable": False},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
        """Handle validation errors with consistent JSON format."""
        return JSONResponse(
            status_code=422,
            content={
                "detail": "Validation error",
                "code": "VALIDATION_ERROR",
                "retryable": False,
                "errors": jsonable_errors(exc),
            },
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Catch-all for unhandled exceptions, always JSON."""
        logger.error(
            "unhandled_exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            exc_info=exc,
        )
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error", "code": "INTERNAL_ERROR", "retryable": False},
        )


def jsonable_errors(exc: RequestValidationError) -> list[dict]:
    """Pydantic error dicts may carry exception objects in ``ctx``; stringify them."""
    errors = []
    for err in exc.errors():
        item = {k: v for k, v in err.items() if k != "ctx"}
        if "ctx" in err:
            item["ctx"] = {k: str(v) for k, v in err["ctx"].items()}
        errors.append(item)
    return errors
