"""FastAPI middleware for request tracking, timing, and error handling.

Adds:
- X-Request-ID header (generated if not provided)
- X-Process-Time header (request duration)
- Structured logging per request
- Exception handlers mapping the automation error taxonomy to HTTP
"""

import logging
import time
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from app.config import get_settings

logger = logging.getLogger(__name__)

_QUIET_PATHS = ("/api/health", "/api/health/")


class RequestTrackingMiddleware(BaseHTTPMiddleware):
    """Add request ID and timing to every request/response."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID", str(uuid4()))
        request.state.request_id = request_id
        start_time = time.monotonic()

        try:
            response = await call_next(request)
        except Exception as exc:
            duration_ms = (time.monotonic() - start_time) * 1000
            logger.error(
                "Unhandled exception",
                extra={
                    "request_id": request_id,
                    "method": request.method,
                    "path": request.url.path,
                    "duration_ms": round(duration_ms, 2),
                    "error": str(exc),
                },
                exc_info=True,
            )
            # In production, don't expose error details to client
            if get_settings().is_production:
                error_detail = "Internal server error"
            else:
                error_detail = str(exc) or "Internal server error"

            return JSONResponse(
                status_code=500,
                content={
                    "detail": error_detail,
                    "error_code": "InternalError",
                    "request_id": request_id,
                },
                headers={"X-Request-ID": request_id},
            )

        duration_ms = (time.monotonic() - start_time) * 1000
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{duration_ms:.2f}ms"

        log_level = logging.WARNING if response.status_code >= 400 else logging.INFO
        if request.url.path not in _QUIET_PATHS:
            logger.log(
                log_level,
                f"{request.method} {request.url.path} -> {response.status_code} ({duration_ms:.0f}ms)",
                extra={
                    "request_id": request_id,
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "duration_ms": round(duration_ms, 2),
                    "client_ip": request.client.host if request.client else None,
                },
            )

        return response


def _error_response(request: Request, exc, status_code: int, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "detail": exc.message if hasattr(exc, "message") else str(exc),
            "error_code": type(exc).__name__,
            "request_id": getattr(request.state, "request_id", None),
            **extra,
        },
    )


def setup_exception_handlers(app: FastAPI) -> None:
    """Register global exception handlers.

    Subclasses resolve to the closest registered handler, so
    InvalidStateError and ConcurrencyConflict answer 409 via ConflictError.
    """

    from core.exceptions import (
        AutomationException,
        ConflictError,
        ForbiddenError,
        NotFoundError,
        ValidationError,
    )

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return _error_response(request, exc, 404)

    @app.exception_handler(ForbiddenError)
    async def forbidden_handler(request: Request, exc: ForbiddenError):
        return _error_response(request, exc, 403)

    @app.exception_handler(ValidationError)
    async def validation_handler(request: Request, exc: ValidationError):
        return _error_response(request, exc, 422, errors=exc.errors)

    @app.exception_handler(ConflictError)
    async def conflict_handler(request: Request, exc: ConflictError):
        return _error_response(request, exc, 409)

    @app.exception_handler(AutomationException)
    async def automation_handler(request: Request, exc: AutomationException):
        logger.error(f"Unhandled automation error on {request.url.path}: {exc.message}")
        return _error_response(request, exc, exc.status_code)
