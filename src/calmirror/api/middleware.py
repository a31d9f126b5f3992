"""API error handling: consistent error responses.

Registers FastAPI exception handlers that convert domain exceptions into
``{"error": {"code": "...", "message": "...", "retryable": ...}}`` JSON
responses.

Status code mapping:
- ``CalendarSyncError`` → 502 Bad Gateway (the provider call failed)
- ``UnknownChannelError`` / ``CalendarNotFoundError`` → 404 Not Found
- ``ValueError`` → 400 Bad Request
- Any other ``Exception`` → 500 Internal Server Error
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from calmirror.api.models import ErrorDetail, ErrorResponse
from calmirror.errors import (
    CalendarNotFoundError,
    CalendarSyncError,
    UnknownChannelError,
    redact_credentials,
)

logger = logging.getLogger(__name__)


def _error_response(status_code: int, detail: ErrorDetail) -> JSONResponse:
    body = ErrorResponse(error=detail)
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


async def _handle_sync_error(request: Request, exc: CalendarSyncError) -> JSONResponse:
    """Return 502 when the calendar provider could not complete the request."""
    logger.warning(
        "Provider failure on %s %s: %s", request.method, request.url.path, exc.kind
    )
    payload = exc.to_dict()
    return _error_response(
        502,
        ErrorDetail(
            code=str(payload["kind"]),
            message=str(payload["message"]),
            retryable=bool(payload["retryable"]),
        ),
    )


async def _handle_unknown_channel(request: Request, exc: UnknownChannelError) -> JSONResponse:
    logger.info("Push notification for unknown channel %s", exc.channel_id)
    return _error_response(
        404,
        ErrorDetail(code="UNKNOWN_CHANNEL", message=f"Unknown channel: {exc.channel_id}"),
    )


async def _handle_calendar_not_found(
    request: Request,
    exc: CalendarNotFoundError,
) -> JSONResponse:
    logger.info("Calendar not found: %s", exc.calendar_id)
    return _error_response(
        404,
        ErrorDetail(code="CALENDAR_NOT_FOUND", message=f"Calendar not found: {exc.calendar_id}"),
    )


async def _handle_value_error(request: Request, exc: ValueError) -> JSONResponse:
    """Return 400 for validation / value errors."""
    logger.info("Validation error: %s", exc)
    return _error_response(
        400,
        ErrorDetail(code="VALIDATION_ERROR", message=redact_credentials(str(exc))),
    )


class CatchAllErrorMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that catches any unhandled exception and returns a 500.

    This sits above the Starlette exception handler layer so that even
    exceptions not caught by ``add_exception_handler`` are converted to the
    standard error envelope rather than bubbling up as raw 500s.
    """

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception:
            logger.error(
                "Unhandled exception on %s %s",
                request.method,
                request.url.path,
                exc_info=True,
            )
            return _error_response(
                500,
                ErrorDetail(code="INTERNAL_ERROR", message="Internal server error"),
            )


def register_error_handlers(app: FastAPI) -> None:
    """Attach all exception handlers to the FastAPI application."""
    app.add_exception_handler(CalendarSyncError, _handle_sync_error)  # type: ignore[arg-type]
    app.add_exception_handler(
        UnknownChannelError, _handle_unknown_channel  # type: ignore[arg-type]
    )
    app.add_exception_handler(
        CalendarNotFoundError, _handle_calendar_not_found  # type: ignore[arg-type]
    )
    app.add_exception_handler(ValueError, _handle_value_error)  # type: ignore[arg-type]
    app.add_middleware(CatchAllErrorMiddleware)
