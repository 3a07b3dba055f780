"""API error handling middleware with consistent error responses.

Registers FastAPI exception handlers that convert domain exceptions into
standardised ``{"error": {"code": "...", "message": "...", "details": ...}}``
JSON responses.

Status code mapping:
- ``ConnectionNotFoundError`` → 404 Not Found
- ``SyncAlreadyRunningError`` → 409 Conflict
- ``ReauthorizationRequiredError`` → 409 Conflict (``NEEDS_RECONNECT``)
- ``InvalidOAuthStateError`` → 400 Bad Request
- ``ValueError`` → 400 Bad Request
- ``HTTPException`` → its own status, wrapped in the envelope
- Any other ``Exception`` → 500 Internal Server Error
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from briefings.api.models import ErrorDetail, ErrorResponse
from briefings.errors import (
    ConnectionNotFoundError,
    InvalidOAuthStateError,
    ReauthorizationRequiredError,
    SyncAlreadyRunningError,
)

logger = logging.getLogger(__name__)

_HTTP_ERROR_CODES = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
}


def _error(status_code: int, code: str, message: str, details: dict | None = None) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, details=details))
    return JSONResponse(status_code=status_code, content=body.model_dump())


async def _handle_connection_not_found(
    request: Request,
    exc: ConnectionNotFoundError,
) -> JSONResponse:
    logger.info("Calendar connection not found: %s", exc.connection_id)
    return _error(
        404,
        "CONNECTION_NOT_FOUND",
        "Calendar connection not found",
        {"connection_id": exc.connection_id},
    )


async def _handle_sync_already_running(
    request: Request,
    exc: SyncAlreadyRunningError,
) -> JSONResponse:
    return _error(
        409,
        "SYNC_ALREADY_RUNNING",
        str(exc),
        {"connection_id": exc.connection_id},
    )


async def _handle_reauthorization_required(
    request: Request,
    exc: ReauthorizationRequiredError,
) -> JSONResponse:
    logger.info("Connection %s needs reconnect: %s", exc.connection_id, exc.reason)
    return _error(
        409,
        "NEEDS_RECONNECT",
        "Calendar access has expired; reconnect the account",
        {"connection_id": exc.connection_id},
    )


async def _handle_invalid_oauth_state(
    request: Request,
    exc: InvalidOAuthStateError,
) -> JSONResponse:
    return _error(400, "INVALID_STATE", str(exc))


async def _handle_value_error(
    request: Request,
    exc: ValueError,
) -> JSONResponse:
    """Return 400 for validation / value errors."""
    logger.info("Validation error: %s", exc)
    return _error(400, "VALIDATION_ERROR", str(exc))


async def _handle_http_exception(
    request: Request,
    exc: StarletteHTTPException,
) -> JSONResponse:
    code = _HTTP_ERROR_CODES.get(exc.status_code, "HTTP_ERROR")
    response = _error(exc.status_code, code, str(exc.detail))
    if exc.headers:
        response.headers.update(exc.headers)
    return response


class CatchAllErrorMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that catches any unhandled exception and returns a 500.

    Sits above the Starlette exception handler layer so that exceptions not
    caught by ``add_exception_handler`` still get the standard envelope.
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
            return _error(500, "INTERNAL_ERROR", "Internal server error")


def register_error_handlers(app: FastAPI) -> None:
    """Attach all exception handlers to the FastAPI application."""
    app.add_exception_handler(ConnectionNotFoundError, _handle_connection_not_found)  # type: ignore[arg-type]
    app.add_exception_handler(SyncAlreadyRunningError, _handle_sync_already_running)  # type: ignore[arg-type]
    app.add_exception_handler(
        ReauthorizationRequiredError,
        _handle_reauthorization_required,  # type: ignore[arg-type]
    )
    app.add_exception_handler(InvalidOAuthStateError, _handle_invalid_oauth_state)  # type: ignore[arg-type]
    app.add_exception_handler(ValueError, _handle_value_error)  # type: ignore[arg-type]
    app.add_exception_handler(StarletteHTTPException, _handle_http_exception)  # type: ignore[arg-type]
    app.add_middleware(CatchAllErrorMiddleware)
