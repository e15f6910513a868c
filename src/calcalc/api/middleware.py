"""API error handling middleware — consistent error responses.

Registers FastAPI exception handlers that convert sync exceptions into
standardised ``{"error": {"code": "...", "message": "..."}}`` JSON responses.

Status code mapping:
- ``ValueError`` → 400 Bad Request
- ``NotConnectedError`` → 400 Bad Request
- ``AuthenticationRequiredError`` → 401 Unauthorized
- ``SettingsNotFoundError`` → 404 Not Found
- ``SyncInProgressError`` → 409 Conflict
- ``ProviderError`` → 502 Bad Gateway
- ``PersistenceError`` → 503 Service Unavailable
- Any other ``Exception`` → 500 Internal Server Error
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from calcalc.api.models import ErrorDetail, ErrorResponse
from calcalc.sync.errors import (
    AuthenticationRequiredError,
    NotConnectedError,
    PersistenceError,
    ProviderError,
    SettingsNotFoundError,
    SyncInProgressError,
)

logger = logging.getLogger(__name__)


def _error_response(
    status_code: int, code: str, message: str, details: dict | None = None
) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, details=details))
    return JSONResponse(status_code=status_code, content=body.model_dump())


async def _handle_not_connected(request: Request, exc: NotConnectedError) -> JSONResponse:
    """Return 400 when the user has not connected Google Calendar."""
    logger.info("Sync requested while not connected: %s", exc.reason)
    return _error_response(400, "NOT_CONNECTED", exc.reason)


async def _handle_authentication_required(
    request: Request, exc: AuthenticationRequiredError
) -> JSONResponse:
    return _error_response(401, "AUTHENTICATION_REQUIRED", str(exc))


async def _handle_settings_not_found(
    request: Request, exc: SettingsNotFoundError
) -> JSONResponse:
    return _error_response(404, "SETTINGS_NOT_FOUND", "No sync settings are stored for this user")


async def _handle_sync_in_progress(request: Request, exc: SyncInProgressError) -> JSONResponse:
    """Return 409 when another sync for the same user is still running."""
    logger.info("Rejected concurrent sync for user %s", exc.user_id)
    return _error_response(409, "SYNC_IN_PROGRESS", "A sync is already in progress")


async def _handle_provider_error(request: Request, exc: ProviderError) -> JSONResponse:
    """Return 502 when Google rejects or cannot serve a request."""
    logger.warning("Google API error on %s: %s", request.url.path, exc)
    return _error_response(
        502,
        "PROVIDER_ERROR",
        exc.message,
        details={"http_status": exc.http_status},
    )


async def _handle_persistence_error(request: Request, exc: PersistenceError) -> JSONResponse:
    """Return 503 when local storage is unavailable."""
    logger.error("Persistence error on %s: %s", request.url.path, exc)
    return _error_response(503, "PERSISTENCE_ERROR", "Local storage is unavailable")


async def _handle_value_error(request: Request, exc: ValueError) -> JSONResponse:
    """Return 400 for validation / value errors."""
    logger.info("Validation error: %s", exc)
    return _error_response(400, "VALIDATION_ERROR", str(exc))


class CatchAllErrorMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that catches any unhandled exception and returns a 500.

    This sits above the Starlette exception handler layer, ensuring that
    even exceptions not caught by ``add_exception_handler`` are converted
    to the standard error envelope rather than bubbling up as raw 500s.
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
            return _error_response(500, "INTERNAL_ERROR", "Internal server error")


def register_error_handlers(app: FastAPI) -> None:
    """Attach all exception handlers to the FastAPI application.

    Call this from ``create_app()`` after constructing the ``FastAPI`` instance.
    """
    app.add_exception_handler(NotConnectedError, _handle_not_connected)  # type: ignore[arg-type]
    app.add_exception_handler(
        AuthenticationRequiredError,
        _handle_authentication_required,  # type: ignore[arg-type]
    )
    app.add_exception_handler(SettingsNotFoundError, _handle_settings_not_found)  # type: ignore[arg-type]
    app.add_exception_handler(SyncInProgressError, _handle_sync_in_progress)  # type: ignore[arg-type]
    app.add_exception_handler(ProviderError, _handle_provider_error)  # type: ignore[arg-type]
    app.add_exception_handler(PersistenceError, _handle_persistence_error)  # type: ignore[arg-type]
    app.add_exception_handler(ValueError, _handle_value_error)  # type: ignore[arg-type]
    app.add_middleware(CatchAllErrorMiddleware)
