"""API error handling: sync errors become the standard error envelope.

Status code mapping:
- ``ReauthRequiredError`` (and ``TokenRefreshError``), ``NoCalendarsSelectedError``,
  ``OAuthStateError``, ``CalendarListMissingError`` → 400
- ``IntegrationNotFoundError`` → 404
- ``SyncInProgressError`` → 409
- ``SyncRateLimitedError`` → 429 with ``Retry-After`` (seconds)
- ``ProviderRequestError`` → 502
- ``StorageWriteError``, ``StorageReadError`` → 503
- ``AuthorizationCodeExchangeError`` → the provider's status, payload passed through
- ``ValueError`` → 400
- Any other ``Exception`` → 500
"""

from __future__ import annotations

import logging
import math

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from calsync.api.models import ErrorDetail, ErrorResponse
from calsync.errors import (
    AuthorizationCodeExchangeError,
    CalendarListMissingError,
    CalendarSyncError,
    IntegrationNotFoundError,
    NoCalendarsSelectedError,
    OAuthStateError,
    ProviderRequestError,
    ReauthRequiredError,
    StorageReadError,
    StorageWriteError,
    SyncInProgressError,
    SyncRateLimitedError,
)

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR: tuple[tuple[type[CalendarSyncError], int], ...] = (
    (ReauthRequiredError, 400),
    (NoCalendarsSelectedError, 400),
    (OAuthStateError, 400),
    (CalendarListMissingError, 400),
    (IntegrationNotFoundError, 404),
    (SyncInProgressError, 409),
    (SyncRateLimitedError, 429),
    (ProviderRequestError, 502),
    (StorageWriteError, 503),
    (StorageReadError, 503),
)


def status_for(exc: CalendarSyncError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 500


def error_response(
    status_code: int, code: str, message: str, details: dict | None = None
) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, details=details))
    return JSONResponse(status_code=status_code, content=body.model_dump())


async def _handle_sync_error(request: Request, exc: CalendarSyncError) -> JSONResponse:
    status_code = status_for(exc)
    details: dict | None = None
    if isinstance(exc, ProviderRequestError):
        details = {"providerStatus": exc.status_code}
    elif isinstance(exc, SyncRateLimitedError):
        details = {"retryAfterMs": exc.retry_after_ms}

    if status_code >= 500:
        logger.warning("%s on %s %s: %s", exc.code, request.method, request.url.path, exc)
    else:
        logger.info("%s on %s %s: %s", exc.code, request.method, request.url.path, exc)

    response = error_response(status_code, exc.code, str(exc), details)
    if isinstance(exc, SyncRateLimitedError):
        response.headers["Retry-After"] = str(max(1, math.ceil(exc.retry_after_ms / 1000)))
    return response


async def _handle_exchange_error(
    request: Request, exc: AuthorizationCodeExchangeError
) -> JSONResponse:
    """Pass the provider's status and error payload through unchanged."""
    logger.info("Authorization code exchange failed (%d): %s", exc.status_code, exc)
    return JSONResponse(status_code=exc.status_code, content=exc.payload)


async def _handle_value_error(request: Request, exc: ValueError) -> JSONResponse:
    logger.info("Validation error: %s", exc)
    return error_response(400, "validation_error", str(exc))


class CatchAllErrorMiddleware(BaseHTTPMiddleware):
    """Convert any unhandled exception into the 500 error envelope."""

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
            return error_response(500, "internal_error", "Internal server error")


def register_error_handlers(app: FastAPI) -> None:
    """Attach all exception handlers to the FastAPI application.

    Starlette resolves handlers along the exception's MRO, so the exchange
    error handler applies before the ``CalendarSyncError`` one.
    """
    app.add_exception_handler(
        AuthorizationCodeExchangeError, _handle_exchange_error  # type: ignore[arg-type]
    )
    app.add_exception_handler(CalendarSyncError, _handle_sync_error)  # type: ignore[arg-type]
    app.add_exception_handler(ValueError, _handle_value_error)  # type: ignore[arg-type]
    app.add_middleware(CatchAllErrorMiddleware)
