"""Error taxonomy for Google Calendar synchronization.

Every error carries a stable ``code`` that the HTTP layer maps to a status
code and the error envelope. ``ReauthRequiredError`` and its subclass
``TokenRefreshError`` mean the user has to reconnect; nothing retries them.
"""

from __future__ import annotations

from typing import Any


class CalendarSyncError(RuntimeError):
    """Base error raised by the calendar sync core."""

    code = "calendar_sync_error"


class ReauthRequiredError(CalendarSyncError):
    """Raised when the stored integration has no usable refresh token."""

    code = "reauth_required"


class TokenRefreshError(ReauthRequiredError):
    """Raised when the provider rejects a refresh-token exchange."""

    code = "token_refresh_failed"


class NoCalendarsSelectedError(CalendarSyncError):
    """Raised when the merged calendar selection is empty."""

    code = "no_calendars_selected"


class SyncTokenInvalidatedError(CalendarSyncError):
    """Raised by the events request when the provider invalidates a sync token.

    Recovered inside the event fetcher; never surfaced to sync callers.
    """

    code = "sync_token_invalidated"


class ProviderRequestError(CalendarSyncError):
    """Raised when a Google Calendar API request fails."""

    code = "provider_request_failed"

    def __init__(self, *, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"Google Calendar API request failed ({status_code}): {message}")


class StorageWriteError(CalendarSyncError):
    """Raised when a store write still fails after its retries."""

    code = "storage_write_failed"


class StorageReadError(CalendarSyncError):
    """Raised when a store read fails."""

    code = "storage_read_failed"


class IntegrationNotFoundError(CalendarSyncError):
    """Raised when no integration record exists for the user."""

    code = "integration_not_found"


class SyncInProgressError(CalendarSyncError):
    """Raised when another sync run holds the user's lease."""

    code = "sync_in_progress"


class SyncRateLimitedError(CalendarSyncError):
    """Raised when a sync is requested before the minimum interval elapsed."""

    code = "sync_rate_limited"

    def __init__(self, *, retry_after_ms: int) -> None:
        self.retry_after_ms = max(int(retry_after_ms), 0)
        super().__init__(
            f"Last sync finished too recently; retry after {self.retry_after_ms} ms"
        )


class AuthorizationCodeExchangeError(CalendarSyncError):
    """Raised when the authorization-code grant is rejected."""

    code = "token_exchange_failed"

    def __init__(self, *, status_code: int, payload: dict[str, Any], message: str) -> None:
        self.status_code = status_code
        self.payload = payload
        super().__init__(message)


class OAuthStateError(CalendarSyncError):
    """Raised when an OAuth state token is unknown, expired or already used."""

    code = "invalid_state"


class CalendarListMissingError(CalendarSyncError):
    """Raised when a selection update arrives before any calendar list was stored."""

    code = "calendar_list_missing"
