"""Google Calendar v3 read client: calendar list and paginated event fetches.

Pages are requested strictly one after another because each ``pageToken``
comes from the previous response. A sync token that the provider no longer
accepts surfaces as ``EventFetchResult.reset_required`` rather than an error.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any
from urllib.parse import quote

import httpx

from calsync.errors import ProviderRequestError, SyncTokenInvalidatedError
from calsync.google.oauth import safe_google_error_message
from calsync.models import CalendarListEntry, EventFetchResult
from calsync.timekeys import TimeRange

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
CALENDAR_LIST_PATH = "/users/me/calendarList"
EVENTS_PAGE_SIZE = 2500

# Rate-limit handling: 429 honours Retry-After, 503 backs off exponentially.
RATE_LIMIT_RETRY_STATUS_CODES = {429, 503}
RATE_LIMIT_MAX_RETRIES = 3
RATE_LIMIT_BASE_BACKOFF_SECONDS = 1.0


def _map_calendar_list_entry(item: Any) -> CalendarListEntry | None:
    if not isinstance(item, dict):
        return None
    calendar_id = item.get("id")
    if not isinstance(calendar_id, str) or not calendar_id:
        return None
    summary = item.get("summary")
    access_role = item.get("accessRole")
    background = item.get("backgroundColor")
    foreground = item.get("foregroundColor")
    time_zone = item.get("timeZone")
    return CalendarListEntry(
        id=calendar_id,
        summary=summary if isinstance(summary, str) else calendar_id,
        primary=item.get("primary") is True,
        access_role=access_role if isinstance(access_role, str) else "reader",
        background_color=background if isinstance(background, str) else None,
        foreground_color=foreground if isinstance(foreground, str) else None,
        selected=item.get("selected") is not False,
        time_zone=time_zone if isinstance(time_zone, str) else None,
    )


def _names_sync_token(response: httpx.Response) -> bool:
    return "synctoken" in safe_google_error_message(response).lower().replace(" ", "")


class GoogleCalendarApi:
    """Bearer-token client for the calendar-list and events endpoints."""

    def __init__(
        self,
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout: httpx.Timeout | None = None,
        base_url: str = GOOGLE_CALENDAR_API_BASE_URL,
        max_retries: int = RATE_LIMIT_MAX_RETRIES,
        base_backoff_seconds: float = RATE_LIMIT_BASE_BACKOFF_SECONDS,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._max_retries = max(0, max_retries)
        self._base_backoff_seconds = base_backoff_seconds
        self._owns_http_client = http_client is None
        self._http_client = (
            http_client
            if http_client is not None
            else httpx.AsyncClient(timeout=timeout or httpx.Timeout(30.0, connect=10.0))
        )

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    async def list_calendars(self, access_token: str) -> list[CalendarListEntry]:
        """Return every calendar the user can at least read."""
        params: dict[str, Any] = {"minAccessRole": "reader"}
        entries: list[CalendarListEntry] = []
        page_token: str | None = None
        while True:
            if page_token is not None:
                params["pageToken"] = page_token
            response = await self._get(access_token, CALENDAR_LIST_PATH, params)
            payload = self._json_payload(response)
            items = payload.get("items")
            if isinstance(items, list):
                for item in items:
                    entry = _map_calendar_list_entry(item)
                    if entry is not None:
                        entries.append(entry)
            next_page = payload.get("nextPageToken")
            page_token = next_page if isinstance(next_page, str) and next_page else None
            if page_token is None:
                break
        return entries

    async def fetch_events(
        self,
        access_token: str,
        calendar_id: str,
        *,
        sync_token: str | None = None,
        time_min: datetime | None = None,
        time_max: datetime | None = None,
    ) -> EventFetchResult:
        """Fetch all pages of a calendar's events.

        With ``sync_token`` the request is token-driven and carries no window or
        ordering. Without it the request is windowed by ``time_min``/``time_max``
        and ordered by last update.
        """
        time_range = (
            TimeRange(time_min=time_min, time_max=time_max)
            if time_min is not None and time_max is not None
            else None
        )
        try:
            return await self._collect_events(
                access_token,
                calendar_id,
                sync_token=sync_token,
                time_range=time_range,
            )
        except SyncTokenInvalidatedError:
            logger.warning(
                "Sync token invalidated for calendar %s; full reset required", calendar_id
            )
            return EventFetchResult(reset_required=True)

    async def _collect_events(
        self,
        access_token: str,
        calendar_id: str,
        *,
        sync_token: str | None,
        time_range: TimeRange | None,
    ) -> EventFetchResult:
        params: dict[str, Any] = {
            "singleEvents": "true",
            "showDeleted": "true",
            "maxResults": EVENTS_PAGE_SIZE,
        }
        if sync_token:
            params["syncToken"] = sync_token
        else:
            params["orderBy"] = "updated"
            if time_range is not None:
                params["timeMin"] = time_range.time_min_rfc3339
                params["timeMax"] = time_range.time_max_rfc3339

        path = f"/calendars/{quote(calendar_id, safe='')}/events"
        result = EventFetchResult()
        page_token: str | None = None
        while True:
            if page_token is not None:
                params["pageToken"] = page_token
            elif "pageToken" in params:
                del params["pageToken"]

            response = await self._get(
                access_token, path, params, sync_token_in_use=bool(sync_token)
            )
            payload = self._json_payload(response)

            items = payload.get("items")
            if isinstance(items, list):
                for item in items:
                    if not isinstance(item, dict):
                        continue
                    event_id = item.get("id")
                    if not isinstance(event_id, str) or not event_id:
                        continue
                    if item.get("status") == "cancelled":
                        result.cancelled_ids.append(event_id)
                    else:
                        result.events.append(item)

            time_zone = payload.get("timeZone")
            if isinstance(time_zone, str) and time_zone:
                result.time_zone = time_zone
            candidate_sync_token = payload.get("nextSyncToken")
            if isinstance(candidate_sync_token, str) and candidate_sync_token:
                result.next_sync_token = candidate_sync_token
            next_page = payload.get("nextPageToken")
            page_token = next_page if isinstance(next_page, str) and next_page else None
            if page_token is None:
                break
            logger.debug("Calendar %s has another events page", calendar_id)

        logger.info(
            "Fetched calendar %s events (events=%d, cancelled=%d, next_sync_token=%s)",
            calendar_id,
            len(result.events),
            len(result.cancelled_ids),
            "present" if result.next_sync_token else "absent",
        )
        return result

    async def _get(
        self,
        access_token: str,
        path: str,
        params: dict[str, Any],
        *,
        sync_token_in_use: bool = False,
    ) -> httpx.Response:
        url = f"{self._base_url}{path}"
        response = await self._request_once(access_token, url, params)

        retry = 0
        while response.status_code in RATE_LIMIT_RETRY_STATUS_CODES and retry < self._max_retries:
            backoff = self._base_backoff_seconds * (2**retry)
            if response.status_code == 429:
                retry_after_header = response.headers.get("Retry-After")
                if retry_after_header is not None:
                    try:
                        backoff = float(retry_after_header)
                    except ValueError:
                        pass
            logger.warning(
                "Calendar API rate-limited (status=%d), retrying in %.1fs (attempt %d/%d)",
                response.status_code,
                backoff,
                retry + 1,
                self._max_retries,
            )
            await asyncio.sleep(backoff)
            response = await self._request_once(access_token, url, params)
            retry += 1

        if response.status_code == 410:
            raise SyncTokenInvalidatedError("Google Calendar sync token is no longer valid")
        if response.status_code == 400 and sync_token_in_use and _names_sync_token(response):
            raise SyncTokenInvalidatedError(
                f"Google Calendar rejected the sync token: {safe_google_error_message(response)}"
            )
        if response.status_code < 200 or response.status_code >= 300:
            raise ProviderRequestError(
                status_code=response.status_code,
                message=safe_google_error_message(response),
            )
        return response

    async def _request_once(
        self, access_token: str, url: str, params: dict[str, Any]
    ) -> httpx.Response:
        try:
            return await self._http_client.get(
                url,
                params=params,
                headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise ProviderRequestError(
                status_code=503, message=f"Google Calendar request failed: {exc}"
            ) from exc

    @staticmethod
    def _json_payload(response: httpx.Response) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderRequestError(
                status_code=response.status_code,
                message="Google Calendar API returned invalid JSON",
            ) from exc
        if not isinstance(payload, dict):
            raise ProviderRequestError(
                status_code=response.status_code,
                message="Google Calendar API returned an unexpected JSON payload shape",
            )
        return payload
