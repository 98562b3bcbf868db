"""Shared fixtures for the calsync test suite.

``FakeGoogle`` is an ``httpx.MockTransport`` handler standing in for the
Google token, calendar-list and events endpoints. Event responses are queued
per calendar and served in order; every request is recorded.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from datetime import UTC, datetime
from typing import Any
from urllib.parse import unquote

import httpx
import pytest

from calsync.google.calendar_api import GoogleCalendarApi
from calsync.google.oauth import GOOGLE_OAUTH_TOKEN_URL, OAuthClientCredentials, TokenRefresher
from calsync.mapping import EventMapper
from calsync.models import IntegrationPatch, SyncStatus
from calsync.stores.memory import InMemorySyncStore
from calsync.sync import SyncOrchestrator, SyncSettings

# 2024-06-15T00:00:00Z
NOW_MS = int(datetime(2024, 6, 15, tzinfo=UTC).timestamp() * 1000)
USER_ID = "user-1"


class FakeClock:
    def __init__(self, now: int = NOW_MS) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


def timed_event(event_id: str, start: str, end: str, **extra: Any) -> dict[str, Any]:
    return {"id": event_id, "start": {"dateTime": start}, "end": {"dateTime": end}, **extra}


def all_day_event(event_id: str, start: str, end: str, **extra: Any) -> dict[str, Any]:
    return {"id": event_id, "start": {"date": start}, "end": {"date": end}, **extra}


def events_page(
    items: list[dict[str, Any]],
    *,
    next_sync_token: str | None = None,
    next_page_token: str | None = None,
    time_zone: str | None = None,
) -> httpx.Response:
    payload: dict[str, Any] = {"items": items}
    if next_sync_token is not None:
        payload["nextSyncToken"] = next_sync_token
    if next_page_token is not None:
        payload["nextPageToken"] = next_page_token
    if time_zone is not None:
        payload["timeZone"] = time_zone
    return httpx.Response(200, json=payload)


def google_error(status_code: int, message: str = "error") -> httpx.Response:
    return httpx.Response(
        status_code, json={"error": {"code": status_code, "message": message}}
    )


class FakeGoogle:
    """Routes requests by URL; unknown URLs answer 404."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.calendars: list[dict[str, Any]] = [
            {"id": "c1", "summary": "Work", "primary": True, "accessRole": "owner"}
        ]
        self.event_responses: dict[str, list[httpx.Response]] = {}
        self.token_response: httpx.Response = httpx.Response(
            200,
            json={
                "access_token": "fresh-access",
                "expires_in": 3600,
                "scope": "https://www.googleapis.com/auth/calendar.readonly",
                "token_type": "Bearer",
            },
        )

    def queue_events(self, calendar_id: str, *responses: httpx.Response) -> None:
        self.event_responses.setdefault(calendar_id, []).extend(responses)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if str(request.url) == GOOGLE_OAUTH_TOKEN_URL:
            return self.token_response
        path = request.url.path
        if path.endswith("/users/me/calendarList"):
            return httpx.Response(200, json={"items": self.calendars})
        if "/calendars/" in path and path.endswith("/events"):
            calendar_id = unquote(path.split("/calendars/", 1)[1].rsplit("/events", 1)[0])
            queue = self.event_responses.get(calendar_id) or []
            if not queue:
                return google_error(500, f"no queued response for {calendar_id}")
            return queue.pop(0)
        return google_error(404, "not found")

    def event_requests(self, calendar_id: str | None = None) -> list[httpx.Request]:
        return [
            request
            for request in self.requests
            if request.url.path.endswith("/events")
            and (calendar_id is None or f"/calendars/{calendar_id}/" in request.url.path)
        ]

    def token_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if str(r.url) == GOOGLE_OAUTH_TOKEN_URL]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def google() -> FakeGoogle:
    return FakeGoogle()


@pytest.fixture
async def http_client(google: FakeGoogle) -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(transport=httpx.MockTransport(google)) as client:
        yield client


@pytest.fixture
def store(clock: FakeClock) -> InMemorySyncStore:
    return InMemorySyncStore(clock=clock)


@pytest.fixture
def mapper(clock: FakeClock) -> EventMapper:
    return EventMapper(clock=clock)


@pytest.fixture
def settings() -> SyncSettings:
    return SyncSettings()


@pytest.fixture
def orchestrator(
    store: InMemorySyncStore,
    http_client: httpx.AsyncClient,
    mapper: EventMapper,
    settings: SyncSettings,
    clock: FakeClock,
) -> SyncOrchestrator:
    return SyncOrchestrator(
        store,
        TokenRefresher(
            OAuthClientCredentials(client_id="client-id", client_secret="client-secret"),
            http_client=http_client,
            clock=clock,
        ),
        GoogleCalendarApi(http_client=http_client, base_backoff_seconds=0),
        mapper,
        settings=settings,
        clock=clock,
    )


async def connect_user(
    store: InMemorySyncStore,
    *,
    user_id: str = USER_ID,
    expires_at: int | None = NOW_MS + 3_600_000,
    **fields: Any,
) -> None:
    """Seed a connected integration with a still-valid access token."""
    values: dict[str, Any] = {
        "access_token": "stored-access",
        "refresh_token": "stored-refresh",
        "token_type": "Bearer",
        "expires_at": expires_at,
        "last_sync_status": SyncStatus.IDLE,
        **fields,
    }
    await store.ensure_integration(user_id)
    await store.update_integration(user_id, IntegrationPatch(**values))
