"""Tests for the calsync HTTP API.

The service is built from an in-memory store and a mocked Google transport
and installed with ``set_service``; the app runs without its lifespan.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from calsync.api.app import create_app
from calsync.api.deps import USER_HEADER, set_service
from calsync.config import CalsyncConfig, GoogleConfig
from calsync.models import CalendarListEntry, now_ms
from calsync.service import CalsyncService, build_service
from tests.conftest import USER_ID, connect_user, events_page, google_error, timed_event

pytestmark = pytest.mark.unit

REDIRECT_URI = "http://localhost:8000/api/google-calendar/oauth/callback"


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
async def service(http_client, store) -> AsyncIterator[CalsyncService]:
    config = CalsyncConfig(google=GoogleConfig(client_id="client-id", redirect_uri=REDIRECT_URI))
    built = await build_service(config, http_client=http_client, store=store)
    set_service(built)
    yield built
    set_service(None)
    await built.aclose()


@pytest.fixture
async def client(service) -> AsyncIterator[httpx.AsyncClient]:
    app = create_app(manage_service=False)
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://test",
        headers={USER_HEADER: USER_ID},
    ) as ac:
        yield ac


def _meeting(event_id: str = "e1") -> dict:
    return timed_event(event_id, "2024-06-20T10:00:00+09:00", "2024-06-20T11:00:00+09:00")


# ---------------------------------------------------------------------------
# Health and auth
# ---------------------------------------------------------------------------


class TestHealthAndAuth:
    async def test_health(self, client):
        response = await client.get("/api/health")

        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    async def test_health_without_service(self):
        set_service(None)
        app = create_app(manage_service=False)
        async with httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app), base_url="http://test"
        ) as ac:
            response = await ac.get("/api/health")

        assert response.json() == {"status": "starting"}

    async def test_missing_user_header_is_unauthorized(self, client):
        response = await client.get(
            "/api/google-calendar/integration", headers={USER_HEADER: ""}
        )

        assert response.status_code == 401


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------


class TestSync:
    async def test_sync_returns_summary(self, client, store, google):
        await connect_user(store)
        google.queue_events("c1", events_page([_meeting()], next_sync_token="tok"))

        response = await client.post("/api/google-calendar/sync")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["synced_calendars"] == ["c1"]
        assert data["next_sync_tokens"] == {"c1": "tok"}
        assert data["upserted_events"][0]["eventUid"] == "c1__e1"
        assert data["upserted_events"][0]["dayKeys"] == ["2024-06-20"]
        # Stored expiry is in the past relative to the wall clock.
        assert data["refreshed_access_token"] == "fresh-access"

    async def test_force_full_sync_body(self, client, store, google):
        await connect_user(store, sync_tokens={"c1": "old"})
        google.queue_events("c1", events_page([], next_sync_token="new"))

        response = await client.post(
            "/api/google-calendar/sync", json={"forceFullSync": True}
        )

        assert response.status_code == 200
        [request] = google.event_requests("c1")
        assert "syncToken" not in request.url.params

    async def test_not_connected(self, client):
        response = await client.post("/api/google-calendar/sync")

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "reauth_required"

    async def test_rate_limited_sets_retry_after(self, client, store):
        await connect_user(store, last_synced_at=now_ms() - 1_000)

        response = await client.post("/api/google-calendar/sync")

        assert response.status_code == 429
        error = response.json()["error"]
        assert error["code"] == "sync_rate_limited"
        assert 290_000 < error["details"]["retryAfterMs"] <= 299_000
        assert response.headers["Retry-After"] == "299"

    async def test_concurrent_sync_conflicts(self, client, store):
        await connect_user(store)
        await store.acquire_sync_lease(USER_ID, "other-worker", 600)

        response = await client.post("/api/google-calendar/sync")

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "sync_in_progress"

    async def test_provider_failure_is_bad_gateway(self, client, store, google):
        await connect_user(store)
        google.queue_events("c1", google_error(500, "backend error"))

        response = await client.post("/api/google-calendar/sync")

        assert response.status_code == 502
        error = response.json()["error"]
        assert error["code"] == "provider_request_failed"
        assert error["details"] == {"providerStatus": 500}

    async def test_half_open_window_is_rejected(self, client, store):
        await connect_user(store)

        response = await client.post(
            "/api/google-calendar/sync", json={"timeMin": "2024-01-01T00:00:00Z"}
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"


# ---------------------------------------------------------------------------
# Calendars and integration
# ---------------------------------------------------------------------------


class TestCalendars:
    async def test_list_calendars(self, client, store):
        await connect_user(store)

        response = await client.get("/api/google-calendar/calendars")

        assert response.status_code == 200
        [entry] = response.json()["data"]
        assert entry["id"] == "c1"
        assert entry["accessRole"] == "owner"
        assert entry["selected"] is True

    async def test_update_selection(self, client, store):
        await connect_user(
            store,
            calendar_list=[
                CalendarListEntry(id="c1", summary="Work"),
                CalendarListEntry(id="c2", summary="Home"),
            ],
        )

        response = await client.patch(
            "/api/google-calendar/calendars", json={"selectedCalendarIds": ["c2"]}
        )

        assert response.status_code == 200
        assert [(e["id"], e["selected"]) for e in response.json()["data"]] == [
            ("c1", False),
            ("c2", True),
        ]

    async def test_update_selection_without_list(self, client, store):
        await connect_user(store)

        response = await client.patch(
            "/api/google-calendar/calendars", json={"selectedCalendarIds": ["c1"]}
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "calendar_list_missing"

    async def test_status_of_unknown_user(self, client):
        response = await client.get("/api/google-calendar/integration")

        assert response.status_code == 200
        assert response.json()["data"]["connected"] is False

    async def test_disconnect(self, client, store, mapper):
        await connect_user(store)
        await store.upsert_events(USER_ID, [mapper.map("c1", _meeting())])

        response = await client.delete("/api/google-calendar/integration")

        assert response.status_code == 200
        assert response.json()["data"] == {"disconnected": True, "removed_events": 1}
        assert await store.load_integration(USER_ID) is None


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


class TestEvents:
    async def test_month_listing_with_total(self, client, store, mapper):
        await store.upsert_events(
            USER_ID, [mapper.map("c1", _meeting("e1")), mapper.map("c1", _meeting("e2"))]
        )

        response = await client.get("/api/google-calendar/events", params={"month": "2024-06"})

        assert response.status_code == 200
        body = response.json()
        assert [e["eventId"] for e in body["data"]] == ["e1", "e2"]
        assert body["meta"] == {"total": 2}

    async def test_day_listing(self, client, store, mapper):
        await store.upsert_events(USER_ID, [mapper.map("c1", _meeting())])

        response = await client.get("/api/google-calendar/events", params={"date": "20240620"})

        assert [e["eventUid"] for e in response.json()["data"]] == ["c1__e1"]

    @pytest.mark.parametrize(
        "params",
        [{}, {"month": "2024-06", "date": "2024-06-20"}, {"month": "June"}],
    )
    async def test_bad_queries(self, client, params):
        response = await client.get("/api/google-calendar/events", params=params)

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    async def test_unexpected_failure_is_enveloped(self, client, service, monkeypatch):
        async def explode(user_id, month_key):
            raise RuntimeError("kaboom")

        monkeypatch.setattr(service.events, "list_month", explode)

        response = await client.get("/api/google-calendar/events", params={"month": "2024-06"})

        assert response.status_code == 500
        assert response.json()["error"] == {
            "code": "internal_error",
            "message": "Internal server error",
            "details": None,
        }


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


class TestOAuth:
    async def test_start_then_callback_connects(self, client, store, google):
        start = await client.post(
            "/api/google-calendar/oauth/start", json={"returnUrl": "/settings"}
        )
        assert start.status_code == 200
        data = start.json()["data"]
        params = parse_qs(urlparse(data["authorization_url"]).query)
        assert params["redirect_uri"] == [REDIRECT_URI]
        assert params["state"] == [data["state"]]

        google.token_response = httpx.Response(
            200,
            json={"access_token": "granted", "refresh_token": "granted-refresh", "expires_in": 60},
        )
        callback = await client.post(
            "/api/google-calendar/oauth/callback",
            json={"state": data["state"], "code": "auth-code"},
            headers={USER_HEADER: ""},
        )

        assert callback.status_code == 200
        assert callback.json()["data"]["connected"] is True
        assert callback.json()["data"]["return_url"] == "/settings"
        record = await store.load_integration(USER_ID)
        assert record.refresh_token == "granted-refresh"

    async def test_callback_with_unknown_state(self, client):
        response = await client.post(
            "/api/google-calendar/oauth/callback", json={"state": "forged", "code": "c"}
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_state"

    async def test_start_requires_a_redirect_uri(self, client, service):
        service.config.google.redirect_uri = None

        response = await client.post("/api/google-calendar/oauth/start", json={})

        assert response.status_code == 400

    async def test_token_exchange_reports_missing_fields(self, client):
        response = await client.post("/api/google-calendar/oauth/token", json={"code": "c"})

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "invalid_request"
        assert error["details"] == {"missing": ["codeVerifier", "redirectUri"]}

    async def test_token_exchange_passes_payload_through(self, client, google):
        payload = {"access_token": "a", "refresh_token": "r", "expires_in": 3600}
        google.token_response = httpx.Response(200, json=payload)

        response = await client.post(
            "/api/google-calendar/oauth/token",
            json={"code": "c", "codeVerifier": "v" * 43, "redirectUri": REDIRECT_URI},
        )

        assert response.status_code == 200
        assert response.json() == payload

    async def test_token_exchange_error_keeps_provider_status(self, client, google):
        google.token_response = httpx.Response(
            400, json={"error": "invalid_grant", "error_description": "Bad Request"}
        )

        response = await client.post(
            "/api/google-calendar/oauth/token",
            json={"code": "c", "codeVerifier": "v" * 43, "redirectUri": REDIRECT_URI},
        )

        assert response.status_code == 400
        assert response.json() == {"error": "invalid_grant", "error_description": "Bad Request"}
