"""Tests for the document REST store and its typed value codec."""

from __future__ import annotations

import json
from datetime import UTC, datetime

import httpx
import pytest

from calsync.errors import StorageReadError, StorageWriteError
from calsync.models import IntegrationPatch, SyncStatus
from calsync.stores.rest import RestDocumentSyncStore
from calsync.stores.values import decode_fields, decode_value, encode_fields, encode_value
from tests.conftest import NOW_MS, USER_ID, FakeClock, timed_event

pytestmark = pytest.mark.unit

DATABASE = "projects/proj/databases/(default)"
BASE = f"https://firestore.googleapis.com/v1/{DATABASE}/documents"
INTEGRATION_URL = f"{BASE}/users/{USER_ID}/integrations/googleCalendar"
LEASE_URL = f"{BASE}/users/{USER_ID}/syncLeases/googleCalendar"
COMMIT_URL = f"{BASE}:commit"


# ---------------------------------------------------------------------------
# Fake document API
# ---------------------------------------------------------------------------


class FakeDocumentApi:
    """Answers from a queue per (method, url); unqueued commits succeed."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.responses: dict[tuple[str, str], list[httpx.Response]] = {}

    def queue(self, method: str, url: str, *responses: httpx.Response) -> None:
        self.responses.setdefault((method, url), []).extend(responses)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, str(request.url).replace("%28", "(").replace("%29", ")"))
        queue = self.responses.get(key)
        if queue:
            return queue.pop(0)
        if key == ("POST", COMMIT_URL):
            return httpx.Response(200, json={"writeResults": []})
        return httpx.Response(404, json={"error": {"code": 404, "status": "NOT_FOUND"}})

    def commits(self) -> list[list[dict]]:
        return [
            json.loads(r.content)["writes"]
            for r in self.requests
            if r.method == "POST" and r.url.path.endswith(":commit")
        ]


def _document(fields: dict, update_time: str = "2024-06-15T00:00:00.000000Z") -> httpx.Response:
    return httpx.Response(
        200, json={"name": "doc", "fields": encode_fields(fields), "updateTime": update_time}
    )


def _status_error(code: int, status: str) -> httpx.Response:
    return httpx.Response(code, json={"error": {"code": code, "status": status}})


@pytest.fixture
def api() -> FakeDocumentApi:
    return FakeDocumentApi()


@pytest.fixture
async def rest_store(api: FakeDocumentApi):
    async with httpx.AsyncClient(transport=httpx.MockTransport(api)) as client:
        yield RestDocumentSyncStore("token", "proj", http_client=client, clock=FakeClock())


# ---------------------------------------------------------------------------
# Value codec
# ---------------------------------------------------------------------------


class TestValues:
    def test_integers_travel_as_strings_and_bool_is_not_int(self):
        assert encode_value(42) == {"integerValue": "42"}
        assert encode_value(True) == {"booleanValue": True}
        assert decode_value({"integerValue": "42"}) == 42

    def test_nested_structures(self):
        encoded = encode_value({"keys": ["a"], "inner": {"n": None}})

        assert encoded == {
            "mapValue": {
                "fields": {
                    "keys": {"arrayValue": {"values": [{"stringValue": "a"}]}},
                    "inner": {"mapValue": {"fields": {"n": {"nullValue": None}}}},
                }
            }
        }

    def test_empty_array_and_map_decode(self):
        assert decode_fields({"a": {"arrayValue": {}}, "m": {"mapValue": {}}}) == {
            "a": [],
            "m": {},
        }

    def test_nanosecond_timestamp_is_truncated(self):
        decoded = decode_value({"timestampValue": "2024-06-15T00:00:00.123456789Z"})

        assert decoded == datetime(2024, 6, 15, 0, 0, 0, 123456, tzinfo=UTC)

    def test_unknown_tag_decodes_to_none(self):
        assert decode_value({"geoPointValue": {}}) is None

    def test_unsupported_type_is_rejected(self):
        with pytest.raises(TypeError):
            encode_value(object())


# ---------------------------------------------------------------------------
# Integration document
# ---------------------------------------------------------------------------


class TestIntegration:
    def test_constructor_requires_credentials(self):
        with pytest.raises(ValueError):
            RestDocumentSyncStore("", "proj")

    async def test_missing_document_loads_as_none(self, rest_store):
        assert await rest_store.load_integration(USER_ID) is None

    async def test_load_decodes_camel_case_fields(self, rest_store, api):
        api.queue(
            "GET",
            INTEGRATION_URL,
            _document(
                {
                    "refreshToken": "r",
                    "expiresAt": NOW_MS,
                    "syncTokens": {"c1": "t"},
                    "lastSyncStatus": "error",
                }
            ),
        )

        record = await rest_store.load_integration(USER_ID)

        assert record.refresh_token == "r"
        assert record.expires_at == NOW_MS
        assert record.sync_tokens == {"c1": "t"}
        assert record.last_sync_status == SyncStatus.ERROR
        assert api.requests[0].headers["Authorization"] == "Bearer token"

    async def test_read_failure_raises(self, rest_store, api):
        api.queue("GET", INTEGRATION_URL, httpx.Response(500, text="boom"))

        with pytest.raises(StorageReadError):
            await rest_store.load_integration(USER_ID)

    async def test_ensure_uses_create_precondition(self, rest_store, api):
        await rest_store.ensure_integration(USER_ID)

        [[write]] = api.commits()
        assert write["currentDocument"] == {"exists": False}
        assert write["update"]["name"].endswith("/users/user-1/integrations/googleCalendar")
        fields = decode_fields(write["update"]["fields"])
        assert fields["lastSyncStatus"] == "idle"
        assert fields["updatedAt"] == NOW_MS

    async def test_ensure_tolerates_existing_document(self, rest_store, api):
        api.queue("POST", COMMIT_URL, _status_error(409, "ALREADY_EXISTS"))

        await rest_store.ensure_integration(USER_ID)

    async def test_update_sends_field_mask(self, rest_store, api):
        await rest_store.update_integration(
            USER_ID, IntegrationPatch(access_token="a", last_sync_error=None)
        )

        [[write]] = api.commits()
        assert write["updateMask"] == {"fieldPaths": ["accessToken", "lastSyncError"]}
        assert decode_fields(write["update"]["fields"]) == {
            "accessToken": "a",
            "lastSyncError": None,
        }

    async def test_transient_commit_failure_is_retried(self, rest_store, api):
        api.queue("POST", COMMIT_URL, httpx.Response(503, text="unavailable"))

        await rest_store.update_integration(USER_ID, IntegrationPatch(access_token="a"))

        assert len(api.commits()) == 2

    async def test_permanent_commit_failure_raises(self, rest_store, api):
        api.queue("POST", COMMIT_URL, _status_error(403, "PERMISSION_DENIED"))

        with pytest.raises(StorageWriteError):
            await rest_store.update_integration(USER_ID, IntegrationPatch(access_token="a"))

        assert len(api.commits()) == 1


# ---------------------------------------------------------------------------
# Lease
# ---------------------------------------------------------------------------


class TestLease:
    async def test_absent_lease_is_created(self, rest_store, api):
        assert await rest_store.acquire_sync_lease(USER_ID, "w1", 600)

        [[write]] = api.commits()
        assert write["currentDocument"] == {"exists": False}
        assert decode_fields(write["update"]["fields"]) == {
            "owner": "w1",
            "expiresAt": NOW_MS + 600_000,
        }

    async def test_live_lease_of_other_owner_refuses(self, rest_store, api):
        api.queue("GET", LEASE_URL, _document({"owner": "w2", "expiresAt": NOW_MS + 1}))

        assert not await rest_store.acquire_sync_lease(USER_ID, "w1", 600)
        assert api.commits() == []

    async def test_expired_lease_is_taken_with_update_time_precondition(self, rest_store, api):
        api.queue(
            "GET",
            LEASE_URL,
            _document({"owner": "w2", "expiresAt": NOW_MS - 1}, update_time="T1"),
        )

        assert await rest_store.acquire_sync_lease(USER_ID, "w1", 600)

        [[write]] = api.commits()
        assert write["currentDocument"] == {"updateTime": "T1"}

    async def test_lost_race_returns_false(self, rest_store, api):
        api.queue("POST", COMMIT_URL, _status_error(400, "FAILED_PRECONDITION"))

        assert not await rest_store.acquire_sync_lease(USER_ID, "w1", 600)

    async def test_release_only_deletes_own_lease(self, rest_store, api):
        api.queue("GET", LEASE_URL, _document({"owner": "w2", "expiresAt": NOW_MS}))
        await rest_store.release_sync_lease(USER_ID, "w1")
        assert api.commits() == []

        api.queue(
            "GET", LEASE_URL, _document({"owner": "w1", "expiresAt": NOW_MS}, update_time="T2")
        )
        await rest_store.release_sync_lease(USER_ID, "w1")
        [[write]] = api.commits()
        assert write["delete"].endswith("/syncLeases/googleCalendar")
        assert write["currentDocument"] == {"updateTime": "T2"}


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


class TestEvents:
    async def test_upsert_commits_one_write_per_event(self, rest_store, api, mapper):
        records = [
            mapper.map(
                "c1",
                timed_event(f"e{i}", "2024-06-20T10:00:00+09:00", "2024-06-20T11:00:00+09:00"),
            )
            for i in range(401)
        ]

        await rest_store.upsert_events(USER_ID, records)

        commits = api.commits()
        assert [len(writes) for writes in commits] == [400, 1]
        first = commits[0][0]["update"]
        assert first["name"].endswith("/users/user-1/google_calendar_events/c1__e0")
        assert decode_fields(first["fields"])["dayKeys"] == ["2024-06-20"]

    async def test_remove_commits_deletes(self, rest_store, api):
        await rest_store.remove_events(USER_ID, ["c1__a", "c1__b"])

        [writes] = api.commits()
        assert [w["delete"].rsplit("/", 1)[1] for w in writes] == ["c1__a", "c1__b"]

    async def test_list_events_filters_and_sorts(self, rest_store, api):
        query_url = f"{BASE}/users/{USER_ID}:runQuery"
        api.queue(
            "POST",
            query_url,
            httpx.Response(
                200,
                json=[
                    {"document": {"fields": encode_fields({"eventUid": "b", "startTimestamp": 2})}},
                    {"document": {"fields": encode_fields({"eventUid": "a", "startTimestamp": 1})}},
                    {"readTime": "2024-06-15T00:00:00Z"},
                ],
            ),
        )

        documents = await rest_store.list_events(USER_ID, day_key="2024-06-20")

        assert [doc["eventUid"] for doc in documents] == ["a", "b"]
        query = json.loads(api.requests[0].content)["structuredQuery"]
        assert query["from"] == [{"collectionId": "google_calendar_events"}]
        assert query["where"]["fieldFilter"] == {
            "field": {"fieldPath": "dayKeys"},
            "op": "ARRAY_CONTAINS",
            "value": {"stringValue": "2024-06-20"},
        }

    async def test_uids_by_calendar_fall_back_to_document_name(self, rest_store, api):
        api.queue(
            "POST",
            f"{BASE}/users/{USER_ID}:runQuery",
            httpx.Response(
                200,
                json=[
                    {"document": {"name": f"{DATABASE}/documents/x/c1__a", "fields": {}}},
                    {"document": {"fields": encode_fields({"eventUid": "c1__b"})}},
                ],
            ),
        )

        assert await rest_store.list_event_uids_by_calendar(USER_ID, "c1") == ["c1__a", "c1__b"]
        query = json.loads(api.requests[0].content)["structuredQuery"]
        assert query["select"] == {"fields": [{"fieldPath": "eventUid"}]}
        assert query["where"]["fieldFilter"]["op"] == "EQUAL"

    async def test_query_failure_raises(self, rest_store, api):
        api.queue("POST", f"{BASE}/users/{USER_ID}:runQuery", httpx.Response(500))

        with pytest.raises(StorageReadError):
            await rest_store.list_all_event_uids(USER_ID)
