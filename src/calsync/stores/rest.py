"""Document-database REST backend.

Talks to the Firestore v1 REST surface with a bearer token. Layout:

- ``users/{uid}/integrations/googleCalendar``: the integration document
- ``users/{uid}/google_calendar_events/{eventUid}``: one document per event
- ``users/{uid}/syncLeases/googleCalendar``: the single-flight lease

Writes go through ``documents:commit`` so each chunk is atomic; reads use
plain ``GET`` and ``documents:runQuery``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from typing import Any
from urllib.parse import quote

import httpx

from calsync.errors import StorageReadError, StorageWriteError
from calsync.models import EventRecord, IntegrationRecord, initial_integration_record, now_ms
from calsync.stores.base import SyncStore, retry_write
from calsync.stores.values import decode_fields, encode_fields

logger = logging.getLogger(__name__)

DOCUMENT_API_BASE_URL = "https://firestore.googleapis.com/v1"
INTEGRATION_DOCUMENT_ID = "googleCalendar"
EVENTS_COLLECTION_ID = "google_calendar_events"
LEASES_COLLECTION_ID = "syncLeases"

_PRECONDITION_STATUSES = {"FAILED_PRECONDITION", "ALREADY_EXISTS", "ABORTED"}


class _TransientDocumentApiError(RuntimeError):
    """A 429 or 5xx answer from the document API."""


def _error_status(response: httpx.Response) -> str | None:
    try:
        payload = response.json()
    except ValueError:
        return None
    if isinstance(payload, list) and payload:
        payload = payload[0]
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and isinstance(error.get("status"), str):
            return error["status"]
    return None


class RestDocumentSyncStore(SyncStore):
    """``SyncStore`` over the document REST API.

    Parameters
    ----------
    token:
        Bearer token sent on every request.
    project_id:
        Project hosting the ``(default)`` database.
    http_client:
        Optional shared client; a private one is created (and closed by
        ``close()``) when omitted.
    """

    transient_errors = (httpx.TransportError, _TransientDocumentApiError)

    def __init__(
        self,
        token: str,
        project_id: str,
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout: httpx.Timeout | None = None,
        base_url: str = DOCUMENT_API_BASE_URL,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        if not token:
            raise ValueError("token must be a non-empty string")
        if not project_id:
            raise ValueError("project_id must be a non-empty string")
        self._token = token
        self._base_url = base_url.rstrip("/")
        self._database = f"projects/{project_id}/databases/(default)"
        self._clock = clock
        self._owns_http_client = http_client is None
        self._http_client = (
            http_client
            if http_client is not None
            else httpx.AsyncClient(timeout=timeout or httpx.Timeout(30.0, connect=10.0))
        )

    async def close(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    # ------------------------------------------------------------------
    # Naming and transport
    # ------------------------------------------------------------------

    def _root(self) -> str:
        return f"{self._database}/documents"

    def _user_path(self, user_id: str) -> str:
        return f"{self._root()}/users/{user_id}"

    def _integration_name(self, user_id: str) -> str:
        return f"{self._user_path(user_id)}/integrations/{INTEGRATION_DOCUMENT_ID}"

    def _lease_name(self, user_id: str) -> str:
        return f"{self._user_path(user_id)}/{LEASES_COLLECTION_ID}/{INTEGRATION_DOCUMENT_ID}"

    def _event_name(self, user_id: str, event_uid: str) -> str:
        return f"{self._user_path(user_id)}/{EVENTS_COLLECTION_ID}/{event_uid}"

    def _url(self, name: str) -> str:
        return f"{self._base_url}/{quote(name, safe='/()')}"

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._token}", "Accept": "application/json"}

    async def _get_document(self, name: str) -> dict[str, Any] | None:
        try:
            response = await self._http_client.get(self._url(name), headers=self._headers())
        except httpx.HTTPError as exc:
            raise StorageReadError(f"Document read failed for {name}: {exc}") from exc
        if response.status_code == 404:
            return None
        if response.status_code < 200 or response.status_code >= 300:
            raise StorageReadError(
                f"Document read failed for {name} ({response.status_code}): {response.text[:200]}"
            )
        payload = response.json()
        return payload if isinstance(payload, dict) else None

    async def _commit(self, writes: list[dict[str, Any]]) -> httpx.Response:
        """POST one atomic batch of writes; non-2xx answers are returned as-is."""
        response = await self._http_client.post(
            f"{self._base_url}/{self._database}/documents:commit",
            json={"writes": writes},
            headers=self._headers(),
        )
        if response.status_code == 429 or response.status_code >= 500:
            raise _TransientDocumentApiError(
                f"document commit returned {response.status_code}: {response.text[:200]}"
            )
        return response

    async def _commit_or_raise(self, writes: list[dict[str, Any]], *, description: str) -> None:
        response = await self._commit(writes)
        if response.status_code < 200 or response.status_code >= 300:
            raise StorageWriteError(
                f"{description} failed ({response.status_code}): {response.text[:200]}"
            )

    async def _run_query(
        self, user_id: str, structured_query: dict[str, Any]
    ) -> list[dict[str, Any]]:
        try:
            response = await self._http_client.post(
                f"{self._base_url}/{quote(self._user_path(user_id), safe='/()')}:runQuery",
                json={"structuredQuery": structured_query},
                headers=self._headers(),
            )
        except httpx.HTTPError as exc:
            raise StorageReadError(f"Event query failed: {exc}") from exc
        if response.status_code < 200 or response.status_code >= 300:
            raise StorageReadError(
                f"Event query failed ({response.status_code}): {response.text[:200]}"
            )
        payload = response.json()
        if not isinstance(payload, list):
            return []
        documents: list[dict[str, Any]] = []
        for item in payload:
            if isinstance(item, dict) and isinstance(item.get("document"), dict):
                documents.append(item["document"])
        return documents

    @staticmethod
    def _events_query(
        where: dict[str, Any] | None = None, select: Sequence[str] | None = None
    ) -> dict[str, Any]:
        query: dict[str, Any] = {"from": [{"collectionId": EVENTS_COLLECTION_ID}]}
        if where is not None:
            query["where"] = where
        if select is not None:
            query["select"] = {"fields": [{"fieldPath": path} for path in select]}
        return query

    @staticmethod
    def _field_filter(field_path: str, op: str, value: dict[str, Any]) -> dict[str, Any]:
        return {"fieldFilter": {"field": {"fieldPath": field_path}, "op": op, "value": value}}

    @staticmethod
    def _uid_of(document: dict[str, Any]) -> str | None:
        fields = decode_fields(document.get("fields") or {})
        uid = fields.get("eventUid")
        if isinstance(uid, str) and uid:
            return uid
        name = document.get("name")
        if isinstance(name, str) and "/" in name:
            return name.rsplit("/", 1)[1]
        return None

    # ------------------------------------------------------------------
    # Integration document
    # ------------------------------------------------------------------

    async def load_integration(self, user_id: str) -> IntegrationRecord | None:
        document = await self._get_document(self._integration_name(user_id))
        if document is None:
            return None
        return IntegrationRecord.from_document(decode_fields(document.get("fields") or {}))

    async def ensure_integration(self, user_id: str) -> None:
        name = self._integration_name(user_id)
        initial = initial_integration_record(self._clock()).to_document()
        write = {
            "update": {"name": name, "fields": encode_fields(initial)},
            "currentDocument": {"exists": False},
        }

        async def _create() -> None:
            response = await self._commit([write])
            if 200 <= response.status_code < 300:
                logger.info("Created integration document for user %s", user_id)
                return
            if _error_status(response) in _PRECONDITION_STATUSES:
                return
            raise StorageWriteError(
                f"Creating integration failed ({response.status_code}): {response.text[:200]}"
            )

        await retry_write(
            _create, description="Creating integration", transient=self.transient_errors
        )

    async def _merge_integration(self, user_id: str, fields: dict[str, Any]) -> None:
        write = {
            "update": {"name": self._integration_name(user_id), "fields": encode_fields(fields)},
            "updateMask": {"fieldPaths": list(fields)},
        }
        await self._commit_or_raise([write], description="Updating integration")

    async def delete_integration(self, user_id: str) -> None:
        writes = [
            {"delete": self._integration_name(user_id)},
            {"delete": self._lease_name(user_id)},
        ]
        await retry_write(
            lambda: self._commit_or_raise(writes, description="Deleting integration"),
            description="Deleting integration",
            transient=self.transient_errors,
        )

    # ------------------------------------------------------------------
    # Lease
    # ------------------------------------------------------------------

    async def acquire_sync_lease(self, user_id: str, owner: str, ttl_seconds: float) -> bool:
        name = self._lease_name(user_id)
        now = self._clock()
        existing = await self._get_document(name)
        if existing is None:
            precondition: dict[str, Any] = {"exists": False}
        else:
            fields = decode_fields(existing.get("fields") or {})
            holder = fields.get("owner")
            expires_at = fields.get("expiresAt")
            if holder != owner and isinstance(expires_at, int) and expires_at > now:
                return False
            precondition = {"updateTime": existing.get("updateTime")}

        write = {
            "update": {
                "name": name,
                "fields": encode_fields(
                    {"owner": owner, "expiresAt": now + int(ttl_seconds * 1000)}
                ),
            },
            "currentDocument": precondition,
        }
        try:
            response = await self._commit([write])
        except (httpx.TransportError, _TransientDocumentApiError) as exc:
            raise StorageWriteError(f"Acquiring sync lease failed: {exc}") from exc
        if 200 <= response.status_code < 300:
            return True
        if _error_status(response) in _PRECONDITION_STATUSES:
            logger.info("Lost sync lease race for user %s", user_id)
            return False
        raise StorageWriteError(
            f"Acquiring sync lease failed ({response.status_code}): {response.text[:200]}"
        )

    async def release_sync_lease(self, user_id: str, owner: str) -> None:
        name = self._lease_name(user_id)
        existing = await self._get_document(name)
        if existing is None:
            return
        fields = decode_fields(existing.get("fields") or {})
        if fields.get("owner") != owner:
            return
        write = {"delete": name, "currentDocument": {"updateTime": existing.get("updateTime")}}
        try:
            response = await self._commit([write])
        except (httpx.TransportError, _TransientDocumentApiError) as exc:
            raise StorageWriteError(f"Releasing sync lease failed: {exc}") from exc
        if response.status_code >= 300 and _error_status(response) not in _PRECONDITION_STATUSES:
            raise StorageWriteError(
                f"Releasing sync lease failed ({response.status_code}): {response.text[:200]}"
            )

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def list_event_uids_by_calendar(self, user_id: str, calendar_id: str) -> list[str]:
        documents = await self._run_query(
            user_id,
            self._events_query(
                where=self._field_filter("calendarId", "EQUAL", {"stringValue": calendar_id}),
                select=["eventUid"],
            ),
        )
        return [uid for uid in (self._uid_of(doc) for doc in documents) if uid]

    async def list_all_event_uids(self, user_id: str) -> list[str]:
        documents = await self._run_query(user_id, self._events_query(select=["eventUid"]))
        return [uid for uid in (self._uid_of(doc) for doc in documents) if uid]

    async def list_events(
        self,
        user_id: str,
        *,
        day_key: str | None = None,
        month_key: str | None = None,
    ) -> list[dict[str, Any]]:
        where = None
        if day_key is not None:
            where = self._field_filter("dayKeys", "ARRAY_CONTAINS", {"stringValue": day_key})
        elif month_key is not None:
            where = self._field_filter("monthKeys", "ARRAY_CONTAINS", {"stringValue": month_key})
        documents = await self._run_query(user_id, self._events_query(where=where))
        decoded = [decode_fields(doc.get("fields") or {}) for doc in documents]
        # Sorted here; ordering server-side would need a composite index.
        decoded.sort(key=lambda doc: doc.get("startTimestamp") or 0)
        return decoded

    async def _upsert_chunk(self, user_id: str, records: Sequence[EventRecord]) -> None:
        writes = [
            {
                "update": {
                    "name": self._event_name(user_id, record.event_uid),
                    "fields": encode_fields(record.to_document()),
                }
            }
            for record in records
        ]
        await self._commit_or_raise(writes, description=f"Upserting {len(writes)} events")

    async def _remove_chunk(self, user_id: str, event_uids: Sequence[str]) -> None:
        writes = [{"delete": self._event_name(user_id, uid)} for uid in event_uids]
        await self._commit_or_raise(writes, description=f"Removing {len(writes)} events")
