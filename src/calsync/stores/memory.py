"""Dict-backed store for local development and tests."""

from __future__ import annotations

import asyncio
import copy
from collections.abc import Callable, Sequence
from typing import Any

from calsync.models import EventRecord, IntegrationRecord, initial_integration_record, now_ms
from calsync.stores.base import SyncStore


class InMemorySyncStore(SyncStore):
    """Keeps camelCase documents in process memory.

    ``upsert_batches`` and ``remove_batches`` record the size of every chunk
    committed, which lets callers observe the batching behaviour.
    """

    def __init__(self, *, clock: Callable[[], int] = now_ms) -> None:
        self._clock = clock
        self._lock = asyncio.Lock()
        self.integrations: dict[str, dict[str, Any]] = {}
        self.events: dict[str, dict[str, dict[str, Any]]] = {}
        self.leases: dict[str, tuple[str, int]] = {}
        self.upsert_batches: list[int] = []
        self.remove_batches: list[int] = []

    async def load_integration(self, user_id: str) -> IntegrationRecord | None:
        document = self.integrations.get(user_id)
        if document is None:
            return None
        return IntegrationRecord.from_document(copy.deepcopy(document))

    async def ensure_integration(self, user_id: str) -> None:
        async with self._lock:
            if user_id not in self.integrations:
                record = initial_integration_record(self._clock())
                self.integrations[user_id] = record.to_document()

    async def _merge_integration(self, user_id: str, fields: dict[str, Any]) -> None:
        async with self._lock:
            document = self.integrations.get(user_id)
            if document is None:
                document = initial_integration_record(self._clock()).to_document()
            document.update(copy.deepcopy(fields))
            self.integrations[user_id] = document

    async def delete_integration(self, user_id: str) -> None:
        async with self._lock:
            self.integrations.pop(user_id, None)
            self.leases.pop(user_id, None)

    async def acquire_sync_lease(self, user_id: str, owner: str, ttl_seconds: float) -> bool:
        async with self._lock:
            now = self._clock()
            current = self.leases.get(user_id)
            if current is not None and current[0] != owner and current[1] > now:
                return False
            self.leases[user_id] = (owner, now + int(ttl_seconds * 1000))
            return True

    async def release_sync_lease(self, user_id: str, owner: str) -> None:
        async with self._lock:
            current = self.leases.get(user_id)
            if current is not None and current[0] == owner:
                del self.leases[user_id]

    async def list_event_uids_by_calendar(self, user_id: str, calendar_id: str) -> list[str]:
        return [
            uid
            for uid, document in self.events.get(user_id, {}).items()
            if document.get("calendarId") == calendar_id
        ]

    async def list_all_event_uids(self, user_id: str) -> list[str]:
        return list(self.events.get(user_id, {}))

    async def list_events(
        self,
        user_id: str,
        *,
        day_key: str | None = None,
        month_key: str | None = None,
    ) -> list[dict[str, Any]]:
        documents = list(self.events.get(user_id, {}).values())
        if day_key is not None:
            documents = [doc for doc in documents if day_key in (doc.get("dayKeys") or [])]
        elif month_key is not None:
            documents = [doc for doc in documents if month_key in (doc.get("monthKeys") or [])]
        documents.sort(key=lambda doc: doc.get("startTimestamp") or 0)
        return copy.deepcopy(documents)

    async def _upsert_chunk(self, user_id: str, records: Sequence[EventRecord]) -> None:
        async with self._lock:
            bucket = self.events.setdefault(user_id, {})
            for record in records:
                bucket[record.event_uid] = record.to_document()
            self.upsert_batches.append(len(records))

    async def _remove_chunk(self, user_id: str, event_uids: Sequence[str]) -> None:
        async with self._lock:
            bucket = self.events.setdefault(user_id, {})
            for uid in event_uids:
                bucket.pop(uid, None)
            self.remove_batches.append(len(event_uids))
