"""PostgreSQL backends: user-session and privileged server stores.

Both share the SQL below and differ only in how a connection is obtained:

- ``SessionSyncStore`` wraps one authenticated user's connection. Every
  transaction first sets ``calsync.user_id`` so the row-level-security
  policies created by the ``core_001`` migration scope it to that user.
- ``ServerSyncStore`` acquires connections from a privileged pool that
  bypasses row-level security.

Documents are stored as JSONB with the same camelCase shape every other
backend uses. Each event chunk commits in its own transaction.
"""

from __future__ import annotations

import abc
import json
from collections.abc import AsyncIterator, Sequence
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import TYPE_CHECKING, Any

import asyncpg

from calsync.models import EventRecord, IntegrationRecord, initial_integration_record
from calsync.stores.base import SyncStore

if TYPE_CHECKING:
    from asyncpg import Connection, Pool

INTEGRATIONS_TABLE = "google_calendar_integrations"
EVENTS_TABLE = "google_calendar_events"
RLS_USER_SETTING = "calsync.user_id"

_TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    OSError,
    asyncpg.PostgresConnectionError,
    asyncpg.SerializationError,
    asyncpg.DeadlockDetectedError,
)

_LOAD_INTEGRATION_SQL = f"SELECT document FROM {INTEGRATIONS_TABLE} WHERE user_id = $1"

_ENSURE_INTEGRATION_SQL = f"""
INSERT INTO {INTEGRATIONS_TABLE} (user_id, document)
VALUES ($1, $2::jsonb)
ON CONFLICT (user_id) DO NOTHING
"""

_MERGE_INTEGRATION_SQL = f"""
INSERT INTO {INTEGRATIONS_TABLE} (user_id, document)
VALUES ($1, $2::jsonb)
ON CONFLICT (user_id) DO UPDATE
SET document = {INTEGRATIONS_TABLE}.document || $3::jsonb,
    updated_at = now()
"""

_DELETE_INTEGRATION_SQL = f"DELETE FROM {INTEGRATIONS_TABLE} WHERE user_id = $1"

_ACQUIRE_LEASE_SQL = f"""
UPDATE {INTEGRATIONS_TABLE}
SET sync_lease_owner = $2,
    sync_lease_expires_at = now() + make_interval(secs => $3)
WHERE user_id = $1
  AND (
    sync_lease_owner IS NULL
    OR sync_lease_owner = $2
    OR sync_lease_expires_at IS NULL
    OR sync_lease_expires_at <= now()
  )
RETURNING user_id
"""

_RELEASE_LEASE_SQL = f"""
UPDATE {INTEGRATIONS_TABLE}
SET sync_lease_owner = NULL, sync_lease_expires_at = NULL
WHERE user_id = $1 AND sync_lease_owner = $2
"""

_UPSERT_EVENT_SQL = f"""
INSERT INTO {EVENTS_TABLE} (user_id, event_uid, calendar_id, start_timestamp, document)
VALUES ($1, $2, $3, $4, $5::jsonb)
ON CONFLICT (user_id, event_uid) DO UPDATE
SET calendar_id = EXCLUDED.calendar_id,
    start_timestamp = EXCLUDED.start_timestamp,
    document = EXCLUDED.document,
    updated_at = now()
"""

_DELETE_EVENTS_SQL = f"""
DELETE FROM {EVENTS_TABLE}
WHERE user_id = $1 AND event_uid = ANY($2::text[])
"""

_EVENT_UIDS_BY_CALENDAR_SQL = f"""
SELECT event_uid FROM {EVENTS_TABLE}
WHERE user_id = $1 AND calendar_id = $2
ORDER BY event_uid
"""

_ALL_EVENT_UIDS_SQL = f"""
SELECT event_uid FROM {EVENTS_TABLE}
WHERE user_id = $1
ORDER BY event_uid
"""

_EVENTS_BY_DAY_SQL = f"""
SELECT document FROM {EVENTS_TABLE}
WHERE user_id = $1 AND document -> 'dayKeys' ? $2
ORDER BY start_timestamp, event_uid
"""

_EVENTS_BY_MONTH_SQL = f"""
SELECT document FROM {EVENTS_TABLE}
WHERE user_id = $1 AND document -> 'monthKeys' ? $2
ORDER BY start_timestamp, event_uid
"""

_ALL_EVENTS_SQL = f"""
SELECT document FROM {EVENTS_TABLE}
WHERE user_id = $1
ORDER BY start_timestamp, event_uid
"""


def _decode_document(value: Any) -> dict[str, Any]:
    """asyncpg returns JSONB as text unless a type codec is registered."""
    if value is None:
        return {}
    if isinstance(value, str):
        decoded = json.loads(value)
        return decoded if isinstance(decoded, dict) else {}
    if isinstance(value, dict):
        return value
    return dict(value)


class _PostgresSyncStore(SyncStore):
    transient_errors = _TRANSIENT_ERRORS

    @abc.abstractmethod
    def _transaction(self, user_id: str) -> AbstractAsyncContextManager[Connection]:
        """Yield a connection inside a transaction scoped to ``user_id``."""
        ...

    async def load_integration(self, user_id: str) -> IntegrationRecord | None:
        async with self._transaction(user_id) as conn:
            raw = await conn.fetchval(_LOAD_INTEGRATION_SQL, user_id)
        if raw is None:
            return None
        return IntegrationRecord.from_document(_decode_document(raw))

    async def ensure_integration(self, user_id: str) -> None:
        initial = initial_integration_record().to_document()
        async with self._transaction(user_id) as conn:
            await conn.execute(_ENSURE_INTEGRATION_SQL, user_id, json.dumps(initial))

    async def _merge_integration(self, user_id: str, fields: dict[str, Any]) -> None:
        created = {**initial_integration_record().to_document(), **fields}
        async with self._transaction(user_id) as conn:
            await conn.execute(
                _MERGE_INTEGRATION_SQL, user_id, json.dumps(created), json.dumps(fields)
            )

    async def delete_integration(self, user_id: str) -> None:
        async with self._transaction(user_id) as conn:
            await conn.execute(_DELETE_INTEGRATION_SQL, user_id)

    async def acquire_sync_lease(self, user_id: str, owner: str, ttl_seconds: float) -> bool:
        async with self._transaction(user_id) as conn:
            acquired = await conn.fetchval(_ACQUIRE_LEASE_SQL, user_id, owner, float(ttl_seconds))
        return acquired is not None

    async def release_sync_lease(self, user_id: str, owner: str) -> None:
        async with self._transaction(user_id) as conn:
            await conn.execute(_RELEASE_LEASE_SQL, user_id, owner)

    async def list_event_uids_by_calendar(self, user_id: str, calendar_id: str) -> list[str]:
        async with self._transaction(user_id) as conn:
            rows = await conn.fetch(_EVENT_UIDS_BY_CALENDAR_SQL, user_id, calendar_id)
        return [row["event_uid"] for row in rows]

    async def list_all_event_uids(self, user_id: str) -> list[str]:
        async with self._transaction(user_id) as conn:
            rows = await conn.fetch(_ALL_EVENT_UIDS_SQL, user_id)
        return [row["event_uid"] for row in rows]

    async def list_events(
        self,
        user_id: str,
        *,
        day_key: str | None = None,
        month_key: str | None = None,
    ) -> list[dict[str, Any]]:
        async with self._transaction(user_id) as conn:
            if day_key is not None:
                rows = await conn.fetch(_EVENTS_BY_DAY_SQL, user_id, day_key)
            elif month_key is not None:
                rows = await conn.fetch(_EVENTS_BY_MONTH_SQL, user_id, month_key)
            else:
                rows = await conn.fetch(_ALL_EVENTS_SQL, user_id)
        return [_decode_document(row["document"]) for row in rows]

    async def _upsert_chunk(self, user_id: str, records: Sequence[EventRecord]) -> None:
        args = [
            (
                user_id,
                record.event_uid,
                record.calendar_id,
                record.start_timestamp,
                json.dumps(record.to_document()),
            )
            for record in records
        ]
        async with self._transaction(user_id) as conn:
            await conn.executemany(_UPSERT_EVENT_SQL, args)

    async def _remove_chunk(self, user_id: str, event_uids: Sequence[str]) -> None:
        async with self._transaction(user_id) as conn:
            await conn.execute(_DELETE_EVENTS_SQL, user_id, list(event_uids))


class SessionSyncStore(_PostgresSyncStore):
    """Store bound to one signed-in user's connection.

    Any call naming a different user raises ``PermissionError`` before a
    query is sent.
    """

    def __init__(self, connection: Connection, user_id: str) -> None:
        if not user_id:
            raise ValueError("user_id must be a non-empty string")
        self._connection = connection
        self._user_id = user_id

    @property
    def user_id(self) -> str:
        return self._user_id

    @asynccontextmanager
    async def _transaction(self, user_id: str) -> AsyncIterator[Connection]:
        if user_id != self._user_id:
            raise PermissionError("Session store cannot access another user's documents")
        async with self._connection.transaction():
            await self._connection.execute(
                "SELECT set_config($1, $2, true)", RLS_USER_SETTING, user_id
            )
            yield self._connection


class ServerSyncStore(_PostgresSyncStore):
    """Privileged store used by background jobs and the HTTP surface."""

    def __init__(self, pool: Pool) -> None:
        self._pool = pool

    @asynccontextmanager
    async def _transaction(self, user_id: str) -> AsyncIterator[Connection]:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                yield conn
