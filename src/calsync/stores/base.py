"""Storage contract used by the sync orchestrator and the client hooks.

Backends implement the chunk-level primitives; chunking, de-duplication and
write retries live here so every backend commits the same batch shapes.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable, Iterator, Sequence
from typing import Any, TypeVar

from calsync.errors import StorageWriteError
from calsync.models import EventRecord, IntegrationPatch, IntegrationRecord

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_EVENTS_PER_BATCH = 400
WRITE_MAX_ATTEMPTS = 3
WRITE_BASE_BACKOFF_SECONDS = 0.2


def chunked(items: Sequence[T], size: int = MAX_EVENTS_PER_BATCH) -> Iterator[Sequence[T]]:
    if size <= 0:
        raise ValueError("chunk size must be positive")
    for offset in range(0, len(items), size):
        yield items[offset : offset + size]


async def retry_write(
    operation: Callable[[], Awaitable[T]],
    *,
    description: str,
    transient: tuple[type[BaseException], ...],
    attempts: int = WRITE_MAX_ATTEMPTS,
    base_backoff_seconds: float = WRITE_BASE_BACKOFF_SECONDS,
) -> T:
    """Run an idempotent write, retrying transient backend failures.

    Raises ``StorageWriteError`` once ``attempts`` are exhausted. Errors not
    listed in ``transient`` propagate unchanged on the first occurrence.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except transient as exc:
            if attempt >= attempts:
                raise StorageWriteError(
                    f"{description} failed after {attempts} attempts: {exc}"
                ) from exc
            backoff = base_backoff_seconds * (2 ** (attempt - 1))
            logger.warning(
                "%s failed (attempt %d/%d), retrying in %.2fs: %s",
                description,
                attempt,
                attempts,
                backoff,
                exc,
            )
            await asyncio.sleep(backoff)


def unique_in_order(values: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    ordered: list[str] = []
    for value in values:
        if value and value not in seen:
            seen.add(value)
            ordered.append(value)
    return ordered


class SyncStore(abc.ABC):
    """Persistence boundary for one product's integration and event documents.

    Event writes are idempotent and keyed only by ``event_uid``; re-applying a
    batch leaves the store unchanged.
    """

    #: Exceptions that ``retry_write`` treats as transient for this backend.
    transient_errors: tuple[type[BaseException], ...] = ()

    # ------------------------------------------------------------------
    # Integration document
    # ------------------------------------------------------------------

    @abc.abstractmethod
    async def load_integration(self, user_id: str) -> IntegrationRecord | None:
        """Return the user's integration record, or ``None`` when absent."""
        ...

    @abc.abstractmethod
    async def ensure_integration(self, user_id: str) -> None:
        """Create an empty integration record if none exists yet."""
        ...

    @abc.abstractmethod
    async def _merge_integration(self, user_id: str, fields: dict[str, Any]) -> None:
        """Shallow-merge camelCase ``fields`` into the stored document."""
        ...

    async def update_integration(self, user_id: str, patch: IntegrationPatch) -> None:
        """Merge the fields set on ``patch``; creates the record if absent."""
        if patch.is_empty():
            return
        fields = patch.to_document()
        await retry_write(
            lambda: self._merge_integration(user_id, fields),
            description="Updating integration",
            transient=self.transient_errors,
        )

    @abc.abstractmethod
    async def delete_integration(self, user_id: str) -> None:
        ...

    # ------------------------------------------------------------------
    # Single-flight lease
    # ------------------------------------------------------------------

    @abc.abstractmethod
    async def acquire_sync_lease(self, user_id: str, owner: str, ttl_seconds: float) -> bool:
        """Take the user's sync lease unless another owner holds a live one."""
        ...

    @abc.abstractmethod
    async def release_sync_lease(self, user_id: str, owner: str) -> None:
        """Drop the lease when ``owner`` still holds it."""
        ...

    # ------------------------------------------------------------------
    # Event documents
    # ------------------------------------------------------------------

    @abc.abstractmethod
    async def list_event_uids_by_calendar(self, user_id: str, calendar_id: str) -> list[str]:
        ...

    @abc.abstractmethod
    async def list_events(
        self,
        user_id: str,
        *,
        day_key: str | None = None,
        month_key: str | None = None,
    ) -> list[dict[str, Any]]:
        """Return stored event documents ordered by ``startTimestamp``.

        ``day_key`` takes precedence over ``month_key``; with neither, every
        stored event is returned.
        """
        ...

    @abc.abstractmethod
    async def list_all_event_uids(self, user_id: str) -> list[str]:
        ...

    @abc.abstractmethod
    async def _upsert_chunk(self, user_id: str, records: Sequence[EventRecord]) -> None:
        ...

    @abc.abstractmethod
    async def _remove_chunk(self, user_id: str, event_uids: Sequence[str]) -> None:
        ...

    async def upsert_events(self, user_id: str, records: Sequence[EventRecord]) -> None:
        """Write ``records`` in batches of at most ``MAX_EVENTS_PER_BATCH``.

        When one batch names the same uid twice the later record wins.
        """
        latest: dict[str, EventRecord] = {}
        for record in records:
            latest.pop(record.event_uid, None)
            latest[record.event_uid] = record
        pending = list(latest.values())
        for chunk in chunked(pending):
            await retry_write(
                lambda chunk=chunk: self._upsert_chunk(user_id, chunk),
                description=f"Upserting {len(chunk)} events",
                transient=self.transient_errors,
            )

    async def remove_events(self, user_id: str, event_uids: Iterable[str]) -> None:
        pending = unique_in_order(event_uids)
        for chunk in chunked(pending):
            await retry_write(
                lambda chunk=chunk: self._remove_chunk(user_id, chunk),
                description=f"Removing {len(chunk)} events",
                transient=self.transient_errors,
            )

    async def remove_all_events(self, user_id: str) -> int:
        """Purge every stored event of the user; returns the number removed."""
        event_uids = await self.list_all_event_uids(user_id)
        await self.remove_events(user_id, event_uids)
        return len(event_uids)

    async def remove_calendar_events(self, user_id: str, calendar_id: str) -> int:
        event_uids = await self.list_event_uids_by_calendar(user_id, calendar_id)
        await self.remove_events(user_id, event_uids)
        return len(event_uids)

    async def close(self) -> None:
        """Release backend resources owned by the store."""
