"""Read-side view over stored event documents."""

from __future__ import annotations

import logging
import re
from typing import Any

from pydantic import ValidationError

from calsync.models import EVENT_UID_SEPARATOR, EventRecord, build_event_uid
from calsync.stores.base import SyncStore
from calsync.timekeys import normalize_iso_date

logger = logging.getLogger(__name__)

_MONTH_KEY_RE = re.compile(r"^\d{4}-\d{2}$")


def decode_event_document(document: dict[str, Any]) -> EventRecord | None:
    """Decode a possibly partial stored document, filling defaults.

    Documents written by older versions may lack ``eventUid`` or the ids it
    is built from; the missing piece is reconstructed when possible. Returns
    ``None`` for documents that cannot identify their event.
    """
    data = {key: value for key, value in document.items() if value is not None}
    calendar_id = data.get("calendarId")
    event_id = data.get("eventId")
    event_uid = data.get("eventUid")

    if isinstance(event_uid, str) and EVENT_UID_SEPARATOR in event_uid:
        uid_calendar, _, uid_event = event_uid.partition(EVENT_UID_SEPARATOR)
        calendar_id = calendar_id or uid_calendar
        event_id = event_id or uid_event
    if not isinstance(calendar_id, str) or not isinstance(event_id, str):
        logger.debug("Skipping stored event without identity: %s", event_uid)
        return None

    data["calendarId"] = calendar_id
    data["eventId"] = event_id
    data.setdefault("eventUid", build_event_uid(calendar_id, event_id))
    try:
        return EventRecord.from_document(data)
    except ValidationError as exc:
        logger.warning("Skipping undecodable stored event %s: %s", data["eventUid"], exc)
        return None


class EventsView:
    """List a user's stored events for a month or a single day."""

    def __init__(self, store: SyncStore) -> None:
        self._store = store

    async def list_month(self, user_id: str, month_key: str) -> list[EventRecord]:
        if not _MONTH_KEY_RE.match(month_key):
            raise ValueError(f"month_key must look like YYYY-MM, got {month_key!r}")
        return await self._list(user_id, month_key=month_key)

    async def list_day(self, user_id: str, date_key: str) -> list[EventRecord]:
        """``date_key`` may be ``YYYY-MM-DD`` or the compact ``YYYYMMDD``."""
        normalized = normalize_iso_date(date_key)
        if normalized is None:
            raise ValueError(f"date_key must look like YYYY-MM-DD, got {date_key!r}")
        return await self._list(user_id, day_key=normalized)

    async def _list(
        self, user_id: str, *, day_key: str | None = None, month_key: str | None = None
    ) -> list[EventRecord]:
        documents = await self._store.list_events(user_id, day_key=day_key, month_key=month_key)
        records = [
            record
            for record in (decode_event_document(document) for document in documents)
            if record is not None
        ]
        records.sort(key=lambda record: (record.start_timestamp, record.event_uid))
        return records
