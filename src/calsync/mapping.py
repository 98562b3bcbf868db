"""Normalize raw Google Calendar events into ``EventRecord`` documents."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import UTC, date, datetime, timedelta, tzinfo
from typing import Any

from calsync.models import (
    DEFAULT_EVENT_STATUS,
    DEFAULT_EVENT_SUMMARY,
    EventOrganizer,
    EventRecord,
    EventTimeRaw,
    build_event_uid,
    now_ms,
)
from calsync.timekeys import (
    DEFAULT_FISCAL_YEAR_START_MONTH,
    coerce_zoneinfo,
    enumerate_date_keys,
    enumerate_fiscal_year_keys,
    enumerate_month_keys,
    to_date_key,
    to_epoch_ms,
)

logger = logging.getLogger(__name__)

DEFAULT_TIME_ZONE = "Asia/Tokyo"


def parse_google_datetime(value: str) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    parsed = datetime.fromisoformat(normalized)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _parse_google_date(value: str) -> date:
    return date.fromisoformat(value.strip()[:10])


def _optional_text(value: Any) -> str | None:
    if isinstance(value, str):
        return value
    return None


def _boundary(raw: Any) -> EventTimeRaw:
    if not isinstance(raw, dict):
        return EventTimeRaw()
    return EventTimeRaw(
        date_time=_optional_text(raw.get("dateTime")) or None,
        date=_optional_text(raw.get("date")) or None,
        time_zone=_optional_text(raw.get("timeZone")) or None,
    )


def _timestamp_of(boundary: EventTimeRaw) -> int | None:
    try:
        if boundary.date_time:
            return to_epoch_ms(parse_google_datetime(boundary.date_time))
        if boundary.date:
            day = _parse_google_date(boundary.date)
            return to_epoch_ms(datetime(day.year, day.month, day.day, tzinfo=UTC))
    except ValueError:
        return None
    return None


def _extract_organizer(raw: Any) -> EventOrganizer | None:
    if not isinstance(raw, dict):
        return None
    display_name = _optional_text(raw.get("displayName"))
    email = _optional_text(raw.get("email"))
    if not display_name and not email:
        return None
    return EventOrganizer(display_name=display_name, email=email)


class EventMapper:
    """Map provider events to records indexed by local day, month and fiscal year.

    Timed events are converted into the calendar's zone before local dates are
    taken; the provider's end instant is exclusive, so one millisecond is
    subtracted. All-day events are plain dates whose exclusive end date moves
    back one day.
    """

    def __init__(
        self,
        *,
        default_time_zone: str = DEFAULT_TIME_ZONE,
        fiscal_year_start_month: int = DEFAULT_FISCAL_YEAR_START_MONTH,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        if not 1 <= fiscal_year_start_month <= 12:
            raise ValueError("fiscal_year_start_month must be between 1 and 12")
        self._default_zone = coerce_zoneinfo(default_time_zone)
        self._fiscal_year_start_month = fiscal_year_start_month
        self._clock = clock

    @property
    def default_zone(self) -> tzinfo:
        return self._default_zone

    def map(
        self,
        calendar_id: str,
        raw: dict[str, Any],
        *,
        time_zone: str | None = None,
    ) -> EventRecord:
        zone = coerce_zoneinfo(time_zone, fallback=self._default_zone)
        timestamp = self._clock()

        event_id = _optional_text(raw.get("id"))
        if not event_id:
            event_id = uuid.uuid4().hex
            logger.warning(
                "Google event without id on calendar %s; generated %s", calendar_id, event_id
            )

        start_raw = _boundary(raw.get("start"))
        end_raw = _boundary(raw.get("end"))
        start_day, end_day = self._local_span(start_raw, end_raw, zone, timestamp)

        start_timestamp = _timestamp_of(start_raw)
        if start_timestamp is None:
            start_timestamp = timestamp
        end_timestamp = _timestamp_of(end_raw)
        if end_timestamp is None:
            end_timestamp = start_timestamp

        created_at = None
        created_raw = _optional_text(raw.get("created"))
        if created_raw:
            try:
                created_at = to_epoch_ms(parse_google_datetime(created_raw))
            except ValueError:
                created_at = None

        summary = raw.get("summary")
        status = raw.get("status")
        return EventRecord(
            calendar_id=calendar_id,
            event_id=event_id,
            event_uid=build_event_uid(calendar_id, event_id),
            summary=summary if isinstance(summary, str) else DEFAULT_EVENT_SUMMARY,
            description=_optional_text(raw.get("description")),
            location=_optional_text(raw.get("location")),
            start_date_key=to_date_key(start_day),
            end_date_key=to_date_key(end_day),
            start_timestamp=start_timestamp,
            end_timestamp=end_timestamp,
            all_day=bool(start_raw.date) and not start_raw.date_time,
            day_keys=enumerate_date_keys(start_day, end_day),
            month_keys=enumerate_month_keys(start_day, end_day),
            fiscal_year_keys=enumerate_fiscal_year_keys(
                start_day, end_day, self._fiscal_year_start_month
            ),
            updated_at=timestamp,
            status=status if isinstance(status, str) and status else DEFAULT_EVENT_STATUS,
            html_link=_optional_text(raw.get("htmlLink")),
            hangout_link=_optional_text(raw.get("hangoutLink")),
            organizer=_extract_organizer(raw.get("organizer")),
            created_at=created_at if created_at is not None else timestamp,
            color_id=_optional_text(raw.get("colorId")),
            start_raw=start_raw,
            end_raw=end_raw,
        )

    def _local_span(
        self,
        start_raw: EventTimeRaw,
        end_raw: EventTimeRaw,
        zone: tzinfo,
        fallback_ms: int,
    ) -> tuple[date, date]:
        fallback_day = datetime.fromtimestamp(fallback_ms / 1000, tz=zone).date()
        start_day = self._local_day(start_raw, zone, is_end=False) or fallback_day
        end_day = self._local_day(end_raw, zone, is_end=True) or start_day
        if end_day < start_day:
            end_day = start_day
        return start_day, end_day

    @staticmethod
    def _local_day(boundary: EventTimeRaw, zone: tzinfo, *, is_end: bool) -> date | None:
        try:
            if boundary.date_time:
                moment = parse_google_datetime(boundary.date_time)
                if is_end:
                    moment -= timedelta(milliseconds=1)
                return moment.astimezone(zone).date()
            if boundary.date:
                day = _parse_google_date(boundary.date)
                return day - timedelta(days=1) if is_end else day
        except ValueError:
            logger.warning("Unparseable Google event boundary: %s", boundary.model_dump())
        return None
