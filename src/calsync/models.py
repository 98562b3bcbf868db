"""Pydantic models for integration state, calendar lists and event records.

Attributes are snake_case in Python. Persisted documents use the camelCase
keys produced by ``to_document()`` so every backend stores the same shape.
All instants are epoch milliseconds.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

EVENT_UID_SEPARATOR = "__"
DEFAULT_EVENT_SUMMARY = "(予定なし)"
DEFAULT_EVENT_STATUS = "confirmed"


def now_ms() -> int:
    """Current wall-clock time as epoch milliseconds."""
    return int(datetime.now(UTC).timestamp() * 1000)


def build_event_uid(calendar_id: str, event_id: str) -> str:
    return f"{calendar_id}{EVENT_UID_SEPARATOR}{event_id}"


class SyncStatus(StrEnum):
    """Persisted sync status of an integration."""

    IDLE = "idle"
    SYNCING = "syncing"
    ERROR = "error"


class _DocumentModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_document(cls, document: dict[str, Any]):
        return cls.model_validate(document)


class CalendarListEntry(_DocumentModel):
    """One calendar visible to the user, plus the user's selection flag."""

    id: str = Field(min_length=1)
    summary: str
    primary: bool = False
    access_role: str = "reader"
    background_color: str | None = None
    foreground_color: str | None = None
    selected: bool = True
    time_zone: str | None = None


class IntegrationRecord(_DocumentModel):
    """Per-user Google Calendar integration state."""

    access_token: str | None = None
    refresh_token: str | None = None
    token_type: str | None = None
    scope: str | None = None
    expires_at: int | None = None
    sync_tokens: dict[str, str] | None = None
    last_synced_at: int | None = None
    calendar_list: list[CalendarListEntry] | None = None
    last_sync_status: SyncStatus = SyncStatus.IDLE
    last_sync_error: str | None = None
    updated_at: int = 0

    @property
    def connected(self) -> bool:
        return bool(self.refresh_token)

    def selected_calendar_ids(self) -> list[str]:
        return [entry.id for entry in self.calendar_list or [] if entry.selected]


class IntegrationStatus(_DocumentModel):
    """Token-free view of an integration for callers."""

    connected: bool
    last_sync_status: SyncStatus = SyncStatus.IDLE
    last_sync_error: str | None = None
    last_synced_at: int | None = None
    expires_at: int | None = None
    scope: str | None = None
    calendar_list: list[CalendarListEntry] | None = None

    @classmethod
    def from_record(cls, record: IntegrationRecord | None) -> IntegrationStatus:
        if record is None:
            return cls(connected=False)
        return cls(
            connected=record.connected,
            last_sync_status=record.last_sync_status,
            last_sync_error=record.last_sync_error,
            last_synced_at=record.last_synced_at,
            expires_at=record.expires_at,
            scope=record.scope,
            calendar_list=record.calendar_list,
        )


def initial_integration_record(updated_at: int | None = None) -> IntegrationRecord:
    return IntegrationRecord(updated_at=now_ms() if updated_at is None else updated_at)


class IntegrationPatch(_DocumentModel):
    """Partial update of an ``IntegrationRecord``.

    Only fields explicitly set (including to ``None``) are written.
    """

    access_token: str | None = None
    refresh_token: str | None = None
    token_type: str | None = None
    scope: str | None = None
    expires_at: int | None = None
    sync_tokens: dict[str, str] | None = None
    last_synced_at: int | None = None
    calendar_list: list[CalendarListEntry] | None = None
    last_sync_status: SyncStatus | None = None
    last_sync_error: str | None = None
    updated_at: int | None = None

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_unset=True)

    def is_empty(self) -> bool:
        return not self.model_fields_set


class EventTimeRaw(_DocumentModel):
    """Provider start/end boundary kept verbatim."""

    date_time: str | None = None
    date: str | None = None
    time_zone: str | None = None


class EventOrganizer(_DocumentModel):
    display_name: str | None = None
    email: str | None = None


class EventRecord(_DocumentModel):
    """A provider event normalized for storage and date-indexed lookup."""

    calendar_id: str
    event_id: str
    event_uid: str
    summary: str = DEFAULT_EVENT_SUMMARY
    description: str | None = None
    location: str | None = None
    start_date_key: str = ""
    end_date_key: str = ""
    start_timestamp: int = 0
    end_timestamp: int = 0
    all_day: bool = False
    day_keys: list[str] = Field(default_factory=list)
    month_keys: list[str] = Field(default_factory=list)
    fiscal_year_keys: list[str] = Field(default_factory=list)
    updated_at: int = 0
    status: str = DEFAULT_EVENT_STATUS
    html_link: str | None = None
    hangout_link: str | None = None
    organizer: EventOrganizer | None = None
    created_at: int = 0
    color_id: str | None = None
    start_raw: EventTimeRaw = Field(default_factory=EventTimeRaw)
    end_raw: EventTimeRaw = Field(default_factory=EventTimeRaw)


class SyncOptions(BaseModel):
    """Per-run options for ``SyncOrchestrator.sync``."""

    model_config = ConfigDict(extra="forbid")

    force_full_sync: bool = False
    time_min: datetime | None = None
    time_max: datetime | None = None

    @model_validator(mode="after")
    def _check_window(self) -> SyncOptions:
        if (self.time_min is None) != (self.time_max is None):
            raise ValueError("time_min and time_max must be supplied together")
        if self.time_min is not None and self.time_max is not None:
            if self.time_min.tzinfo is None or self.time_max.tzinfo is None:
                raise ValueError("time_min and time_max must be timezone-aware")
            if self.time_min >= self.time_max:
                raise ValueError("time_min must be earlier than time_max")
        return self


class AccessTokenGrant(BaseModel):
    """Result of a refresh-token exchange."""

    model_config = ConfigDict(extra="forbid")

    access_token: str = Field(min_length=1)
    expires_at: int
    scope: str | None = None
    token_type: str | None = None


class AuthorizationGrant(AccessTokenGrant):
    """Result of an authorization-code exchange."""

    refresh_token: str | None = None
    raw: dict[str, Any] = Field(default_factory=dict)


class EventFetchResult(BaseModel):
    """Accumulated pages of one calendar's events request."""

    model_config = ConfigDict(extra="forbid")

    events: list[dict[str, Any]] = Field(default_factory=list)
    cancelled_ids: list[str] = Field(default_factory=list)
    next_sync_token: str | None = None
    time_zone: str | None = None
    reset_required: bool = False


class SyncSummary(BaseModel):
    """Outcome of one orchestrator run, returned to callers."""

    model_config = ConfigDict(extra="forbid")

    synced_calendars: list[str] = Field(default_factory=list)
    next_sync_tokens: dict[str, str] = Field(default_factory=dict)
    removed_event_uids: list[str] = Field(default_factory=list)
    upserted_events: list[EventRecord] = Field(default_factory=list)
    refreshed_access_token: str | None = None
    access_token_expires_at: int | None = None
    failed_calendars: dict[str, str] = Field(default_factory=dict)
