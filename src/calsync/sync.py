"""Per-user Google Calendar sync orchestration.

A run moves through ``refreshing-token -> listing-calendars -> per-calendar
fetch (with reset on an invalidated cursor) -> persisting``. Calendars are
processed one after another in calendar-list order.

``SyncOrchestrator.sync`` runs the state machine against an already loaded
integration. ``SyncOrchestrator.run`` wraps it with the single-flight lease,
the minimum-interval guard and the persisted ``lastSyncStatus``.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

import structlog

from calsync.core.telemetry import sync_span
from calsync.errors import (
    CalendarSyncError,
    IntegrationNotFoundError,
    NoCalendarsSelectedError,
    ProviderRequestError,
    ReauthRequiredError,
    SyncInProgressError,
    SyncRateLimitedError,
)
from calsync.google.calendar_api import GoogleCalendarApi
from calsync.google.oauth import TokenRefresher
from calsync.mapping import EventMapper
from calsync.models import (
    AccessTokenGrant,
    CalendarListEntry,
    EventRecord,
    IntegrationPatch,
    IntegrationRecord,
    SyncOptions,
    SyncStatus,
    SyncSummary,
    build_event_uid,
    now_ms,
)
from calsync.selection import merge_calendar_selections, narrow_sync_tokens
from calsync.stores.base import SyncStore, unique_in_order
from calsync.timekeys import TimeRange, resolve_time_range

logger = logging.getLogger(__name__)

DEFAULT_LEASE_TTL_SECONDS = 600.0
DEFAULT_MIN_SYNC_INTERVAL_SECONDS = 300.0
TOKEN_REFRESH_MARGIN_MS = 60_000
_MAX_STATUS_ERROR_LENGTH = 500


@dataclass(frozen=True)
class SyncSettings:
    """Behaviour switches for sync runs."""

    lease_ttl_seconds: float = DEFAULT_LEASE_TTL_SECONDS
    min_sync_interval_seconds: float = DEFAULT_MIN_SYNC_INTERVAL_SECONDS
    isolate_calendar_failures: bool = False
    checkpoint_per_calendar: bool = True


@dataclass
class _CalendarOutcome:
    calendar_id: str
    upserts: list[EventRecord] = field(default_factory=list)
    removals: list[str] = field(default_factory=list)
    next_sync_token: str | None = None
    reset: bool = False


class SyncOrchestrator:
    """Pull one user's selected calendars into a ``SyncStore``."""

    def __init__(
        self,
        store: SyncStore,
        refresher: TokenRefresher,
        api: GoogleCalendarApi,
        mapper: EventMapper,
        *,
        settings: SyncSettings | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._store = store
        self._refresher = refresher
        self._api = api
        self._mapper = mapper
        self._settings = settings or SyncSettings()
        self._clock = clock

    @property
    def store(self) -> SyncStore:
        return self._store

    @property
    def settings(self) -> SyncSettings:
        return self._settings

    # ------------------------------------------------------------------
    # Token handling
    # ------------------------------------------------------------------

    async def ensure_access_token(
        self, user_id: str, integration: IntegrationRecord
    ) -> tuple[str, AccessTokenGrant | None]:
        """Return a usable access token, refreshing and persisting it when stale.

        The second element is the new grant when a refresh happened. A
        refreshed token is written before anything else runs so that it
        survives a later failure in the same run.
        """
        if not integration.refresh_token:
            raise ReauthRequiredError("Google Calendar refresh token is missing; reconnect")

        now = self._clock()
        if (
            integration.access_token
            and integration.expires_at is not None
            and integration.expires_at - TOKEN_REFRESH_MARGIN_MS > now
        ):
            return integration.access_token, None

        grant = await self._refresher.refresh(integration.refresh_token)
        await self._store.update_integration(
            user_id,
            IntegrationPatch(
                access_token=grant.access_token,
                expires_at=grant.expires_at,
                scope=grant.scope or integration.scope,
                token_type=grant.token_type or integration.token_type or "Bearer",
                updated_at=self._clock(),
            ),
        )
        logger.info("Refreshed Google access token for user %s", user_id)
        return grant.access_token, grant

    async def fetch_calendar_list(
        self,
        integration: IntegrationRecord,
        access_token: str,
    ) -> list[CalendarListEntry]:
        """Fetch the provider's calendar list merged with stored selections."""
        latest = await self._api.list_calendars(access_token)
        return merge_calendar_selections(integration.calendar_list, latest)

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    async def sync(
        self,
        user_id: str,
        integration: IntegrationRecord,
        options: SyncOptions | None = None,
    ) -> SyncSummary:
        options = options or SyncOptions()
        with (
            structlog.contextvars.bound_contextvars(user_id=user_id),
            sync_span("sync", user_id=user_id, force_full_sync=options.force_full_sync) as span,
        ):
            access_token, grant = await self.ensure_access_token(user_id, integration)

            now = self._clock()
            time_range = resolve_time_range(
                now=datetime.fromtimestamp(now / 1000, tz=UTC),
                zone=self._mapper.default_zone,
                time_min=options.time_min,
                time_max=options.time_max,
            )

            calendar_list = await self.fetch_calendar_list(integration, access_token)
            selected = [entry for entry in calendar_list if entry.selected]
            if not selected:
                await self._store.update_integration(
                    user_id,
                    IntegrationPatch(calendar_list=calendar_list, sync_tokens={}, updated_at=now),
                )
                raise NoCalendarsSelectedError("No Google calendars are selected for sync")

            next_tokens = narrow_sync_tokens(
                integration.sync_tokens, [entry.id for entry in selected]
            )
            summary = SyncSummary(
                refreshed_access_token=grant.access_token if grant else None,
                access_token_expires_at=grant.expires_at if grant else integration.expires_at,
            )
            pending_upserts: list[EventRecord] = []
            pending_removals: list[str] = []

            for calendar in selected:
                cursor = None if options.force_full_sync else next_tokens.get(calendar.id)
                try:
                    outcome = await self._sync_calendar(
                        user_id,
                        access_token,
                        calendar,
                        cursor=cursor,
                        time_range=time_range,
                        reconcile=options.force_full_sync,
                    )
                    if self._settings.checkpoint_per_calendar:
                        await self._persist_events(user_id, outcome.upserts, outcome.removals)
                except CalendarSyncError as exc:
                    if not self._settings.isolate_calendar_failures:
                        raise
                    logger.warning("Calendar %s failed to sync: %s", calendar.id, exc)
                    summary.failed_calendars[calendar.id] = str(exc)
                    continue

                if outcome.reset or options.force_full_sync:
                    next_tokens.pop(calendar.id, None)
                if outcome.next_sync_token:
                    next_tokens[calendar.id] = outcome.next_sync_token

                if self._settings.checkpoint_per_calendar:
                    await self._store.update_integration(
                        user_id,
                        IntegrationPatch(sync_tokens=dict(next_tokens), updated_at=self._clock()),
                    )
                else:
                    pending_upserts.extend(outcome.upserts)
                    pending_removals.extend(outcome.removals)

                summary.synced_calendars.append(calendar.id)
                summary.upserted_events.extend(outcome.upserts)
                summary.removed_event_uids.extend(outcome.removals)

            if not self._settings.checkpoint_per_calendar:
                await self._persist_events(user_id, pending_upserts, pending_removals)

            finished_at = self._clock()
            await self._store.update_integration(
                user_id,
                IntegrationPatch(
                    calendar_list=calendar_list,
                    sync_tokens=next_tokens,
                    last_synced_at=finished_at,
                    updated_at=finished_at,
                ),
            )

            summary.next_sync_tokens = next_tokens
            span.set_attribute("calsync.upserted", len(summary.upserted_events))
            span.set_attribute("calsync.removed", len(summary.removed_event_uids))
            logger.info(
                "Google Calendar sync finished (calendars=%d, upserted=%d, removed=%d, failed=%d)",
                len(summary.synced_calendars),
                len(summary.upserted_events),
                len(summary.removed_event_uids),
                len(summary.failed_calendars),
            )
            return summary

    async def _sync_calendar(
        self,
        user_id: str,
        access_token: str,
        calendar: CalendarListEntry,
        *,
        cursor: str | None,
        time_range: TimeRange,
        reconcile: bool = False,
    ) -> _CalendarOutcome:
        """Fetch one calendar and work out its upserts and removals.

        A reset reported by the provider, or ``reconcile`` (forced full
        sync), drops every stored event of the calendar the window no
        longer returns.
        """
        with sync_span("calendar", calendar_id=calendar.id, incremental=cursor is not None):
            result = await self._api.fetch_events(
                access_token,
                calendar.id,
                sync_token=cursor,
                time_min=time_range.time_min,
                time_max=time_range.time_max,
            )
            if result.reset_required and cursor is None:
                raise ProviderRequestError(
                    status_code=410, message="windowed fetch reported an invalidated sync token"
                )
            if not result.reset_required and not reconcile:
                zone = result.time_zone or calendar.time_zone
                return _CalendarOutcome(
                    calendar_id=calendar.id,
                    upserts=[
                        self._mapper.map(calendar.id, raw, time_zone=zone)
                        for raw in result.events
                    ],
                    removals=unique_in_order(
                        build_event_uid(calendar.id, event_id)
                        for event_id in result.cancelled_ids
                    ),
                    next_sync_token=result.next_sync_token,
                )

            reset = result.reset_required
            if reset:
                logger.warning(
                    "Sync token for calendar %s was invalidated; re-fetching the full window",
                    calendar.id,
                )
                result = await self._api.fetch_events(
                    access_token,
                    calendar.id,
                    time_min=time_range.time_min,
                    time_max=time_range.time_max,
                )
                if result.reset_required:
                    raise ProviderRequestError(
                        status_code=410,
                        message="windowed fetch reported an invalidated sync token",
                    )

            zone = result.time_zone or calendar.time_zone
            upserts = [self._mapper.map(calendar.id, raw, time_zone=zone) for raw in result.events]
            observed = {record.event_uid for record in upserts}
            stored = await self._store.list_event_uids_by_calendar(user_id, calendar.id)
            removals = unique_in_order(
                [uid for uid in stored if uid not in observed]
                + [build_event_uid(calendar.id, event_id) for event_id in result.cancelled_ids]
            )
            return _CalendarOutcome(
                calendar_id=calendar.id,
                upserts=upserts,
                removals=removals,
                next_sync_token=result.next_sync_token,
                reset=reset,
            )

    async def _persist_events(
        self, user_id: str, upserts: list[EventRecord], removals: list[str]
    ) -> None:
        if upserts:
            await self._store.upsert_events(user_id, upserts)
        if removals:
            await self._store.remove_events(user_id, removals)

    # ------------------------------------------------------------------
    # Guarded run
    # ------------------------------------------------------------------

    def _check_min_interval(self, integration: IntegrationRecord) -> None:
        if integration.last_synced_at is None:
            return
        min_interval_ms = int(self._settings.min_sync_interval_seconds * 1000)
        elapsed = self._clock() - integration.last_synced_at
        if elapsed < min_interval_ms:
            raise SyncRateLimitedError(retry_after_ms=min_interval_ms - elapsed)

    async def run(
        self,
        user_id: str,
        options: SyncOptions | None = None,
        *,
        enforce_min_interval: bool = True,
        owner: str | None = None,
    ) -> SyncSummary:
        """Run one guarded sync for ``user_id``.

        Raises
        ------
        IntegrationNotFoundError
            No integration record could be loaded.
        ReauthRequiredError
            The user never connected or the refresh token was revoked.
        SyncInProgressError
            Another run holds a live lease.
        SyncRateLimitedError
            ``enforce_min_interval`` is set and the last sync is too recent.
        """
        await self._store.ensure_integration(user_id)
        integration = await self._store.load_integration(user_id)
        if integration is None:
            raise IntegrationNotFoundError("Google Calendar integration was not found")
        if not integration.refresh_token:
            raise ReauthRequiredError("Google Calendar is not connected")

        lease_owner = owner or uuid.uuid4().hex
        acquired = await self._store.acquire_sync_lease(
            user_id, lease_owner, self._settings.lease_ttl_seconds
        )
        if not acquired:
            raise SyncInProgressError("A Google Calendar sync is already running")

        try:
            if enforce_min_interval:
                self._check_min_interval(integration)

            await self._store.update_integration(
                user_id,
                IntegrationPatch(
                    last_sync_status=SyncStatus.SYNCING,
                    last_sync_error=None,
                    updated_at=self._clock(),
                ),
            )
            status = SyncStatus.ERROR
            error: str | None = None
            try:
                summary = await self.sync(user_id, integration, options)
                if summary.failed_calendars:
                    error = "Failed calendars: " + "; ".join(
                        f"{calendar_id} ({message})"
                        for calendar_id, message in summary.failed_calendars.items()
                    )
                else:
                    status = SyncStatus.IDLE
                return summary
            except asyncio.CancelledError:
                error = "Sync cancelled"
                raise
            except Exception as exc:
                error = str(exc) or type(exc).__name__
                raise
            finally:
                await self._store.update_integration(
                    user_id,
                    IntegrationPatch(
                        last_sync_status=status,
                        last_sync_error=error[:_MAX_STATUS_ERROR_LENGTH] if error else None,
                        updated_at=self._clock(),
                    ),
                )
        finally:
            await self._store.release_sync_lease(user_id, lease_owner)
