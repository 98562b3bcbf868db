"""Google Calendar integration endpoints.

All routes act on the authenticated caller's own integration.

- ``POST   /api/google-calendar/sync``         run a guarded sync
- ``GET    /api/google-calendar/calendars``    refresh and return the calendar list
- ``PATCH  /api/google-calendar/calendars``    update the calendar selection
- ``GET    /api/google-calendar/integration``  token-free integration status
- ``DELETE /api/google-calendar/integration``  disconnect and purge events
- ``GET    /api/google-calendar/events``       stored events for a month or a day
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Body, Depends, Query

from calsync.api.deps import AuthContext, get_auth_context, get_service
from calsync.api.models import (
    ApiMeta,
    ApiResponse,
    DisconnectResponse,
    SelectionUpdateRequest,
    SyncRequest,
)
from calsync.models import (
    CalendarListEntry,
    EventRecord,
    IntegrationStatus,
    SyncOptions,
    SyncSummary,
)
from calsync.service import CalsyncService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/google-calendar", tags=["google-calendar"])


@router.post("/sync", response_model=ApiResponse[SyncSummary])
async def sync_google_calendar(
    request: SyncRequest | None = Body(default=None),
    auth: AuthContext = Depends(get_auth_context),
    service: CalsyncService = Depends(get_service),
) -> ApiResponse[SyncSummary]:
    """Run one sync for the caller; the 5-minute minimum interval applies."""
    body = request or SyncRequest()
    options = SyncOptions(
        force_full_sync=body.force_full_sync,
        time_min=body.time_min,
        time_max=body.time_max,
    )
    summary = await service.orchestrator.run(auth.user_id, options)
    logger.info(
        "Sync finished for user %s (calendars=%d, upserted=%d, removed=%d)",
        auth.user_id,
        len(summary.synced_calendars),
        len(summary.upserted_events),
        len(summary.removed_event_uids),
    )
    return ApiResponse[SyncSummary](data=summary)


@router.get("/calendars", response_model=ApiResponse[list[CalendarListEntry]])
async def list_calendars(
    auth: AuthContext = Depends(get_auth_context),
    service: CalsyncService = Depends(get_service),
) -> ApiResponse[list[CalendarListEntry]]:
    calendars = await service.integration.refresh_calendar_list(auth.user_id)
    return ApiResponse[list[CalendarListEntry]](data=calendars)


@router.patch("/calendars", response_model=ApiResponse[list[CalendarListEntry]])
async def update_calendar_selection(
    request: SelectionUpdateRequest,
    auth: AuthContext = Depends(get_auth_context),
    service: CalsyncService = Depends(get_service),
) -> ApiResponse[list[CalendarListEntry]]:
    calendars = await service.integration.update_selection(
        auth.user_id, request.selected_calendar_ids
    )
    return ApiResponse[list[CalendarListEntry]](data=calendars)


@router.get("/integration", response_model=ApiResponse[IntegrationStatus])
async def get_integration_status(
    auth: AuthContext = Depends(get_auth_context),
    service: CalsyncService = Depends(get_service),
) -> ApiResponse[IntegrationStatus]:
    status = await service.integration.status(auth.user_id)
    return ApiResponse[IntegrationStatus](data=status)


@router.delete("/integration", response_model=ApiResponse[DisconnectResponse])
async def disconnect_integration(
    auth: AuthContext = Depends(get_auth_context),
    service: CalsyncService = Depends(get_service),
) -> ApiResponse[DisconnectResponse]:
    await service.scheduler.unwatch(auth.user_id)
    removed = await service.integration.disconnect(auth.user_id)
    return ApiResponse[DisconnectResponse](data=DisconnectResponse(removed_events=removed))


@router.get("/events", response_model=ApiResponse[list[EventRecord]])
async def list_events(
    month: str | None = Query(default=None, description="Month key, YYYY-MM"),
    date: str | None = Query(default=None, description="Day key, YYYY-MM-DD or YYYYMMDD"),
    auth: AuthContext = Depends(get_auth_context),
    service: CalsyncService = Depends(get_service),
) -> ApiResponse[list[EventRecord]]:
    """Exactly one of ``month`` or ``date`` must be given."""
    if (month is None) == (date is None):
        raise ValueError("Provide exactly one of 'month' or 'date'")
    if month is not None:
        events = await service.events.list_month(auth.user_id, month)
    else:
        events = await service.events.list_day(auth.user_id, date or "")
    return ApiResponse[list[EventRecord]](data=events, meta=ApiMeta(total=len(events)))
