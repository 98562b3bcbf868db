"""Calendar selection bookkeeping.

A routine calendar-list refresh must never re-enable a calendar the user
deselected, so the stored ``selected`` flag always wins over the provider's.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence

from calsync.models import CalendarListEntry


def merge_calendar_selections(
    previous: Sequence[CalendarListEntry] | None,
    latest: Sequence[CalendarListEntry],
) -> list[CalendarListEntry]:
    """Carry ``selected`` forward from ``previous`` onto ``latest``.

    Order follows ``latest``; calendars missing from ``latest`` are dropped and
    every other field takes the latest provider value.
    """
    previous_selected = {entry.id: entry.selected is not False for entry in previous or []}
    merged: list[CalendarListEntry] = []
    for entry in latest:
        selected = previous_selected.get(entry.id, entry.selected is not False)
        merged.append(entry.model_copy(update={"selected": selected}))
    return merged


def narrow_sync_tokens(
    sync_tokens: Mapping[str, str] | None,
    selected_ids: Iterable[str],
) -> dict[str, str]:
    """Drop cursors of calendars that are no longer selected."""
    selected = set(selected_ids)
    return {
        calendar_id: token
        for calendar_id, token in (sync_tokens or {}).items()
        if calendar_id in selected
    }


def normalize_selected_ids(raw: object) -> list[str] | None:
    """Validate a client-supplied id list; ``None`` when it is not a list.

    Blank or non-string entries are dropped and duplicates collapse, keeping
    first occurrence order.
    """
    if not isinstance(raw, list):
        return None
    ids: list[str] = []
    for value in raw:
        if isinstance(value, str) and value.strip() and value not in ids:
            ids.append(value)
    return ids


def apply_calendar_selection(
    calendar_list: Sequence[CalendarListEntry],
    selected_ids: Iterable[str],
) -> tuple[list[CalendarListEntry], list[str]]:
    """Set selection flags from an explicit id list.

    Returns the updated list and the ids of calendars that were selected
    before and are deselected now; their stored events should be purged.
    """
    selected = set(selected_ids)
    updated = [
        entry.model_copy(update={"selected": entry.id in selected}) for entry in calendar_list
    ]
    deselected = [
        entry.id for entry in calendar_list if entry.selected and entry.id not in selected
    ]
    return updated, deselected
