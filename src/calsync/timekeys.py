"""Date-key helpers and the default sync window.

Keys are plain local-date strings: ``YYYY-MM-DD`` for days, ``YYYY-MM`` for
months and ``YYYY`` for April-start fiscal years. Callers decide which time
zone the dates are local to; nothing here reads the host's local zone.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

DEFAULT_FISCAL_YEAR_START_MONTH = 4
DEFAULT_WINDOW_MONTHS_BACK = 6
DEFAULT_WINDOW_MONTHS_FORWARD = 12

_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_COMPACT_DATE_RE = re.compile(r"^(\d{4})(\d{2})(\d{2})$")


def to_date_key(value: date) -> str:
    return f"{value.year:04d}-{value.month:02d}-{value.day:02d}"


def to_month_key(value: date) -> str:
    return f"{value.year:04d}-{value.month:02d}"


def normalize_iso_date(value: str) -> str | None:
    """Accept ``YYYY-MM-DD`` or ``YYYYMMDD`` and return ``YYYY-MM-DD``."""
    if _ISO_DATE_RE.match(value):
        return value
    match = _COMPACT_DATE_RE.match(value)
    if match is None:
        return None
    return f"{match.group(1)}-{match.group(2)}-{match.group(3)}"


def fiscal_year_of(value: date, start_month: int = DEFAULT_FISCAL_YEAR_START_MONTH) -> int:
    return value.year if value.month >= start_month else value.year - 1


def _add_months(year: int, month: int, delta: int) -> tuple[int, int]:
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1


def _last_day_of_month(year: int, month: int) -> int:
    next_year, next_month = _add_months(year, month, 1)
    return (date(next_year, next_month, 1) - timedelta(days=1)).day


def enumerate_date_keys(start: date, end: date) -> list[str]:
    keys: list[str] = []
    current = start
    while current <= end:
        keys.append(to_date_key(current))
        current += timedelta(days=1)
    return keys


def _iter_months(start: date, end: date):
    year, month = start.year, start.month
    while (year, month) <= (end.year, end.month):
        yield year, month
        year, month = _add_months(year, month, 1)


def enumerate_month_keys(start: date, end: date) -> list[str]:
    return [f"{year:04d}-{month:02d}" for year, month in _iter_months(start, end)]


def enumerate_fiscal_year_keys(
    start: date,
    end: date,
    start_month: int = DEFAULT_FISCAL_YEAR_START_MONTH,
) -> list[str]:
    years: list[int] = []
    for year, month in _iter_months(start, end):
        fiscal_year = fiscal_year_of(date(year, month, 1), start_month)
        if fiscal_year not in years:
            years.append(fiscal_year)
    return [str(year) for year in years]


def coerce_zoneinfo(name: str | None, fallback: tzinfo = UTC) -> tzinfo:
    if not name:
        return fallback
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return fallback


def to_epoch_ms(value: datetime) -> int:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return int(normalized.timestamp() * 1000)


def rfc3339(value: datetime) -> str:
    """Format an aware datetime the way the provider expects (UTC, ``Z`` suffix)."""
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class TimeRange:
    """Closed sync window passed to windowed event fetches."""

    time_min: datetime
    time_max: datetime

    @property
    def time_min_rfc3339(self) -> str:
        return rfc3339(self.time_min)

    @property
    def time_max_rfc3339(self) -> str:
        return rfc3339(self.time_max)


def resolve_time_range(
    *,
    now: datetime,
    zone: tzinfo,
    time_min: datetime | None = None,
    time_max: datetime | None = None,
) -> TimeRange:
    """Return the explicit window when both bounds are given, else the default.

    The default starts at 00:00:00.000 on the first day of the month six months
    before ``now`` and ends at 23:59:59.999 on the last day of the same month
    one year ahead, both local to ``zone``.
    """
    if time_min is not None and time_max is not None:
        return TimeRange(time_min=time_min, time_max=time_max)

    local_now = now.astimezone(zone)
    start_year, start_month = _add_months(
        local_now.year, local_now.month, -DEFAULT_WINDOW_MONTHS_BACK
    )
    end_year, end_month = _add_months(
        local_now.year, local_now.month, DEFAULT_WINDOW_MONTHS_FORWARD
    )
    window_start = datetime.combine(date(start_year, start_month, 1), time.min, tzinfo=zone)
    window_end = datetime.combine(
        date(end_year, end_month, _last_day_of_month(end_year, end_month)),
        time(23, 59, 59, 999000),
        tzinfo=zone,
    )
    return TimeRange(time_min=window_start, time_max=window_end)
