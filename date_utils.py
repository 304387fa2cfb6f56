"""
UTC date helpers: parsing stored timestamps, calendar-day bounds, month arithmetic,
and relative date expressions ('today', 'today-7') used by the API query params.
"""
from __future__ import annotations

import re
from datetime import date, datetime, time, timedelta, timezone

_RELATIVE = re.compile(r"^(today|tomorrow|yesterday)([+-]\d+)?$")
_BARE_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime | None) -> str | None:
    """Serialize a datetime the way it is stored: YYYY-MM-DDTHH:MM:SSZ (UTC)."""
    if value is None:
        return None
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_datetime(value: datetime | date | str | None) -> datetime | None:
    """
    Coerce a datetime, date or ISO string to an aware UTC datetime.
    Naive values are taken as UTC. Returns None for empty or malformed input.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    if not isinstance(value, str):
        return None
    raw = value.strip()
    if not raw:
        return None
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        return None
    return parse_datetime(parsed)


def utc_day(value: datetime) -> date:
    if value.tzinfo is None:
        return value.date()
    return value.astimezone(timezone.utc).date()


def start_of_day(value: datetime) -> datetime:
    return datetime.combine(utc_day(value), time.min, tzinfo=timezone.utc)


def end_of_day(value: datetime) -> datetime:
    return datetime.combine(utc_day(value), time.max, tzinfo=timezone.utc)


def day_bounds(value: datetime) -> tuple[datetime, datetime]:
    """First and last instant of the UTC calendar day containing value."""
    return start_of_day(value), end_of_day(value)


def month_max_day(year: int, month: int) -> int:
    if month in (4, 6, 9, 11):
        return 30
    if month == 2:
        return 29 if (year % 4 == 0 and (year % 100 != 0 or year % 400 == 0)) else 28
    return 31


def add_months(year: int, month: int, months: int) -> tuple[int, int]:
    """(year, month) shifted by a number of months, without touching the day."""
    total = year * 12 + (month - 1) + months
    return total // 12, total % 12 + 1


def resolve_date_expression(
    value: str | None, now: datetime | None = None, *, inclusive_end: bool = False
) -> datetime | None:
    """
    Resolve 'today', 'today+3', 'today-1', 'tomorrow', 'yesterday-2' or an ISO date/datetime
    to a UTC datetime. Relative phrases and bare dates resolve to the start of that day, or
    to its last instant with inclusive_end (for the upper bound of a range).
    Returns None when the value cannot be resolved.
    """
    if not value or not str(value).strip():
        return None
    raw = str(value).strip().lower()
    m = _RELATIVE.match(raw)
    if not m:
        parsed = parse_datetime(str(value).strip())
        if parsed is not None and inclusive_end and _BARE_DATE.match(raw):
            return end_of_day(parsed)
        return parsed
    today = start_of_day(now or utc_now())
    base = {"today": 0, "tomorrow": 1, "yesterday": -1}[m.group(1)]
    offset = int(m.group(2)) if m.group(2) else 0
    day = today + timedelta(days=base + offset)
    return end_of_day(day) if inclusive_end else day
