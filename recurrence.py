"""
Recurrence rule evaluation. Pure functions: no I/O, no clock.

Weekdays follow the stored convention 0=Sunday..6=Saturday (Python's date.weekday()
is Monday=0, converted with _sunday_first). All arithmetic is on UTC calendar fields.
"""
from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from typing import Any, Callable, Mapping

from pydantic import BaseModel, ValidationError, field_validator

from date_utils import add_months, month_max_day, parse_datetime

logger = logging.getLogger("recurrence")

RECURRENCE_TYPES = frozenset({"none", "daily", "weekly", "monthly", "monthly_weekday", "monthly_last_day"})

# 1..5 ordinal; -1 is accepted but only gets the single one-week back-off (see DESIGN.md)
WEEK_OF_MONTH_VALUES = frozenset({-1, 1, 2, 3, 4, 5})

MAX_VIRTUAL_ITERATIONS = 100

# Task column -> rule field
_TASK_FIELDS = {
    "recurrence_type": "type",
    "recurrence_interval": "interval",
    "recurrence_weekday": "weekday",
    "recurrence_month_day": "month_day",
    "recurrence_week_of_month": "week_of_month",
    "recurrence_end_date": "end_date",
    "completion_based": "completion_based",
}


class RecurrenceRule(BaseModel):
    """Recurrence settings embedded in a task row."""

    type: str = "none"
    interval: int | None = None
    weekday: int | None = None
    month_day: int | None = None
    week_of_month: int | None = None
    end_date: datetime | None = None
    completion_based: bool = False

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, v: Any) -> str:
        return (str(v).strip().lower() if v else "none") or "none"

    @field_validator("end_date", mode="before")
    @classmethod
    def _parse_end_date(cls, v: Any) -> datetime | None:
        if v in (None, ""):
            return None
        parsed = parse_datetime(v)
        if parsed is None:
            raise ValueError(f"invalid end date: {v!r}")
        return parsed

    @property
    def is_active(self) -> bool:
        return self.type != "none"

    @classmethod
    def from_task(cls, task: Mapping[str, Any]) -> "RecurrenceRule":
        """Build a rule from task columns (recurrence_type, recurrence_interval, ...)."""
        return cls.model_validate({field: task.get(column) for column, field in _TASK_FIELDS.items() if column in task})


def coerce_rule(rule: RecurrenceRule | Mapping[str, Any] | None) -> RecurrenceRule | None:
    """Accept a rule or a task/rule mapping; None when the values cannot form a rule."""
    if rule is None or isinstance(rule, RecurrenceRule):
        return rule
    try:
        if "recurrence_type" in rule:
            return RecurrenceRule.from_task(rule)
        return RecurrenceRule.model_validate(dict(rule))
    except ValidationError as e:
        logger.debug("Invalid recurrence rule %s: %s", rule, e)
        return None


def _sunday_first(d: date) -> int:
    return (d.weekday() + 1) % 7


def _require_weekday(weekday: int | None) -> int:
    if weekday is None or not 0 <= weekday <= 6:
        raise ValueError(f"weekday must be 0-6, got {weekday!r}")
    return weekday


def first_weekday_of_month(year: int, month: int, weekday: int) -> date:
    first = date(year, month, 1)
    return first + timedelta(days=(weekday - _sunday_first(first)) % 7)


def last_weekday_of_month(year: int, month: int, weekday: int) -> date:
    last = date(year, month, month_max_day(year, month))
    return last - timedelta(days=(_sunday_first(last) - weekday) % 7)


def nth_weekday_of_month(year: int, month: int, weekday: int, n: int) -> date | None:
    """n-th (1-based) weekday of the month, or None when the month has fewer."""
    cand = first_weekday_of_month(year, month, weekday) + timedelta(weeks=n - 1)
    return cand if cand.month == month else None


def _daily(rule: RecurrenceRule, start: datetime, interval: int) -> datetime:
    return start + timedelta(days=interval)


def _weekly(rule: RecurrenceRule, start: datetime, interval: int) -> datetime:
    if rule.weekday is None:
        return start + timedelta(weeks=interval)
    days_until = (_require_weekday(rule.weekday) - _sunday_first(start.date())) % 7
    if days_until == 0:
        # Same weekday as the anchor: next one is interval weeks out, never the anchor itself
        return start + timedelta(weeks=interval)
    return start + timedelta(days=days_until)


def _monthly(rule: RecurrenceRule, start: datetime, interval: int) -> datetime:
    target_day = rule.month_day or start.day
    if not 1 <= target_day <= 31:
        raise ValueError(f"month_day must be 1-31, got {target_day!r}")
    year, month = add_months(start.year, start.month, interval)
    return start.replace(year=year, month=month, day=min(target_day, month_max_day(year, month)))


def _monthly_weekday_date(year: int, month: int, weekday: int, week_of_month: int | None) -> date:
    if week_of_month not in WEEK_OF_MONTH_VALUES:
        raise ValueError(f"week_of_month must be one of {sorted(WEEK_OF_MONTH_VALUES)}, got {week_of_month!r}")
    target = first_weekday_of_month(year, month, weekday) + timedelta(weeks=week_of_month - 1)
    if target.month != month:
        target -= timedelta(weeks=1)
    return target


def _monthly_weekday(rule: RecurrenceRule, start: datetime, interval: int) -> datetime:
    weekday = _require_weekday(rule.weekday)
    year, month = add_months(start.year, start.month, interval)
    target = _monthly_weekday_date(year, month, weekday, rule.week_of_month)
    return datetime.combine(target, start.timetz())


def _monthly_last_day(rule: RecurrenceRule, start: datetime, interval: int) -> datetime:
    year, month = add_months(start.year, start.month, interval)
    return start.replace(year=year, month=month, day=month_max_day(year, month))


_HANDLERS: dict[str, Callable[[RecurrenceRule, datetime, int], datetime]] = {
    "daily": _daily,
    "weekly": _weekly,
    "monthly": _monthly,
    "monthly_weekday": _monthly_weekday,
    "monthly_last_day": _monthly_last_day,
}


def next_occurrence(
    rule: RecurrenceRule | Mapping[str, Any] | None,
    from_date: datetime | date | str | None,
) -> datetime | None:
    """
    Next occurrence after from_date per the rule, as an aware UTC datetime.
    Returns None for 'none', unknown types, malformed dates and missing or
    out-of-range fields; callers treat None as "stop generating".
    """
    rec = coerce_rule(rule)
    start = parse_datetime(from_date)
    if rec is None or start is None or not rec.is_active:
        return None
    handler = _HANDLERS.get(rec.type)
    if handler is None:
        logger.debug("Unsupported recurrence type %r", rec.type)
        return None
    interval = rec.interval or 1
    if interval < 1:
        return None
    try:
        return handler(rec, start, interval)
    except (ValueError, OverflowError) as e:
        logger.debug("No next occurrence for %s from %s: %s", rec.type, start, e)
        return None


def _lands_on(rule: RecurrenceRule, day: date) -> bool:
    """Whether the rule's pattern includes this calendar day."""
    if rule.type == "daily":
        return True
    if rule.type == "weekly":
        return rule.weekday is not None and _sunday_first(day) == rule.weekday
    if rule.type == "monthly":
        if rule.month_day is not None and not 1 <= rule.month_day <= 31:
            raise ValueError(f"month_day must be 1-31, got {rule.month_day!r}")
        return rule.month_day is not None and day.day == min(rule.month_day, month_max_day(day.year, day.month))
    if rule.type == "monthly_weekday":
        weekday = _require_weekday(rule.weekday)
        return _monthly_weekday_date(day.year, day.month, weekday, rule.week_of_month) == day
    if rule.type == "monthly_last_day":
        return day.day == month_max_day(day.year, day.month)
    return False


def first_occurrence_from(
    rule: RecurrenceRule | Mapping[str, Any] | None,
    start_from: datetime | date | str | None,
) -> datetime | None:
    """
    First occurrence at or after start_from: start_from itself when the pattern lands on
    its day, a month_day still ahead in the same month, else next_occurrence().
    """
    rec = coerce_rule(rule)
    start = parse_datetime(start_from)
    if rec is None or start is None or not rec.is_active:
        return None
    try:
        if _lands_on(rec, start.date()):
            return start
    except ValueError as e:
        logger.debug("Rule %s cannot land on %s: %s", rec.type, start.date(), e)
        return None
    if rec.type == "monthly" and rec.month_day:
        target_day = min(rec.month_day, month_max_day(start.year, start.month))
        if start.day < target_day:
            return start.replace(day=target_day)
    return next_occurrence(rec, start)


def should_generate_next(rule: RecurrenceRule | Mapping[str, Any] | None, next_date: datetime) -> bool:
    """False once next_date reaches the rule's end date (the end date itself is excluded)."""
    rec = coerce_rule(rule)
    if rec is None or rec.end_date is None:
        return True
    return next_date < rec.end_date


def virtual_occurrences(
    rule: RecurrenceRule | Mapping[str, Any] | None,
    count: int = 7,
    start_from: datetime | date | str | None = None,
) -> list[dict[str, Any]]:
    """Preview the next `count` dates starting at start_from (inclusive) without creating anything."""
    rec = coerce_rule(rule)
    current = parse_datetime(start_from)
    if rec is None or not rec.is_active or current is None:
        return []
    occurrences: list[dict[str, Any]] = []
    iterations = 0
    while current is not None and len(occurrences) < count and iterations < MAX_VIRTUAL_ITERATIONS:
        if not should_generate_next(rec, current):
            break
        occurrences.append({"due_date": current.date().isoformat(), "is_virtual": True})
        current = next_occurrence(rec, current)
        iterations += 1
    return occurrences
