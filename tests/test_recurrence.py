from datetime import date, datetime, timedelta, timezone

import pytest

from recurrence import (
    RecurrenceRule,
    coerce_rule,
    first_occurrence_from,
    first_weekday_of_month,
    last_weekday_of_month,
    next_occurrence,
    nth_weekday_of_month,
    should_generate_next,
    virtual_occurrences,
)


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


ANCHOR = utc(2024, 5, 15, 9, 30)  # Wednesday


def test_daily_adds_interval_days():
    assert next_occurrence({"type": "daily"}, ANCHOR) == utc(2024, 5, 16, 9, 30)
    assert next_occurrence({"type": "daily", "interval": 3}, ANCHOR) == utc(2024, 5, 18, 9, 30)


def test_accepts_task_columns_and_iso_strings():
    task = {"recurrence_type": "daily", "recurrence_interval": 2, "due_date": "ignored"}
    assert next_occurrence(task, "2024-05-15T09:30:00Z") == utc(2024, 5, 17, 9, 30)


def test_naive_anchor_is_treated_as_utc():
    assert next_occurrence({"type": "daily"}, datetime(2024, 5, 15, 9, 30)) == utc(2024, 5, 16, 9, 30)


def test_weekly_without_weekday_advances_whole_weeks():
    assert next_occurrence({"type": "weekly", "interval": 2}, ANCHOR) == utc(2024, 5, 29, 9, 30)


def test_weekly_moves_to_next_matching_weekday():
    # 5 = Friday (Sunday = 0)
    assert next_occurrence({"type": "weekly", "weekday": 5}, ANCHOR) == utc(2024, 5, 17, 9, 30)
    # 1 = Monday, already passed this week
    assert next_occurrence({"type": "weekly", "weekday": 1}, ANCHOR) == utc(2024, 5, 20, 9, 30)


def test_weekly_same_weekday_advances_interval_weeks():
    # 3 = Wednesday, same as the anchor
    assert next_occurrence({"type": "weekly", "weekday": 3}, ANCHOR) == utc(2024, 5, 22, 9, 30)
    assert next_occurrence({"type": "weekly", "weekday": 3, "interval": 2}, ANCHOR) == utc(2024, 5, 29, 9, 30)


@pytest.mark.parametrize(
    "anchor, expected_day",
    [
        (utc(2024, 1, 31), 29),
        (utc(2023, 1, 31), 28),
    ],
)
def test_monthly_day_31_clamps_to_end_of_february(anchor, expected_day):
    result = next_occurrence({"type": "monthly", "month_day": 31}, anchor)
    assert result.month == 2
    assert result.day == expected_day


def test_monthly_day_31_clamps_to_thirty_day_month():
    assert next_occurrence({"type": "monthly", "month_day": 31}, utc(2024, 3, 31)) == utc(2024, 4, 30)


def test_monthly_defaults_to_anchor_day_and_crosses_year():
    assert next_occurrence({"type": "monthly"}, utc(2024, 3, 15, 8)) == utc(2024, 4, 15, 8)
    assert next_occurrence({"type": "monthly", "interval": 3}, utc(2024, 11, 10)) == utc(2025, 2, 10)


@pytest.mark.parametrize("month", range(1, 13))
def test_monthly_weekday_first_tuesday(month):
    anchor = utc(2023, month, 20, 7, 45)
    result = next_occurrence({"type": "monthly_weekday", "weekday": 2, "week_of_month": 1}, anchor)
    assert result.weekday() == 1  # Python Tuesday
    assert result.day <= 7
    assert (result.hour, result.minute) == (7, 45)


def test_monthly_weekday_nth():
    # June 2024: Tuesdays are 4, 11, 18, 25
    rule = {"type": "monthly_weekday", "weekday": 2, "week_of_month": 3}
    assert next_occurrence(rule, ANCHOR) == utc(2024, 6, 18, 9, 30)


def test_monthly_weekday_fifth_steps_back_into_month():
    rule = {"type": "monthly_weekday", "weekday": 2, "week_of_month": 5}
    assert next_occurrence(rule, ANCHOR) == utc(2024, 6, 25, 9, 30)


def test_monthly_weekday_minus_one_steps_back_a_single_week():
    # -1 is not "last": first Tuesday of June (4th) minus two weeks leaves June,
    # the one-week back-off lands on May 14, before the anchor.
    rule = {"type": "monthly_weekday", "weekday": 2, "week_of_month": -1}
    result = next_occurrence(rule, ANCHOR)
    assert result == utc(2024, 5, 14, 9, 30)
    assert result < ANCHOR


@pytest.mark.parametrize(
    "anchor, expected",
    [
        (utc(2024, 1, 10), utc(2024, 2, 29)),
        (utc(2023, 1, 10), utc(2023, 2, 28)),
        (utc(2024, 3, 31), utc(2024, 4, 30)),
        (utc(2024, 12, 1), utc(2025, 1, 31)),
    ],
)
def test_monthly_last_day(anchor, expected):
    assert next_occurrence({"type": "monthly_last_day"}, anchor) == expected


@pytest.mark.parametrize(
    "rule",
    [
        {"type": "daily", "interval": 1},
        {"type": "daily", "interval": 5},
        {"type": "weekly", "interval": 1},
        {"type": "weekly", "weekday": 0},
        {"type": "weekly", "weekday": 6, "interval": 3},
        {"type": "monthly", "interval": 1},
        {"type": "monthly", "month_day": 31},
        {"type": "monthly", "month_day": 1, "interval": 12},
        {"type": "monthly_weekday", "weekday": 4, "week_of_month": 1},
        {"type": "monthly_weekday", "weekday": 0, "week_of_month": 4},
        {"type": "monthly_weekday", "weekday": 6, "week_of_month": 5},
        {"type": "monthly_last_day", "interval": 2},
    ],
)
def test_next_occurrence_is_strictly_increasing(rule):
    current = utc(2023, 12, 31, 23, 59)
    for _ in range(60):
        nxt = next_occurrence(rule, current)
        assert nxt is not None
        assert nxt > current
        current = nxt


@pytest.mark.parametrize(
    "rule, anchor",
    [
        ({"type": "none"}, ANCHOR),
        (None, ANCHOR),
        ({"type": "yearly"}, ANCHOR),
        ({"type": "daily"}, "not a date"),
        ({"type": "daily"}, None),
        ({"type": "daily", "interval": -2}, ANCHOR),
        ({"type": "weekly", "weekday": 7}, ANCHOR),
        ({"type": "monthly", "month_day": 32}, ANCHOR),
        ({"type": "monthly_weekday", "week_of_month": 1}, ANCHOR),
        ({"type": "monthly_weekday", "weekday": 2, "week_of_month": 0}, ANCHOR),
        ({"type": "monthly_weekday", "weekday": 2}, ANCHOR),
        ({"type": "daily", "interval": "often"}, ANCHOR),
        ({"type": "daily"}, utc(9999, 12, 31)),
    ],
)
def test_invalid_input_returns_none(rule, anchor):
    assert next_occurrence(rule, anchor) is None


def test_zero_interval_means_one():
    assert next_occurrence({"type": "daily", "interval": 0}, ANCHOR) == utc(2024, 5, 16, 9, 30)


def test_rule_normalizes_type_and_end_date():
    rule = RecurrenceRule.from_task({"recurrence_type": " Weekly ", "recurrence_end_date": "2024-06-01"})
    assert rule.type == "weekly"
    assert rule.end_date == utc(2024, 6, 1)
    assert rule.is_active
    assert not RecurrenceRule.from_task({"recurrence_type": None}).is_active


def test_coerce_rule_rejects_bad_end_date():
    assert coerce_rule({"recurrence_type": "daily", "recurrence_end_date": "someday"}) is None


def test_should_generate_next_excludes_end_date():
    rule = {"type": "daily", "end_date": "2024-05-20T00:00:00Z"}
    assert should_generate_next(rule, utc(2024, 5, 19, 23, 59))
    assert not should_generate_next(rule, utc(2024, 5, 20))
    assert should_generate_next({"type": "daily"}, utc(2100, 1, 1))


def test_weekday_helpers():
    # June 2024 starts on a Saturday
    assert first_weekday_of_month(2024, 6, 6) == date(2024, 6, 1)
    assert first_weekday_of_month(2024, 6, 2) == date(2024, 6, 4)
    assert last_weekday_of_month(2024, 6, 0) == date(2024, 6, 30)
    assert last_weekday_of_month(2024, 2, 4) == date(2024, 2, 29)
    assert nth_weekday_of_month(2024, 6, 2, 4) == date(2024, 6, 25)
    assert nth_weekday_of_month(2024, 6, 2, 5) is None


def test_virtual_occurrences_preview():
    rule = {"type": "daily", "interval": 2}
    preview = virtual_occurrences(rule, 3, utc(2024, 5, 15))
    assert preview == [
        {"due_date": "2024-05-15", "is_virtual": True},
        {"due_date": "2024-05-17", "is_virtual": True},
        {"due_date": "2024-05-19", "is_virtual": True},
    ]


def test_virtual_occurrences_stop_at_end_date():
    rule = {"type": "daily", "end_date": utc(2024, 5, 17)}
    preview = virtual_occurrences(rule, 10, utc(2024, 5, 15))
    assert [p["due_date"] for p in preview] == ["2024-05-15", "2024-05-16"]


def test_virtual_occurrences_are_capped():
    preview = virtual_occurrences({"type": "daily"}, 500, utc(2024, 1, 1))
    assert len(preview) == 100
    assert preview[-1]["due_date"] == (date(2024, 1, 1) + timedelta(days=99)).isoformat()


def test_virtual_occurrences_for_inactive_rule_is_empty():
    assert virtual_occurrences({"type": "none"}, 5, ANCHOR) == []


@pytest.mark.parametrize(
    "rule, start, expected",
    [
        ({"type": "daily", "interval": 3}, utc(2024, 5, 15), utc(2024, 5, 15)),
        ({"type": "weekly", "weekday": 3}, utc(2024, 5, 15), utc(2024, 5, 15)),
        ({"type": "weekly", "weekday": 5}, utc(2024, 5, 15), utc(2024, 5, 17)),
        ({"type": "weekly"}, utc(2024, 5, 15), utc(2024, 5, 22)),
        ({"type": "monthly", "month_day": 31}, utc(2024, 4, 30), utc(2024, 4, 30)),
        ({"type": "monthly", "month_day": 31}, utc(2024, 4, 10), utc(2024, 4, 30)),
        ({"type": "monthly", "month_day": 25}, utc(2024, 4, 10), utc(2024, 4, 25)),
        ({"type": "monthly_weekday", "weekday": 2, "week_of_month": 3}, utc(2024, 5, 21), utc(2024, 5, 21)),
        ({"type": "monthly_weekday", "weekday": 2, "week_of_month": 3}, utc(2024, 5, 22), utc(2024, 6, 18)),
        ({"type": "monthly_last_day"}, utc(2024, 2, 29), utc(2024, 2, 29)),
        ({"type": "monthly_weekday", "week_of_month": 1}, utc(2024, 5, 21), None),
        ({"type": "none"}, utc(2024, 5, 15), None),
    ],
)
def test_first_occurrence_from(rule, start, expected):
    assert first_occurrence_from(rule, start) == expected


def test_first_occurrence_from_rejects_out_of_range_month_day():
    assert first_occurrence_from({"type": "monthly", "month_day": 32}, utc(2024, 4, 10)) is None
