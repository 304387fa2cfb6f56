"""
Habit service: streaks and statistics for habit-mode tasks.

A habit is a single task that is completed over and over; each completion is appended to the
completion log instead of spawning a new task row. The cached counters on the task
(habit_current_streak, habit_best_streak, habit_total_completions, habit_last_completion_at)
are derived from that log and written only by this module.
"""
from __future__ import annotations

import logging
import math
from datetime import date, datetime, timedelta
from typing import Any, Callable, Iterable

from completion_store import CompletionStore
from date_utils import day_bounds, parse_datetime, to_iso, utc_day, utc_now
from recurrence import next_occurrence
from task_store import TaskStore

logger = logging.getLogger("habit_service")

# Approximate: a "month" is 30 days for target purposes
PERIOD_LENGTH_DAYS = {"daily": 1, "weekly": 7, "monthly": 30}


def _completion_days(completions: Iterable[dict[str, Any]]) -> set[date]:
    days = set()
    for c in completions:
        completed = parse_datetime(c.get("completed_at"))
        if completed is not None:
            days.add(utc_day(completed))
    return days


def calendar_streak(completions: Iterable[dict[str, Any]], as_of: datetime) -> int:
    """Consecutive days with a completion, counting back from as_of's day; the first empty day ends it."""
    expected = utc_day(as_of)
    streak = 0
    for day in sorted(_completion_days(completions), reverse=True):
        if day == expected:
            streak += 1
            expected -= timedelta(days=1)
        elif day < expected:
            break
    return streak


def best_streak(completions: Iterable[dict[str, Any]]) -> int:
    """Longest run of consecutive completion days over the whole history."""
    best = run = 0
    previous: date | None = None
    for day in sorted(_completion_days(completions)):
        run = run + 1 if previous is not None and (day - previous).days == 1 else 1
        best = max(best, run)
        previous = day
    return best


def scheduled_streak(task: dict[str, Any], completions: list[dict[str, Any]], as_of: datetime) -> int:
    """
    Streak over the habit's expected occurrences. Counted on calendar days for now,
    identical to calendar_streak; replace this function to change the 'scheduled' mode.
    """
    return calendar_streak(completions, as_of)


def _calendar_mode(task: dict[str, Any], completions: list[dict[str, Any]], as_of: datetime) -> int:
    return calendar_streak(completions, as_of)


STREAK_MODES: dict[str, Callable[[dict[str, Any], list[dict[str, Any]], datetime], int]] = {
    "calendar": _calendar_mode,
    "scheduled": scheduled_streak,
}


class HabitService:
    def __init__(
        self,
        task_store: TaskStore,
        completion_store: CompletionStore,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._tasks = task_store
        self._completions = completion_store
        self._clock = clock

    def log_completion(
        self, task: dict[str, Any], completed_at: datetime | str | None = None
    ) -> tuple[dict[str, Any], dict[str, Any]]:
        """Append a completion, refresh the cached counters and mark the habit done. Returns (completion, task)."""
        if not task.get("habit_mode"):
            raise ValueError("Task is not a habit")
        completed = parse_datetime(completed_at) or self._clock()
        completion = self._completions.create(
            {
                "task_id": task["id"],
                "completed_at": completed,
                "original_due_date": completed,
                "skipped": False,
            }
        )
        updates = self.calculate_streak_updates(task)
        updates["status"] = "done"
        updates["completed_at"] = to_iso(completed)
        task.update(updates)
        self._tasks.save(task)
        logger.info(
            "Habit %s completed at %s (streak %d, best %d)",
            task["id"], updates["completed_at"], updates["habit_current_streak"], updates["habit_best_streak"],
        )
        return completion, task

    def calculate_streak_updates(self, task: dict[str, Any]) -> dict[str, Any]:
        """Every cached counter as derived from the full non-skipped completion log, as of now."""
        completions = self._completions.find_all(task["id"], skipped=False, order="desc")
        current = self._current_streak(task, completions, self._clock())
        return {
            "habit_total_completions": len(completions),
            "habit_last_completion_at": completions[0]["completed_at"] if completions else None,
            "habit_current_streak": current,
            "habit_best_streak": max(best_streak(completions), current),
        }

    @staticmethod
    def _current_streak(task: dict[str, Any], completions: list[dict[str, Any]], as_of: datetime) -> int:
        if not completions:
            return 0
        strategy = STREAK_MODES.get(task.get("habit_streak_mode") or "calendar", scheduled_streak)
        return strategy(task, completions, as_of)

    def calculate_current_streak(self, task: dict[str, Any], as_of: datetime | None = None) -> int:
        completions = self._completions.find_all(task["id"], skipped=False, order="desc")
        return self._current_streak(task, completions, as_of or self._clock())

    def recalculate_streaks(self, task: dict[str, Any]) -> dict[str, Any]:
        """Rebuild every cached counter from the log (after a deletion). Saves and returns the updates."""
        updates = self.calculate_streak_updates(task)
        task.update(updates)
        self._tasks.save(task)
        return updates

    def delete_completion(self, task: dict[str, Any], completion_id: int) -> dict[str, Any]:
        completion = self._completions.find_one(completion_id, task_id=task["id"])
        if completion is None:
            raise LookupError(f"Completion {completion_id} not found for task {task['id']}")
        self._completions.delete(completion_id)
        self.recalculate_streaks(task)
        logger.info("Deleted completion %s of habit %s", completion_id, task["id"])
        return task

    def list_completions(self, task: dict[str, Any], start: datetime, end: datetime) -> list[dict[str, Any]]:
        return self._completions.find_all(task["id"], skipped=False, start=start, end=end, order="desc")

    @staticmethod
    def calculate_period_target(task: dict[str, Any], start: datetime, end: datetime) -> int:
        """target_count * number of periods (rounded up) in [start, end]; 0 when no target is set."""
        target_count = task.get("habit_target_count")
        period_days = PERIOD_LENGTH_DAYS.get(task.get("habit_frequency_period") or "")
        if not target_count or period_days is None:
            return 0
        days = math.ceil((end - start).total_seconds() / 86400)
        return target_count * math.ceil(days / period_days)

    def get_habit_stats(self, task: dict[str, Any], start: datetime, end: datetime) -> dict[str, Any]:
        completions = self._completions.find_all(task["id"], skipped=False, start=start, end=end, order="asc")
        total = len(completions)
        completion_rate = None
        if task.get("habit_target_count") and task.get("habit_frequency_period"):
            target = self.calculate_period_target(task, start, end)
            completion_rate = total / target * 100 if target > 0 else 0
        return {
            "total_completions": total,
            "current_streak": task.get("habit_current_streak") or 0,
            "best_streak": task.get("habit_best_streak") or 0,
            "completion_rate": completion_rate,
            "completions": [{"id": c["id"], "completed_at": c["completed_at"]} for c in completions],
        }

    def is_due_today(self, task: dict[str, Any], today: datetime | None = None) -> bool:
        """Flexible habits are always due; strict ones only when the rule lands on today."""
        if (task.get("habit_flexibility_mode") or "flexible") == "flexible":
            return True
        anchor = task.get("habit_last_completion_at") or task.get("created_at")
        next_due = next_occurrence(task, anchor)
        if next_due is None:
            return False
        start, end = day_bounds(parse_datetime(today) or self._clock())
        return start <= next_due <= end
