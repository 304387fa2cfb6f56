"""HTTP API for the recurring task and habit engine."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from pydantic import BaseModel

from completion_store import CompletionStore, SqliteCompletionStore
from config import load as load_config
from date_utils import resolve_date_expression, utc_now
from habit_service import HabitService
from recurring_service import DEFAULT_LOOK_AHEAD_DAYS, RecurringTaskService
from task_store import SqliteTaskStore, TaskStore

app = FastAPI(title="Habitick", version="1.0")
logger = logging.getLogger("habitick.api")


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """When config.debug is True, log API request method and path."""
    debug = load_config().debug
    if debug:
        qs = request.url.query
        logger.warning("[API] %s %s%s", request.method, request.url.path, "?" + qs if qs else "")
    response = await call_next(request)
    if debug:
        logger.warning("[API] %s %s -> %s", request.method, request.url.path, response.status_code)
    return response


# --- dependencies ---


def get_task_store() -> TaskStore:
    return SqliteTaskStore()


def get_completion_store() -> CompletionStore:
    return SqliteCompletionStore()


def get_recurring_service(store: TaskStore = Depends(get_task_store)) -> RecurringTaskService:
    return RecurringTaskService(store, max_instances_per_template=load_config().max_instances_per_template)


def get_habit_service(
    store: TaskStore = Depends(get_task_store),
    completions: CompletionStore = Depends(get_completion_store),
) -> HabitService:
    return HabitService(store, completions)


def _require_api_key(x_api_key: str | None = Header(None, alias="X-API-Key")) -> None:
    """Dependency: require X-API-Key header to match config. 403 if no key set; 401 if wrong."""
    key = (load_config().api_key or "").strip()
    if not key:
        raise HTTPException(status_code=403, detail="API disabled. Set api_key in config.")
    if not x_api_key or x_api_key.strip() != key:
        raise HTTPException(status_code=401, detail="Invalid or missing API key. Use X-API-Key header.")


def _resolve_date(value: str | None, default: datetime, name: str, *, inclusive_end: bool = False) -> datetime:
    if value is None:
        return default
    resolved = resolve_date_expression(value, inclusive_end=inclusive_end)
    if resolved is None:
        raise HTTPException(status_code=400, detail=f"Invalid {name}: {value}")
    return resolved


def _get_habit(store: TaskStore, habit_id: str) -> dict[str, Any]:
    habit = store.find_one(id=habit_id)
    if habit is None or not habit.get("habit_mode"):
        raise HTTPException(status_code=404, detail="Habit not found")
    return habit


# --- API schemas ---


class HabitCompletionBody(BaseModel):
    completed_at: str | None = None


# --- recurring tasks ---


@app.post("/api/tasks/generate-recurring", dependencies=[Depends(_require_api_key)])
def generate_recurring(
    user_id: str | None = None,
    look_ahead_days: int = DEFAULT_LOOK_AHEAD_DAYS,
    service: RecurringTaskService = Depends(get_recurring_service),
) -> dict[str, Any]:
    if look_ahead_days < 0:
        raise HTTPException(status_code=400, detail="look_ahead_days must be >= 0")
    try:
        tasks = service.generate(user_id, look_ahead_days)
    except Exception as e:
        logger.error("Error generating recurring tasks for %s: %s", user_id or "all users", e)
        raise HTTPException(status_code=500, detail="Failed to generate recurring tasks")
    return {"message": f"Generated {len(tasks)} recurring tasks", "tasks": tasks}


@app.post("/api/tasks/{task_id}/complete", dependencies=[Depends(_require_api_key)])
def complete_task(task_id: str, service: RecurringTaskService = Depends(get_recurring_service)) -> dict[str, Any]:
    try:
        task, next_task = service.complete_task(task_id)
    except LookupError:
        raise HTTPException(status_code=404, detail="Task not found")
    return {"task": task, "next_task": next_task}


@app.get("/api/tasks/{task_id}/next-iterations", dependencies=[Depends(_require_api_key)])
def next_iterations(
    task_id: str,
    count: int = 5,
    start_from: str | None = None,
    store: TaskStore = Depends(get_task_store),
    service: RecurringTaskService = Depends(get_recurring_service),
) -> dict[str, Any]:
    task = store.find_one(id=task_id)
    if task is None:
        raise HTTPException(status_code=404, detail="Task not found")
    if (task.get("recurrence_type") or "none") == "none":
        return {"iterations": []}
    start = _resolve_date(start_from, utc_now(), "start_from")
    return {"iterations": service.next_iterations(task, max(1, min(count, 100)), start)}


# --- habits ---


@app.post("/api/habits/{habit_id}/complete", dependencies=[Depends(_require_api_key)])
def complete_habit(
    habit_id: str,
    body: HabitCompletionBody | None = None,
    store: TaskStore = Depends(get_task_store),
    habits: HabitService = Depends(get_habit_service),
) -> dict[str, Any]:
    habit = _get_habit(store, habit_id)
    completed_at = None
    if body is not None and body.completed_at:
        completed_at = _resolve_date(body.completed_at, utc_now(), "completed_at")
    completion, task = habits.log_completion(habit, completed_at)
    return {"completion": completion, "task": task}


@app.get("/api/habits/{habit_id}/completions", dependencies=[Depends(_require_api_key)])
def list_habit_completions(
    habit_id: str,
    start_date: str | None = None,
    end_date: str | None = None,
    store: TaskStore = Depends(get_task_store),
    habits: HabitService = Depends(get_habit_service),
) -> dict[str, Any]:
    habit = _get_habit(store, habit_id)
    now = utc_now()
    start = _resolve_date(start_date, now - timedelta(days=30), "start_date")
    end = _resolve_date(end_date, now, "end_date", inclusive_end=True)
    return {"completions": habits.list_completions(habit, start, end)}


@app.delete("/api/habits/{habit_id}/completions/{completion_id}", dependencies=[Depends(_require_api_key)])
def delete_habit_completion(
    habit_id: str,
    completion_id: int,
    store: TaskStore = Depends(get_task_store),
    habits: HabitService = Depends(get_habit_service),
) -> dict[str, Any]:
    habit = _get_habit(store, habit_id)
    try:
        task = habits.delete_completion(habit, completion_id)
    except LookupError:
        raise HTTPException(status_code=404, detail="Completion not found")
    return {"message": "Completion deleted", "task": task}


@app.get("/api/habits/{habit_id}/stats", dependencies=[Depends(_require_api_key)])
def habit_stats(
    habit_id: str,
    start_date: str | None = None,
    end_date: str | None = None,
    store: TaskStore = Depends(get_task_store),
    habits: HabitService = Depends(get_habit_service),
) -> dict[str, Any]:
    habit = _get_habit(store, habit_id)
    now = utc_now()
    start = _resolve_date(start_date, now - timedelta(days=30), "start_date")
    end = _resolve_date(end_date, now, "end_date", inclusive_end=True)
    if end < start:
        raise HTTPException(status_code=400, detail="end_date must not be before start_date")
    return habits.get_habit_stats(habit, start, end)


@app.get("/api/habits/{habit_id}/due-today", dependencies=[Depends(_require_api_key)])
def habit_due_today(
    habit_id: str,
    today: str | None = None,
    store: TaskStore = Depends(get_task_store),
    habits: HabitService = Depends(get_habit_service),
) -> dict[str, bool]:
    habit = _get_habit(store, habit_id)
    return {"due_today": habits.is_due_today(habit, _resolve_date(today, utc_now(), "today"))}
