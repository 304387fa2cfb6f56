"""
Task store: the persistence boundary the recurring and habit services depend on.
TaskStore is the contract; SqliteTaskStore implements it on the Habitick schema.
Writes accept an optional transaction (connection) from transaction(); without one
each call commits on its own connection.
"""
from __future__ import annotations

import logging
import sqlite3
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import date, datetime
from pathlib import Path
from typing import Any, Iterator

from ulid import ULID

from database import get_connection
from date_utils import to_iso, utc_now

logger = logging.getLogger("task_store")

STATUSES = frozenset({"not_started", "in_progress", "done", "archived"})

_BOOL_COLUMNS = ("completion_based", "habit_mode")

_COLUMNS = frozenset({
    "id", "user_id", "name", "note", "priority", "status", "due_date", "project_id", "parent_task_id",
    "recurrence_type", "recurrence_interval", "recurrence_weekday", "recurrence_month_day",
    "recurrence_week_of_month", "recurrence_end_date", "completion_based", "recurring_parent_id",
    "last_generated_date", "instance_day", "habit_mode", "habit_target_count", "habit_frequency_period",
    "habit_streak_mode", "habit_flexibility_mode", "habit_current_streak", "habit_best_streak",
    "habit_total_completions", "habit_last_completion_at", "created_at", "updated_at", "completed_at",
})


class DuplicateInstanceError(Exception):
    """An instance already exists for this (user, template, project, day)."""


def _new_task_id() -> str:
    return str(ULID())


def _task_row_to_dict(row: Any) -> dict[str, Any]:
    d = dict(row)
    for key in _BOOL_COLUMNS:
        if key in d:
            d[key] = bool(d[key])
    return d


def _to_db(value: Any) -> Any:
    if isinstance(value, datetime):
        return to_iso(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, bool):
        return 1 if value else 0
    return value


def _check_columns(fields: dict[str, Any]) -> None:
    unknown = set(fields) - _COLUMNS
    if unknown:
        raise ValueError(f"Unknown task fields: {sorted(unknown)}")


class TaskStore(ABC):
    """Contract for task persistence used by the engine."""

    @abstractmethod
    def transaction(self) -> Any:
        """Context manager yielding a transaction handle; commits on success, rolls back on error."""

    @abstractmethod
    def create(self, fields: dict[str, Any], tx: Any = None) -> dict[str, Any]:
        """Insert a task; raises DuplicateInstanceError if the instance-day key is taken."""

    @abstractmethod
    def save(self, task: dict[str, Any], tx: Any = None) -> dict[str, Any]:
        """Persist the task's current field values."""

    @abstractmethod
    def advance_cursor(self, template_id: str, due: datetime, tx: Any = None) -> bool:
        """Move last_generated_date forward to due, never back. True if the row changed."""

    @abstractmethod
    def find_one(self, tx: Any = None, **filters: Any) -> dict[str, Any] | None:
        """First task matching all equality filters."""

    @abstractmethod
    def find_templates(self, user_id: str | None = None) -> list[dict[str, Any]]:
        """Active, unarchived recurring templates, oldest cursor first (never generated first)."""

    @abstractmethod
    def find_instance(
        self, user_id: str, template_id: str, project_id: str | None, day: date, tx: Any = None
    ) -> dict[str, Any] | None:
        """The instance of template_id for that user, project and UTC calendar day, if any."""

    @abstractmethod
    def find_children(self, template_id: str, user_id: str, tx: Any = None) -> list[dict[str, Any]]:
        """Direct subtasks of template_id owned by user_id."""

    @abstractmethod
    def list_template_owners(self) -> list[str]:
        """Distinct user ids owning at least one generatable template."""


class SqliteTaskStore(TaskStore):
    def __init__(self, db_path: Path | None = None) -> None:
        self.db_path = db_path

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """BEGIN IMMEDIATE takes the write lock up front so check-then-insert cannot interleave."""
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def _connection(self, tx: sqlite3.Connection | None) -> Iterator[sqlite3.Connection]:
        if tx is not None:
            yield tx
            return
        conn = get_connection(self.db_path)
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def create(self, fields: dict[str, Any], tx: sqlite3.Connection | None = None) -> dict[str, Any]:
        _check_columns(fields)
        if fields.get("status", "not_started") not in STATUSES:
            raise ValueError(f"status must be one of {sorted(STATUSES)}")
        now = to_iso(utc_now())
        row = {"id": _new_task_id(), "created_at": now, "updated_at": now, **fields}
        columns = list(row)
        sql = f"INSERT INTO tasks ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)})"
        with self._connection(tx) as conn:
            try:
                conn.execute(sql, [_to_db(row[c]) for c in columns])
            except sqlite3.IntegrityError as e:
                if row.get("instance_day") and "UNIQUE" in str(e):
                    logger.debug("Unique instance index rejected insert: %s", e)
                    raise DuplicateInstanceError(
                        f"instance exists for template {row.get('recurring_parent_id')} on {row.get('instance_day')}"
                    ) from e
                raise
            created = conn.execute("SELECT * FROM tasks WHERE id = ?", (row["id"],)).fetchone()
        return _task_row_to_dict(created)

    def save(self, task: dict[str, Any], tx: sqlite3.Connection | None = None) -> dict[str, Any]:
        fields = {k: v for k, v in task.items() if k not in ("id", "created_at")}
        _check_columns(fields)
        fields["updated_at"] = to_iso(utc_now())
        assignments = ", ".join(f"{k} = ?" for k in fields)
        with self._connection(tx) as conn:
            conn.execute(
                f"UPDATE tasks SET {assignments} WHERE id = ?",
                [_to_db(v) for v in fields.values()] + [task["id"]],
            )
        task["updated_at"] = fields["updated_at"]
        return task

    def advance_cursor(self, template_id: str, due: datetime, tx: sqlite3.Connection | None = None) -> bool:
        cursor = to_iso(due)
        with self._connection(tx) as conn:
            cur = conn.execute(
                """UPDATE tasks SET last_generated_date = ?, updated_at = ?
                   WHERE id = ? AND (last_generated_date IS NULL OR last_generated_date < ?)""",
                (cursor, to_iso(utc_now()), template_id, cursor),
            )
        return cur.rowcount > 0

    def find_one(self, tx: sqlite3.Connection | None = None, **filters: Any) -> dict[str, Any] | None:
        _check_columns(filters)
        clauses = [f"{k} IS NULL" if v is None else f"{k} = ?" for k, v in filters.items()]
        params = [_to_db(v) for v in filters.values() if v is not None]
        sql = "SELECT * FROM tasks"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        with self._connection(tx) as conn:
            row = conn.execute(sql + " LIMIT 1", params).fetchone()
        return _task_row_to_dict(row) if row else None

    def find_templates(self, user_id: str | None = None) -> list[dict[str, Any]]:
        sql = """SELECT * FROM tasks
                 WHERE recurrence_type != 'none'
                   AND recurring_parent_id IS NULL
                   AND status != 'archived'
                   AND habit_mode = 0"""
        params: list[Any] = []
        if user_id is not None:
            sql += " AND user_id = ?"
            params.append(user_id)
        sql += " ORDER BY last_generated_date IS NOT NULL, last_generated_date ASC, created_at ASC"
        with self._connection(None) as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_task_row_to_dict(r) for r in rows]

    def find_instance(
        self,
        user_id: str,
        template_id: str,
        project_id: str | None,
        day: date,
        tx: sqlite3.Connection | None = None,
    ) -> dict[str, Any] | None:
        with self._connection(tx) as conn:
            row = conn.execute(
                """SELECT * FROM tasks
                   WHERE user_id = ? AND recurring_parent_id = ?
                     AND COALESCE(project_id, '') = COALESCE(?, '')
                     AND instance_day = ?
                   LIMIT 1""",
                (user_id, template_id, project_id, day.isoformat()),
            ).fetchone()
        return _task_row_to_dict(row) if row else None

    def find_children(
        self, template_id: str, user_id: str, tx: sqlite3.Connection | None = None
    ) -> list[dict[str, Any]]:
        with self._connection(tx) as conn:
            rows = conn.execute(
                "SELECT * FROM tasks WHERE parent_task_id = ? AND user_id = ? ORDER BY created_at ASC, id ASC",
                (template_id, user_id),
            ).fetchall()
        return [_task_row_to_dict(r) for r in rows]

    def list_template_owners(self) -> list[str]:
        with self._connection(None) as conn:
            rows = conn.execute(
                """SELECT DISTINCT user_id FROM tasks
                   WHERE recurrence_type != 'none' AND recurring_parent_id IS NULL
                     AND status != 'archived' AND habit_mode = 0
                   ORDER BY user_id"""
            ).fetchall()
        return [r[0] for r in rows]
