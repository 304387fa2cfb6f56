"""
Completion store: append-only log of recurring/habit completions (rows are created or deleted,
never updated). CompletionStore is the contract; SqliteCompletionStore implements it.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any

from database import get_connection
from date_utils import parse_datetime, to_iso, utc_now


def _completion_row_to_dict(row: Any) -> dict[str, Any]:
    d = dict(row)
    d["skipped"] = bool(d.get("skipped"))
    return d


class CompletionStore(ABC):
    @abstractmethod
    def create(self, fields: dict[str, Any]) -> dict[str, Any]:
        """Append a completion record."""

    @abstractmethod
    def find_all(
        self,
        task_id: str,
        *,
        skipped: bool | None = False,
        start: datetime | None = None,
        end: datetime | None = None,
        order: str = "desc",
    ) -> list[dict[str, Any]]:
        """Completions of a task, optionally bounded by completed_at (inclusive), ordered by completed_at."""

    @abstractmethod
    def find_one(self, completion_id: int, task_id: str | None = None) -> dict[str, Any] | None:
        """One completion, optionally scoped to a task."""

    @abstractmethod
    def delete(self, completion_id: int) -> bool:
        """Remove a completion; True if a row was deleted."""


class SqliteCompletionStore(CompletionStore):
    def __init__(self, db_path: Path | None = None) -> None:
        self.db_path = db_path

    def create(self, fields: dict[str, Any]) -> dict[str, Any]:
        completed_at = parse_datetime(fields.get("completed_at")) or utc_now()
        original_due = parse_datetime(fields.get("original_due_date"))
        conn = get_connection(self.db_path)
        try:
            cur = conn.execute(
                """INSERT INTO recurring_completions (task_id, completed_at, original_due_date, skipped, created_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (
                    fields["task_id"],
                    to_iso(completed_at),
                    to_iso(original_due),
                    1 if fields.get("skipped") else 0,
                    to_iso(utc_now()),
                ),
            )
            conn.commit()
            row = conn.execute("SELECT * FROM recurring_completions WHERE id = ?", (cur.lastrowid,)).fetchone()
            return _completion_row_to_dict(row)
        finally:
            conn.close()

    def find_all(
        self,
        task_id: str,
        *,
        skipped: bool | None = False,
        start: datetime | None = None,
        end: datetime | None = None,
        order: str = "desc",
    ) -> list[dict[str, Any]]:
        if order.lower() not in ("asc", "desc"):
            raise ValueError("order must be 'asc' or 'desc'")
        sql = "SELECT * FROM recurring_completions WHERE task_id = ?"
        params: list[Any] = [task_id]
        if skipped is not None:
            sql += " AND skipped = ?"
            params.append(1 if skipped else 0)
        if start is not None:
            sql += " AND completed_at >= ?"
            params.append(to_iso(start))
        if end is not None:
            sql += " AND completed_at <= ?"
            params.append(to_iso(end))
        sql += f" ORDER BY completed_at {order.upper()}, id {order.upper()}"
        conn = get_connection(self.db_path)
        try:
            return [_completion_row_to_dict(r) for r in conn.execute(sql, params).fetchall()]
        finally:
            conn.close()

    def find_one(self, completion_id: int, task_id: str | None = None) -> dict[str, Any] | None:
        sql = "SELECT * FROM recurring_completions WHERE id = ?"
        params: list[Any] = [completion_id]
        if task_id is not None:
            sql += " AND task_id = ?"
            params.append(task_id)
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(sql, params).fetchone()
            return _completion_row_to_dict(row) if row else None
        finally:
            conn.close()

    def delete(self, completion_id: int) -> bool:
        conn = get_connection(self.db_path)
        try:
            cur = conn.execute("DELETE FROM recurring_completions WHERE id = ?", (completion_id,))
            conn.commit()
            return cur.rowcount > 0
        finally:
            conn.close()
