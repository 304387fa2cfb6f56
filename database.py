"""
SQLite database initialization and connection for Habitick.
Self-bootstrapping: creates DB file, tables, indexes, and constraints on first run.
"""
from __future__ import annotations

import sqlite3
from pathlib import Path

# Default DB path: project directory
_DEFAULT_DB_PATH = Path(__file__).resolve().parent / "habitick.db"

# Wait up to this many seconds for locks (scheduler thread + API often use same DB)
_CONNECT_TIMEOUT = 30.0

_SCHEMA = """
-- Primary table: tasks (templates, instances, subtasks and habits share one table)
-- status: not_started | in_progress | done | archived
-- recurrence_type != 'none' and recurring_parent_id IS NULL -> template
-- recurring_parent_id set -> generated instance; instance_day is its UTC calendar day
CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    name TEXT NOT NULL,
    note TEXT,
    priority INTEGER NOT NULL DEFAULT 0 CHECK (priority >= 0 AND priority <= 3),
    status TEXT NOT NULL DEFAULT 'not_started'
        CHECK (status IN ('not_started', 'in_progress', 'done', 'archived')),
    due_date TEXT,
    project_id TEXT,
    parent_task_id TEXT,
    recurrence_type TEXT NOT NULL DEFAULT 'none',
    recurrence_interval INTEGER,
    recurrence_weekday INTEGER,
    recurrence_month_day INTEGER,
    recurrence_week_of_month INTEGER,
    recurrence_end_date TEXT,
    completion_based INTEGER NOT NULL DEFAULT 0,
    recurring_parent_id TEXT,
    last_generated_date TEXT,
    instance_day TEXT,
    habit_mode INTEGER NOT NULL DEFAULT 0,
    habit_target_count INTEGER,
    habit_frequency_period TEXT,
    habit_streak_mode TEXT NOT NULL DEFAULT 'calendar',
    habit_flexibility_mode TEXT NOT NULL DEFAULT 'flexible',
    habit_current_streak INTEGER NOT NULL DEFAULT 0,
    habit_best_streak INTEGER NOT NULL DEFAULT 0,
    habit_total_completions INTEGER NOT NULL DEFAULT 0,
    habit_last_completion_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    completed_at TEXT,
    FOREIGN KEY (recurring_parent_id) REFERENCES tasks(id),
    FOREIGN KEY (parent_task_id) REFERENCES tasks(id)
);

CREATE INDEX IF NOT EXISTS idx_tasks_user ON tasks(user_id);
CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status);
CREATE INDEX IF NOT EXISTS idx_tasks_recurring_parent ON tasks(recurring_parent_id);
CREATE INDEX IF NOT EXISTS idx_tasks_parent_task ON tasks(parent_task_id);
CREATE INDEX IF NOT EXISTS idx_tasks_due_date ON tasks(due_date);

-- Habit / recurring completion log (append-only; rows are only ever deleted)
CREATE TABLE IF NOT EXISTS recurring_completions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id TEXT NOT NULL,
    completed_at TEXT NOT NULL,
    original_due_date TEXT,
    skipped INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    FOREIGN KEY (task_id) REFERENCES tasks(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_recurring_completions_task ON recurring_completions(task_id);
CREATE INDEX IF NOT EXISTS idx_recurring_completions_completed_at ON recurring_completions(completed_at);
"""

# Columns added after the first release; applied to databases created before them.
_ADDED_COLUMNS: list[tuple[str, str]] = [
    ("completion_based", "INTEGER NOT NULL DEFAULT 0"),
    ("instance_day", "TEXT"),
    ("habit_mode", "INTEGER NOT NULL DEFAULT 0"),
    ("habit_target_count", "INTEGER"),
    ("habit_frequency_period", "TEXT"),
    ("habit_streak_mode", "TEXT NOT NULL DEFAULT 'calendar'"),
    ("habit_flexibility_mode", "TEXT NOT NULL DEFAULT 'flexible'"),
    ("habit_current_streak", "INTEGER NOT NULL DEFAULT 0"),
    ("habit_best_streak", "INTEGER NOT NULL DEFAULT 0"),
    ("habit_total_completions", "INTEGER NOT NULL DEFAULT 0"),
    ("habit_last_completion_at", "TEXT"),
]

# Created after _ADDED_COLUMNS so older databases have instance_day first.
# One instance per (user, template, project, calendar day).
_INSTANCE_INDEX = """
CREATE UNIQUE INDEX IF NOT EXISTS idx_tasks_instance_day ON tasks(
    user_id, recurring_parent_id, COALESCE(project_id, ''), instance_day
) WHERE recurring_parent_id IS NOT NULL AND instance_day IS NOT NULL
"""

_initialized: set[str] = set()


def get_db_path() -> Path:
    """Return the database file path (from config if set)."""
    from config import load as load_config

    path = load_config().database_path
    if path:
        return Path(path)
    return _DEFAULT_DB_PATH


def init_database(path: Path | None = None) -> Path:
    """
    Ensure the database exists and is initialized. Creates file and all tables/indexes.
    Returns the path to the database file.
    """
    db_path = (path or get_db_path()).resolve()
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), timeout=_CONNECT_TIMEOUT)
    try:
        conn.execute("PRAGMA journal_mode=WAL")
        conn.executescript(_SCHEMA)
        for column, definition in _ADDED_COLUMNS:
            try:
                conn.execute(f"ALTER TABLE tasks ADD COLUMN {column} {definition}")
            except sqlite3.OperationalError as e:
                if "duplicate column" not in str(e).lower():
                    raise
        conn.execute(_INSTANCE_INDEX)
        conn.commit()
    finally:
        conn.close()
    _initialized.add(str(db_path))
    return db_path


def get_connection(path: Path | None = None) -> sqlite3.Connection:
    """Return a connection to the database, bootstrapping it on first use."""
    db_path = (path or get_db_path()).resolve()
    if str(db_path) not in _initialized:
        init_database(db_path)
    conn = sqlite3.connect(str(db_path), timeout=_CONNECT_TIMEOUT)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys = ON")
    conn.row_factory = sqlite3.Row
    return conn


def migrate() -> Path:
    """Run database init + migrations. Use this to migrate manually: python -m database"""
    return init_database()


if __name__ == "__main__":
    p = migrate()
    print("Database migrated:", p)
