# tests/conftest.py
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone

import pytest

# Point config at a file that does not exist so every test starts from defaults
os.environ["HABITICK_CONFIG"] = os.path.join(tempfile.mkdtemp(), "config.json")

# Add the project root to sys.path
project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
sys.path.insert(0, project_root)

import config
from completion_store import SqliteCompletionStore
from task_store import SqliteTaskStore

# Wednesday
NOW = datetime(2024, 5, 15, 9, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Callable clock for services; advance() moves it forward."""

    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FrozenClock(NOW)


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "test_habitick.db"


@pytest.fixture
def task_store(db_path):
    return SqliteTaskStore(db_path)


@pytest.fixture
def completion_store(db_path):
    return SqliteCompletionStore(db_path)


@pytest.fixture
def make_task(task_store):
    """Factory creating a task row for user u1 with the given column overrides."""

    def _make(**fields):
        row = {"user_id": "u1", "name": "Task"}
        row.update(fields)
        return task_store.create(row)

    return _make


@pytest.fixture
def write_config(tmp_path, monkeypatch):
    """Write a config file for this test and point config.CONFIG_PATH at it."""
    path = tmp_path / "config.json"
    monkeypatch.setattr(config, "CONFIG_PATH", path)

    def _write(**fields):
        cfg = config.AppConfig(**fields)
        cfg.save()
        return cfg

    return _write
