"""Configuration load/save for habitick."""
from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

CONFIG_PATH = Path(os.environ.get("HABITICK_CONFIG") or Path(__file__).resolve().parent / "config.json")


class AppConfig(BaseModel):
    """Persisted application configuration."""

    database_path: str = Field(default="", description="Path to SQLite database file; empty = project dir / habitick.db")
    look_ahead_days: int = Field(default=7, ge=1, le=366, description="Days ahead to pre-materialize recurring instances")
    max_instances_per_template: int = Field(default=100, ge=1, description="Safety cap on instances created per template in one pass")
    generation_cron: str = Field(default="0 * * * *", description="5-field cron (UTC) for the background generation pass")
    scheduler_enabled: bool = Field(default=True, description="Run the background generation scheduler from run.py")
    web_ui_port: int = Field(default=8081, ge=1, le=65535, description="Port for the HTTP API")
    api_key: str = Field(default="", description="Required X-API-Key header value; empty disables the API")
    debug: bool = Field(default=False, description="Log every API request")
    log_level: str = Field(default="INFO", description="Root log level used by run.py")

    def to_save_dict(self) -> dict[str, Any]:
        return self.model_dump()

    @classmethod
    def load(cls) -> "AppConfig":
        if not CONFIG_PATH.exists():
            return cls()
        raw = json.loads(CONFIG_PATH.read_text())
        return cls.model_validate(raw)

    def save(self) -> None:
        CONFIG_PATH.write_text(json.dumps(self.to_save_dict(), indent=2))


def load() -> AppConfig:
    """Load config from disk. Convenience alias for AppConfig.load()."""
    return AppConfig.load()
