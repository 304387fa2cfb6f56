#!/usr/bin/env python3
"""
Main entrypoint: bootstrap the database, start the recurring generation scheduler
and serve the HTTP API.
Run with: python run.py
Or run the API only: uvicorn web_app:app
"""
from __future__ import annotations

import logging
import sys
from pathlib import Path

# Project root
ROOT = Path(__file__).resolve().parent
sys.path.insert(0, str(ROOT))

from config import load as load_config
from database import init_database
from scheduler import start_generation_scheduler, stop_generation_scheduler

logger = logging.getLogger("habitick")


def configure_logging(level: str) -> None:
    # Same stream as uvicorn so habitick.api and service loggers interleave with access logs
    logging.basicConfig(
        level=getattr(logging, (level or "INFO").upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
        force=True,
    )


def main() -> None:
    config = load_config()
    configure_logging(config.log_level)

    db_path = init_database()
    logger.info("Database ready at %s", db_path)

    if config.scheduler_enabled:
        start_generation_scheduler()

    # Run web app (blocking)
    import uvicorn
    try:
        uvicorn.run(
            "web_app:app",
            host="0.0.0.0",
            port=config.web_ui_port,
            reload=False,
        )
    finally:
        stop_generation_scheduler()


if __name__ == "__main__":
    main()
