"""
Background recurring-task generation: a daemon thread wakes every minute and, when the
configured cron expression (5-field, UTC) matches, runs generation for every template owner.
Start the scheduler from the main process (run.py).
"""
from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone

from croniter import croniter

from config import load as load_config
from recurring_service import RecurringTaskService
from task_store import SqliteTaskStore, TaskStore

logger = logging.getLogger(__name__)

_scheduler_thread: threading.Thread | None = None
_stop_event: threading.Event | None = None


def run_generation_pass(
    store: TaskStore | None = None,
    service: RecurringTaskService | None = None,
) -> int:
    """Generate for each owner separately so one failing user does not block the others. Returns instances created."""
    config = load_config()
    store = store or SqliteTaskStore()
    service = service or RecurringTaskService(store, max_instances_per_template=config.max_instances_per_template)
    total = 0
    for user_id in store.list_template_owners():
        try:
            total += len(service.generate(user_id, config.look_ahead_days))
        except Exception as e:
            logger.warning("Recurring generation for user %s failed: %s", user_id, e)
    return total


def _run_due_generation(now: datetime | None = None) -> bool:
    """Run a pass if the cron expression matches now. Returns True when a pass ran."""
    config = load_config()
    cron_expr = (config.generation_cron or "").strip()
    if not cron_expr or not croniter.is_valid(cron_expr):
        logger.warning("Invalid generation cron expression: %r", cron_expr)
        return False
    now = now or datetime.now(timezone.utc)
    if not croniter.match(cron_expr, now):
        return False
    created = run_generation_pass()
    logger.info("Scheduled recurring generation created %d instance(s)", created)
    return True


def _scheduler_loop() -> None:
    """Run every minute and generate when due."""
    while _stop_event and not _stop_event.is_set():
        try:
            _run_due_generation()
        except Exception as e:
            logger.warning("Generation scheduler tick failed: %s", e)
        if _stop_event:
            _stop_event.wait(timeout=60)


def start_generation_scheduler() -> None:
    """Start the background thread that generates recurring instances on schedule. Idempotent."""
    global _scheduler_thread, _stop_event
    if _scheduler_thread is not None and _scheduler_thread.is_alive():
        return
    _stop_event = threading.Event()
    _scheduler_thread = threading.Thread(target=_scheduler_loop, daemon=True, name="recurring-generation")
    _scheduler_thread.start()
    logger.info("Recurring generation scheduler started")


def stop_generation_scheduler() -> None:
    """Signal the scheduler thread to stop."""
    global _stop_event
    if _stop_event:
        _stop_event.set()
