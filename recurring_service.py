"""
Recurring task service: materializes task instances from recurring templates.

Two entry points create instances:
- generate(): look-ahead batch run per user (scheduler / API), idempotent per calendar day.
- on_completion(): completion-based templates get exactly one next instance when completed.

Every instance is created inside a store transaction that first checks for an existing
instance on the same (user, template, project, UTC day); the store's unique index rejects
a concurrent duplicate that slips past the check. The per-user GenerationLock only keeps
two passes for the same user from doing the same work at once.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable

from date_utils import parse_datetime, start_of_day, to_iso, utc_day, utc_now
from generation_lock import GenerationLock
from recurrence import (
    RecurrenceRule,
    coerce_rule,
    first_occurrence_from,
    next_occurrence,
    should_generate_next,
    virtual_occurrences,
)
from task_store import DuplicateInstanceError, TaskStore

logger = logging.getLogger("recurring_service")

DEFAULT_LOOK_AHEAD_DAYS = 7
MAX_INSTANCES_PER_TEMPLATE = 100

# Process-wide default so every service instance in the process shares one lock
_default_lock = GenerationLock()


class RecurringTaskService:
    def __init__(
        self,
        task_store: TaskStore,
        *,
        lock: GenerationLock | None = None,
        clock: Callable[[], datetime] = utc_now,
        max_instances_per_template: int = MAX_INSTANCES_PER_TEMPLATE,
    ) -> None:
        self._store = task_store
        self._lock = lock or _default_lock
        self._clock = clock
        self._max_instances = max_instances_per_template

    # --- batch generation ---

    def generate(self, user_id: str | None = None, look_ahead_days: int = DEFAULT_LOOK_AHEAD_DAYS) -> list[dict[str, Any]]:
        """
        Create missing instances due up to now + look_ahead_days.
        With user_id, only that user's templates; otherwise every owner in turn, each under its own lock.
        Returns the created instances; [] when the user's generation is already running.
        """
        if user_id is not None:
            return self._generate_for_owner(user_id, None, look_ahead_days)
        by_owner: dict[str, list[dict[str, Any]]] = {}
        for template in self._store.find_templates():
            by_owner.setdefault(template["user_id"], []).append(template)
        created: list[dict[str, Any]] = []
        for owner, templates in by_owner.items():
            created.extend(self._generate_for_owner(owner, templates, look_ahead_days))
        return created

    def _generate_for_owner(
        self,
        user_id: str,
        templates: list[dict[str, Any]] | None,
        look_ahead_days: int,
    ) -> list[dict[str, Any]]:
        with self._lock.hold(user_id) as acquired:
            if not acquired:
                logger.debug("Generation already in progress for user %s; skipping", user_id)
                return []
            try:
                if templates is None:
                    templates = self._store.find_templates(user_id)
                now = self._clock()
                horizon = now + timedelta(days=look_ahead_days)
                created: list[dict[str, Any]] = []
                for template in templates:
                    created.extend(self._generate_for_template(template, now, horizon))
            except Exception:
                logger.exception("Recurring generation failed for user %s", user_id)
                raise
        if created:
            logger.info("Generated %d recurring instance(s) for user %s", len(created), user_id)
        return created

    def _generate_for_template(self, template: dict[str, Any], now: datetime, horizon: datetime) -> list[dict[str, Any]]:
        rule = coerce_rule(template)
        if rule is None or not rule.is_active:
            logger.warning("Template %s has an invalid recurrence rule; skipping", template["id"])
            return []
        if rule.end_date is not None and rule.end_date <= now:
            logger.debug("Template %s ended on %s; skipping", template["id"], rule.end_date)
            return []

        created: list[dict[str, Any]] = []
        if not template.get("last_generated_date"):
            instance = self._bootstrap(template, rule, now, horizon)
            if instance is not None:
                created.append(instance)
        if rule.completion_based:
            # Later instances come from on_completion
            return created

        cursor = (
            parse_datetime(template.get("last_generated_date"))
            or parse_datetime(template.get("due_date"))
            or now
        )
        occurrence = next_occurrence(rule, cursor)
        while occurrence is not None and occurrence <= horizon:
            if len(created) >= self._max_instances:
                logger.info(
                    "Template %s hit the %d instance cap; remaining occurrences wait for the next pass",
                    template["id"], self._max_instances,
                )
                break
            if not should_generate_next(rule, occurrence):
                break
            if occurrence <= cursor:
                logger.warning("Template %s rule did not advance past %s; stopping", template["id"], cursor)
                break
            instance = self._materialize(template, occurrence, advance_cursor=occurrence <= now)
            if instance is not None:
                created.append(instance)
            cursor = occurrence
            occurrence = next_occurrence(rule, occurrence)
        return created

    def _bootstrap(
        self,
        template: dict[str, Any],
        rule: RecurrenceRule,
        now: datetime,
        horizon: datetime,
    ) -> dict[str, Any] | None:
        """First instance of a never-generated template, on its own due date (or now)."""
        first_due = parse_datetime(template.get("due_date")) or now
        if not start_of_day(now) <= first_due <= horizon:
            return None
        if not should_generate_next(rule, first_due):
            return None
        # A future-dated first instance leaves the cursor unset so it cannot run ahead of real time
        return self._materialize(template, first_due, advance_cursor=first_due <= now)

    def _materialize(self, template: dict[str, Any], due: datetime, *, advance_cursor: bool) -> dict[str, Any] | None:
        """Create the instance for due's day unless one exists; optionally move the cursor to due."""
        instance = None
        with self._store.transaction() as tx:
            existing = self._store.find_instance(
                template["user_id"], template["id"], template.get("project_id"), utc_day(due), tx=tx
            )
            if existing is None:
                try:
                    instance = self._create_instance(template, due, tx)
                except DuplicateInstanceError:
                    logger.debug("Instance of %s on %s created concurrently", template["id"], utc_day(due))
            else:
                logger.debug("Instance of %s on %s already exists (%s)", template["id"], utc_day(due), existing["id"])
            if advance_cursor and self._store.advance_cursor(template["id"], due, tx=tx):
                template["last_generated_date"] = to_iso(due)
        return instance

    def _create_instance(self, template: dict[str, Any], due: datetime, tx: Any) -> dict[str, Any]:
        instance = self._store.create(
            {
                "user_id": template["user_id"],
                "name": template["name"],
                "note": template.get("note"),
                "priority": template.get("priority") or 0,
                "project_id": template.get("project_id"),
                "status": "not_started",
                "due_date": due,
                "recurrence_type": "none",
                "recurring_parent_id": template["id"],
                "instance_day": utc_day(due),
            },
            tx=tx,
        )
        for child in self._store.find_children(template["id"], template["user_id"], tx=tx):
            self._store.create(
                {
                    "user_id": child["user_id"],
                    "name": child["name"],
                    "note": child.get("note"),
                    "priority": child.get("priority") or 0,
                    "project_id": child.get("project_id"),
                    "status": "not_started",
                    "parent_task_id": instance["id"],
                },
                tx=tx,
            )
        logger.info("Created instance %s of template %s due %s", instance["id"], template["id"], instance["due_date"])
        return instance

    # --- completion-based recurrence ---

    def _template_for(self, task: dict[str, Any]) -> dict[str, Any] | None:
        parent_id = task.get("recurring_parent_id")
        if parent_id:
            return self._store.find_one(id=parent_id)
        if (task.get("recurrence_type") or "none") != "none":
            return task
        return None

    def on_completion(self, task: dict[str, Any]) -> dict[str, Any] | None:
        """
        Completion of a completion-based recurring task: move the template cursor to now
        and create the single next instance anchored at now. Returns it, or None.
        """
        template = self._template_for(task)
        if template is None or not template.get("completion_based") or template.get("habit_mode"):
            return None
        if template.get("status") == "archived":
            return None
        rule = coerce_rule(template)
        if rule is None or not rule.is_active:
            return None

        now = self._clock()
        if self._store.advance_cursor(template["id"], now):
            template["last_generated_date"] = to_iso(now)

        next_due = next_occurrence(rule, now)
        if next_due is None or not should_generate_next(rule, next_due):
            logger.debug("Template %s has no next occurrence after %s", template["id"], now)
            return None
        with self._store.transaction() as tx:
            existing = self._store.find_instance(
                template["user_id"], template["id"], template.get("project_id"), utc_day(next_due), tx=tx
            )
            if existing is not None:
                return None
            try:
                return self._create_instance(template, next_due, tx)
            except DuplicateInstanceError:
                return None

    def complete_task(self, task_id: str) -> tuple[dict[str, Any], dict[str, Any] | None]:
        """Mark a task done and advance completion-based recurrence. Returns (task, next_task)."""
        task = self._store.find_one(id=task_id)
        if task is None:
            raise LookupError(f"Task {task_id} not found")
        if task["status"] == "done":
            return task, None
        task["status"] = "done"
        task["completed_at"] = to_iso(self._clock())
        self._store.save(task)
        return task, self.on_completion(task)

    def next_iterations(self, task: dict[str, Any], count: int = 5, start_from: datetime | None = None) -> list[dict[str, Any]]:
        """Upcoming dates from start_from's day (default today, included when the rule lands on it) without creating anything."""
        anchor = start_of_day(start_from or self._clock())
        first = first_occurrence_from(task, anchor)
        if first is None:
            return []
        return virtual_occurrences(task, count, first)
