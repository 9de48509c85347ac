from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone, tzinfo
from typing import Any

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from agent_scheduler.agent_state import AgentState
from agent_scheduler.schedule import RECURRING_FAMILY, SchedulerValidationError, compute_next_run_time
from agent_scheduler.store import (
    CREATED_BY_VALUES,
    SCHEDULED_TASK_STATUSES,
    SCHEDULED_TASK_TYPES,
    ScheduledTask,
    Store,
)
from agent_scheduler.task_manager import TaskManager
from agent_scheduler.util import iso_from_ms, new_id, now_ms, preview

logger = logging.getLogger(__name__)

ScheduledDispatch = Callable[[str, str], Awaitable[None]]

HEARTBEAT_JOB_ID = "__heartbeat__"
_UPDATABLE_FIELDS = frozenset({"description", "type", "schedule", "status", "next_run_time"})


def _require_text(value: Any, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise SchedulerValidationError(f"{field_name} is required")
    return value.strip()


def _require_choice(value: Any, field_name: str, choices: tuple[str, ...]) -> str:
    if value not in choices:
        raise SchedulerValidationError(f"{field_name} must be one of: {', '.join(choices)}")
    return value


class SchedulerService:
    """Arms in-memory timers for persisted scheduled tasks and fires them one at a time.

    The ``scheduled_tasks`` row is the source of truth: a timer is always derived
    from the row's ``next_run_time`` after a write, and the row is reloaded when the
    timer fires. ``_is_processing`` keeps a second firing out while the first one is
    still between "timer fired" and "agent marked busy".
    """

    def __init__(
        self,
        *,
        store: Store,
        agent_state: AgentState,
        task_manager: TaskManager,
        dispatch: ScheduledDispatch,
        heartbeat_seconds: float = 60.0,
        time_zone: tzinfo | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._store = store
        self._agent_state = agent_state
        self._task_manager = task_manager
        self._dispatch = dispatch
        self._heartbeat_seconds = heartbeat_seconds
        self._time_zone = time_zone
        self._clock = clock
        self._scheduler: AsyncIOScheduler | None = None
        self._is_processing = False
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        async with self._lock:
            if self._scheduler is not None:
                return
            logger.info("Initializing SchedulerService...")
            self._scheduler = AsyncIOScheduler(timezone=timezone.utc)
            self._scheduler.start()
            await self._load_and_schedule_tasks()
            await self._check_missed_tasks()
            self._start_heartbeat()
            logger.info("SchedulerService initialized.")

    async def shutdown(self) -> None:
        async with self._lock:
            if self._scheduler is None:
                return
            logger.info("Shutting down SchedulerService...")
            self._scheduler.remove_all_jobs()
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("SchedulerService shut down.")

    def has_timer(self, task_id: str) -> bool:
        return self._scheduler is not None and self._scheduler.get_job(task_id) is not None

    def has_heartbeat(self) -> bool:
        return self.has_timer(HEARTBEAT_JOB_ID)

    def compute_next_run_time(self, task_type: str, schedule: str, *, next_run_time: int = 0, task_id: str = "") -> int:
        return compute_next_run_time(
            task_type,
            schedule,
            now=self._clock(),
            next_run_time=next_run_time,
            tz=self._time_zone,
            task_id=task_id,
        )

    async def add_scheduled_task(
        self,
        description: str,
        task_type: str,
        schedule: str,
        created_by: str = "user",
    ) -> ScheduledTask:
        description = _require_text(description, "description")
        task_type = _require_choice(task_type, "type", SCHEDULED_TASK_TYPES)
        schedule = _require_text(schedule, "schedule")
        created_by = _require_choice(created_by, "created_by", CREATED_BY_VALUES)

        next_run = self.compute_next_run_time(task_type, schedule)
        if next_run == 0 and task_type != "once":
            raise SchedulerValidationError(f"Could not calculate next run time for schedule: {schedule}")

        now = self._clock()
        record = ScheduledTask(
            id=new_id(),
            description=description,
            type=task_type,
            schedule=schedule,
            status="active",
            next_run_time=next_run,
            created_at=now,
            updated_at=now,
            created_by=created_by,
        )
        stored = await self._store.insert_scheduled_task(record)
        logger.info("Scheduled task %s added. Next run: %s", stored.id, iso_from_ms(stored.next_run_time))
        self._schedule_next_run(stored)
        return stored

    async def update_scheduled_task(self, task_id: str, updates: dict[str, Any]) -> ScheduledTask | None:
        unknown = set(updates) - _UPDATABLE_FIELDS
        if unknown:
            raise SchedulerValidationError(f"Cannot update fields: {', '.join(sorted(unknown))}")

        current = await self._store.get_scheduled_task(task_id)
        if current is None:
            return None

        fields: dict[str, Any] = {}
        if "description" in updates:
            fields["description"] = _require_text(updates["description"], "description")
        if "type" in updates:
            fields["type"] = _require_choice(updates["type"], "type", SCHEDULED_TASK_TYPES)
        if "schedule" in updates:
            fields["schedule"] = _require_text(updates["schedule"], "schedule")
        if "status" in updates:
            fields["status"] = _require_choice(updates["status"], "status", SCHEDULED_TASK_STATUSES)
        if "next_run_time" in updates:
            fields["next_run_time"] = int(updates["next_run_time"])

        task_type = fields.get("type", current.type)
        schedule = fields.get("schedule", current.schedule)
        status = fields.get("status", current.status)
        reactivated = current.status != "active" and status == "active"
        if task_type != current.type or schedule != current.schedule or reactivated:
            next_run = self.compute_next_run_time(task_type, schedule, task_id=task_id)
            if next_run == 0 and task_type != "once":
                raise SchedulerValidationError("Invalid next run time for updated schedule")
            fields["next_run_time"] = next_run
            if reactivated:
                fields["fail_reason"] = None

        updated = await self._store.update_scheduled_task(task_id, **fields)
        if updated is None:
            return None
        self._schedule_next_run(updated)
        return updated

    async def delete_scheduled_task(self, task_id: str) -> bool:
        self._clear_timer(task_id)
        await self._store.delete_scheduled_task(task_id)
        return True

    async def get_scheduled_task(self, task_id: str) -> ScheduledTask | None:
        return await self._store.get_scheduled_task(task_id)

    async def get_active_scheduled_tasks(self) -> list[ScheduledTask]:
        return await self._store.list_scheduled_tasks(status="active")

    async def get_all_scheduled_tasks(self) -> list[ScheduledTask]:
        return await self._store.list_scheduled_tasks()

    async def _load_and_schedule_tasks(self) -> None:
        now = self._clock()
        tasks = await self._store.list_armable_scheduled_tasks(now)
        logger.info("Loading %d active scheduled tasks from database.", len(tasks))
        for task in tasks:
            # Overdue rows are left to the missed-task pass, which re-arms them.
            if task.next_run_time > now:
                self._schedule_next_run(task)

    async def _check_missed_tasks(self) -> None:
        missed = await self._store.list_due_scheduled_tasks(self._clock())
        if not missed:
            return
        logger.warning("Found %d missed tasks. Processing them now.", len(missed))
        for task in missed:
            await self._run_scheduled_task(task.id)

    def _clear_timer(self, task_id: str) -> None:
        if self._scheduler is None:
            return
        try:
            self._scheduler.remove_job(task_id)
        except JobLookupError:
            pass

    def _schedule_next_run(self, task: ScheduledTask) -> None:
        self._clear_timer(task.id)
        if self._scheduler is None or task.status != "active" or task.next_run_time <= 0:
            return

        delay = task.next_run_time - self._clock()
        if delay <= 0:
            run_date = datetime.now(timezone.utc)
        else:
            logger.info("Scheduling task %s to run in %dms", task.id, delay)
            run_date = datetime.fromtimestamp(task.next_run_time / 1000, tz=timezone.utc)

        self._scheduler.add_job(
            self._run_scheduled_task,
            trigger=DateTrigger(run_date=run_date),
            args=[task.id],
            id=task.id,
            replace_existing=True,
            misfire_grace_time=None,
        )

    async def _run_scheduled_task(self, task_id: str) -> None:
        task = await self._store.get_scheduled_task(task_id)
        if task is None or task.status != "active":
            return

        if self._is_processing:
            logger.warning("Already processing a scheduled action, skipping %s", task.id)
            if task.type in RECURRING_FAMILY:
                await self._reschedule_task(task)
            return

        if not self._agent_state.is_idle:
            logger.info("Agent is busy, deferring scheduled task %s", task.id)
            if task.type in RECURRING_FAMILY:
                await self._reschedule_task(task)
            return

        self._is_processing = True
        queued_before = self._task_manager.get_current_task_id()
        self._agent_state.set_state(is_idle=False, current_action_description=task.description)
        logger.info("Running scheduled task %s: %r", task.id, preview(task.description))
        try:
            await self._store.update_scheduled_task(task.id, last_run_time=self._clock())
            if task.type == "runloop":
                await self._task_manager.process_next_task_if_idle()
            else:
                await self._dispatch(task.description, task.id)
            if task.type == "once":
                await self._store.update_scheduled_task(task.id, status="completed")
                logger.info("Once task %s completed.", task.id)
        except Exception as exc:
            logger.exception("Error executing scheduled task %s", task.id)
            await self._store.update_scheduled_task(task.id, status="error", fail_reason=str(exc) or type(exc).__name__)
        finally:
            try:
                if task.type in RECURRING_FAMILY:
                    await self._reschedule_task(task)
            finally:
                self._release_agent(queued_before)
                self._is_processing = False

    def _release_agent(self, queued_before: str | None) -> None:
        current = self._task_manager.get_current_task_id()
        if current is not None and current != queued_before:
            # A queued task started meanwhile; its completion clears the flag.
            self._task_manager.adopt_agent_busy()
            return
        self._agent_state.set_state(is_idle=True, current_action_description=None)

    async def _reschedule_task(self, task: ScheduledTask) -> None:
        latest = await self._store.get_scheduled_task(task.id)
        if latest is None:
            return

        next_run = self.compute_next_run_time(
            latest.type,
            latest.schedule,
            next_run_time=latest.next_run_time,
            task_id=latest.id,
        )
        if next_run > 0:
            updated = await self._store.update_scheduled_task(latest.id, next_run_time=next_run)
            if updated is not None:
                self._schedule_next_run(updated)
            return

        logger.warning("Could not calculate next run for %s. Marking error.", latest.id)
        await self._store.update_scheduled_task(
            latest.id,
            status="error",
            fail_reason="Next run calculation failed",
        )
        self._clear_timer(latest.id)

    def _start_heartbeat(self) -> None:
        if self._scheduler is None or self.has_heartbeat():
            return
        logger.info("Starting agent heartbeat (%ss)", self._heartbeat_seconds)
        self._scheduler.add_job(
            self._heartbeat,
            trigger=IntervalTrigger(seconds=self._heartbeat_seconds),
            id=HEARTBEAT_JOB_ID,
            replace_existing=True,
            coalesce=True,
        )

    async def _heartbeat(self) -> None:
        if not self._agent_state.is_idle:
            return
        try:
            await self._task_manager.process_next_task_if_idle()
        except Exception:
            logger.exception("Heartbeat failed to advance the task queue")
