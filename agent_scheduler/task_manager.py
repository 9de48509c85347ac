from __future__ import annotations

import logging
from collections.abc import Callable

from agent_scheduler.agent_state import AgentState
from agent_scheduler.store import AgentTask, Store
from agent_scheduler.util import preview

logger = logging.getLogger(__name__)

TaskDispatch = Callable[[AgentTask], None]


class TaskValidationError(ValueError):
    pass


class TaskManager:
    """FIFO queue over ``agent_tasks`` that runs at most one task at a time.

    Dispatch is fire-and-forget: the callback starts the work and the executor
    reports back later through :meth:`handle_task_completion` or
    :meth:`handle_task_failure`, keyed by task id.
    """

    def __init__(self, *, store: Store, agent_state: AgentState, dispatch: TaskDispatch) -> None:
        self._store = store
        self._agent_state = agent_state
        self._dispatch = dispatch
        self._current_task_id: str | None = None
        self._is_processing_task = False
        # True only when this manager flipped the agent from idle to busy.
        self._owns_agent_busy = False

    async def initialize(self) -> None:
        in_progress = await self._store.list_agent_tasks(statuses=("in_progress",), limit=1)
        if in_progress:
            # Left over by a previous process; tracked again but not re-dispatched.
            self._current_task_id = in_progress[0].id
            logger.info("TaskManager initialized. Resuming task: %s", self._current_task_id)
            return
        logger.info("TaskManager initialized. No tasks currently in progress.")
        await self.process_next_task_if_idle()

    async def add_task(self, description: str) -> AgentTask:
        description = (description or "").strip()
        if not description:
            raise TaskValidationError("description is required")

        logger.info("Adding new task: %r", preview(description))
        task = await self._store.insert_agent_task(description)
        logger.info("Task %s added with sequence %d.", task.id, task.sequence)

        await self.process_next_task_if_idle()
        return task

    async def get_active_tasks(self) -> list[AgentTask]:
        return await self._store.list_agent_tasks(statuses=("pending", "in_progress"))

    async def get_all_tasks(self) -> list[AgentTask]:
        return await self._store.list_agent_tasks()

    async def handle_task_completion(self, task_id: str, result_summary: str | None = None) -> None:
        if task_id != self._current_task_id:
            logger.warning(
                "Received completion for task %s, but current task is %s. Ignoring.",
                task_id,
                self._current_task_id,
            )
            return

        await self._update_task_status(task_id, "completed", result_summary=result_summary)
        self._finish_current()
        logger.info("Task %s completed.", task_id)
        await self._process_next_task()

    async def handle_task_failure(self, task_id: str, reason: str) -> None:
        if task_id != self._current_task_id:
            logger.warning(
                "Received failure for task %s, but current task is %s. Ignoring.",
                task_id,
                self._current_task_id,
            )
            return

        await self._update_task_status(task_id, "failed", fail_reason=reason)
        self._finish_current()
        logger.error("Task %s failed: %s", task_id, reason)
        await self._process_next_task()

    async def process_next_task_if_idle(self) -> None:
        if self._current_task_id is None and not self._is_processing_task:
            await self._process_next_task()
        else:
            logger.debug("A task is already in flight, skipping next task trigger.")

    def confirm_task_in_progress(self, task_id: str) -> bool:
        if task_id == self._current_task_id:
            logger.debug("Confirmed task %s is in progress.", task_id)
            return True
        logger.warning(
            "Attempted to confirm progress for task %s, but current task is %s",
            task_id,
            self._current_task_id,
        )
        return False

    def get_current_task_id(self) -> str | None:
        return self._current_task_id

    async def _process_next_task(self) -> None:
        if self._is_processing_task:
            logger.debug("Already advancing the queue, skipping.")
            return

        self._is_processing_task = True
        try:
            pending = await self._store.list_agent_tasks(statuses=("pending",), limit=1)
            if not pending:
                logger.info("No pending tasks found.")
                self._current_task_id = None
                return

            task = pending[0]
            logger.info("Starting task %s: %r", task.id, preview(task.description))
            started = await self._update_task_status(task.id, "in_progress")
            if started is None:
                logger.warning("Task %s vanished before it could start, not dispatching.", task.id)
                return
            task = started
            self._current_task_id = task.id
            if self._agent_state.is_idle:
                self._owns_agent_busy = True
                self._agent_state.set_state(is_idle=False, current_action_description=task.description)
        finally:
            self._is_processing_task = False

        try:
            self._dispatch(task)
        except Exception:
            logger.exception("Dispatch failed for task %s", task.id)
            raise

    async def _update_task_status(
        self,
        task_id: str,
        status: str,
        *,
        result_summary: str | None = None,
        fail_reason: str | None = None,
    ) -> AgentTask | None:
        logger.info("Updating task %s status to %s", task_id, status)
        updated = await self._store.update_agent_task(
            task_id,
            status=status,
            result_summary=result_summary,
            fail_reason=fail_reason,
        )
        if updated is None:
            logger.warning("Task %s not found for status update.", task_id)
        return updated

    def adopt_agent_busy(self) -> None:
        """Take over the busy flag set by another caller while the current task runs."""
        if self._current_task_id is not None:
            self._owns_agent_busy = True

    def _finish_current(self) -> None:
        self._current_task_id = None
        if self._owns_agent_busy:
            self._owns_agent_busy = False
            self._agent_state.set_state(is_idle=True, current_action_description=None)
