from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from typing import Any

from claude_agent_sdk import ClaudeAgentOptions, query
from claude_agent_sdk.types import AssistantMessage, ResultMessage, TextBlock

from agent_scheduler.store import AgentTask
from agent_scheduler.task_manager import TaskManager

logger = logging.getLogger(__name__)

Backend = Callable[..., AsyncIterator[Any]]


class AgentRunError(RuntimeError):
    pass


async def _single_prompt(prompt: str) -> AsyncIterator[dict[str, Any]]:
    yield {
        "type": "user",
        "message": {"role": "user", "content": [{"type": "text", "text": prompt}]},
        "parent_tool_use_id": None,
        "session_id": None,
    }


async def default_backend(*, prompt: str, options: ClaudeAgentOptions) -> AsyncIterator[Any]:
    async for message in query(prompt=_single_prompt(prompt), options=options):
        yield message


class AgentDispatcher:
    """Runs task descriptions through the agent SDK for the scheduler and the task queue."""

    def __init__(self, *, backend: Backend = default_backend, cwd: str | None = None, model: str | None = None) -> None:
        self._backend = backend
        self._cwd = cwd
        self._model = model
        self._task_manager: TaskManager | None = None
        self._running: set[asyncio.Task[None]] = set()

    def bind(self, task_manager: TaskManager) -> None:
        self._task_manager = task_manager

    def trigger_next_task_processing(self, task: AgentTask) -> None:
        logger.info("Triggering agent processing for next task: %s", task.id)
        runner = asyncio.get_running_loop().create_task(self._run_queued_task(task))
        self._running.add(runner)
        runner.add_done_callback(self._running.discard)

    async def trigger_agent_processing(self, description: str, scheduled_task_id: str) -> None:
        logger.info("Triggering agent processing for scheduled task: %s", scheduled_task_id)
        await self.run_prompt(description)

    async def wait_idle(self) -> None:
        while self._running:
            await asyncio.gather(*list(self._running), return_exceptions=True)

    async def run_prompt(self, prompt: str) -> str | None:
        options = self._build_options()
        last_text: str | None = None
        result: ResultMessage | None = None

        async for message in self._backend(prompt=prompt, options=options):
            if isinstance(message, AssistantMessage):
                texts = [block.text for block in message.content if isinstance(block, TextBlock)]
                if texts:
                    last_text = "\n".join(texts)
            elif isinstance(message, ResultMessage):
                result = message

        if result is not None and result.is_error:
            raise AgentRunError(result.result or f"Agent run ended with {result.subtype}")
        if result is not None and result.result:
            return result.result
        return last_text

    async def _run_queued_task(self, task: AgentTask) -> None:
        if self._task_manager is None:
            logger.error("No task manager bound; task %s cannot report back", task.id)
            return

        try:
            summary = await self.run_prompt(task.description)
        except Exception as exc:
            logger.exception("Agent run failed for task %s", task.id)
            await self._task_manager.handle_task_failure(task.id, f"{type(exc).__name__}: {exc}")
            return
        await self._task_manager.handle_task_completion(task.id, summary)

    def _build_options(self) -> ClaudeAgentOptions:
        kwargs: dict[str, Any] = {}
        if self._cwd:
            kwargs["cwd"] = self._cwd
        if self._model:
            kwargs["model"] = self._model
        return ClaudeAgentOptions(**kwargs)
