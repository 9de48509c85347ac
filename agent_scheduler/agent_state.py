from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, replace

logger = logging.getLogger(__name__)

_MISSING = object()


@dataclass(frozen=True)
class AgentStateSnapshot:
    is_idle: bool = True
    current_action_description: str | None = None


class AgentState:
    """Process-wide idle/busy cell shared by the task manager and the scheduler.

    Nothing is persisted: a fresh instance always starts idle. Whoever marks the
    agent busy is expected to mark it idle again once its action is over.
    """

    def __init__(self) -> None:
        self._state = AgentStateSnapshot()
        self._subscribers: list[Callable[[AgentStateSnapshot], None]] = []

    def get_state(self) -> AgentStateSnapshot:
        return self._state

    @property
    def is_idle(self) -> bool:
        return self._state.is_idle

    def set_state(
        self,
        *,
        is_idle: bool | object = _MISSING,
        current_action_description: str | None | object = _MISSING,
    ) -> AgentStateSnapshot:
        changes: dict[str, object] = {}
        if is_idle is not _MISSING:
            changes["is_idle"] = bool(is_idle)
        if current_action_description is not _MISSING:
            changes["current_action_description"] = current_action_description

        previous = self._state
        self._state = replace(previous, **changes)
        if previous.is_idle != self._state.is_idle:
            logger.info("Agent state changed: %s", "Idle" if self._state.is_idle else "Busy")
            for callback in list(self._subscribers):
                try:
                    callback(self._state)
                except Exception:
                    logger.exception("Agent state subscriber failed")
        return self._state

    def subscribe(self, callback: Callable[[AgentStateSnapshot], None]) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe
