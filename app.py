from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from agent_scheduler.agent_state import AgentState
from agent_scheduler.config import Settings, load_settings
from agent_scheduler.dispatch import AgentDispatcher, Backend, default_backend
from agent_scheduler.schedule import SchedulerValidationError
from agent_scheduler.scheduler_service import SchedulerService
from agent_scheduler.store import Store, serialize_agent_task, serialize_scheduled_task
from agent_scheduler.task_manager import TaskManager, TaskValidationError
from agent_scheduler.util import sanitize_id

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


async def _read_json_object(request: Request) -> dict[str, Any] | None:
    try:
        body = await request.json()
    except json.JSONDecodeError:
        return None
    if not isinstance(body, dict):
        return None
    return body


def create_app(*, settings: Settings | None = None, backend: Backend = default_backend) -> FastAPI:
    settings = settings or load_settings()
    logging.getLogger("agent_scheduler").setLevel(settings.log_level)

    app = FastAPI()
    store = Store(settings.db_path)
    agent_state = AgentState()
    dispatcher = AgentDispatcher(backend=backend, cwd=settings.agent_cwd, model=settings.model)
    task_manager = TaskManager(
        store=store,
        agent_state=agent_state,
        dispatch=dispatcher.trigger_next_task_processing,
    )
    dispatcher.bind(task_manager)
    scheduler = SchedulerService(
        store=store,
        agent_state=agent_state,
        task_manager=task_manager,
        dispatch=dispatcher.trigger_agent_processing,
        heartbeat_seconds=settings.heartbeat_seconds,
        time_zone=settings.time_zone,
    )
    started_at = _now_iso()

    app.state.store = store
    app.state.agent_state = agent_state
    app.state.dispatcher = dispatcher
    app.state.task_manager = task_manager
    app.state.scheduler = scheduler

    @app.on_event("startup")
    async def _startup() -> None:
        await task_manager.initialize()
        await scheduler.initialize()

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await scheduler.shutdown()

    def json_error(status_code: int, *, error: str, **extra: Any) -> JSONResponse:
        return JSONResponse(status_code=status_code, content={"error": error, **extra})

    def checked_id(value: str) -> str | None:
        try:
            return sanitize_id(value)
        except ValueError:
            return None

    @app.get("/healthz")
    async def healthz() -> JSONResponse:
        return JSONResponse(status_code=200, content={"status": "ok", "started_at": started_at})

    @app.get("/v1/agent/state")
    async def get_agent_state() -> JSONResponse:
        state = agent_state.get_state()
        return JSONResponse(
            status_code=200,
            content={
                "is_idle": state.is_idle,
                "current_action_description": state.current_action_description,
                "current_task_id": task_manager.get_current_task_id(),
            },
        )

    @app.get("/v1/scheduled-tasks")
    async def list_scheduled_tasks(request: Request) -> JSONResponse:
        status = request.query_params.get("status", "all")
        if status == "active":
            tasks = await scheduler.get_active_scheduled_tasks()
        elif status == "all":
            tasks = await scheduler.get_all_scheduled_tasks()
        else:
            return json_error(400, error="bad_request", message="status must be active or all.")
        return JSONResponse(status_code=200, content={"tasks": [serialize_scheduled_task(t) for t in tasks]})

    @app.post("/v1/scheduled-tasks")
    async def add_scheduled_task(request: Request) -> JSONResponse:
        body = await _read_json_object(request)
        if body is None:
            return json_error(400, error="bad_request", message="Body must be a JSON object.")

        description = body.get("description")
        task_type = body.get("type")
        schedule = body.get("schedule")
        if not description or not task_type or not schedule:
            return json_error(400, error="bad_request", message="description, type, and schedule are required.")
        if isinstance(schedule, int) and not isinstance(schedule, bool):
            schedule = str(schedule)

        try:
            task = await scheduler.add_scheduled_task(
                description,
                task_type,
                schedule,
                created_by=body.get("created_by") or "user",
            )
        except SchedulerValidationError as exc:
            return json_error(400, error="bad_request", message=str(exc))
        return JSONResponse(status_code=201, content={"task": serialize_scheduled_task(task)})

    @app.get("/v1/scheduled-tasks/{task_id}")
    async def get_scheduled_task(task_id: str) -> JSONResponse:
        checked = checked_id(task_id)
        task = await scheduler.get_scheduled_task(checked) if checked else None
        if task is None:
            return json_error(404, error="task_unknown", task_id=task_id)
        return JSONResponse(status_code=200, content={"task": serialize_scheduled_task(task)})

    @app.put("/v1/scheduled-tasks/{task_id}")
    async def update_scheduled_task(task_id: str, request: Request) -> JSONResponse:
        checked = checked_id(task_id)
        if checked is None:
            return json_error(404, error="task_unknown", task_id=task_id)
        body = await _read_json_object(request)
        if body is None:
            return json_error(400, error="bad_request", message="Body must be a JSON object.")
        if isinstance(body.get("schedule"), int) and not isinstance(body.get("schedule"), bool):
            body["schedule"] = str(body["schedule"])

        try:
            task = await scheduler.update_scheduled_task(checked, body)
        except (SchedulerValidationError, TypeError, ValueError) as exc:
            return json_error(400, error="bad_request", message=str(exc))
        if task is None:
            return json_error(404, error="task_unknown", task_id=task_id)
        return JSONResponse(status_code=200, content={"task": serialize_scheduled_task(task)})

    @app.delete("/v1/scheduled-tasks/{task_id}")
    async def delete_scheduled_task(task_id: str) -> JSONResponse:
        checked = checked_id(task_id)
        if checked is not None:
            await scheduler.delete_scheduled_task(checked)
        return JSONResponse(status_code=200, content={"success": True})

    @app.get("/v1/tasks")
    async def list_tasks(request: Request) -> JSONResponse:
        status = request.query_params.get("status", "active")
        if status == "all":
            tasks = await task_manager.get_all_tasks()
        elif status in ("active", "pending", "in_progress"):
            tasks = await task_manager.get_active_tasks()
            if status != "active":
                tasks = [t for t in tasks if t.status == status]
        else:
            return json_error(400, error="bad_request", message="Unknown status filter.")
        return JSONResponse(status_code=200, content={"tasks": [serialize_agent_task(t) for t in tasks]})

    @app.post("/v1/tasks")
    async def add_task(request: Request) -> JSONResponse:
        body = await _read_json_object(request)
        if body is None:
            return json_error(400, error="bad_request", message="Body must be a JSON object.")
        description = body.get("description")
        if not isinstance(description, str):
            return json_error(400, error="bad_request", message="description must be a string.")
        try:
            task = await task_manager.add_task(description)
        except TaskValidationError as exc:
            return json_error(400, error="bad_request", message=str(exc))
        return JSONResponse(status_code=201, content={"task": serialize_agent_task(task)})

    @app.post("/v1/tasks/{task_id}/complete")
    async def complete_task(task_id: str, request: Request) -> JSONResponse:
        body = await _read_json_object(request) or {}
        summary = body.get("result_summary")
        if summary is not None and not isinstance(summary, str):
            return json_error(400, error="bad_request", message="result_summary must be a string.")
        await task_manager.handle_task_completion(task_id, summary)
        return JSONResponse(status_code=200, content={"success": True})

    @app.post("/v1/tasks/{task_id}/fail")
    async def fail_task(task_id: str, request: Request) -> JSONResponse:
        body = await _read_json_object(request) or {}
        reason = body.get("reason")
        if not isinstance(reason, str) or not reason.strip():
            return json_error(400, error="bad_request", message="reason is required.")
        await task_manager.handle_task_failure(task_id, reason.strip())
        return JSONResponse(status_code=200, content={"success": True})

    return app


app = create_app()
