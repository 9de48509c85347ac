import asyncio

import httpx
import pytest
from claude_agent_sdk.types import AssistantMessage, ResultMessage, TextBlock

from agent_scheduler.config import Settings
from app import create_app


async def _fake_backend(*, prompt: str, options):
    _ = options
    await asyncio.sleep(0.01)
    yield AssistantMessage(content=[TextBlock(text=f"Echo: {prompt}")], model="claude-test")
    yield ResultMessage(
        subtype="success",
        duration_ms=10,
        duration_api_ms=10,
        is_error=False,
        num_turns=1,
        session_id="upstream-session",
        total_cost_usd=0.01,
        usage={"input_tokens": 1, "output_tokens": 1},
        result="Done",
    )


def _app(tmp_path):
    settings = Settings(data_dir=tmp_path, agent_cwd="/tmp")
    return create_app(settings=settings, backend=_fake_backend)


def _client(app):
    transport = httpx.ASGITransport(app=app)
    return httpx.AsyncClient(transport=transport, base_url="http://test")


@pytest.mark.asyncio
async def test_healthz_and_agent_state(tmp_path):
    app = _app(tmp_path)
    async with _client(app) as client:
        health = await client.get("/healthz")
        assert health.status_code == 200
        assert health.json()["status"] == "ok"

        state = await client.get("/v1/agent/state")
        assert state.status_code == 200
        assert state.json() == {"is_idle": True, "current_action_description": None, "current_task_id": None}


@pytest.mark.asyncio
async def test_scheduled_task_crud(tmp_path):
    app = _app(tmp_path)
    async with _client(app) as client:
        created = await client.post(
            "/v1/scheduled-tasks",
            json={"description": "check inbox", "type": "interval", "schedule": 5},
        )
        assert created.status_code == 201
        task = created.json()["task"]
        assert task["type"] == "interval"
        assert task["schedule"] == "5"
        assert task["status"] == "active"
        assert task["next_run_time"] > 0
        assert task["next_run_at"].endswith("Z")

        listed = await client.get("/v1/scheduled-tasks")
        assert [t["id"] for t in listed.json()["tasks"]] == [task["id"]]

        fetched = await client.get(f"/v1/scheduled-tasks/{task['id']}")
        assert fetched.json()["task"]["description"] == "check inbox"

        updated = await client.put(f"/v1/scheduled-tasks/{task['id']}", json={"description": "check both inboxes"})
        assert updated.status_code == 200
        assert updated.json()["task"]["description"] == "check both inboxes"
        assert updated.json()["task"]["next_run_time"] == task["next_run_time"]

        paused = await client.put(f"/v1/scheduled-tasks/{task['id']}", json={"status": "paused"})
        assert paused.json()["task"]["status"] == "paused"
        active = await client.get("/v1/scheduled-tasks", params={"status": "active"})
        assert active.json()["tasks"] == []

        deleted = await client.delete(f"/v1/scheduled-tasks/{task['id']}")
        assert deleted.status_code == 200
        assert deleted.json() == {"success": True}

        again = await client.delete(f"/v1/scheduled-tasks/{task['id']}")
        assert again.status_code == 200

        missing = await client.get(f"/v1/scheduled-tasks/{task['id']}")
        assert missing.status_code == 404


@pytest.mark.asyncio
async def test_scheduled_task_validation_errors(tmp_path):
    app = _app(tmp_path)
    async with _client(app) as client:
        missing_fields = await client.post("/v1/scheduled-tasks", json={"description": "x", "type": "interval"})
        assert missing_fields.status_code == 400
        assert missing_fields.json()["error"] == "bad_request"

        bad_schedule = await client.post(
            "/v1/scheduled-tasks",
            json={"description": "x", "type": "recurring", "schedule": "monthly@09:00"},
        )
        assert bad_schedule.status_code == 400

        not_json = await client.post("/v1/scheduled-tasks", content=b"[1, 2]")
        assert not_json.status_code == 400

        unknown = await client.put("/v1/scheduled-tasks/does-not-exist", json={"description": "y"})
        assert unknown.status_code == 404

        created = await client.post(
            "/v1/scheduled-tasks",
            json={"description": "x", "type": "runloop", "schedule": "30"},
        )
        task_id = created.json()["task"]["id"]
        bad_update = await client.put(f"/v1/scheduled-tasks/{task_id}", json={"schedule": "-1"})
        assert bad_update.status_code == 400

        bad_filter = await client.get("/v1/scheduled-tasks", params={"status": "sometimes"})
        assert bad_filter.status_code == 400


@pytest.mark.asyncio
async def test_agent_task_queue_over_http(tmp_path):
    app = _app(tmp_path)
    async with _client(app) as client:
        first = await client.post("/v1/tasks", json={"description": "first"})
        second = await client.post("/v1/tasks", json={"description": "second"})
        assert first.status_code == 201
        assert first.json()["task"]["sequence"] == 1
        assert second.json()["task"]["sequence"] == 2

        await app.state.dispatcher.wait_idle()

        everything = await client.get("/v1/tasks", params={"status": "all"})
        tasks = everything.json()["tasks"]
        assert [t["status"] for t in tasks] == ["completed", "completed"]
        assert tasks[0]["result_summary"] == "Done"

        active = await client.get("/v1/tasks")
        assert active.json()["tasks"] == []


@pytest.mark.asyncio
async def test_manual_completion_and_failure(tmp_path):
    never = asyncio.Event()

    async def _stuck_backend(*, prompt: str, options):
        _ = prompt
        _ = options
        await never.wait()
        yield AssistantMessage(content=[TextBlock(text="unreachable")], model="claude-test")

    app = create_app(settings=Settings(data_dir=tmp_path, agent_cwd="/tmp"), backend=_stuck_backend)
    manager = app.state.task_manager
    await app.state.store.insert_agent_task("handled by a human")
    await app.state.store.insert_agent_task("also handled by a human")
    await manager.initialize()
    current = manager.get_current_task_id()

    async with _client(app) as client:
        in_progress = await client.get("/v1/tasks", params={"status": "in_progress"})
        assert [t["id"] for t in in_progress.json()["tasks"]] == [current]

        no_reason = await client.post(f"/v1/tasks/{current}/fail", json={})
        assert no_reason.status_code == 400

        failed = await client.post(f"/v1/tasks/{current}/fail", json={"reason": "gave up"})
        assert failed.status_code == 200

        tasks = (await client.get("/v1/tasks", params={"status": "all"})).json()["tasks"]
        assert tasks[0]["status"] == "failed"
        assert tasks[0]["fail_reason"] == "gave up"
        assert tasks[1]["status"] == "in_progress"

        done = await client.post(f"/v1/tasks/{tasks[1]['id']}/complete", json={"result_summary": "by hand"})
        assert done.status_code == 200

        pending = await client.get("/v1/tasks", params={"status": "pending"})
        assert pending.json()["tasks"] == []

    assert manager.get_current_task_id() is None
    for runner in list(app.state.dispatcher._running):
        runner.cancel()


@pytest.mark.asyncio
async def test_add_task_requires_description(tmp_path):
    app = _app(tmp_path)
    async with _client(app) as client:
        empty = await client.post("/v1/tasks", json={"description": "  "})
        assert empty.status_code == 400
        wrong_type = await client.post("/v1/tasks", json={"description": 42})
        assert wrong_type.status_code == 400
