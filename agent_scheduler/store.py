from __future__ import annotations

import asyncio
import logging
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from agent_scheduler.util import iso_from_ms, new_id, now_ms

logger = logging.getLogger(__name__)

SCHEDULED_TASK_TYPES = ("once", "interval", "recurring", "heartbeat", "runloop")
SCHEDULED_TASK_STATUSES = ("active", "paused", "completed", "error")
CREATED_BY_VALUES = ("user", "agent")

_SCHEDULED_UPDATE_FIELDS = frozenset(
    {
        "description",
        "type",
        "schedule",
        "status",
        "next_run_time",
        "last_run_time",
        "fail_reason",
        "created_by",
    }
)
_AGENT_UPDATE_FIELDS = frozenset({"status", "result_summary", "fail_reason"})


@dataclass(frozen=True)
class AgentTask:
    id: str
    description: str
    status: str
    sequence: int
    created_at: int
    updated_at: int
    result_summary: str | None = None
    fail_reason: str | None = None


@dataclass(frozen=True)
class ScheduledTask:
    id: str
    description: str
    type: str
    schedule: str
    status: str
    next_run_time: int
    created_at: int
    updated_at: int
    created_by: str = "user"
    last_run_time: int | None = None
    fail_reason: str | None = None


def serialize_agent_task(task: AgentTask) -> dict[str, Any]:
    return {
        "id": task.id,
        "description": task.description,
        "status": task.status,
        "sequence": task.sequence,
        "result_summary": task.result_summary,
        "fail_reason": task.fail_reason,
        "created_at": task.created_at,
        "updated_at": task.updated_at,
    }


def serialize_scheduled_task(task: ScheduledTask) -> dict[str, Any]:
    return {
        "id": task.id,
        "description": task.description,
        "type": task.type,
        "schedule": task.schedule,
        "status": task.status,
        "next_run_time": task.next_run_time,
        "next_run_at": iso_from_ms(task.next_run_time),
        "last_run_time": task.last_run_time,
        "last_run_at": iso_from_ms(task.last_run_time),
        "created_by": task.created_by,
        "fail_reason": task.fail_reason,
        "created_at": task.created_at,
        "updated_at": task.updated_at,
    }


class Store:
    """SQLite persistence for the ``agent_tasks`` and ``scheduled_tasks`` tables.

    Every public method is a coroutine; the blocking sqlite work runs in a worker
    thread while an ``asyncio.Lock`` serializes access from the event loop.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS agent_tasks (
                    id TEXT PRIMARY KEY,
                    description TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    sequence INTEGER NOT NULL UNIQUE,
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL,
                    result_summary TEXT,
                    fail_reason TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_agent_tasks_status ON agent_tasks(status);

                CREATE TABLE IF NOT EXISTS scheduled_tasks (
                    id TEXT PRIMARY KEY,
                    description TEXT NOT NULL,
                    type TEXT NOT NULL,
                    schedule TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'active',
                    next_run_time INTEGER NOT NULL,
                    last_run_time INTEGER,
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL,
                    created_by TEXT NOT NULL DEFAULT 'user',
                    fail_reason TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_scheduled_tasks_status ON scheduled_tasks(status);
                CREATE INDEX IF NOT EXISTS idx_scheduled_tasks_next_run ON scheduled_tasks(next_run_time);
                """
            )

    # agent_tasks

    async def insert_agent_task(self, description: str) -> AgentTask:
        async with self._lock:
            return await asyncio.to_thread(self._insert_agent_task_sync, description)

    def _insert_agent_task_sync(self, description: str) -> AgentTask:
        created = now_ms()
        task_id = new_id()
        with self._connect() as conn:
            # MAX()+1 and the insert share one transaction so sequences never collide.
            row = conn.execute("SELECT COALESCE(MAX(sequence), 0) AS last FROM agent_tasks").fetchone()
            sequence = int(row["last"]) + 1
            conn.execute(
                """
                INSERT INTO agent_tasks (id, description, status, sequence, created_at, updated_at)
                VALUES (?, ?, 'pending', ?, ?, ?)
                """,
                (task_id, description, sequence, created, created),
            )
            row = conn.execute("SELECT * FROM agent_tasks WHERE id = ?", (task_id,)).fetchone()
        return self._row_to_agent_task(row)

    async def update_agent_task(self, task_id: str, **fields: Any) -> AgentTask | None:
        unknown = set(fields) - _AGENT_UPDATE_FIELDS
        if unknown:
            raise ValueError(f"Unknown agent task fields: {', '.join(sorted(unknown))}")
        async with self._lock:
            return await asyncio.to_thread(self._update_sync, "agent_tasks", task_id, fields)

    async def list_agent_tasks(
        self,
        *,
        statuses: tuple[str, ...] | None = None,
        limit: int | None = None,
    ) -> list[AgentTask]:
        async with self._lock:
            rows = await asyncio.to_thread(self._list_agent_tasks_sync, statuses, limit)
        return [self._row_to_agent_task(row) for row in rows]

    def _list_agent_tasks_sync(self, statuses: tuple[str, ...] | None, limit: int | None) -> list[sqlite3.Row]:
        query = "SELECT * FROM agent_tasks"
        params: list[Any] = []
        if statuses:
            query += " WHERE status IN (" + ", ".join(["?"] * len(statuses)) + ")"
            params.extend(statuses)
        query += " ORDER BY sequence ASC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        with self._connect() as conn:
            return conn.execute(query, params).fetchall()

    # scheduled_tasks

    async def insert_scheduled_task(self, record: ScheduledTask) -> ScheduledTask:
        async with self._lock:
            return await asyncio.to_thread(self._insert_scheduled_task_sync, record)

    def _insert_scheduled_task_sync(self, record: ScheduledTask) -> ScheduledTask:
        payload = self._scheduled_task_to_row(record)
        columns = ", ".join(payload.keys())
        placeholders = ", ".join(["?"] * len(payload))
        with self._connect() as conn:
            conn.execute(
                f"INSERT INTO scheduled_tasks ({columns}) VALUES ({placeholders})",
                list(payload.values()),
            )
            row = conn.execute("SELECT * FROM scheduled_tasks WHERE id = ?", (record.id,)).fetchone()
        return self._row_to_scheduled_task(row)

    async def update_scheduled_task(self, task_id: str, **fields: Any) -> ScheduledTask | None:
        unknown = set(fields) - _SCHEDULED_UPDATE_FIELDS
        if unknown:
            raise ValueError(f"Unknown scheduled task fields: {', '.join(sorted(unknown))}")
        async with self._lock:
            row = await asyncio.to_thread(self._update_sync, "scheduled_tasks", task_id, fields)
        return row

    async def get_scheduled_task(self, task_id: str) -> ScheduledTask | None:
        async with self._lock:
            row = await asyncio.to_thread(self._get_sync, "scheduled_tasks", task_id)
        return self._row_to_scheduled_task(row) if row is not None else None

    async def delete_scheduled_task(self, task_id: str) -> None:
        async with self._lock:
            await asyncio.to_thread(self._delete_scheduled_task_sync, task_id)

    def _delete_scheduled_task_sync(self, task_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM scheduled_tasks WHERE id = ?", (task_id,))

    async def list_scheduled_tasks(self, *, status: str | None = None) -> list[ScheduledTask]:
        where = ""
        params: list[Any] = []
        if status:
            where = "status = ?"
            params.append(status)
        return await self._select_scheduled(where, params)

    async def list_armable_scheduled_tasks(self, now: int) -> list[ScheduledTask]:
        """Active tasks that deserve an in-memory timer at startup."""
        where = (
            "status = 'active' AND ("
            "type IN ('recurring', 'interval', 'runloop') "
            "OR (type = 'once' AND next_run_time >= ?))"
        )
        return await self._select_scheduled(where, [now])

    async def list_due_scheduled_tasks(self, now: int) -> list[ScheduledTask]:
        return await self._select_scheduled("status = 'active' AND next_run_time <= ?", [now])

    async def _select_scheduled(self, where: str, params: list[Any]) -> list[ScheduledTask]:
        query = "SELECT * FROM scheduled_tasks"
        if where:
            query += " WHERE " + where
        query += " ORDER BY next_run_time ASC, created_at ASC"
        async with self._lock:
            rows = await asyncio.to_thread(self._fetch_all_sync, query, params)
        return [self._row_to_scheduled_task(row) for row in rows]

    # shared helpers

    def _fetch_all_sync(self, query: str, params: list[Any]) -> list[sqlite3.Row]:
        with self._connect() as conn:
            return conn.execute(query, params).fetchall()

    def _get_sync(self, table: str, task_id: str) -> sqlite3.Row | None:
        with self._connect() as conn:
            return conn.execute(f"SELECT * FROM {table} WHERE id = ?", (task_id,)).fetchone()

    def _update_sync(self, table: str, task_id: str, fields: dict[str, Any]) -> Any:
        values = dict(fields)
        values["updated_at"] = now_ms()
        assignments = ", ".join([f"{key} = ?" for key in values.keys()])
        params = list(values.values())
        params.append(task_id)
        with self._connect() as conn:
            cursor = conn.execute(f"UPDATE {table} SET {assignments} WHERE id = ?", params)
            if cursor.rowcount == 0:
                logger.warning("No %s row %s to update", table, task_id)
                return None
            row = conn.execute(f"SELECT * FROM {table} WHERE id = ?", (task_id,)).fetchone()
        if table == "agent_tasks":
            return self._row_to_agent_task(row)
        return self._row_to_scheduled_task(row)

    def _row_to_agent_task(self, row: sqlite3.Row) -> AgentTask:
        return AgentTask(
            id=row["id"],
            description=row["description"],
            status=row["status"],
            sequence=row["sequence"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            result_summary=row["result_summary"],
            fail_reason=row["fail_reason"],
        )

    def _row_to_scheduled_task(self, row: sqlite3.Row) -> ScheduledTask:
        return ScheduledTask(
            id=row["id"],
            description=row["description"],
            type=row["type"],
            schedule=row["schedule"],
            status=row["status"],
            next_run_time=row["next_run_time"] or 0,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            created_by=row["created_by"] or "user",
            last_run_time=row["last_run_time"],
            fail_reason=row["fail_reason"],
        )

    def _scheduled_task_to_row(self, record: ScheduledTask) -> dict[str, Any]:
        return {
            "id": record.id,
            "description": record.description,
            "type": record.type,
            "schedule": record.schedule,
            "status": record.status,
            "next_run_time": record.next_run_time,
            "last_run_time": record.last_run_time,
            "created_at": record.created_at,
            "updated_at": record.updated_at,
            "created_by": record.created_by,
            "fail_reason": record.fail_reason,
        }
