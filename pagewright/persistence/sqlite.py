"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Type, TypeVar

from pydantic import BaseModel

from ..constants import Stage
from ..contracts import RunStatus, TaskStatus, WorkflowRun, WorkflowTask, utcnow
from .repository import WorkflowRepository

ModelT = TypeVar("ModelT", bound=BaseModel)

_RUN_JSON_FIELDS = ("error_log",)
_TASK_JSON_FIELDS = ("input", "output", "depends_on")


def _to_row(model: BaseModel, json_fields: tuple[str, ...]) -> dict[str, Any]:
    data = model.model_dump(mode="json")
    for name in json_fields:
        if data[name] is not None:
            data[name] = json.dumps(data[name])
    return data


def _from_row(cls: Type[ModelT], row: sqlite3.Row, json_fields: tuple[str, ...]) -> ModelT:
    data = dict(row)
    for name in json_fields:
        if data[name] is not None:
            data[name] = json.loads(data[name])
    return cls.model_validate(data)


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist runs and tasks using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_runs (
                id TEXT PRIMARY KEY,
                owner TEXT NOT NULL,
                workflow_type TEXT NOT NULL,
                current_stage TEXT NOT NULL,
                status TEXT NOT NULL,
                proposal_id TEXT,
                pause_reason TEXT,
                error_log TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                started_at TEXT,
                paused_at TEXT,
                completed_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_tasks (
                id TEXT PRIMARY KEY,
                run_id TEXT NOT NULL REFERENCES workflow_runs(id),
                task_type TEXT NOT NULL,
                target_entity TEXT,
                input TEXT,
                output TEXT,
                status TEXT NOT NULL,
                depends_on TEXT,
                attempt_count INTEGER NOT NULL DEFAULT 0,
                max_retries INTEGER NOT NULL,
                last_error TEXT,
                priority INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                started_at TEXT,
                completed_at TEXT,
                available_at TEXT
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_workflow_tasks_run_status "
            "ON workflow_tasks (run_id, status)"
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _insert(self, table: str, row: dict[str, Any]) -> None:
        columns = ", ".join(row)
        placeholders = ", ".join("?" for _ in row)
        with self._lock:
            self._conn.execute(
                f"INSERT INTO {table} ({columns}) VALUES ({placeholders})",
                tuple(row.values()),
            )
            self._conn.commit()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    def _compare_and_set(
        self,
        table: str,
        cls: Type[ModelT],
        json_fields: tuple[str, ...],
        record_id: str,
        changes: Mapping[str, Any],
        expected_status: Optional[str],
        expected_started_at: Optional[datetime] = None,
    ) -> ModelT | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(f"SELECT * FROM {table} WHERE id = ?", (record_id,))
            row = cur.fetchone()
            if row is None:
                return None
            current = _from_row(cls, row, json_fields)
            if expected_status is not None and row["status"] != expected_status:
                return None
            if expected_started_at is not None and (
                getattr(current, "started_at", None) != expected_started_at
            ):
                return None
            updated = current.model_copy(update={**changes, "updated_at": utcnow()})
            data = _to_row(updated, json_fields)
            data.pop("id")
            assignments = ", ".join(f"{name} = ?" for name in data)
            where = "id = ? AND status = ?"
            params = [record_id, row["status"]]
            if expected_started_at is not None:
                where += " AND started_at IS ?"
                params.append(row["started_at"])
            cur.execute(
                f"UPDATE {table} SET {assignments} WHERE {where}",
                (*data.values(), *params),
            )
            self._conn.commit()
            if cur.rowcount != 1:
                return None
            return updated

    # ------------------------------------------------------------------
    # Repository API
    async def create_run(self, run: WorkflowRun) -> WorkflowRun:
        await asyncio.to_thread(
            self._insert, "workflow_runs", _to_row(run, _RUN_JSON_FIELDS)
        )
        return run

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        rows = await asyncio.to_thread(
            self._fetchall, "SELECT * FROM workflow_runs WHERE id = ?", run_id
        )
        return _from_row(WorkflowRun, rows[0], _RUN_JSON_FIELDS) if rows else None

    async def list_runs(
        self, owner: Optional[str] = None, status: Optional[RunStatus] = None
    ) -> list[WorkflowRun]:
        clauses, params = [], []
        if owner is not None:
            clauses.append("owner = ?")
            params.append(owner)
        if status is not None:
            clauses.append("status = ?")
            params.append(RunStatus(status).value)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT * FROM workflow_runs{where} ORDER BY rowid",
            *params,
        )
        return [_from_row(WorkflowRun, r, _RUN_JSON_FIELDS) for r in rows]

    async def update_run(
        self,
        run_id: str,
        changes: Mapping[str, Any],
        expected_status: Optional[RunStatus] = None,
    ) -> WorkflowRun | None:
        return await asyncio.to_thread(
            self._compare_and_set,
            "workflow_runs",
            WorkflowRun,
            _RUN_JSON_FIELDS,
            run_id,
            changes,
            RunStatus(expected_status).value if expected_status else None,
        )

    async def create_task(self, task: WorkflowTask) -> WorkflowTask:
        await asyncio.to_thread(
            self._insert, "workflow_tasks", _to_row(task, _TASK_JSON_FIELDS)
        )
        return task

    async def get_task(self, task_id: str) -> WorkflowTask | None:
        rows = await asyncio.to_thread(
            self._fetchall, "SELECT * FROM workflow_tasks WHERE id = ?", task_id
        )
        return _from_row(WorkflowTask, rows[0], _TASK_JSON_FIELDS) if rows else None

    async def get_tasks(self, task_ids: Iterable[str]) -> list[WorkflowTask]:
        ids = list(task_ids)
        if not ids:
            return []
        placeholders = ", ".join("?" for _ in ids)
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT * FROM workflow_tasks WHERE id IN ({placeholders}) ORDER BY rowid",
            *ids,
        )
        return [_from_row(WorkflowTask, r, _TASK_JSON_FIELDS) for r in rows]

    async def list_tasks(
        self,
        run_id: Optional[str] = None,
        task_type: Optional[Stage] = None,
        status: Optional[TaskStatus] = None,
    ) -> list[WorkflowTask]:
        clauses, params = [], []
        if run_id is not None:
            clauses.append("run_id = ?")
            params.append(run_id)
        if task_type is not None:
            clauses.append("task_type = ?")
            params.append(Stage(task_type).value)
        if status is not None:
            clauses.append("status = ?")
            params.append(TaskStatus(status).value)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT * FROM workflow_tasks{where} ORDER BY rowid",
            *params,
        )
        return [_from_row(WorkflowTask, r, _TASK_JSON_FIELDS) for r in rows]

    async def update_task(
        self,
        task_id: str,
        changes: Mapping[str, Any],
        expected_status: Optional[TaskStatus] = None,
        expected_started_at: Optional[datetime] = None,
    ) -> WorkflowTask | None:
        return await asyncio.to_thread(
            self._compare_and_set,
            "workflow_tasks",
            WorkflowTask,
            _TASK_JSON_FIELDS,
            task_id,
            changes,
            TaskStatus(expected_status).value if expected_status else None,
            expected_started_at,
        )

    def close(self) -> None:
        self._conn.close()
