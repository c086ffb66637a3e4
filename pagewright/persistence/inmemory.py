"""In-memory implementation of the workflow repository."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Dict, Iterable, Mapping, Optional

from ..constants import Stage
from ..contracts import RunStatus, TaskStatus, WorkflowRun, WorkflowTask, utcnow
from .repository import WorkflowRepository


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store runs and tasks in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Records are copied on the way in and
    out so callers never share state with the store.
    """

    def __init__(self) -> None:
        self._runs: Dict[str, WorkflowRun] = {}
        self._tasks: Dict[str, WorkflowTask] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    async def create_run(self, run: WorkflowRun) -> WorkflowRun:
        async with self._lock:
            self._runs[run.id] = run.model_copy(deep=True)
        return run.model_copy(deep=True)

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    async def list_runs(
        self, owner: Optional[str] = None, status: Optional[RunStatus] = None
    ) -> list[WorkflowRun]:
        runs = [
            r
            for r in self._runs.values()
            if (owner is None or r.owner == owner)
            and (status is None or r.status == status)
        ]
        runs.sort(key=lambda r: r.created_at)
        return [r.model_copy(deep=True) for r in runs]

    async def update_run(
        self,
        run_id: str,
        changes: Mapping[str, Any],
        expected_status: Optional[RunStatus] = None,
    ) -> WorkflowRun | None:
        async with self._lock:
            run = self._runs.get(run_id)
            if run is None:
                return None
            if expected_status is not None and run.status != expected_status:
                return None
            updated = run.model_copy(update={**changes, "updated_at": utcnow()}, deep=True)
            self._runs[run_id] = updated
        return updated.model_copy(deep=True)

    # ------------------------------------------------------------------
    async def create_task(self, task: WorkflowTask) -> WorkflowTask:
        async with self._lock:
            self._tasks[task.id] = task.model_copy(deep=True)
        return task.model_copy(deep=True)

    async def get_task(self, task_id: str) -> WorkflowTask | None:
        task = self._tasks.get(task_id)
        return task.model_copy(deep=True) if task else None

    async def get_tasks(self, task_ids: Iterable[str]) -> list[WorkflowTask]:
        return [
            self._tasks[tid].model_copy(deep=True)
            for tid in task_ids
            if tid in self._tasks
        ]

    async def list_tasks(
        self,
        run_id: Optional[str] = None,
        task_type: Optional[Stage] = None,
        status: Optional[TaskStatus] = None,
    ) -> list[WorkflowTask]:
        tasks = [
            t
            for t in self._tasks.values()
            if (run_id is None or t.run_id == run_id)
            and (task_type is None or t.task_type == task_type)
            and (status is None or t.status == status)
        ]
        tasks.sort(key=lambda t: t.created_at)
        return [t.model_copy(deep=True) for t in tasks]

    async def update_task(
        self,
        task_id: str,
        changes: Mapping[str, Any],
        expected_status: Optional[TaskStatus] = None,
        expected_started_at: Optional[datetime] = None,
    ) -> WorkflowTask | None:
        async with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                return None
            if expected_status is not None and task.status != expected_status:
                return None
            if expected_started_at is not None and task.started_at != expected_started_at:
                return None
            updated = task.model_copy(update={**changes, "updated_at": utcnow()}, deep=True)
            self._tasks[task_id] = updated
        return updated.model_copy(deep=True)
