"""Repository abstraction for run and task persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Mapping, Optional, Protocol

from ..constants import Stage
from ..contracts import RunStatus, TaskStatus, WorkflowRun, WorkflowTask


class WorkflowRepository(Protocol):
    """Protocol for run/task persistence backends.

    ``update_run`` and ``update_task`` are compare-and-set operations when
    ``expected_status`` is given: the write happens only if the stored status
    still equals it, otherwise nothing is written and ``None`` is returned.
    ``update_task`` additionally accepts ``expected_started_at``, which must
    equal the stored ``started_at`` for the write to happen. Together with
    ``expected_status`` it pins a write to one particular claim of a task.
    ``updated_at`` is stamped by the backend on every successful update.
    """

    async def create_run(self, run: WorkflowRun) -> WorkflowRun:
        """Persist a new run."""

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        """Retrieve a run by id."""

    async def list_runs(
        self, owner: Optional[str] = None, status: Optional[RunStatus] = None
    ) -> list[WorkflowRun]:
        """Return runs, optionally filtered, oldest first."""

    async def update_run(
        self,
        run_id: str,
        changes: Mapping[str, Any],
        expected_status: Optional[RunStatus] = None,
    ) -> WorkflowRun | None:
        """Apply ``changes`` to a run and return the updated record."""

    async def create_task(self, task: WorkflowTask) -> WorkflowTask:
        """Persist a new task."""

    async def get_task(self, task_id: str) -> WorkflowTask | None:
        """Retrieve a task by id."""

    async def get_tasks(self, task_ids: Iterable[str]) -> list[WorkflowTask]:
        """Retrieve the tasks that exist among ``task_ids``."""

    async def list_tasks(
        self,
        run_id: Optional[str] = None,
        task_type: Optional[Stage] = None,
        status: Optional[TaskStatus] = None,
    ) -> list[WorkflowTask]:
        """Return tasks, optionally filtered, in creation order."""

    async def update_task(
        self,
        task_id: str,
        changes: Mapping[str, Any],
        expected_status: Optional[TaskStatus] = None,
        expected_started_at: Optional[datetime] = None,
    ) -> WorkflowTask | None:
        """Apply ``changes`` to a task and return the updated record."""
