"""Stale task detection, run health classification and stale recovery."""

from __future__ import annotations

import logging
from datetime import timedelta
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from .config import HealthConfig
from .contracts import RunStatus, TaskStatus, WorkflowTask, utcnow
from .dispatch import TaskDispatcher
from .errors import RunNotFoundError, StaleTaskError
from .persistence.repository import WorkflowRepository
from .state import has_blocking_failure

logger = logging.getLogger(__name__)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


class HealthReport(BaseModel):
    run_id: str
    status: HealthStatus
    issues: List[str] = Field(default_factory=list)
    stale_count: int = 0
    failed_count: int = 0
    blocked_count: int = 0
    blocking_failure: bool = False


class RecoveryResult(BaseModel):
    recovered: List[str] = Field(default_factory=list)
    failed: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)


class HealthMonitor:
    def __init__(
        self,
        repository: WorkflowRepository,
        dispatcher: TaskDispatcher,
        config: HealthConfig | None = None,
    ) -> None:
        self.repository = repository
        self.dispatcher = dispatcher
        self.config = config or HealthConfig()

    def is_stale(self, task: WorkflowTask) -> bool:
        if task.status != TaskStatus.RUNNING:
            return False
        threshold = utcnow() - timedelta(seconds=self.config.stale_after_seconds)
        return task.updated_at < threshold

    async def find_stale(self, run_id: Optional[str] = None) -> List[WorkflowTask]:
        running = await self.repository.list_tasks(run_id=run_id, status=TaskStatus.RUNNING)
        return [t for t in running if self.is_stale(t)]

    async def assess(self, run_id: str) -> HealthReport:
        """Classify the health of one run.

        ``critical`` when a failure blocks completion or at least
        ``stale_critical_count`` tasks are stale; ``warning`` for blocked
        tasks, a single stale task or failures with live alternatives;
        ``healthy`` otherwise.
        """
        run = await self.repository.get_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        tasks = await self.repository.list_tasks(run_id=run_id)

        stale = [t for t in tasks if self.is_stale(t)]
        failed = [t for t in tasks if t.status == TaskStatus.FAILED]
        blocked = [t for t in tasks if t.status == TaskStatus.BLOCKED_USER]
        blocking = run.status != RunStatus.CANCELLED and has_blocking_failure(tasks)

        issues: List[str] = []
        for task in stale:
            issues.append(f"Task {task.id} ({task.task_type.value}) is stale")
        for task in failed:
            issues.append(
                f"Task {task.id} ({task.task_type.value}) failed: {task.last_error}"
            )
        for task in blocked:
            issues.append(f"Task {task.id} ({task.task_type.value}) is waiting for input")
        if blocking:
            issues.append("A failed task blocks completion of the run")

        if blocking or len(stale) >= self.config.stale_critical_count:
            status = HealthStatus.CRITICAL
        elif stale or blocked or failed:
            status = HealthStatus.WARNING
        else:
            status = HealthStatus.HEALTHY

        return HealthReport(
            run_id=run_id,
            status=status,
            issues=issues,
            stale_count=len(stale),
            failed_count=len(failed),
            blocked_count=len(blocked),
            blocking_failure=blocking,
        )

    async def recover_stale(self, run_id: Optional[str] = None) -> RecoveryResult:
        """Apply the normal failure policy to every stale task.

        Tasks whose handler is still executing in this process are left
        alone. A task held by another worker is requeued, and that worker's
        late result is discarded because its claim no longer matches.
        """
        result = RecoveryResult()
        for task in await self.find_stale(run_id):
            age = (utcnow() - task.updated_at).total_seconds()
            if self.dispatcher.is_inflight(task.id):
                logger.warning(
                    f"Task {task.id} has been running for {age:.0f}s; handler still active"
                )
                continue
            error = StaleTaskError(task.id, age)
            logger.warning(f"Recovering stale task {task.id}: {error}")
            outcome = await self.dispatcher.fail_stale_task(task, str(error))
            if outcome.status == TaskStatus.QUEUED:
                result.recovered.append(task.id)
            elif outcome.status == TaskStatus.FAILED:
                result.failed.append(task.id)
            else:
                result.errors.append(f"Task {task.id} changed status during recovery")
        return result

