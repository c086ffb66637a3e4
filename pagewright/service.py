"""Owner-scoped administrative surface over the workflow engine."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, Field

from .config import PagewrightConfig
from .constants import Stage, WorkflowType
from .contracts import (
    CreateTaskParams,
    RunProgress,
    RunStatus,
    TaskStatus,
    WorkflowRun,
    WorkflowTask,
)
from .dispatch import CycleReport, TaskDispatcher
from .errors import RunNotFoundError, TaskNotFoundError
from .health import HealthMonitor, HealthReport, RecoveryResult
from .persistence import WorkflowRepository, get_repository
from .registry import HandlerRegistry
from .state import WorkflowStateMachine

logger = logging.getLogger(__name__)


class RunStatusView(BaseModel):
    run: WorkflowRun
    tasks: List[WorkflowTask] = Field(default_factory=list)
    health: HealthReport
    progress: RunProgress


class TickReport(BaseModel):
    recovery: RecoveryResult
    cycle: CycleReport
    runs: List[WorkflowRun] = Field(default_factory=list)


class WorkflowService:
    """Entry point used by the CLI or any HTTP layer.

    Every operation takes the calling ``owner``; runs and tasks that belong to
    someone else are reported as not found.
    """

    def __init__(
        self,
        registry: HandlerRegistry,
        repository: WorkflowRepository | None = None,
        config: PagewrightConfig | None = None,
    ) -> None:
        self.config = config or PagewrightConfig()
        self.repository = repository or get_repository(config=self.config)
        self.dispatcher = TaskDispatcher(self.repository, registry, self.config.dispatcher)
        self.state = WorkflowStateMachine(self.repository, self.dispatcher)
        self.health = HealthMonitor(self.repository, self.dispatcher, self.config.health)

    # ------------------------------------------------------------------
    async def _owned_run(self, owner: str, run_id: str) -> WorkflowRun:
        run = await self.repository.get_run(run_id)
        if run is None or run.owner != owner:
            raise RunNotFoundError(run_id)
        return run

    async def _owned_task(self, owner: str, task_id: str) -> WorkflowTask:
        task = await self.repository.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        run = await self.repository.get_run(task.run_id)
        if run is None or run.owner != owner:
            raise TaskNotFoundError(task_id)
        return task

    # ------------------------------------------------------------------
    async def start_run(
        self,
        owner: str,
        workflow_type: WorkflowType | str,
        intake: Optional[Mapping[str, Any]] = None,
        proposal_id: Optional[str] = None,
    ) -> WorkflowRun:
        return await self.state.start_run(owner, workflow_type, intake, proposal_id)

    async def list_runs(
        self, owner: str, status: Optional[RunStatus] = None
    ) -> List[WorkflowRun]:
        return await self.repository.list_runs(owner=owner, status=status)

    async def get_status(self, owner: str, run_id: str) -> RunStatusView:
        await self._owned_run(owner, run_id)
        run = await self.state.refresh(run_id)
        return RunStatusView(
            run=run,
            tasks=await self.repository.list_tasks(run_id=run_id),
            health=await self.health.assess(run_id),
            progress=await self.state.progress(run_id),
        )

    async def list_tasks(
        self,
        owner: str,
        run_id: str,
        task_type: Optional[Stage] = None,
        status: Optional[TaskStatus] = None,
    ) -> List[WorkflowTask]:
        await self._owned_run(owner, run_id)
        return await self.repository.list_tasks(
            run_id=run_id, task_type=task_type, status=status
        )

    async def get_task(self, owner: str, task_id: str) -> WorkflowTask:
        return await self._owned_task(owner, task_id)

    async def unblock_task(
        self, owner: str, task_id: str, supplied_input: Optional[Mapping[str, Any]] = None
    ) -> WorkflowTask:
        await self._owned_task(owner, task_id)
        return await self.dispatcher.unblock_task(task_id, supplied_input)

    async def retry_task(self, owner: str, task_id: str) -> WorkflowTask:
        """Requeue a failed task, reopening its run if the run had failed."""
        task = await self._owned_task(owner, task_id)
        run = await self._owned_run(owner, task.run_id)
        retried = await self.dispatcher.retry_task(task_id)
        if run.status == RunStatus.FAILED:
            await self.state.reopen(run.id)
        return retried

    async def create_task(
        self, owner: str, params: CreateTaskParams | Mapping[str, Any]
    ) -> WorkflowTask:
        run_id = (
            params.run_id
            if isinstance(params, CreateTaskParams)
            else params.get("run_id")
        )
        if run_id:
            await self._owned_run(owner, run_id)
        task_id = await self.dispatcher.create_task(params)
        return await self._owned_task(owner, task_id)

    async def pause_run(
        self, owner: str, run_id: str, reason: Optional[str] = None
    ) -> WorkflowRun:
        await self._owned_run(owner, run_id)
        return await self.state.pause(run_id, reason)

    async def resume_run(self, owner: str, run_id: str) -> WorkflowRun:
        await self._owned_run(owner, run_id)
        return await self.state.resume(run_id)

    async def cancel_run(
        self, owner: str, run_id: str, reason: Optional[str] = None
    ) -> WorkflowRun:
        await self._owned_run(owner, run_id)
        return await self.state.cancel(run_id, reason)

    # ------------------------------------------------------------------
    async def tick(self, run_id: Optional[str] = None) -> TickReport:
        """Recover stale tasks, run one dispatch cycle and refresh touched runs."""
        recovery = await self.health.recover_stale(run_id)
        cycle = await self.dispatcher.run_cycle(run_id)

        touched: Dict[str, None] = dict.fromkeys(cycle.run_ids)
        if run_id is not None:
            touched[run_id] = None
        for task_id in recovery.recovered + recovery.failed:
            task = await self.repository.get_task(task_id)
            if task is not None:
                touched[task.run_id] = None

        runs = []
        for touched_id in touched:
            runs.append(await self.state.refresh(touched_id))
        if cycle.claimed or recovery.recovered or recovery.failed:
            logger.info(
                f"Tick: {cycle.claimed} claimed, {cycle.succeeded} done, "
                f"{cycle.requeued} requeued, {cycle.failed} failed, "
                f"{len(recovery.recovered)} stale recovered"
            )
        return TickReport(recovery=recovery, cycle=cycle, runs=runs)
