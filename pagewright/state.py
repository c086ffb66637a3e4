"""Run-level lifecycle: start, pause, resume, cancel, automatic completion."""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set

from .constants import (
    ROOT_TASK_PRIORITY,
    ROOT_TASK_TARGET,
    STAGE_LABELS,
    STAGE_ORDER,
    TERMINAL_STAGE,
    Stage,
    WorkflowType,
    stage_index,
)
from .contracts import (
    ACTIVE_TASK_STATUSES,
    RunErrorEntry,
    RunProgress,
    RunStatus,
    StageProgress,
    TaskStatus,
    WorkflowRun,
    WorkflowTask,
    utcnow,
)
from .dispatch import TaskDispatcher
from .errors import InvalidTransitionError, RunNotFoundError
from .payloads import parse_task_input
from .persistence.repository import WorkflowRepository

logger = logging.getLogger(__name__)


def dead_task_ids(tasks: Iterable[WorkflowTask]) -> Set[str]:
    """Ids of active tasks that can never run.

    A task is dead when any task it (transitively) depends on is ``failed``
    or ``cancelled``, or is missing.
    """
    by_id = {t.id: t for t in tasks}
    memo: Dict[str, bool] = {}

    def is_dead(task_id: str, seen: Set[str]) -> bool:
        if task_id in memo:
            return memo[task_id]
        task = by_id.get(task_id)
        if task is None or task.status in (TaskStatus.FAILED, TaskStatus.CANCELLED):
            memo[task_id] = True
            return True
        if task_id in seen:
            return False
        seen.add(task_id)
        result = any(is_dead(dep, seen) for dep in task.depends_on)
        memo[task_id] = result
        return result

    return {
        t.id
        for t in by_id.values()
        if t.status in ACTIVE_TASK_STATUSES
        and any(is_dead(dep, set()) for dep in t.depends_on)
    }


def live_tasks(tasks: List[WorkflowTask]) -> List[WorkflowTask]:
    """Active tasks that can still make progress."""
    dead = dead_task_ids(tasks)
    return [t for t in tasks if t.status in ACTIVE_TASK_STATUSES and t.id not in dead]


def terminal_stage_complete(tasks: Iterable[WorkflowTask]) -> bool:
    terminal = [t for t in tasks if t.task_type == TERMINAL_STAGE]
    return bool(terminal) and all(t.status == TaskStatus.DONE for t in terminal)


def has_blocking_failure(tasks: List[WorkflowTask]) -> bool:
    """``True`` when a failed task stands between the run and completion.

    That is the case once nothing live remains while the terminal stage is
    unfinished, or when a failure has already stranded a dependent task.
    """
    if not any(t.status == TaskStatus.FAILED for t in tasks):
        return False
    if terminal_stage_complete(tasks):
        return False
    return not live_tasks(tasks) or bool(dead_task_ids(tasks))


class WorkflowStateMachine:
    """Run lifecycle over the repository.

    ``pause`` only suppresses new dispatch; ``cancel`` cancels every queued
    and blocked task and signals in-flight handlers through their
    cancellation tokens.
    """

    def __init__(self, repository: WorkflowRepository, dispatcher: TaskDispatcher) -> None:
        self.repository = repository
        self.dispatcher = dispatcher

    async def _require_run(self, run_id: str) -> WorkflowRun:
        run = await self.repository.get_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    async def _transition(
        self, run: WorkflowRun, action: str, changes: Mapping[str, Any]
    ) -> WorkflowRun:
        updated = await self.repository.update_run(
            run.id, changes, expected_status=run.status
        )
        if updated is None:
            current = await self._require_run(run.id)
            raise InvalidTransitionError("run", current.status.value, action)
        return updated

    # ------------------------------------------------------------------
    async def start_run(
        self,
        owner: str,
        workflow_type: WorkflowType | str,
        intake: Optional[Mapping[str, Any]] = None,
        proposal_id: Optional[str] = None,
    ) -> WorkflowRun:
        """Create a running run and its root intake task."""
        root_input: Dict[str, Any] = {}
        if intake is not None:
            root_input["questionnaire"] = dict(intake)
        # Reject a malformed questionnaire before anything is written.
        parse_task_input(Stage.INTAKE, root_input)

        now = utcnow()
        run = WorkflowRun(
            owner=owner,
            workflow_type=WorkflowType(workflow_type),
            proposal_id=proposal_id,
            started_at=now,
        )
        await self.repository.create_run(run)
        await self.dispatcher.create_task(
            {
                "run_id": run.id,
                "task_type": Stage.INTAKE,
                "target_entity": ROOT_TASK_TARGET,
                "input": root_input,
                "priority": ROOT_TASK_PRIORITY,
            }
        )
        logger.info(f"Started {run.workflow_type.value} run {run.id} for {owner}")
        return run

    async def pause(self, run_id: str, reason: Optional[str] = None) -> WorkflowRun:
        run = await self._require_run(run_id)
        if run.status != RunStatus.RUNNING:
            raise InvalidTransitionError("run", run.status.value, "pause")
        reason = reason or "Paused by user"
        entry = RunErrorEntry(stage=run.current_stage.value, task="pause", error=reason)
        updated = await self._transition(
            run,
            "pause",
            {
                "status": RunStatus.PAUSED,
                "pause_reason": reason,
                "paused_at": utcnow(),
                "error_log": [*run.error_log, entry],
            },
        )
        logger.info(f"Paused run {run_id}: {reason}")
        return updated

    async def resume(self, run_id: str) -> WorkflowRun:
        run = await self._require_run(run_id)
        if run.status != RunStatus.PAUSED:
            raise InvalidTransitionError("run", run.status.value, "resume")
        updated = await self._transition(
            run,
            "resume",
            {"status": RunStatus.RUNNING, "pause_reason": None, "paused_at": None},
        )
        logger.info(f"Resumed run {run_id}")
        return updated

    async def cancel(self, run_id: str, reason: Optional[str] = None) -> WorkflowRun:
        run = await self._require_run(run_id)
        if run.status.is_terminal:
            raise InvalidTransitionError("run", run.status.value, "cancel")
        reason = reason or "Cancelled by user"
        updated = await self._transition(
            run,
            "cancel",
            {"status": RunStatus.CANCELLED, "pause_reason": reason, "completed_at": utcnow()},
        )

        cancelled = 0
        for task in await self.repository.list_tasks(run_id=run_id):
            if task.status not in (TaskStatus.QUEUED, TaskStatus.BLOCKED_USER):
                continue
            result = await self.repository.update_task(
                task.id,
                {"status": TaskStatus.CANCELLED, "last_error": reason, "completed_at": utcnow()},
                expected_status=task.status,
            )
            if result is not None:
                cancelled += 1
        signalled = self.dispatcher.cancel_inflight(run_id, reason)
        logger.info(
            f"Cancelled run {run_id}: {cancelled} tasks cancelled, "
            f"{signalled} in-flight tasks signalled"
        )
        return updated

    async def reopen(self, run_id: str) -> WorkflowRun:
        """Move a ``failed`` run back to ``running`` after a task retry."""
        run = await self._require_run(run_id)
        if run.status != RunStatus.FAILED:
            raise InvalidTransitionError("run", run.status.value, "reopen")
        updated = await self._transition(
            run, "reopen", {"status": RunStatus.RUNNING, "completed_at": None}
        )
        logger.info(f"Reopened run {run_id}")
        return updated

    # ------------------------------------------------------------------
    async def refresh(self, run_id: str) -> WorkflowRun:
        """Advance the stage pointer and apply automatic completion/failure."""
        run = await self._require_run(run_id)
        tasks = await self.repository.list_tasks(run_id=run_id)
        changes: Dict[str, Any] = {}

        done_indexes = [stage_index(t.task_type) for t in tasks if t.status == TaskStatus.DONE]
        if done_indexes:
            furthest = max(done_indexes)
            if furthest > stage_index(run.current_stage):
                changes["current_stage"] = STAGE_ORDER[furthest]

        if run.status in (RunStatus.RUNNING, RunStatus.PAUSED):
            if terminal_stage_complete(tasks):
                changes.update(status=RunStatus.COMPLETED, completed_at=utcnow())
            elif any(t.status == TaskStatus.FAILED for t in tasks) and not live_tasks(tasks):
                changes.update(status=RunStatus.FAILED, completed_at=utcnow())

        if not changes:
            return run
        updated = await self.repository.update_run(
            run_id, changes, expected_status=run.status
        )
        if updated is None:
            # Status changed underneath us; the next refresh will catch up.
            return await self._require_run(run_id)

        if "current_stage" in changes:
            logger.info(
                f"Run {run_id} advanced to stage {changes['current_stage'].value}"
            )
        if changes.get("status") == RunStatus.COMPLETED:
            logger.info(f"Run {run_id} completed")
        elif changes.get("status") == RunStatus.FAILED:
            logger.error(f"Run {run_id} failed: no remaining path to {TERMINAL_STAGE.value}")
        return updated

    async def progress(self, run_id: str) -> RunProgress:
        run = await self._require_run(run_id)
        tasks = await self.repository.list_tasks(run_id=run_id)

        stages: Dict[str, StageProgress] = {}
        for stage in STAGE_ORDER:
            stage_tasks = [t for t in tasks if t.task_type == stage]
            item = StageProgress(
                total=len(stage_tasks),
                done=sum(t.status == TaskStatus.DONE for t in stage_tasks),
                failed=sum(t.status == TaskStatus.FAILED for t in stage_tasks),
                active=sum(t.status in ACTIVE_TASK_STATUSES for t in stage_tasks),
            )
            if item.total and item.done == item.total:
                item.status = "completed"
            elif item.failed and not item.active:
                item.status = "failed"
            elif item.active or item.done:
                item.status = "running"
            stages[stage.value] = item

        complete = sum(s.status == "completed" for s in stages.values())
        return RunProgress(
            run_id=run.id,
            current_stage=run.current_stage,
            current_stage_label=STAGE_LABELS[run.current_stage],
            stages_complete=complete,
            total_stages=len(STAGE_ORDER),
            overall_percent=round(complete / len(STAGE_ORDER) * 100),
            stages=stages,
        )
