"""Task dispatcher: selects eligible tasks, claims them and runs their handlers."""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Any, Dict, List, Mapping, Optional

import pydantic
from pydantic import BaseModel, Field

from .cancellation import CancellationToken
from .config import DispatcherConfig
from .contracts import (
    CreateTaskParams,
    RunErrorEntry,
    RunStatus,
    TaskResult,
    TaskStatus,
    WorkflowTask,
    utcnow,
)
from .errors import (
    DependencyError,
    DispatchError,
    InvalidTransitionError,
    PagewrightError,
    RunNotFoundError,
    TaskCancelledError,
    TaskNotFoundError,
    TerminalExternalError,
    ValidationError,
)
from .payloads import parse_task_input
from .persistence.repository import WorkflowRepository
from .registry import HandlerRegistry
from .utils.retry import compute_backoff

logger = logging.getLogger(__name__)


class TaskOutcome(BaseModel):
    task_id: str
    run_id: str
    status: TaskStatus
    error: Optional[str] = None


class CycleReport(BaseModel):
    """Summary of one dispatch cycle."""

    claimed: int = 0
    succeeded: int = 0
    requeued: int = 0
    failed: int = 0
    blocked: int = 0
    cancelled: int = 0
    lost_claims: int = 0
    outcomes: List[TaskOutcome] = Field(default_factory=list)

    @property
    def run_ids(self) -> List[str]:
        return list(dict.fromkeys(o.run_id for o in self.outcomes))


class TaskDispatcher:
    """Dependency-aware dispatcher over a :class:`WorkflowRepository`.

    Each call to :meth:`run_cycle` selects queued tasks of running runs whose
    dependencies are all ``done``, claims up to ``max_concurrent_tasks`` of
    them with a compare-and-set on their status, and awaits their handlers
    concurrently.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        registry: HandlerRegistry,
        config: DispatcherConfig | None = None,
    ) -> None:
        self.repository = repository
        self.registry = registry
        self.config = config or DispatcherConfig()
        self._inflight: Dict[str, Dict[str, CancellationToken]] = {}

    # ------------------------------------------------------------------
    # Creation
    async def create_task(self, params: CreateTaskParams | Mapping[str, Any]) -> str:
        """Validate and insert a ``queued`` task. Returns its id.

        Raises:
            ValidationError: malformed parameters or an input the task type
                does not accept.
            DependencyError: a ``depends_on`` id does not name a task of the
                same run.
            RunNotFoundError: the run does not exist.
        """
        if not isinstance(params, CreateTaskParams):
            try:
                params = CreateTaskParams.model_validate(params)
            except pydantic.ValidationError as exc:
                raise ValidationError(f"Invalid task parameters: {exc}") from exc
        if not params.run_id:
            raise ValidationError("run_id is required to create a task")
        parse_task_input(params.task_type, params.input)

        run = await self.repository.get_run(params.run_id)
        if run is None:
            raise RunNotFoundError(params.run_id)
        if run.status in (RunStatus.CANCELLED, RunStatus.COMPLETED):
            raise InvalidTransitionError("run", run.status.value, "add tasks to")

        depends_on = list(dict.fromkeys(params.depends_on))
        found = await self.repository.get_tasks(depends_on)
        known = {t.id for t in found if t.run_id == params.run_id}
        missing = [dep for dep in depends_on if dep not in known]
        if missing:
            raise DependencyError(missing)

        task = WorkflowTask(
            run_id=params.run_id,
            task_type=params.task_type,
            target_entity=params.target_entity,
            input=dict(params.input),
            depends_on=depends_on,
            priority=params.priority,
            max_retries=(
                params.max_retries
                if params.max_retries is not None
                else self.config.max_retries
            ),
        )
        await self.repository.create_task(task)
        logger.info(
            f"Created task {task.id} ({task.task_type.value}) for run {task.run_id}"
        )
        return task.id

    # ------------------------------------------------------------------
    # Selection
    async def select_eligible(
        self, run_id: Optional[str] = None, limit: Optional[int] = None
    ) -> List[WorkflowTask]:
        """Queued tasks of running runs whose dependencies are all ``done``,
        highest priority first, then oldest first."""
        if run_id is not None:
            run = await self.repository.get_run(run_id)
            runs = [run] if run is not None and run.status == RunStatus.RUNNING else []
        else:
            runs = await self.repository.list_runs(status=RunStatus.RUNNING)

        queued: List[WorkflowTask] = []
        for run in runs:
            queued.extend(
                await self.repository.list_tasks(run_id=run.id, status=TaskStatus.QUEUED)
            )
        if not queued:
            return []

        dep_ids = {dep for task in queued for dep in task.depends_on}
        dep_status = {t.id: t.status for t in await self.repository.get_tasks(dep_ids)}
        now = utcnow()

        eligible = [
            task
            for task in queued
            if all(dep_status.get(dep) == TaskStatus.DONE for dep in task.depends_on)
            and (task.available_at is None or task.available_at <= now)
        ]
        eligible.sort(key=lambda t: (-t.priority, t.created_at))
        return eligible[:limit] if limit is not None else eligible

    # ------------------------------------------------------------------
    # Dispatch cycle
    async def run_cycle(self, run_id: Optional[str] = None) -> CycleReport:
        report = CycleReport()
        claimed: List[WorkflowTask] = []
        for task in await self.select_eligible(run_id):
            if len(claimed) >= self.config.max_concurrent_tasks:
                break
            running = await self.repository.update_task(
                task.id,
                {"status": TaskStatus.RUNNING, "started_at": utcnow()},
                expected_status=TaskStatus.QUEUED,
            )
            if running is None:
                report.lost_claims += 1
                logger.debug(f"Task {task.id} already claimed elsewhere")
                continue
            logger.info(
                f"Claimed task {running.id} ({running.task_type.value}) "
                f"attempt {running.attempt_count + 1}"
            )
            claimed.append(running)

        report.claimed = len(claimed)
        outcomes = await asyncio.gather(*(self._execute(task) for task in claimed))
        for outcome in outcomes:
            report.outcomes.append(outcome)
            if outcome.status == TaskStatus.DONE:
                report.succeeded += 1
            elif outcome.status == TaskStatus.QUEUED:
                report.requeued += 1
            elif outcome.status == TaskStatus.FAILED:
                report.failed += 1
            elif outcome.status == TaskStatus.BLOCKED_USER:
                report.blocked += 1
            elif outcome.status == TaskStatus.CANCELLED:
                report.cancelled += 1
        return report

    async def _execute(self, task: WorkflowTask) -> TaskOutcome:
        token = CancellationToken()
        self._inflight.setdefault(task.run_id, {})[task.id] = token
        try:
            handler = self.registry.get(task.task_type)
            if handler is None:
                error = DispatchError(
                    task.id, f"No handler registered for task type: {task.task_type.value}"
                )
                return await self._settle_failure(task, str(error), retryable=False)

            try:
                result = await handler.execute(task, token)
            except TaskCancelledError as exc:
                return await self._settle_cancelled(task, str(exc))
            except TerminalExternalError as exc:
                return await self._settle_failure(task, str(exc), retryable=False)
            except Exception as exc:
                logger.exception(f"Handler for task {task.id} raised")
                message = str(DispatchError(task.id, str(exc) or type(exc).__name__))
                return await self._settle_failure(task, message, retryable=True)

            if not isinstance(result, TaskResult):
                result = TaskResult.model_validate(result)
            if result.success:
                return await self._settle_success(task, result)
            if result.needs_input:
                return await self._settle_blocked(task, result.error or "Waiting for input")
            return await self._settle_failure(
                task, result.error or "Unknown error", retryable=True
            )
        finally:
            run_tokens = self._inflight.get(task.run_id, {})
            run_tokens.pop(task.id, None)
            if not run_tokens:
                self._inflight.pop(task.run_id, None)

    # ------------------------------------------------------------------
    # Settlement primitives
    async def _write_settlement(
        self,
        task: WorkflowTask,
        changes: Dict[str, Any],
        expected_status: TaskStatus = TaskStatus.RUNNING,
    ) -> Optional[WorkflowTask]:
        """Write a settlement only while the task still holds the claim
        ``task`` was read under.

        A claim is identified by its ``started_at``. Once a stale task has
        been requeued and claimed again, a late result of the earlier claim
        no longer matches and is dropped.
        """
        return await self.repository.update_task(
            task.id,
            changes,
            expected_status=expected_status,
            expected_started_at=task.started_at,
        )

    async def _settle_success(
        self,
        task: WorkflowTask,
        result: TaskResult,
        expected_status: TaskStatus = TaskStatus.RUNNING,
    ) -> TaskOutcome:
        updated = await self._write_settlement(
            task,
            {
                "status": TaskStatus.DONE,
                "output": result.output or {},
                "last_error": None,
                "completed_at": utcnow(),
                "available_at": None,
            },
            expected_status=expected_status,
        )
        if updated is None:
            logger.warning(f"Task {task.id} changed status while running; result discarded")
            return TaskOutcome(task_id=task.id, run_id=task.run_id, status=task.status)

        logger.info(f"Task {task.id} ({task.task_type.value}) completed")
        await self._create_follow_ons(updated, result)
        return TaskOutcome(task_id=task.id, run_id=task.run_id, status=TaskStatus.DONE)

    async def _create_follow_ons(self, task: WorkflowTask, result: TaskResult) -> None:
        if not result.next_tasks:
            return
        run = await self.repository.get_run(task.run_id)
        if run is None or run.status == RunStatus.CANCELLED:
            logger.info(
                f"Run {task.run_id} cancelled; skipping {len(result.next_tasks)} follow-on tasks"
            )
            return
        for params in result.next_tasks:
            if params.run_id is None:
                params = params.model_copy(update={"run_id": task.run_id})
            try:
                await self.create_task(params)
            except PagewrightError as exc:
                logger.error(f"Follow-on task from {task.id} rejected: {exc}")
                await self._log_run_error(task, f"Follow-on task rejected: {exc}")

    async def _settle_failure(
        self,
        task: WorkflowTask,
        message: str,
        retryable: bool,
        expected_status: TaskStatus = TaskStatus.RUNNING,
    ) -> TaskOutcome:
        attempts = task.attempt_count + 1
        now = utcnow()
        if retryable and attempts <= task.max_retries:
            available_at = None
            if self.config.retry_base_delay > 0:
                delay = compute_backoff(
                    attempts - 1,
                    base_delay=self.config.retry_base_delay,
                    max_delay=self.config.retry_max_delay,
                    jitter=0,
                )
                available_at = now + timedelta(seconds=delay)
            changes: Dict[str, Any] = {
                "status": TaskStatus.QUEUED,
                "attempt_count": attempts,
                "last_error": message,
                "started_at": None,
                "available_at": available_at,
            }
            status = TaskStatus.QUEUED
        else:
            changes = {
                "status": TaskStatus.FAILED,
                "attempt_count": attempts,
                "last_error": message,
                "completed_at": now,
            }
            status = TaskStatus.FAILED

        updated = await self._write_settlement(task, changes, expected_status)
        if updated is None:
            logger.warning(f"Task {task.id} changed status while running; failure discarded")
            return TaskOutcome(task_id=task.id, run_id=task.run_id, status=task.status)

        if status == TaskStatus.QUEUED:
            logger.warning(
                f"Task {task.id} failed (attempt {attempts}/{task.max_retries + 1}), "
                f"will retry: {message}"
            )
        else:
            logger.error(f"Task {task.id} failed permanently: {message}")
            await self._log_run_error(task, message)
        return TaskOutcome(task_id=task.id, run_id=task.run_id, status=status, error=message)

    async def _settle_blocked(self, task: WorkflowTask, reason: str) -> TaskOutcome:
        updated = await self._write_settlement(
            task,
            {"status": TaskStatus.BLOCKED_USER, "last_error": reason, "started_at": None},
        )
        if updated is None:
            return TaskOutcome(task_id=task.id, run_id=task.run_id, status=task.status)
        logger.info(f"Task {task.id} waiting for user input: {reason}")
        return TaskOutcome(
            task_id=task.id, run_id=task.run_id, status=TaskStatus.BLOCKED_USER, error=reason
        )

    async def _settle_cancelled(self, task: WorkflowTask, reason: str) -> TaskOutcome:
        updated = await self._write_settlement(
            task,
            {"status": TaskStatus.CANCELLED, "last_error": reason, "completed_at": utcnow()},
        )
        if updated is None:
            return TaskOutcome(task_id=task.id, run_id=task.run_id, status=task.status)
        logger.info(f"Task {task.id} stopped by cancellation: {reason}")
        return TaskOutcome(
            task_id=task.id, run_id=task.run_id, status=TaskStatus.CANCELLED, error=reason
        )

    async def _log_run_error(self, task: WorkflowTask, message: str) -> None:
        run = await self.repository.get_run(task.run_id)
        if run is None:
            return
        entry = RunErrorEntry(
            stage=task.task_type.value, task=task.target_entity or task.id, error=message
        )
        await self.repository.update_run(run.id, {"error_log": [*run.error_log, entry]})

    # ------------------------------------------------------------------
    # Administrative primitives
    async def _require_task(self, task_id: str) -> WorkflowTask:
        task = await self.repository.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    async def complete_task(
        self,
        task_id: str,
        output: Optional[Dict[str, Any]] = None,
        next_tasks: Optional[List[CreateTaskParams]] = None,
    ) -> WorkflowTask:
        """Mark a task ``done`` by hand, creating any follow-on tasks."""
        task = await self._require_task(task_id)
        if task.status in (TaskStatus.DONE, TaskStatus.CANCELLED):
            raise InvalidTransitionError("task", task.status.value, "complete")
        outcome = await self._settle_success(
            task, TaskResult.ok(output, next_tasks), expected_status=task.status
        )
        if outcome.status != TaskStatus.DONE:
            raise InvalidTransitionError("task", outcome.status.value, "complete")
        return await self._require_task(task_id)

    async def fail_task(self, task_id: str, error: str, retry: bool = True) -> WorkflowTask:
        """Record a failure by hand with the normal attempt/retry policy."""
        task = await self._require_task(task_id)
        if task.status not in (
            TaskStatus.QUEUED,
            TaskStatus.RUNNING,
            TaskStatus.BLOCKED_USER,
        ):
            raise InvalidTransitionError("task", task.status.value, "fail")
        await self._settle_failure(task, error, retryable=retry, expected_status=task.status)
        return await self._require_task(task_id)

    async def unblock_task(
        self, task_id: str, supplied_input: Optional[Mapping[str, Any]] = None
    ) -> WorkflowTask:
        """Merge ``supplied_input`` into the task input and requeue it.

        The merged input must still be accepted by the task type, otherwise
        :class:`ValidationError` is raised and the task stays blocked.
        """
        if supplied_input is not None and not isinstance(supplied_input, Mapping):
            raise ValidationError("Supplied input must be an object")
        task = await self._require_task(task_id)
        if task.status != TaskStatus.BLOCKED_USER:
            raise InvalidTransitionError("task", task.status.value, "unblock")
        merged = {**task.input, **dict(supplied_input or {})}
        parse_task_input(task.task_type, merged)
        updated = await self.repository.update_task(
            task_id,
            {
                "status": TaskStatus.QUEUED,
                "input": merged,
                "last_error": None,
                "available_at": None,
            },
            expected_status=TaskStatus.BLOCKED_USER,
        )
        if updated is None:
            raise InvalidTransitionError("task", "changed", "unblock")
        logger.info(f"Unblocked task {task_id}")
        return updated

    async def retry_task(self, task_id: str) -> WorkflowTask:
        """Requeue a ``failed`` task with a fresh attempt budget."""
        task = await self._require_task(task_id)
        if task.status != TaskStatus.FAILED:
            raise InvalidTransitionError("task", task.status.value, "retry")
        updated = await self.repository.update_task(
            task_id,
            {
                "status": TaskStatus.QUEUED,
                "attempt_count": 0,
                "last_error": None,
                "output": None,
                "started_at": None,
                "completed_at": None,
                "available_at": None,
            },
            expected_status=TaskStatus.FAILED,
        )
        if updated is None:
            raise InvalidTransitionError("task", "changed", "retry")
        logger.info(f"Task {task_id} requeued for retry")
        return updated

    async def fail_stale_task(self, task: WorkflowTask, message: str) -> TaskOutcome:
        """Treat a stale ``running`` task as a failed attempt."""
        return await self._settle_failure(task, message, retryable=True)

    def is_inflight(self, task_id: str) -> bool:
        """Whether a handler of this dispatcher is currently executing ``task_id``."""
        return any(task_id in tokens for tokens in self._inflight.values())

    def cancel_inflight(self, run_id: str, reason: str = "Workflow cancelled") -> int:
        """Signal the cancellation token of every in-flight task of a run."""
        tokens = list(self._inflight.get(run_id, {}).values())
        for token in tokens:
            token.cancel(reason)
        return len(tokens)
