"""Core records and messages exchanged between the engine and handlers."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .constants import DEFAULT_TASK_MAX_RETRIES, Stage, WorkflowType


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class RunStatus(str, Enum):
    RUNNING = "running"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.CANCELLED, RunStatus.COMPLETED, RunStatus.FAILED)


class TaskStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    BLOCKED_USER = "blocked_user"
    FAILED = "failed"
    DONE = "done"
    CANCELLED = "cancelled"


# Tasks in these states may still make progress.
ACTIVE_TASK_STATUSES = frozenset(
    {TaskStatus.QUEUED, TaskStatus.RUNNING, TaskStatus.BLOCKED_USER}
)


class RunErrorEntry(BaseModel):
    """Entry in a run's error log."""

    stage: str
    task: str
    error: str
    timestamp: datetime = Field(default_factory=utcnow)


class WorkflowRun(BaseModel):
    """One execution of the pipeline for a single subject."""

    id: str = Field(default_factory=new_id)
    owner: str
    workflow_type: WorkflowType
    current_stage: Stage = Stage.INTAKE
    status: RunStatus = RunStatus.RUNNING
    proposal_id: Optional[str] = None
    pause_reason: Optional[str] = None
    error_log: List[RunErrorEntry] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class WorkflowTask(BaseModel):
    """Atomic, independently schedulable unit of work within a run."""

    id: str = Field(default_factory=new_id)
    run_id: str
    task_type: Stage
    target_entity: Optional[str] = None
    input: Dict[str, Any] = Field(default_factory=dict)
    output: Optional[Dict[str, Any]] = None
    status: TaskStatus = TaskStatus.QUEUED
    depends_on: List[str] = Field(default_factory=list)
    attempt_count: int = 0
    max_retries: int = DEFAULT_TASK_MAX_RETRIES
    last_error: Optional[str] = None
    priority: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    available_at: Optional[datetime] = None

    @property
    def retries_exhausted(self) -> bool:
        """``True`` once another failure may no longer be requeued."""
        return self.attempt_count > self.max_retries


class CreateTaskParams(BaseModel):
    """Request to create a task.

    ``run_id`` may be left empty in a handler's ``next_tasks``; the
    dispatcher fills in the run of the completing task.
    """

    run_id: Optional[str] = None
    task_type: Stage
    target_entity: Optional[str] = None
    input: Dict[str, Any] = Field(default_factory=dict)
    depends_on: List[str] = Field(default_factory=list)
    priority: int = 0
    max_retries: Optional[int] = Field(default=None, ge=0)


class TaskResult(BaseModel):
    """Outcome returned by a task handler."""

    success: bool
    output: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    next_tasks: List[CreateTaskParams] = Field(default_factory=list)
    needs_input: bool = False

    @classmethod
    def ok(
        cls,
        output: Optional[Dict[str, Any]] = None,
        next_tasks: Optional[List[CreateTaskParams]] = None,
    ) -> "TaskResult":
        return cls(success=True, output=output or {}, next_tasks=next_tasks or [])

    @classmethod
    def fail(cls, error: str) -> "TaskResult":
        return cls(success=False, error=error)

    @classmethod
    def blocked(cls, reason: str) -> "TaskResult":
        """Signal that the task needs externally supplied input."""
        return cls(success=False, error=reason, needs_input=True)


class StageProgress(BaseModel):
    total: int = 0
    done: int = 0
    failed: int = 0
    active: int = 0
    status: str = "pending"


class RunProgress(BaseModel):
    """Advisory progress snapshot for a run."""

    run_id: str
    current_stage: Stage
    current_stage_label: str
    stages_complete: int
    total_stages: int
    overall_percent: int
    stages: Dict[str, StageProgress] = Field(default_factory=dict)
