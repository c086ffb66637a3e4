"""Pagewright: dependency-aware workflow engine for content generation pipelines."""

from .contracts import (
    CreateTaskParams,
    RunStatus,
    TaskResult,
    TaskStatus,
    WorkflowRun,
    WorkflowTask,
)
from .dispatch import TaskDispatcher
from .health import HealthMonitor
from .limiter import BatchExecutor, RateLimiter, RateLimiterConfig
from .persistence import get_repository
from .registry import HandlerRegistry
from .service import WorkflowService
from .state import WorkflowStateMachine

__version__ = "0.1.0"
__all__ = [
    "CreateTaskParams",
    "RunStatus",
    "TaskResult",
    "TaskStatus",
    "WorkflowRun",
    "WorkflowTask",
    "TaskDispatcher",
    "HealthMonitor",
    "BatchExecutor",
    "RateLimiter",
    "RateLimiterConfig",
    "get_repository",
    "HandlerRegistry",
    "WorkflowService",
    "WorkflowStateMachine",
]
