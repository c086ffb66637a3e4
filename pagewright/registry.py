"""Explicit mapping from task type to the handler that executes it."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Dict, Iterator, Optional, Protocol, runtime_checkable

from .cancellation import CancellationToken
from .constants import Stage
from .contracts import TaskResult, WorkflowTask
from .errors import HandlerRegistrationError

logger = logging.getLogger(__name__)

HandlerFunc = Callable[[WorkflowTask, CancellationToken], Awaitable[TaskResult]]


@runtime_checkable
class TaskHandler(Protocol):
    """The engine's only extension point."""

    async def execute(
        self, task: WorkflowTask, cancel: CancellationToken
    ) -> TaskResult:
        """Run ``task`` and report the outcome."""


class FunctionHandler:
    """Adapts a plain coroutine function to :class:`TaskHandler`."""

    def __init__(self, func: HandlerFunc) -> None:
        self._func = func
        self.__name__ = getattr(func, "__name__", type(self).__name__)

    async def execute(
        self, task: WorkflowTask, cancel: CancellationToken
    ) -> TaskResult:
        return await self._func(task, cancel)


class HandlerRegistry:
    """Task type to handler map, built once at process start and passed to
    the dispatcher."""

    def __init__(self) -> None:
        self._handlers: Dict[Stage, TaskHandler] = {}

    def register(self, task_type: Stage | str, handler: TaskHandler | HandlerFunc) -> None:
        task_type = Stage(task_type)
        if task_type in self._handlers:
            raise HandlerRegistrationError(
                f"Handler already registered for task type '{task_type.value}'"
            )
        if not isinstance(handler, TaskHandler):
            handler = FunctionHandler(handler)
        self._handlers[task_type] = handler
        logger.debug(f"Registered handler {type(handler).__name__} for {task_type.value}")

    def handler(self, task_type: Stage | str) -> Callable[[HandlerFunc], HandlerFunc]:
        """Decorator form of :meth:`register`."""

        def _decorator(func: HandlerFunc) -> HandlerFunc:
            self.register(task_type, func)
            return func

        return _decorator

    def get(self, task_type: Stage | str) -> Optional[TaskHandler]:
        return self._handlers.get(Stage(task_type))

    def __contains__(self, task_type: object) -> bool:
        try:
            return Stage(task_type) in self._handlers
        except ValueError:
            return False

    def __iter__(self) -> Iterator[Stage]:
        return iter(self._handlers)

    def __len__(self) -> int:
        return len(self._handlers)
