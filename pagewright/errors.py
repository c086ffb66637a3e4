"""Pagewright exception hierarchy."""

from __future__ import annotations


class PagewrightError(Exception):
    """Base exception for all pagewright errors."""


class ValidationError(PagewrightError):
    """Malformed create/unblock input. Nothing was created or mutated."""


class DependencyError(PagewrightError):
    """A referenced dependency task does not exist."""

    def __init__(self, missing: list[str]) -> None:
        self.missing = missing
        super().__init__(f"Unknown dependency task ids: {', '.join(missing)}")


class NotFoundError(PagewrightError):
    """Requested record does not exist (or is not visible to the caller)."""


class RunNotFoundError(NotFoundError):
    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        super().__init__(f"Workflow run {run_id} not found")


class TaskNotFoundError(NotFoundError):
    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"Workflow task {task_id} not found")


class InvalidTransitionError(PagewrightError):
    """Requested status change is not allowed from the current status."""

    def __init__(self, entity: str, current: str, action: str) -> None:
        self.entity = entity
        self.current = current
        self.action = action
        super().__init__(f"Cannot {action} {entity} in status '{current}'")


class HandlerRegistrationError(PagewrightError):
    """A handler is already registered for the task type."""


class DispatchError(PagewrightError):
    """A handler raised an unexpected exception."""

    def __init__(self, task_id: str, message: str) -> None:
        self.task_id = task_id
        super().__init__(message)


class ExternalError(PagewrightError):
    """Failure reported by an external service."""


class RetryableExternalError(ExternalError):
    """Rate-limit, network or 5xx failure worth retrying."""


class TerminalExternalError(ExternalError):
    """External failure that will not succeed on retry.

    ``str()`` of this error is the original failure text so it can be recorded
    verbatim on the task.
    """

    def __init__(self, message: str, retries: int = 0) -> None:
        self.retries = retries
        super().__init__(message)


class StaleTaskError(PagewrightError):
    """Task stayed ``running`` longer than the staleness threshold."""

    def __init__(self, task_id: str, seconds: float) -> None:
        self.task_id = task_id
        self.seconds = seconds
        super().__init__(
            f"Task {task_id} was running for {seconds:.0f}s without an update"
        )


class TaskCancelledError(PagewrightError):
    """Raised by a cancellation token inside a handler."""
