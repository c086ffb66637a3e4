"""Bounded-concurrency, rate-spaced, retrying executor for external calls.

Handlers wrap every call to a hosted model or storage service in
:meth:`BaseRateLimiter.execute`. The dispatcher itself never goes through a
limiter.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import (
    Any,
    Awaitable,
    Callable,
    Deque,
    Generic,
    Iterable,
    List,
    Optional,
    Sequence,
    Set,
    TypeVar,
)

from pydantic import BaseModel, ConfigDict, Field

from .errors import TerminalExternalError
from .utils.retry import compute_backoff, is_retryable_error

logger = logging.getLogger(__name__)

T = TypeVar("T")
ItemT = TypeVar("ItemT")

Operation = Callable[[], Awaitable[T]]
ProgressCallback = Callable[[int, int, Optional[str]], None]


class RateLimiterConfig(BaseModel):
    """Limiter settings. Immutable for the lifetime of a limiter."""

    model_config = ConfigDict(frozen=True)

    max_concurrent: int = Field(default=3, ge=1)
    requests_per_second: float = Field(default=2.0, gt=0)
    max_retries: int = Field(default=3, ge=0)
    base_delay: float = Field(default=1.0, ge=0, description="Seconds")
    max_delay: float = Field(default=30.0, ge=0, description="Seconds")
    jitter: float = Field(default=1.0, ge=0, description="Upper bound, seconds")
    burst: int = Field(
        default=1,
        ge=1,
        description="Admissions allowed back to back before spacing applies",
    )

    @property
    def min_interval(self) -> float:
        return 1.0 / self.requests_per_second


class LimiterStats(BaseModel):
    active: int
    queued: int
    retry_pending: int


@dataclass
class SettledResult(Generic[T]):
    """Outcome of one operation in :meth:`BaseRateLimiter.execute_all_settled`."""

    ok: bool
    value: Optional[T] = None
    error: Optional[BaseException] = None


class BaseRateLimiter(abc.ABC):
    """Interface shared by the process-local limiter and any shared one."""

    @abc.abstractmethod
    async def execute(self, operation: Operation[T]) -> T:
        """Run ``operation`` once admitted; retry transient failures."""
        raise NotImplementedError

    async def execute_all(self, operations: Iterable[Operation[T]]) -> List[T]:
        """All-or-nothing: the first failure propagates."""
        return list(await asyncio.gather(*(self.execute(op) for op in operations)))

    async def execute_all_settled(
        self, operations: Iterable[Operation[T]]
    ) -> List[SettledResult[T]]:
        outcomes = await asyncio.gather(
            *(self.execute(op) for op in operations), return_exceptions=True
        )
        settled: List[SettledResult[T]] = []
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                settled.append(SettledResult(ok=False, error=outcome))
            else:
                settled.append(SettledResult(ok=True, value=outcome))
        return settled

    def stats(self) -> LimiterStats:  # pragma: no cover - optional
        return LimiterStats(active=0, queued=0, retry_pending=0)

    def clear(self) -> int:  # pragma: no cover - optional
        return 0


@dataclass
class _QueueItem:
    operation: Operation[Any]
    future: "asyncio.Future[Any]"
    retries: int = 0


class RateLimiter(BaseRateLimiter):
    """Process-local limiter.

    Admission requires a free concurrency slot and an admission token. Tokens
    refill at ``requests_per_second`` up to ``burst``; with the default burst
    of one, consecutive admissions are at least ``1 / requests_per_second``
    seconds apart. Retried work goes back to the front of the queue.
    """

    def __init__(self, config: RateLimiterConfig | None = None, **overrides: Any) -> None:
        config = config or RateLimiterConfig()
        if overrides:
            config = RateLimiterConfig(**{**config.model_dump(), **overrides})
        self.config = config
        self._queue: Deque[_QueueItem] = deque()
        self._active = 0
        self._tokens = float(config.burst)
        self._last_refill: Optional[float] = None
        self._wakeup = asyncio.Event()
        self._pump_task: Optional[asyncio.Task] = None
        self._inflight: Set[asyncio.Task] = set()
        self._timers: dict[asyncio.Task, _QueueItem] = {}

    # ------------------------------------------------------------------
    async def execute(self, operation: Operation[T]) -> T:
        loop = asyncio.get_running_loop()
        item = _QueueItem(operation=operation, future=loop.create_future())
        self._queue.append(item)
        self._wakeup.set()
        self._ensure_pump()
        return await item.future

    def stats(self) -> LimiterStats:
        return LimiterStats(
            active=self._active,
            queued=len(self._queue),
            retry_pending=len(self._timers),
        )

    def clear(self) -> int:
        """Reject everything not yet admitted. Returns the number rejected."""
        pending = list(self._queue)
        self._queue.clear()
        for timer, item in list(self._timers.items()):
            timer.cancel()
            pending.append(item)
        self._timers.clear()
        for item in pending:
            if not item.future.done():
                item.future.set_exception(
                    TerminalExternalError("Rate limiter queue cleared")
                )
        return len(pending)

    # ------------------------------------------------------------------
    # Admission
    def _ensure_pump(self) -> None:
        if self._pump_task is None and self._queue:
            self._pump_task = asyncio.get_running_loop().create_task(self._pump())

    def _refill(self, now: float) -> None:
        if self._last_refill is not None:
            elapsed = now - self._last_refill
            self._tokens = min(
                float(self.config.burst),
                self._tokens + elapsed * self.config.requests_per_second,
            )
        self._last_refill = now

    async def _pump(self) -> None:
        loop = asyncio.get_running_loop()
        try:
            while self._queue:
                if self._active >= self.config.max_concurrent:
                    self._wakeup.clear()
                    await self._wakeup.wait()
                    continue

                self._refill(loop.time())
                if self._tokens < 1.0 - 1e-9:
                    wait = (1.0 - self._tokens) / self.config.requests_per_second
                    await asyncio.sleep(wait)
                    continue

                item = self._queue.popleft()
                if item.future.done():
                    # caller went away before admission
                    continue
                self._tokens = max(0.0, self._tokens - 1.0)
                self._active += 1
                task = loop.create_task(self._run(item))
                self._inflight.add(task)
                task.add_done_callback(self._inflight.discard)
        finally:
            self._pump_task = None

    async def _run(self, item: _QueueItem) -> None:
        try:
            result = await item.operation()
        except Exception as exc:
            self._handle_failure(item, exc)
        else:
            if not item.future.done():
                item.future.set_result(result)
        finally:
            self._active -= 1
            self._wakeup.set()
            self._ensure_pump()

    # ------------------------------------------------------------------
    # Retry
    def _handle_failure(self, item: _QueueItem, exc: Exception) -> None:
        if is_retryable_error(exc) and item.retries < self.config.max_retries:
            delay = compute_backoff(
                item.retries,
                base_delay=self.config.base_delay,
                max_delay=self.config.max_delay,
                jitter=self.config.jitter,
            )
            item.retries += 1
            logger.warning(
                f"Retrying operation (attempt {item.retries}/{self.config.max_retries}) "
                f"after {delay:.2f}s: {exc}"
            )
            timer = asyncio.get_running_loop().create_task(
                self._requeue_later(item, delay)
            )
            self._timers[timer] = item
            return

        if isinstance(exc, TerminalExternalError):
            error: TerminalExternalError = exc
        else:
            error = TerminalExternalError(str(exc), retries=item.retries)
            error.__cause__ = exc
        if item.retries:
            logger.error(f"Operation failed after {item.retries} retries: {exc}")
        if not item.future.done():
            item.future.set_exception(error)

    async def _requeue_later(self, item: _QueueItem, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
        finally:
            self._timers.pop(asyncio.current_task(), None)
        self._queue.appendleft(item)
        self._wakeup.set()
        self._ensure_pump()


@dataclass
class BatchItemError:
    index: int
    error: BaseException


@dataclass
class BatchResult(Generic[T]):
    """Successful results in item order plus per-index errors."""

    results: List[T] = field(default_factory=list)
    errors: List[BatchItemError] = field(default_factory=list)


class BatchExecutor(Generic[ItemT]):
    """Runs a large item set through one limiter with progress reporting."""

    def __init__(
        self,
        limiter: BaseRateLimiter | None = None,
        config: RateLimiterConfig | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        self._limiter = limiter or RateLimiter(config)
        self._on_progress = on_progress

    @property
    def limiter(self) -> BaseRateLimiter:
        return self._limiter

    async def execute_batch(
        self,
        items: Sequence[ItemT],
        task_factory: Callable[[ItemT, int], Awaitable[T]],
        get_label: Callable[[ItemT], str] | None = None,
    ) -> BatchResult[T]:
        total = len(items)
        completed = 0

        def _operation(item: ItemT, index: int) -> Operation[T]:
            async def _call() -> T:
                return await task_factory(item, index)

            return _call

        async def _tracked(item: ItemT, index: int) -> T:
            nonlocal completed
            try:
                return await self._limiter.execute(_operation(item, index))
            finally:
                completed += 1
                if self._on_progress is not None:
                    label = get_label(item) if get_label else None
                    self._on_progress(completed, total, label)

        outcomes = await asyncio.gather(
            *(_tracked(item, index) for index, item in enumerate(items)),
            return_exceptions=True,
        )

        batch: BatchResult[T] = BatchResult()
        for index, outcome in enumerate(outcomes):
            if isinstance(outcome, BaseException):
                batch.errors.append(BatchItemError(index=index, error=outcome))
            else:
                batch.results.append(outcome)
        return batch

    def stats(self) -> LimiterStats:
        return self._limiter.stats()

    def clear(self) -> int:
        return self._limiter.clear()


__all__ = [
    "RateLimiterConfig",
    "LimiterStats",
    "SettledResult",
    "BaseRateLimiter",
    "RateLimiter",
    "BatchExecutor",
    "BatchResult",
    "BatchItemError",
]
