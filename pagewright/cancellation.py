"""Cooperative cancellation for long-running handlers."""

from __future__ import annotations

import asyncio
from typing import Optional

from .errors import TaskCancelledError


class CancellationToken:
    """Flag a handler polls between external calls.

    Cancelling never interrupts an in-flight call; handlers check the token at
    their own suspension points.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise TaskCancelledError(self.reason or "cancelled")

    async def wait(self) -> None:
        await self._event.wait()
