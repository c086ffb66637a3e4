from __future__ import annotations

import random
import re

from ..errors import RetryableExternalError, TerminalExternalError

_RETRYABLE_PATTERNS = [
    # rate limiting
    r"\b429\b",
    r"rate.?limit",
    r"too many requests",
    # transient network conditions
    r"time(?:d)?\s?out",
    r"network",
    r"econnreset",
    r"connection.?reset",
    r"econnrefused",
    r"connection.?refused",
    r"hang.?up",
    # server side
    r"\b50[0234]\b",
    r"bad gateway",
    r"service unavailable",
    r"internal server error",
]
_RETRYABLE_RE = re.compile("|".join(_RETRYABLE_PATTERNS), re.IGNORECASE)


def compute_backoff(
    retry_count: int,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    jitter: float = 1.0,
) -> float:
    """Exponential backoff with additive jitter, capped at ``max_delay``."""
    delay = base_delay * (2 ** retry_count) + random.uniform(0, jitter)
    return min(delay, max_delay)


def is_retryable_error(error: BaseException) -> bool:
    """Classify ``error`` from its description.

    Rate-limit signals, transient network conditions and 5xx responses are
    retryable; everything else is terminal.
    """
    if isinstance(error, RetryableExternalError):
        return True
    if isinstance(error, TerminalExternalError):
        return False
    description = f"{type(error).__name__}: {error}"
    return bool(_RETRYABLE_RE.search(description))
