"""Tests for the rate limiter and batch executor."""

import asyncio

import pytest

from pagewright.errors import RetryableExternalError, TerminalExternalError
from pagewright.limiter import BatchExecutor, RateLimiter, RateLimiterConfig
from pagewright.utils.retry import compute_backoff, is_retryable_error


@pytest.mark.asyncio
async def test_burst_of_three_then_spaced_admissions():
    limiter = RateLimiter(max_concurrent=3, requests_per_second=2, burst=3)
    loop = asyncio.get_running_loop()
    started = loop.time()
    starts = []

    async def op():
        starts.append(loop.time() - started)
        return len(starts)

    results = await asyncio.gather(*(limiter.execute(op) for _ in range(5)))

    assert sorted(results) == [1, 2, 3, 4, 5]
    assert all(t < 0.1 for t in starts[:3])
    assert starts[3] >= 0.45
    assert starts[4] - starts[3] >= 0.45


@pytest.mark.asyncio
async def test_consecutive_admissions_are_spaced():
    limiter = RateLimiter(max_concurrent=5, requests_per_second=10)
    loop = asyncio.get_running_loop()
    starts = []

    async def op():
        starts.append(loop.time())

    await limiter.execute_all([op, op, op, op])

    gaps = [b - a for a, b in zip(starts, starts[1:])]
    assert len(gaps) == 3
    assert all(gap >= 0.09 for gap in gaps)


@pytest.mark.asyncio
async def test_never_exceeds_max_concurrent():
    limiter = RateLimiter(max_concurrent=2, requests_per_second=1000, burst=10)
    active = 0
    peak = 0

    async def op():
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.02)
        active -= 1

    await asyncio.gather(*(limiter.execute(op) for _ in range(6)))
    assert peak == 2


@pytest.mark.asyncio
async def test_rate_limit_errors_retry_then_fail_with_original_text():
    limiter = RateLimiter(
        requests_per_second=1000,
        max_retries=3,
        base_delay=0.01,
        max_delay=1.0,
        jitter=0,
    )
    loop = asyncio.get_running_loop()
    calls = []

    async def op():
        calls.append(loop.time())
        raise RuntimeError("HTTP 429: rate limited")

    with pytest.raises(TerminalExternalError) as exc_info:
        await limiter.execute(op)

    assert str(exc_info.value) == "HTTP 429: rate limited"
    assert exc_info.value.retries == 3
    assert isinstance(exc_info.value.__cause__, RuntimeError)
    assert len(calls) == 4
    gaps = [b - a for a, b in zip(calls, calls[1:])]
    assert gaps[0] >= 0.009
    assert gaps[1] >= 0.019
    assert gaps[2] >= 0.039


@pytest.mark.asyncio
async def test_transient_failure_recovers():
    limiter = RateLimiter(requests_per_second=1000, base_delay=0.01, jitter=0)
    attempts = 0

    async def op():
        nonlocal attempts
        attempts += 1
        if attempts < 3:
            raise ConnectionError("ECONNRESET")
        return "ok"

    assert await limiter.execute(op) == "ok"
    assert attempts == 3


@pytest.mark.asyncio
async def test_non_retryable_error_fails_immediately():
    limiter = RateLimiter(requests_per_second=1000, base_delay=0.01, jitter=0)
    attempts = 0

    async def op():
        nonlocal attempts
        attempts += 1
        raise ValueError("content policy violation")

    with pytest.raises(TerminalExternalError, match="content policy violation"):
        await limiter.execute(op)
    assert attempts == 1


@pytest.mark.asyncio
async def test_execute_all_settled_reports_each_outcome():
    limiter = RateLimiter(requests_per_second=1000, burst=5)

    async def good():
        return 1

    async def bad():
        raise ValueError("nope")

    settled = await limiter.execute_all_settled([good, bad, good])
    assert [s.ok for s in settled] == [True, False, True]
    assert settled[0].value == 1
    assert isinstance(settled[1].error, TerminalExternalError)


@pytest.mark.asyncio
async def test_clear_rejects_pending_work():
    limiter = RateLimiter(max_concurrent=1, requests_per_second=1000, burst=5)
    gate = asyncio.Event()

    async def slow():
        await gate.wait()
        return "first"

    async def fast():
        return "never"

    first = asyncio.create_task(limiter.execute(slow))
    others = [asyncio.create_task(limiter.execute(fast)) for _ in range(2)]
    await asyncio.sleep(0.01)

    stats = limiter.stats()
    assert stats.active == 1
    assert stats.queued == 2
    assert limiter.clear() == 2

    gate.set()
    assert await first == "first"
    for task in others:
        with pytest.raises(TerminalExternalError, match="cleared"):
            await task


@pytest.mark.asyncio
async def test_batch_executor_collects_results_errors_and_progress():
    progress = []
    executor = BatchExecutor(
        config=RateLimiterConfig(requests_per_second=1000, burst=10),
        on_progress=lambda done, total, label: progress.append((done, total, label)),
    )

    async def work(item, index):
        if item == "broken":
            raise ValueError("bad item")
        return item.upper()

    batch = await executor.execute_batch(
        ["a", "broken", "c"], work, get_label=lambda item: f"item {item}"
    )

    assert batch.results == ["A", "C"]
    assert len(batch.errors) == 1
    assert batch.errors[0].index == 1
    assert "bad item" in str(batch.errors[0].error)
    assert [p[0] for p in progress] == [1, 2, 3]
    assert all(p[1] == 3 for p in progress)
    assert {p[2] for p in progress} == {"item a", "item broken", "item c"}


def test_backoff_is_non_decreasing_and_capped():
    delays = [compute_backoff(n, base_delay=1.0, max_delay=30.0, jitter=0) for n in range(8)]
    assert delays[:5] == [1.0, 2.0, 4.0, 8.0, 16.0]
    assert all(b >= a for a, b in zip(delays, delays[1:]))
    assert max(delays) == 30.0


def test_backoff_jitter_stays_within_bounds():
    for _ in range(50):
        delay = compute_backoff(1, base_delay=1.0, max_delay=30.0, jitter=1.0)
        assert 2.0 <= delay <= 3.0


@pytest.mark.parametrize(
    "error, expected",
    [
        (RuntimeError("Request failed with status 429"), True),
        (RuntimeError("Rate limit exceeded"), True),
        (TimeoutError("read timed out"), True),
        (ConnectionError("ECONNREFUSED 127.0.0.1:443"), True),
        (RuntimeError("socket hang up"), True),
        (RuntimeError("502 Bad Gateway"), True),
        (RuntimeError("Service Unavailable"), True),
        (RetryableExternalError("anything"), True),
        (ValueError("invalid prompt"), False),
        (RuntimeError("401 Unauthorized"), False),
        (TerminalExternalError("429 after retries"), False),
    ],
)
def test_is_retryable_error(error, expected):
    assert is_retryable_error(error) is expected


def test_config_is_immutable():
    config = RateLimiterConfig()
    with pytest.raises(Exception):
        config.max_concurrent = 10
    assert config.min_interval == 0.5
