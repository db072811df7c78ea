from __future__ import annotations

import asyncio
import random

import pytest

from pricewatch.errors import ExtractionFailure, FetchFailure, PoolAcquireTimeout, ValidationError, is_retryable
from pricewatch.retry import retry, wait_backoff_jitter


class Flaky:
    def __init__(self, failures: list[BaseException], result: str = "ok") -> None:
        self.failures = list(failures)
        self.result = result
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return self.result


def _run(op, timer, **kwargs):
    return asyncio.run(retry(op, sleep=timer.sleep, rng=random.Random(3), **kwargs))


def test_recovers_after_transient_failures(timer) -> None:
    op = Flaky([FetchFailure(), FetchFailure()])
    assert _run(op, timer, retries=3, min_delay_ms=1200, max_delay_ms=2500) == "ok"
    assert op.calls == 3
    assert len(timer.sleeps) == 2
    assert all(1.2 <= delay <= 2.5 for delay in timer.sleeps)


def test_total_attempts_is_retries_plus_one(timer) -> None:
    op = Flaky([FetchFailure() for _ in range(10)])
    with pytest.raises(FetchFailure):
        _run(op, timer, retries=3)
    assert op.calls == 4
    assert len(timer.sleeps) == 3


def test_terminal_error_is_not_retried(timer) -> None:
    op = Flaky([ExtractionFailure("no price")])
    with pytest.raises(ExtractionFailure):
        _run(op, timer, retries=3, should_retry=is_retryable)
    assert op.calls == 1
    assert timer.sleeps == []


def test_default_predicate_retries_everything(timer) -> None:
    op = Flaky([ValueError("odd"), KeyError("odder")])
    assert _run(op, timer, retries=2) == "ok"
    assert op.calls == 3


def test_zero_retries_means_single_attempt(timer) -> None:
    op = Flaky([PoolAcquireTimeout()])
    with pytest.raises(PoolAcquireTimeout):
        _run(op, timer, retries=0)
    assert op.calls == 1


def test_cancellation_is_never_retried(timer) -> None:
    op = Flaky([asyncio.CancelledError()])
    with pytest.raises(asyncio.CancelledError):
        _run(op, timer, retries=3)
    assert op.calls == 1


def test_backoff_doubles_until_capped() -> None:
    wait = wait_backoff_jitter(1.0, 5.0, random.Random(1))
    assert [wait.base(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]


@pytest.mark.parametrize(
    ("exc", "expected"),
    [
        (FetchFailure(), True),
        (PoolAcquireTimeout(), True),
        (ExtractionFailure(), False),
        (ValidationError(), False),
        (asyncio.TimeoutError(), True),
        (RuntimeError("boom"), False),
    ],
)
def test_is_retryable_classification(exc, expected) -> None:
    assert is_retryable(exc) is expected


def test_lambda_returning_awaitable_is_awaited_and_retried(timer) -> None:
    op = Flaky([FetchFailure(), FetchFailure()], result="fetched")
    assert _run(lambda: op(), timer, retries=3) == "fetched"
    assert op.calls == 3
    assert len(timer.sleeps) == 2


def test_to_thread_callable_is_awaited(timer) -> None:
    calls = []

    def blocking() -> int:
        calls.append(1)
        if len(calls) == 1:
            raise FetchFailure("first attempt")
        return 42

    assert _run(lambda: asyncio.to_thread(blocking), timer, retries=2) == 42
    assert len(calls) == 2
