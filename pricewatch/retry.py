"""Bounded exponential backoff with jitter around an async operation."""

from __future__ import annotations

import asyncio
import random
from typing import Any, Awaitable, Callable, TypeVar

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt
from tenacity.wait import wait_base

from pricewatch.logging_config import get_logger


LOGGER = get_logger(__name__)

T = TypeVar("T")

DEFAULT_RETRIES = 3
DEFAULT_MIN_DELAY_MS = 1200
DEFAULT_MAX_DELAY_MS = 2500
JITTER_RATIO = 0.3


class wait_backoff_jitter(wait_base):
    """``min(min_delay * 2**(n-1), max_delay)`` plus up to 30% jitter, capped at ``max_delay``."""

    def __init__(self, min_delay: float, max_delay: float, rng: random.Random | None = None) -> None:
        self.min_delay = min_delay
        self.max_delay = max(max_delay, min_delay)
        self.rng = rng or random.Random()

    def base(self, attempt_number: int) -> float:
        return min(self.min_delay * 2 ** (attempt_number - 1), self.max_delay)

    def __call__(self, retry_state: RetryCallState) -> float:
        base = self.base(retry_state.attempt_number)
        jitter = self.rng.uniform(0, JITTER_RATIO * base)
        return min(base + jitter, self.max_delay)


def _always(_exc: BaseException) -> bool:
    return True


def _log_before_sleep(label: str) -> Callable[[RetryCallState], None]:
    def _log(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        LOGGER.warning(
            "Retrying %s | attempt=%d | delay_ms=%.0f | error=%s",
            label or "operation",
            retry_state.attempt_number,
            delay * 1000,
            exc,
        )

    return _log


async def retry(
    op: Callable[[], Awaitable[T]],
    *,
    retries: int = DEFAULT_RETRIES,
    min_delay_ms: float = DEFAULT_MIN_DELAY_MS,
    max_delay_ms: float = DEFAULT_MAX_DELAY_MS,
    should_retry: Callable[[BaseException], bool] | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    rng: random.Random | None = None,
    label: str = "",
) -> T:
    """Run *op* up to ``retries + 1`` times; terminal errors are raised immediately."""

    predicate = should_retry or _always

    def _retryable(exc: BaseException) -> bool:
        # Cancellation and interpreter exits always propagate.
        return isinstance(exc, Exception) and predicate(exc)

    async def _attempt() -> T:
        # tenacity only awaits coroutine functions; op may be a lambda returning an awaitable.
        return await op()

    retrying = AsyncRetrying(
        stop=stop_after_attempt(max(retries, 0) + 1),
        wait=wait_backoff_jitter(min_delay_ms / 1000.0, max_delay_ms / 1000.0, rng),
        retry=retry_if_exception(_retryable),
        sleep=sleep,
        reraise=True,
        before_sleep=_log_before_sleep(label),
    )
    return await retrying(_attempt)


__all__ = ["retry", "wait_backoff_jitter"]
