"""One monitoring cycle: pull due targets, fetch, record, detect, reschedule."""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Protocol

from pricewatch.change_detector import ChangeDetector, ChangeEvent
from pricewatch.errors import CircuitBreakerTripped, FetchFailure, NotFound, PricewatchError, Shutdown, is_retryable
from pricewatch.fetcher import ScrapedProduct
from pricewatch.logging_config import get_logger
from pricewatch.rate_limiter import RateLimiter
from pricewatch.retry import retry
from pricewatch.storage.store import Store, TrackedTarget, UpsertOutcome


LOGGER = get_logger(__name__)

DEFAULT_BATCH_LIMIT = 100
DEFAULT_MAX_CONSECUTIVE_FAILURES = 5
DEFAULT_RATE_LIMIT_TIMEOUT_S = 120.0


class SupportsFetch(Protocol):
    async def fetch(self, url: str) -> ScrapedProduct: ...


@dataclass
class CycleResult:
    total: int = 0
    successful: int = 0
    failed: int = 0
    tripped: bool = False
    stopped: bool = False
    events: list[ChangeEvent] = field(default_factory=list)
    duration_s: float = 0.0
    error: PricewatchError | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "successful": self.successful,
            "failed": self.failed,
            "tripped": self.tripped,
            "stopped": self.stopped,
            "changes": sum(1 for event in self.events if event.significant),
            "duration_s": round(self.duration_s, 2),
            "error": str(self.error) if self.error else None,
        }


class CircuitBreaker:
    """Counts consecutive failures within a cycle; any success resets it."""

    def __init__(self, threshold: int = DEFAULT_MAX_CONSECUTIVE_FAILURES) -> None:
        if threshold < 1:
            raise ValueError("threshold must be at least 1")
        self.threshold = threshold
        self.consecutive_failures = 0

    @property
    def tripped(self) -> bool:
        return self.consecutive_failures >= self.threshold

    def record_success(self) -> None:
        self.consecutive_failures = 0

    def record_failure(self) -> bool:
        self.consecutive_failures += 1
        return self.tripped


class Scheduler:
    """Drives due targets through rate limiter, fetcher, store and change detector."""

    def __init__(
        self,
        store: Store,
        fetcher: SupportsFetch,
        rate_limiter: RateLimiter,
        detector: ChangeDetector | None = None,
        *,
        retries: int = 3,
        min_delay_ms: int = 1200,
        max_delay_ms: int = 2500,
        rate_limit_timeout_s: float = DEFAULT_RATE_LIMIT_TIMEOUT_S,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.store = store
        self.fetcher = fetcher
        self.rate_limiter = rate_limiter
        self.detector = detector
        self.retries = retries
        self.min_delay_ms = min_delay_ms
        self.max_delay_ms = max(max_delay_ms, min_delay_ms)
        self.rate_limit_timeout_s = rate_limit_timeout_s
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._stop_requested = False
        self.last_result: CycleResult | None = None

    def request_stop(self) -> None:
        """Finish the in-flight target, then dispatch nothing further."""

        self._stop_requested = True

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    async def run_cycle(
        self,
        limit: int = DEFAULT_BATCH_LIMIT,
        max_consecutive_failures: int = DEFAULT_MAX_CONSECUTIVE_FAILURES,
    ) -> CycleResult:
        started = time.monotonic()
        targets = await asyncio.to_thread(self.store.due_targets, limit)
        result = CycleResult(total=len(targets))
        breaker = CircuitBreaker(max_consecutive_failures)
        LOGGER.info("Cycle start | due=%d | limit=%d", len(targets), limit)

        for index, target in enumerate(targets):
            if index > 0 and not self._stop_requested:
                await self._pace()
            if self._stop_requested:
                result.stopped = True
                result.error = Shutdown(
                    f"Stop requested; {len(targets) - index} due targets left for a later cycle"
                )
                LOGGER.info("%s", result.error)
                break

            ok, event = await self.process_target(target)
            if ok:
                result.successful += 1
                breaker.record_success()
                if event is not None:
                    result.events.append(event)
                continue

            result.failed += 1
            if breaker.record_failure():
                result.tripped = True
                result.error = CircuitBreakerTripped(
                    f"{breaker.consecutive_failures} consecutive failures; "
                    f"{len(targets) - index - 1} targets skipped",
                    url=target.url,
                    target_id=target.id,
                )
                LOGGER.error("Circuit breaker tripped | %s", result.error)
                break

        result.duration_s = time.monotonic() - started
        self.last_result = result
        LOGGER.info(
            "Cycle complete | total=%d | successful=%d | failed=%d | tripped=%s | duration_s=%.1f",
            result.total,
            result.successful,
            result.failed,
            result.tripped,
            result.duration_s,
        )
        return result

    async def process_target(self, target: TrackedTarget) -> tuple[bool, ChangeEvent | None]:
        """Run one target to a DONE state; the schedule advances exactly once."""

        url = target.url or ""
        try:
            await self._wait_for_slot(target)
            scraped = await retry(
                lambda: self._fetch(url),
                retries=self.retries,
                min_delay_ms=self.min_delay_ms,
                max_delay_ms=self.max_delay_ms,
                should_retry=is_retryable,
                sleep=self._sleep,
                rng=self._rng,
                label=f"fetch target={target.id}",
            )
            outcome = await retry(
                lambda: self._record(url, scraped),
                retries=self.retries,
                min_delay_ms=self.min_delay_ms,
                max_delay_ms=self.max_delay_ms,
                should_retry=is_retryable,
                sleep=self._sleep,
                rng=self._rng,
                label=f"store target={target.id}",
            )
        except asyncio.CancelledError:
            LOGGER.info("Target cancelled; schedule left unchanged | target=%s", target.id)
            raise
        except Exception as exc:
            LOGGER.warning("Target failed | target=%s | url=%s | error=%s", target.id, url, exc)
            await self._complete(target, success=False)
            return False, None

        event = None
        if outcome.inserted and self.detector is not None:
            event = await self._detect(outcome)
        await self._complete(target, success=True)
        return True, event

    async def _wait_for_slot(self, target: TrackedTarget) -> None:
        try:
            await asyncio.wait_for(self.rate_limiter.wait(target.url or ""), self.rate_limit_timeout_s)
        except TimeoutError as exc:
            raise FetchFailure(
                "Rate limiter wait exceeded timeout", url=target.url, target_id=target.id
            ) from exc

    async def _fetch(self, url: str) -> ScrapedProduct:
        try:
            scraped = await self.fetcher.fetch(url)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.rate_limiter.report_error(url, exc)
            raise
        self.rate_limiter.report_success(url)
        return scraped

    async def _record(self, url: str, scraped: ScrapedProduct) -> UpsertOutcome:
        return await asyncio.to_thread(
            self.store.record_observation,
            url,
            scraped.site,
            scraped.title,
            scraped.price,
            scraped.currency,
        )

    async def _detect(self, outcome: UpsertOutcome) -> ChangeEvent | None:
        try:
            return await asyncio.to_thread(self.detector.detect, outcome.product_id)
        except Exception:
            LOGGER.exception("Change detection failed | product=%s", outcome.product_id)
            return None

    async def _complete(self, target: TrackedTarget, *, success: bool) -> None:
        try:
            await retry(
                lambda: asyncio.to_thread(self.store.complete, target.id, success),
                retries=self.retries,
                min_delay_ms=self.min_delay_ms,
                max_delay_ms=self.max_delay_ms,
                should_retry=is_retryable,
                sleep=self._sleep,
                rng=self._rng,
                label=f"complete target={target.id}",
            )
        except NotFound:
            LOGGER.warning("Target vanished before completion | target=%s", target.id)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.error("Unable to advance schedule | target=%s | error=%s", target.id, exc)

    async def _pace(self) -> None:
        delay_ms = self._rng.uniform(self.min_delay_ms, self.max_delay_ms)
        await self._sleep(delay_ms / 1000.0)
