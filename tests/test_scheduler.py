from __future__ import annotations

import asyncio
import random
from dataclasses import replace
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from conftest import FakeTimer
from pricewatch.change_detector import ChangeDetector
from pricewatch.errors import CircuitBreakerTripped, ExtractionFailure, FetchFailure, Shutdown
from pricewatch.fetcher import ScrapedProduct
from pricewatch.rate_limiter import RateLimiter
from pricewatch.scheduler import CircuitBreaker, Scheduler
from pricewatch.storage.models_sql import PriceHistory, Product

URL = "https://example.com/a"


class StubFetcher:
    """Replays scripted results per URL; exceptions are raised, products returned."""

    def __init__(self, script: dict[str, list] | None = None, default=None) -> None:
        self.script = {url: list(results) for url, results in (script or {}).items()}
        self.default = default
        self.calls: list[str] = []
        self.on_fetch = None

    async def fetch(self, url: str) -> ScrapedProduct:
        self.calls.append(url)
        if self.on_fetch is not None:
            self.on_fetch(url)
        queue = self.script.get(url)
        result = queue.pop(0) if queue else self.default
        if isinstance(result, BaseException):
            raise result
        if result is None:
            raise FetchFailure("no scripted result", url=url)
        return result


def _product(price: str, url: str = URL, title: str = "A") -> ScrapedProduct:
    return ScrapedProduct(url=url, site="X", title=title, price=Decimal(price))


def _run(coro, timeout: float = 10.0):
    return asyncio.run(asyncio.wait_for(coro, timeout))


def _count(store, model) -> int:
    with store._session_factory() as session:
        return session.execute(select(func.count()).select_from(model)).scalar_one()


def _scheduler(store, fetcher, **kwargs):
    limiter_timer = FakeTimer()
    limiter = RateLimiter(clock=limiter_timer.monotonic, sleep=limiter_timer.sleep, rng=random.Random(1))
    timer = FakeTimer()
    detector = kwargs.pop("detector", None)
    if detector is None:
        detector = ChangeDetector(store, sinks=[])
    scheduler = Scheduler(
        store,
        fetcher,
        limiter,
        detector,
        sleep=timer.sleep,
        rng=random.Random(7),
        **kwargs,
    )
    return scheduler, timer


def test_first_observation_advances_schedule(store, clock) -> None:
    target = store.add_tracked_target(URL, "X", interval_minutes=60)
    scheduler, _timer = _scheduler(store, StubFetcher(default=_product("10.00")))

    result = _run(scheduler.run_cycle())

    assert result.as_dict()["total"] == 1
    assert result.successful == 1
    assert result.failed == 0
    assert _count(store, Product) == 1
    assert _count(store, PriceHistory) == 1
    product = store.get_product(URL)
    assert store.latest_observation(product.id).price == Decimal("10.00")
    refreshed = store.get_target(target.id)
    assert refreshed.last_checked_at == clock.now
    assert refreshed.next_check_at == clock.now + timedelta(minutes=60)
    assert refreshed.failure_counter == 0
    assert len(result.events) == 1
    assert result.events[0].first is True
    assert result.events[0].significant is False
    assert scheduler.last_result is result
    assert result.as_dict()["error"] is None


def test_same_price_a_minute_later_is_not_duplicated(store, clock) -> None:
    target = store.add_tracked_target(URL, "X", interval_minutes=60)
    scheduler, _timer = _scheduler(store, StubFetcher(default=_product("10.00")))

    first = _run(scheduler.process_target(target))
    clock.advance(minutes=1)
    second = _run(scheduler.process_target(store.get_target(target.id)))

    assert first[0] is True and second[0] is True
    assert second[1] is None
    assert _count(store, PriceHistory) == 1
    assert store.get_product(URL).last_seen_at == clock.now


def test_significant_drop_is_reported(store, clock) -> None:
    store.add_tracked_target(URL, "X", interval_minutes=60)
    fetcher = StubFetcher({URL: [_product("50.00"), _product("42.00")]})
    seen = []
    scheduler, _timer = _scheduler(store, fetcher)
    scheduler.detector.sinks.append(seen.append)

    _run(scheduler.run_cycle())
    clock.advance(minutes=61)
    result = _run(scheduler.run_cycle())

    assert result.successful == 1
    (event,) = result.events
    assert event.absolute_delta == Decimal("-8.00")
    assert event.percent_delta == Decimal("-16.00")
    assert event.direction == "down"
    assert event.significant is True
    assert event.severity == "medium"
    assert seen[-1] is event
    assert result.as_dict()["changes"] == 1


def test_circuit_breaker_leaves_rest_of_batch_untouched(store) -> None:
    urls = [f"https://example.com/p/{index}" for index in range(10)]
    targets = [store.add_tracked_target(url, "X", interval_minutes=60) for url in urls]
    script = {url: [FetchFailure("HTTP 500", status=500, url=url)] * 4 for url in urls[:5]}
    fetcher = StubFetcher(script, default=_product("10.00"))
    scheduler, _timer = _scheduler(store, fetcher)

    result = _run(scheduler.run_cycle(max_consecutive_failures=5))

    assert (result.total, result.successful, result.failed) == (10, 0, 5)
    assert result.tripped is True
    assert isinstance(result.error, CircuitBreakerTripped)
    assert result.as_dict()["error"].startswith("5 consecutive failures; 5 targets skipped")
    for target in targets[:5]:
        refreshed = store.get_target(target.id)
        assert refreshed.failure_counter == 1
        assert refreshed.next_check_at is not None
    for target in targets[5:]:
        refreshed = store.get_target(target.id)
        assert refreshed.next_check_at is None
        assert refreshed.last_checked_at is None
    assert set(fetcher.calls) == set(urls[:5])


def test_success_resets_consecutive_failures(store) -> None:
    urls = [f"https://example.com/p/{index}" for index in range(4)]
    for url in urls:
        store.add_tracked_target(url, "X")
    script = {
        urls[0]: [ExtractionFailure("No price found", url=urls[0])],
        urls[2]: [ExtractionFailure("No price found", url=urls[2])],
    }
    fetcher = StubFetcher(script, default=_product("10.00"))
    scheduler, _timer = _scheduler(store, fetcher)

    result = _run(scheduler.run_cycle(max_consecutive_failures=2))

    assert result.tripped is False
    assert (result.successful, result.failed) == (2, 2)


def test_retry_recovers_after_two_fetch_failures(store) -> None:
    target = store.add_tracked_target(URL, "X")
    fetcher = StubFetcher(
        {URL: [FetchFailure("timeout", url=URL), FetchFailure("timeout", url=URL), _product("10.00")]}
    )
    scheduler, timer = _scheduler(store, fetcher, retries=3, min_delay_ms=1200, max_delay_ms=2500)

    result = _run(scheduler.run_cycle())

    assert result.successful == 1
    assert len(fetcher.calls) == 3
    assert _count(store, PriceHistory) == 1
    assert len(timer.sleeps) == 2
    assert all(1.2 <= delay <= 2.5 for delay in timer.sleeps)
    assert store.get_target(target.id).failure_counter == 0


def test_extraction_failure_is_not_retried(store) -> None:
    store.add_tracked_target(URL, "X")
    fetcher = StubFetcher({URL: [ExtractionFailure("No title found", url=URL)]}, default=_product("1.00"))
    scheduler, timer = _scheduler(store, fetcher)

    result = _run(scheduler.run_cycle())

    assert result.failed == 1
    assert fetcher.calls == [URL]
    assert timer.sleeps == []


def test_invalid_observation_still_advances_schedule(store, clock) -> None:
    target = store.add_tracked_target(URL, "X", interval_minutes=30)
    scheduler, _timer = _scheduler(store, StubFetcher(default=_product("-1")))

    result = _run(scheduler.run_cycle())

    assert result.failed == 1
    assert _count(store, Product) == 0
    assert _count(store, PriceHistory) == 0
    refreshed = store.get_target(target.id)
    assert refreshed.failure_counter == 1
    assert refreshed.next_check_at == clock.now + timedelta(minutes=30)


def test_stop_request_finishes_current_target_only(store) -> None:
    urls = [f"https://example.com/p/{index}" for index in range(3)]
    targets = [store.add_tracked_target(url, "X") for url in urls]
    fetcher = StubFetcher(default=None)
    fetcher.script = {url: [_product("10.00", url=url)] for url in urls}
    scheduler, _timer = _scheduler(store, fetcher)
    fetcher.on_fetch = lambda _url: scheduler.request_stop()

    result = _run(scheduler.run_cycle())

    assert result.stopped is True
    assert result.successful == 1
    assert isinstance(result.error, Shutdown)
    assert "2 due targets left" in str(result.error)
    assert fetcher.calls == urls[:1]
    assert store.get_target(targets[0].id).next_check_at is not None
    assert store.get_target(targets[1].id).next_check_at is None


def test_cancelled_target_keeps_its_schedule(store) -> None:
    target = store.add_tracked_target(URL, "X")

    class BlockingFetcher:
        def __init__(self) -> None:
            self.started = asyncio.Event()

        async def fetch(self, url: str) -> ScrapedProduct:
            self.started.set()
            await asyncio.sleep(3600)
            raise AssertionError("unreachable")

    async def scenario() -> None:
        fetcher = BlockingFetcher()
        scheduler, _timer = _scheduler(store, fetcher)
        task = asyncio.create_task(scheduler.process_target(target))
        await asyncio.wait_for(fetcher.started.wait(), 5)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    _run(scenario())

    refreshed = store.get_target(target.id)
    assert refreshed.last_checked_at is None
    assert refreshed.next_check_at is None
    assert refreshed.failure_counter == 0


def test_rate_limiter_wait_timeout_fails_target(store) -> None:
    target = store.add_tracked_target(URL, "X")

    class StuckLimiter:
        async def wait(self, url: str) -> float:
            await asyncio.sleep(3600)
            return 0.0

        def report_success(self, url: str) -> None:
            pass

        def report_error(self, url: str, err=None) -> None:
            pass

    fetcher = StubFetcher(default=_product("10.00"))
    scheduler = Scheduler(store, fetcher, StuckLimiter(), rate_limit_timeout_s=0.01)

    ok, event = _run(scheduler.process_target(target))

    assert ok is False and event is None
    assert fetcher.calls == []
    assert store.get_target(target.id).failure_counter == 1


def test_target_deleted_mid_cycle_is_tolerated(store) -> None:
    target = store.add_tracked_target(URL, "X")
    scheduler, _timer = _scheduler(store, StubFetcher(default=_product("10.00")))
    stale = replace(target, id=target.id + 100)

    ok, _event = _run(scheduler.process_target(stale))

    assert ok is True
    assert _count(store, PriceHistory) == 1


def test_circuit_breaker_counts() -> None:
    breaker = CircuitBreaker(2)
    assert breaker.record_failure() is False
    breaker.record_success()
    assert breaker.record_failure() is False
    assert breaker.record_failure() is True
    with pytest.raises(ValueError):
        CircuitBreaker(0)
