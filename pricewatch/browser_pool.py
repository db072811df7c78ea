"""Fixed-size pool of headless Chromium instances shared by all fetches."""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Any, Awaitable, Callable

from playwright.async_api import Browser, Playwright, async_playwright

from pricewatch.errors import PoolAcquireTimeout, PoolClosing
from pricewatch.logging_config import get_logger
from pricewatch.playwright_env import close_browser, launch_browser


LOGGER = get_logger(__name__)

DEFAULT_POOL_SIZE = 3
DEFAULT_ACQUIRE_TIMEOUT = 30.0
MAX_HEALTHY_WAITERS = 5
REPLACEMENT_ATTEMPTS = 3

Launcher = Callable[[], Awaitable[Browser]]


class BrowserPool:
    """Hands out browsers FIFO to callers and replaces instances that die.

    ``available + in_use`` never exceeds ``size``; browsers being relaunched
    are counted separately until they join the pool.
    """

    def __init__(
        self,
        size: int = DEFAULT_POOL_SIZE,
        *,
        launcher: Launcher | None = None,
        headless: bool = True,
        acquire_timeout: float = DEFAULT_ACQUIRE_TIMEOUT,
    ) -> None:
        if size < 1:
            raise ValueError("pool size must be at least 1")
        self.size = size
        self.acquire_timeout = acquire_timeout
        self._launcher = launcher
        self._headless = headless
        self._playwright: Playwright | None = None
        self._playwright_cm: Any = None

        self._available: deque[Browser] = deque()
        self._in_use: set[Browser] = set()
        self._waiters: deque[asyncio.Future[Browser]] = deque()
        self._replacements: set[asyncio.Task[None]] = set()
        self._launching = 0

        self._initialized = False
        self._closing = False

        self.total_acquired = 0
        self.total_released = 0
        self.peak_in_use = 0
        self.replaced = 0
        self.launch_failures = 0

    # -- lifecycle ------------------------------------------------------

    async def initialize(self, size: int | None = None) -> None:
        """Launch exactly ``size`` browsers."""

        if self._initialized:
            return
        if size is not None:
            if size < 1:
                raise ValueError("pool size must be at least 1")
            self.size = size

        if self._launcher is None:
            self._playwright_cm = async_playwright()
            self._playwright = await self._playwright_cm.start()
            playwright = self._playwright

            async def _launch() -> Browser:
                return await launch_browser(playwright, headless=self._headless)

            self._launcher = _launch

        results = await asyncio.gather(
            *(self._launcher() for _ in range(self.size)), return_exceptions=True
        )
        failures = [result for result in results if isinstance(result, BaseException)]
        browsers = [result for result in results if not isinstance(result, BaseException)]
        if failures:
            self.launch_failures += len(failures)
            await asyncio.gather(*(close_browser(browser) for browser in browsers))
            LOGGER.error("Browser pool launch failed | failed=%d/%d", len(failures), self.size)
            raise failures[0]

        for browser in browsers:
            self._track(browser)
            self._available.append(browser)

        self._initialized = True
        self._closing = False
        LOGGER.info("Browser pool initialised | size=%d", self.size)

    async def close_all(self) -> None:
        """Reject waiters, stop replacements and close every browser."""

        self._closing = True
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_exception(PoolClosing())

        for task in list(self._replacements):
            task.cancel()
        if self._replacements:
            await asyncio.gather(*self._replacements, return_exceptions=True)

        browsers = list(self._available) + list(self._in_use)
        self._available.clear()
        self._in_use.clear()
        await asyncio.gather(*(close_browser(browser) for browser in browsers))

        if self._playwright_cm is not None:
            try:
                await self._playwright_cm.__aexit__(None, None, None)
            except Exception as exc:
                LOGGER.warning("Playwright shutdown failed: %s", exc)
            self._playwright_cm = None
            self._playwright = None

        self._initialized = False
        LOGGER.info(
            "Browser pool closed | closed=%d | acquired=%d | released=%d",
            len(browsers),
            self.total_acquired,
            self.total_released,
        )

    # -- acquire / release -----------------------------------------------

    async def acquire(self, timeout: float | None = None) -> Browser:
        """Return a live browser, waiting FIFO up to *timeout* seconds."""

        if self._closing:
            raise PoolClosing()
        if not self._initialized:
            raise PoolClosing("Browser pool is not initialised.")

        while self._available:
            browser = self._available.popleft()
            if self._is_alive(browser):
                self._checkout(browser)
                return browser
            self._discard(browser)

        loop = asyncio.get_running_loop()
        waiter: asyncio.Future[Browser] = loop.create_future()
        self._waiters.append(waiter)
        deadline = self.acquire_timeout if timeout is None else timeout
        try:
            async with asyncio.timeout(deadline):
                return await waiter
        except TimeoutError as exc:
            self._reclaim(waiter)
            raise PoolAcquireTimeout(f"No browser became free within {deadline:.1f}s") from exc
        except BaseException:
            self._reclaim(waiter)
            raise

    def release(self, browser: Browser) -> None:
        """Return *browser* to the pool, handing it straight to the oldest waiter."""

        if browser not in self._in_use:
            return
        self.total_released += 1

        if self._closing:
            self._in_use.discard(browser)
            return

        if not self._is_alive(browser):
            self._in_use.discard(browser)
            self._discard(browser)
            return

        if self._hand_to_waiter(browser):
            self.total_acquired += 1
            return
        self._in_use.discard(browser)
        self._available.append(browser)

    # -- reporting -------------------------------------------------------

    def stats(self) -> dict[str, int]:
        return {
            "size": self.size,
            "available": len(self._available),
            "in_use": len(self._in_use),
            "waiting": self.waiting,
            "launching": self._launching,
            "total_acquired": self.total_acquired,
            "total_released": self.total_released,
            "peak_in_use": self.peak_in_use,
            "replaced": self.replaced,
            "launch_failures": self.launch_failures,
        }

    def health(self) -> dict[str, Any]:
        issues: list[str] = []
        available = len(self._available)
        in_use = len(self._in_use)
        waiting = self.waiting

        if not self._initialized:
            issues.append("Pool not initialized")
        else:
            if available == 0 and in_use == 0:
                issues.append("No browsers available or in use")
            if waiting > MAX_HEALTHY_WAITERS:
                issues.append(f"High wait queue: {waiting} requests waiting")

        return {
            "initialized": self._initialized,
            "healthy": not issues,
            "total_browsers": available + in_use,
            "available": available,
            "in_use": in_use,
            "waiting": waiting,
            "issues": issues,
        }

    @property
    def waiting(self) -> int:
        return sum(1 for waiter in self._waiters if not waiter.done())

    # -- internals -------------------------------------------------------

    def _track(self, browser: Browser) -> None:
        browser.on("disconnected", lambda _browser: self._on_disconnected(browser))

    def _is_alive(self, browser: Browser) -> bool:
        try:
            return browser.is_connected()
        except Exception:
            return False

    def _checkout(self, browser: Browser) -> None:
        self._in_use.add(browser)
        self.total_acquired += 1
        if len(self._in_use) > self.peak_in_use:
            self.peak_in_use = len(self._in_use)

    def _hand_to_waiter(self, browser: Browser) -> bool:
        while self._waiters:
            waiter = self._waiters.popleft()
            if waiter.done():
                continue
            waiter.set_result(browser)
            return True
        return False

    def _offer(self, browser: Browser) -> None:
        """Give a fresh browser to the oldest waiter, else park it as available."""

        if self._waiters and any(not waiter.done() for waiter in self._waiters):
            self._checkout(browser)
            if self._hand_to_waiter(browser):
                return
            self._in_use.discard(browser)
            self.total_acquired -= 1
        self._available.append(browser)

    def _reclaim(self, waiter: asyncio.Future[Browser]) -> None:
        """Undo a hand-off that raced with the waiter giving up."""

        try:
            self._waiters.remove(waiter)
        except ValueError:
            pass
        if not waiter.done():
            waiter.cancel()
            return
        if waiter.cancelled() or waiter.exception() is not None:
            return
        browser = waiter.result()
        self.total_acquired -= 1
        self.release(browser)
        self.total_released -= 1

    def _on_disconnected(self, browser: Browser) -> None:
        if browser in self._available:
            self._available.remove(browser)
            self._discard(browser)

    def _discard(self, browser: Browser) -> None:
        LOGGER.warning("Discarding disconnected browser | pool_size=%d", self.size)
        self._spawn(close_browser(browser))
        self._schedule_replacement()

    def _spawn(self, coro: Awaitable[None]) -> asyncio.Task[None]:
        task = asyncio.get_running_loop().create_task(coro)
        self._replacements.add(task)
        task.add_done_callback(self._replacements.discard)
        return task

    def _schedule_replacement(self) -> None:
        if self._closing or self._launcher is None:
            return
        if len(self._available) + len(self._in_use) + self._launching >= self.size:
            return
        self._launching += 1
        self._spawn(self._replace())

    async def _replace(self) -> None:
        browser: Browser | None = None
        try:
            for attempt in range(1, REPLACEMENT_ATTEMPTS + 1):
                try:
                    browser = await self._launcher()
                    break
                except Exception as exc:
                    self.launch_failures += 1
                    LOGGER.error(
                        "Browser relaunch failed | attempt=%d/%d | error=%s",
                        attempt,
                        REPLACEMENT_ATTEMPTS,
                        exc,
                    )
                    if attempt < REPLACEMENT_ATTEMPTS:
                        await asyncio.sleep(attempt)
        finally:
            self._launching -= 1

        if browser is None:
            return
        if self._closing:
            await close_browser(browser)
            return

        self._track(browser)
        self.replaced += 1
        LOGGER.info("Browser replaced | replaced=%d", self.replaced)
        self._offer(browser)
