from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from pricewatch.storage.db import get_engine
from pricewatch.storage.migrations import run_migrations
from pricewatch.storage.store import Store


class FakeClock:
    """Wall clock for the store; only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FakeTimer:
    """Monotonic clock plus a sleep that advances it instantly."""

    def __init__(self) -> None:
        self.t = 1000.0
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self.t

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.t += seconds


class FakeResponse:
    def __init__(self, status: int = 200) -> None:
        self.status = status


class FakeElement:
    def __init__(self, text: str | None = None, **attrs: str) -> None:
        self._text = text
        self._attrs = attrs

    async def text_content(self) -> str | None:
        return self._text

    async def get_attribute(self, name: str) -> str | None:
        return self._attrs.get(name)


class FakePage:
    def __init__(
        self,
        elements: dict[str, Any] | None = None,
        *,
        body: str = "Product page",
        status: int = 200,
        goto_error: Exception | None = None,
    ) -> None:
        self.elements = elements or {}
        self.body = body
        self.status = status
        self.goto_error = goto_error
        self.visited: list[str] = []
        self.goto_kwargs: dict[str, Any] = {}

    async def goto(self, url: str, **kwargs: Any) -> FakeResponse:
        self.visited.append(url)
        self.goto_kwargs = kwargs
        if self.goto_error is not None:
            raise self.goto_error
        return FakeResponse(self.status)

    async def wait_for_selector(self, selector: str, **_kwargs: Any) -> FakeElement:
        element = self.elements.get(selector)
        if element is None:
            raise PlaywrightTimeoutError(f"Timeout waiting for {selector}")
        return element if isinstance(element, FakeElement) else element[0]

    async def inner_text(self, selector: str, **_kwargs: Any) -> str:
        return self.body

    async def query_selector(self, selector: str) -> FakeElement | None:
        element = self.elements.get(selector)
        if isinstance(element, list):
            return element[0] if element else None
        return element

    async def query_selector_all(self, selector: str) -> list[FakeElement]:
        element = self.elements.get(selector)
        if element is None:
            return []
        return element if isinstance(element, list) else [element]


class FakeContext:
    def __init__(self, page: FakePage) -> None:
        self.page = page
        self.closed = False

    async def new_page(self) -> FakePage:
        return self.page

    async def close(self) -> None:
        self.closed = True


class FakeBrowser:
    def __init__(self, page: FakePage | None = None, *, name: str = "browser") -> None:
        self.name = name
        self.page = page or FakePage()
        self.connected = True
        self.closed = False
        self.contexts: list[FakeContext] = []
        self.context_kwargs: list[dict[str, Any]] = []
        self._handlers: dict[str, list[Any]] = {}

    def __repr__(self) -> str:
        return f"FakeBrowser({self.name})"

    def on(self, event: str, handler: Any) -> None:
        self._handlers.setdefault(event, []).append(handler)

    def is_connected(self) -> bool:
        return self.connected

    def disconnect(self) -> None:
        self.connected = False
        for handler in self._handlers.get("disconnected", []):
            handler(self)

    async def new_context(self, **kwargs: Any) -> FakeContext:
        if not self.connected:
            raise PlaywrightError("Target page, context or browser has been closed")
        self.context_kwargs.append(kwargs)
        context = FakeContext(self.page)
        self.contexts.append(context)
        return context

    async def close(self) -> None:
        self.closed = True
        self.connected = False


class FakeLauncher:
    """Async callable handing out numbered fake browsers."""

    def __init__(self, page: FakePage | None = None) -> None:
        self.page = page
        self.launched: list[FakeBrowser] = []

    async def __call__(self) -> FakeBrowser:
        browser = FakeBrowser(self.page, name=f"browser-{len(self.launched) + 1}")
        self.launched.append(browser)
        return browser


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def timer() -> FakeTimer:
    return FakeTimer()


@pytest.fixture()
def engine(tmp_path):
    engine = get_engine(f"sqlite:///{tmp_path / 'pricewatch.sqlite'}")
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture()
def store(engine, clock) -> Store:
    run_migrations(engine)
    return Store(engine, clock=clock)
