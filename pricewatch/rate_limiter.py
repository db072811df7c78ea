"""Per-site request spacing with jitter and adaptive backoff."""

from __future__ import annotations

import asyncio
import random
import re
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from pricewatch.logging_config import get_logger
from pricewatch.sites import SiteConfig, SiteRegistry


LOGGER = get_logger(__name__)

MAX_BACKOFF_LEVEL = 5
ERROR_WINDOW_SECONDS = 60.0
ERRORS_BEFORE_BACKOFF = 3
SUCCESSES_BEFORE_RESET = 2

_RATE_LIMIT_STATUSES = {429, 503}
_RATE_LIMIT_PATTERN = re.compile(
    r"\b(429|503)\b|rate.?limit|too many requests|throttl|blocked|captcha",
    re.IGNORECASE,
)


def is_rate_limit_error(err: BaseException | None) -> bool:
    """Return True when *err* looks like the site pushing back on request volume."""

    if err is None:
        return False
    status = getattr(err, "status", None)
    if status in _RATE_LIMIT_STATUSES:
        return True
    return bool(_RATE_LIMIT_PATTERN.search(str(err)))


@dataclass
class _SiteState:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    next_allowed_at: float = 0.0
    backoff_level: int = 0
    consecutive_errors: int = 0
    consecutive_successes: int = 0
    recent_errors: deque[float] = field(default_factory=deque)
    total_requests: int = 0
    total_errors: int = 0
    last_delay_ms: float = 0.0


class RateLimiter:
    """Serialises requests per site; different sites never wait on each other."""

    def __init__(
        self,
        registry: SiteRegistry | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: random.Random | None = None,
        error_window_s: float = ERROR_WINDOW_SECONDS,
    ) -> None:
        self._registry = registry or SiteRegistry()
        self._clock = clock
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._error_window = error_window_s
        self._states: dict[str, _SiteState] = {}

    def _site(self, url: str) -> SiteConfig:
        return self._registry.detect(url)

    def _state(self, site: SiteConfig) -> _SiteState:
        state = self._states.get(site.key)
        if state is None:
            state = _SiteState()
            self._states[site.key] = state
        return state

    def spacing_ms(self, site: SiteConfig, backoff_level: int = 0) -> float:
        """Draw the next inter-request gap for *site* at *backoff_level*."""

        limit = site.rate_limit
        delay = self._rng.uniform(limit.min_ms, limit.max_ms)
        if backoff_level > 0:
            delay = min(delay * (limit.backoff_multiplier ** backoff_level), limit.max_backoff_ms)
            delay = max(delay, limit.min_ms)
        return delay

    async def wait(self, url: str) -> float:
        """Block until the site's spacing budget allows a request; return the delay applied in ms."""

        site = self._site(url)
        state = self._state(site)
        async with state.lock:
            now = self._clock()
            delay = max(0.0, state.next_allowed_at - now)
            if delay > 0:
                LOGGER.debug("Rate limit wait | site=%s | delay_ms=%.0f", site.key, delay * 1000)
                await self._sleep(delay)
            resolved_at = max(self._clock(), state.next_allowed_at)
            spacing = self.spacing_ms(site, state.backoff_level)
            state.next_allowed_at = resolved_at + spacing / 1000.0
            state.total_requests += 1
            state.last_delay_ms = delay * 1000
            return delay * 1000

    def report_success(self, url: str) -> None:
        site = self._site(url)
        state = self._state(site)
        state.consecutive_errors = 0
        state.consecutive_successes += 1
        if state.backoff_level > 0 and state.consecutive_successes >= SUCCESSES_BEFORE_RESET:
            LOGGER.info("Rate limit backoff reset | site=%s | level=%d", site.key, state.backoff_level)
            state.backoff_level = 0
            state.recent_errors.clear()

    def report_error(self, url: str, err: BaseException | None = None) -> None:
        site = self._site(url)
        state = self._state(site)
        now = self._clock()
        state.consecutive_successes = 0
        state.consecutive_errors += 1
        state.total_errors += 1
        state.recent_errors.append(now)
        while state.recent_errors and now - state.recent_errors[0] > self._error_window:
            state.recent_errors.popleft()

        previous = state.backoff_level
        if is_rate_limit_error(err):
            state.backoff_level = min(state.backoff_level + 2, MAX_BACKOFF_LEVEL)
        elif len(state.recent_errors) >= ERRORS_BEFORE_BACKOFF:
            state.backoff_level = min(state.backoff_level + 1, MAX_BACKOFF_LEVEL)

        if state.backoff_level != previous:
            LOGGER.warning(
                "Rate limit backoff increased | site=%s | level=%d | errors=%d",
                site.key,
                state.backoff_level,
                state.consecutive_errors,
            )

    def backoff_level(self, url: str) -> int:
        return self._state(self._site(url)).backoff_level

    def stats(self) -> dict[str, dict[str, Any]]:
        return {
            key: {
                "backoff_level": state.backoff_level,
                "consecutive_errors": state.consecutive_errors,
                "total_requests": state.total_requests,
                "total_errors": state.total_errors,
                "last_delay_ms": round(state.last_delay_ms, 1),
            }
            for key, state in self._states.items()
        }

    def reset(self) -> None:
        self._states.clear()
