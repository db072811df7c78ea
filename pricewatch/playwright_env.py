"""Centralised helpers for Playwright launch and context configuration."""

from __future__ import annotations

import os
import shlex
from typing import Any

from playwright.async_api import Browser, BrowserContext, Playwright

from pricewatch.logging_config import get_logger


LOGGER = get_logger(__name__)

_FALSE_VALUES = {"0", "false", "no", "off"}

VIEWPORT = {"width": 1920, "height": 1080}
LOCALE = "en-US"
TIMEZONE_ID = "America/New_York"


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() not in _FALSE_VALUES


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def slow_mo_ms() -> int | None:
    value = _env_int("PRICEWATCH_SLOW_MO_MS", 0)
    return value if value > 0 else None


def launch_kwargs(headless: bool = True) -> dict[str, Any]:
    """Return kwargs passed to ``chromium.launch``."""

    args = [
        "--disable-blink-features=AutomationControlled",
        "--disable-dev-shm-usage",
        "--disable-gpu",
        "--no-sandbox",
        "--lang=en-US",
        "--no-default-browser-check",
    ]
    extra_args = os.getenv("PRICEWATCH_CHROMIUM_ARGS")
    if extra_args:
        args.extend(shlex.split(extra_args))

    kwargs: dict[str, Any] = {
        "headless": _as_bool(os.getenv("SCRAPER_HEADLESS"), headless),
        "args": args,
    }

    channel = os.getenv("PRICEWATCH_BROWSER_CHANNEL")
    if channel:
        kwargs["channel"] = channel

    slow_mo = slow_mo_ms()
    if slow_mo:
        kwargs["slow_mo"] = slow_mo

    return kwargs


def context_kwargs(user_agent: str) -> dict[str, Any]:
    """Return kwargs for ``browser.new_context`` giving each fetch a fresh, isolated profile."""

    return {
        "user_agent": user_agent,
        "viewport": dict(VIEWPORT),
        "locale": LOCALE,
        "timezone_id": TIMEZONE_ID,
        "ignore_https_errors": _as_bool(os.getenv("PRICEWATCH_IGNORE_HTTPS_ERRORS"), False),
    }


async def launch_browser(playwright: Playwright, *, headless: bool = True) -> Browser:
    """Launch Chromium according to env overrides."""

    return await playwright.chromium.launch(**launch_kwargs(headless))


async def close_browser(browser: Browser | None) -> None:
    """Close *browser*, logging rather than raising on failure."""

    if browser is None:
        return
    try:
        await browser.close()
    except Exception as exc:
        LOGGER.debug("Browser close failed: %s", exc)


async def close_context(context: BrowserContext | None) -> None:
    """Close *context*, logging rather than raising on failure."""

    if context is None:
        return
    try:
        await context.close()
    except Exception as exc:
        LOGGER.debug("Context close failed: %s", exc)
