"""Custom exception types for the pricewatch observation engine."""

from __future__ import annotations

import asyncio
from typing import Optional

from playwright.async_api import Error as PlaywrightError


class PricewatchError(Exception):
    """Base class for engine errors carrying target context."""

    default_message = "Price observation failed."
    retryable = False

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        url: Optional[str] = None,
        target_id: Optional[int] = None,
        site: Optional[str] = None,
    ) -> None:
        self.message = message or self.default_message
        self.url = url
        self.target_id = target_id
        self.site = site
        super().__init__(self.message)

    def __str__(self) -> str:
        context_parts: list[str] = []
        if self.url:
            context_parts.append(f"url={self.url}")
        if self.target_id is not None:
            context_parts.append(f"target={self.target_id}")
        if self.site:
            context_parts.append(f"site={self.site}")
        context = ", ".join(context_parts)
        return f"{self.message} ({context})" if context else self.message


class ValidationError(PricewatchError):
    """Raised when an observation or target fails input validation."""

    default_message = "Invalid observation."


class FetchFailure(PricewatchError):
    """Raised when navigation fails, times out or returns an empty page."""

    default_message = "Failed to load page."
    retryable = True

    def __init__(self, message: Optional[str] = None, *, status: Optional[int] = None, **context) -> None:
        super().__init__(message, **context)
        self.status = status


class ExtractionFailure(PricewatchError):
    """Raised when a loaded page does not yield a title or a usable price."""

    default_message = "Unable to extract product data."


class PoolAcquireTimeout(PricewatchError):
    """Raised when no browser becomes free before the acquire deadline."""

    default_message = "Timed out waiting for a browser."
    retryable = True


class PoolClosing(PricewatchError):
    """Raised to parked or new acquirers once the pool is shutting down."""

    default_message = "Browser pool is closing."


class StoreUnavailable(PricewatchError):
    """Raised when the database backend cannot be reached."""

    default_message = "Store backend unavailable."
    retryable = True


class NotFound(PricewatchError):
    """Raised when a tracked target no longer exists."""

    default_message = "Tracked target not found."


class CircuitBreakerTripped(PricewatchError):
    """Reported on the cycle result when consecutive failures abandon a batch."""

    default_message = "Too many consecutive failures; cycle abandoned."


class Shutdown(PricewatchError):
    """Reported on the cycle result when a stop request leaves targets undispatched."""

    default_message = "Engine is shutting down."


class ConfigError(PricewatchError):
    """Raised when configuration values are missing or invalid."""

    default_message = "Invalid configuration."


class PreflightError(PricewatchError):
    """Raised when the environment is not ready for monitoring."""

    default_message = "Preflight check failed."


def is_retryable(exc: BaseException) -> bool:
    """Return True when *exc* is worth another attempt."""

    if isinstance(exc, asyncio.CancelledError):
        return False
    if isinstance(exc, PricewatchError):
        return exc.retryable
    if isinstance(exc, (PlaywrightError, asyncio.TimeoutError)):
        return True
    return False


__all__ = [
    "CircuitBreakerTripped",
    "ConfigError",
    "ExtractionFailure",
    "FetchFailure",
    "NotFound",
    "PoolAcquireTimeout",
    "PoolClosing",
    "PreflightError",
    "PricewatchError",
    "Shutdown",
    "StoreUnavailable",
    "ValidationError",
    "is_retryable",
]
