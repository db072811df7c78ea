"""Data validation schemas for extracted observations."""

from __future__ import annotations

import math
import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, ValidationError as PydanticValidationError, field_validator

from pricewatch.errors import ValidationError


SUPPORTED_CURRENCIES = frozenset({"USD", "EUR", "GBP", "CAD", "AUD"})
DEFAULT_CURRENCY = "USD"
MIN_PRICE = Decimal("0.01")
MAX_PRICE = Decimal("99999999.99")
MAX_TITLE_LENGTH = 1000
MIN_INTERVAL_MINUTES = 1
MAX_INTERVAL_MINUTES = 10080

_CENTS = Decimal("0.01")
_NON_PRICE_CHARS = re.compile(r"[^0-9.]")


def parse_price(text: str | None) -> Decimal | None:
    """Parse a price-like string into a two-place Decimal.

    Everything that is not a digit or a decimal point is stripped before
    parsing, so ``"$1,299.99"`` becomes ``Decimal("1299.99")``. Returns
    ``None`` when nothing numeric remains.
    """

    if not text:
        return None

    cleaned = _NON_PRICE_CHARS.sub("", text)
    if not cleaned or cleaned == ".":
        return None

    try:
        value = Decimal(cleaned)
    except InvalidOperation:
        return None

    if not value.is_finite():
        return None
    try:
        return value.quantize(_CENTS, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        # More digits than the decimal context can hold.
        return None


def price_in_range(value: Decimal | None) -> bool:
    """Return True when *value* is a finite price inside the accepted bounds."""

    if value is None or not value.is_finite():
        return False
    return MIN_PRICE <= value <= MAX_PRICE


def _coerce_price(value: Any) -> Decimal:
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            raise ValueError("price must be a finite number")
        value = str(value)
    if isinstance(value, str):
        value = value.strip()
    try:
        price = Decimal(value)
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ValueError("price must be numeric") from exc
    if not price.is_finite():
        raise ValueError("price must be a finite number")
    try:
        price = price.quantize(_CENTS, rounding=ROUND_HALF_UP)
    except InvalidOperation as exc:
        raise ValueError(f"price must be between {MIN_PRICE} and {MAX_PRICE}") from exc
    if not price_in_range(price):
        raise ValueError(f"price must be between {MIN_PRICE} and {MAX_PRICE}")
    return price


def validate_url(value: Any) -> str:
    """Return the trimmed URL if it is an absolute http(s) URL."""

    if not isinstance(value, str):
        raise ValueError("url must be a string")
    url = value.strip()
    parsed = urlparse(url)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError("url must be an http(s) URL")
    return url


class ObservationIn(BaseModel):
    """Schema describing an observation headed for the store."""

    model_config = ConfigDict(extra="ignore")

    url: str
    site: str
    title: str
    price: Decimal
    currency: str = DEFAULT_CURRENCY

    @field_validator("url", mode="before")
    @classmethod
    def _check_url(cls, value: Any) -> str:
        return validate_url(value)

    @field_validator("site", mode="before")
    @classmethod
    def _check_site(cls, value: Any) -> str:
        if not isinstance(value, str) or not value.strip():
            raise ValueError("site must be a non-empty string")
        return value.strip()

    @field_validator("title", mode="before")
    @classmethod
    def _check_title(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("title must be a string")
        title = value.strip()
        if not title:
            raise ValueError("title must not be empty")
        if len(title) > MAX_TITLE_LENGTH:
            raise ValueError(f"title must be at most {MAX_TITLE_LENGTH} characters")
        return title

    @field_validator("price", mode="before")
    @classmethod
    def _check_price(cls, value: Any) -> Decimal:
        return _coerce_price(value)

    @field_validator("currency", mode="before")
    @classmethod
    def _check_currency(cls, value: Any) -> str:
        if value is None or (isinstance(value, str) and not value.strip()):
            return DEFAULT_CURRENCY
        if not isinstance(value, str):
            raise ValueError("currency must be a string")
        currency = value.strip().upper()
        if currency not in SUPPORTED_CURRENCIES:
            raise ValueError(f"currency {currency} is not supported")
        return currency


def _first_error(exc: PydanticValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return str(exc)
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    message = first.get("msg", "invalid value")
    return f"{location}: {message}" if location else message


def validate_observation(
    url: Any, site: Any, title: Any, price: Any, currency: Any = DEFAULT_CURRENCY
) -> ObservationIn:
    """Validate raw observation fields, raising :class:`ValidationError` on bad input."""

    try:
        return ObservationIn(url=url, site=site, title=title, price=price, currency=currency)
    except PydanticValidationError as exc:
        raise ValidationError(
            f"Invalid observation: {_first_error(exc)}",
            url=url if isinstance(url, str) else None,
        ) from exc


def validate_interval(minutes: Any) -> int:
    """Return *minutes* as an int within the accepted check-interval range."""

    try:
        value = int(minutes)
    except (TypeError, ValueError) as exc:
        raise ValidationError("check interval must be an integer number of minutes") from exc
    if isinstance(minutes, float) and minutes != value:
        raise ValidationError("check interval must be an integer number of minutes")
    if not MIN_INTERVAL_MINUTES <= value <= MAX_INTERVAL_MINUTES:
        raise ValidationError(
            f"check interval must be between {MIN_INTERVAL_MINUTES} and {MAX_INTERVAL_MINUTES} minutes"
        )
    return value


__all__ = [
    "DEFAULT_CURRENCY",
    "MAX_PRICE",
    "MAX_TITLE_LENGTH",
    "MIN_PRICE",
    "ObservationIn",
    "SUPPORTED_CURRENCIES",
    "parse_price",
    "price_in_range",
    "validate_interval",
    "validate_observation",
    "validate_url",
]
