"""Navigate to a product page and extract title, price and availability."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Iterable

from playwright.async_api import Error as PlaywrightError

from pricewatch import selectors
from pricewatch.browser_pool import BrowserPool
from pricewatch.errors import ExtractionFailure, FetchFailure
from pricewatch.logging_config import get_logger
from pricewatch.normalizers import clean_text, normalize_availability
from pricewatch.playwright_env import close_context, context_kwargs
from pricewatch.schemas import (
    DEFAULT_CURRENCY,
    MAX_TITLE_LENGTH,
    parse_price,
    price_in_range,
    validate_observation,
)
from pricewatch.sites import SiteConfig, SiteRegistry
from pricewatch.useragents import UserAgentRotator


LOGGER = get_logger(__name__)

DEFAULT_TIMEOUT_MS = 30000
DEFAULT_READY_TIMEOUT_MS = 15000
BODY_TIMEOUT_MS = 5000
_IMAGE_ATTRIBUTES = ("src", "data-old-hires", "data-src", "content")


@dataclass(frozen=True)
class ScrapedProduct:
    url: str
    site: str
    title: str
    price: Decimal
    currency: str = DEFAULT_CURRENCY
    availability: str | None = None
    image_url: str | None = None


def _iter_json_ld_nodes(data: Any) -> Iterable[dict[str, Any]]:
    if isinstance(data, list):
        for item in data:
            yield from _iter_json_ld_nodes(item)
    elif isinstance(data, dict):
        yield data
        if "@graph" in data:
            yield from _iter_json_ld_nodes(data["@graph"])


def _is_product(node: dict[str, Any]) -> bool:
    node_type = node.get("@type")
    if isinstance(node_type, list):
        return "Product" in node_type
    return node_type == "Product"


def _first_offer(offers: Any) -> dict[str, Any]:
    if isinstance(offers, list):
        return next((offer for offer in offers if isinstance(offer, dict)), {})
    return offers if isinstance(offers, dict) else {}


def _image_url(image: Any) -> str | None:
    if isinstance(image, list) and image:
        image = image[0]
    if isinstance(image, dict):
        image = image.get("url")
    return image if isinstance(image, str) and image else None


def extract_product_from_json_ld(blocks: Iterable[str]) -> dict[str, Any]:
    """Return the first schema.org Product found in JSON-LD *blocks*, flattened."""

    for raw in blocks:
        if not raw or not raw.strip():
            continue
        try:
            data = json.loads(raw)
        except ValueError:
            continue
        for node in _iter_json_ld_nodes(data):
            if not _is_product(node):
                continue
            offer = _first_offer(node.get("offers"))
            price = offer.get("price", offer.get("lowPrice"))
            return {
                "title": node.get("name"),
                "price": None if price is None else str(price),
                "currency": offer.get("priceCurrency"),
                "availability": offer.get("availability"),
                "image": _image_url(node.get("image")),
            }
    return {}


class Fetcher:
    """Turns a product URL into a validated :class:`ScrapedProduct`."""

    def __init__(
        self,
        pool: BrowserPool,
        registry: SiteRegistry | None = None,
        *,
        user_agents: UserAgentRotator | None = None,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        ready_timeout_ms: int = DEFAULT_READY_TIMEOUT_MS,
        acquire_timeout: float | None = None,
    ) -> None:
        self.pool = pool
        self.registry = registry or SiteRegistry()
        self.user_agents = user_agents or UserAgentRotator()
        self.timeout_ms = timeout_ms
        self.ready_timeout_ms = ready_timeout_ms
        self.acquire_timeout = acquire_timeout

    async def fetch(self, url: str) -> ScrapedProduct:
        site = self.registry.detect(url)
        browser = await self.pool.acquire(self.acquire_timeout)
        context = None
        try:
            context = await browser.new_context(**context_kwargs(self.user_agents.next()))
            page = await context.new_page()
            await self._navigate(page, url, site)
            await self._wait_until_ready(page, site)
            await self._require_body(page, url, site)
            product = await self._extract(page, url, site)
        except PlaywrightError as exc:
            raise FetchFailure(f"Browser error: {exc}", url=url, site=site.key) from exc
        finally:
            await close_context(context)
            self.pool.release(browser)

        LOGGER.info(
            "Fetched product | site=%s | price=%s %s | url=%s",
            site.key,
            product.price,
            product.currency,
            url,
        )
        return product

    async def _navigate(self, page: Any, url: str, site: SiteConfig) -> None:
        try:
            response = await page.goto(url, wait_until="domcontentloaded", timeout=self.timeout_ms)
        except PlaywrightError as exc:
            raise FetchFailure(f"Navigation failed: {exc}", url=url, site=site.key) from exc

        status = getattr(response, "status", None) if response is not None else None
        if status is not None and (status == 429 or status >= 500):
            raise FetchFailure(f"HTTP {status}", status=status, url=url, site=site.key)

    async def _wait_until_ready(self, page: Any, site: SiteConfig) -> bool:
        """Race the site's ready selectors against the watchdog; a timeout counts as loaded."""

        if not site.ready_selectors or self.ready_timeout_ms <= 0:
            return False

        tasks = [
            asyncio.ensure_future(
                page.wait_for_selector(selector, state="attached", timeout=self.ready_timeout_ms)
            )
            for selector in site.ready_selectors
        ]
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.ready_timeout_ms / 1000.0
        pending = set(tasks)
        try:
            while pending:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                done, pending = await asyncio.wait(
                    pending, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
                )
                for task in done:
                    if not task.cancelled() and task.exception() is None:
                        return True
            LOGGER.debug("Ready selectors not seen before watchdog | site=%s", site.key)
            return False
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _require_body(self, page: Any, url: str, site: SiteConfig) -> None:
        try:
            body = await page.inner_text("body", timeout=BODY_TIMEOUT_MS)
        except PlaywrightError as exc:
            raise FetchFailure(f"Page body unavailable: {exc}", url=url, site=site.key) from exc
        if not body or not body.strip():
            raise FetchFailure("Empty page body", url=url, site=site.key)

    async def _first_text(self, page: Any, candidates: Iterable[str]) -> str | None:
        for selector in candidates:
            try:
                element = await page.query_selector(selector)
                if element is None:
                    continue
                text = clean_text(await element.text_content())
                if not text:
                    text = clean_text(await element.get_attribute("content"))
            except PlaywrightError:
                continue
            if text:
                return text
        return None

    async def _first_image(self, page: Any, candidates: Iterable[str]) -> str | None:
        for selector in candidates:
            try:
                element = await page.query_selector(selector)
                if element is None:
                    continue
                for attribute in _IMAGE_ATTRIBUTES:
                    value = clean_text(await element.get_attribute(attribute))
                    if value:
                        return value
            except PlaywrightError:
                continue
        return None

    async def _json_ld(self, page: Any) -> dict[str, Any]:
        try:
            elements = await page.query_selector_all(selectors.JSON_LD_SELECTOR)
            blocks = [await element.text_content() or "" for element in elements]
        except PlaywrightError:
            return {}
        return extract_product_from_json_ld(blocks)

    async def _extract(self, page: Any, url: str, site: SiteConfig) -> ScrapedProduct:
        title = await self._first_text(page, site.selectors_for("title"))
        price_text = await self._first_text(page, site.selectors_for("price"))
        availability = await self._first_text(page, site.selectors_for("availability"))
        image = await self._first_image(page, site.selectors_for("image"))
        currency: str | None = None

        price = parse_price(price_text)
        if not title or not price_in_range(price):
            structured = await self._json_ld(page)
            title = title or clean_text(structured.get("title"))
            if not price_in_range(price):
                price = parse_price(structured.get("price"))
            currency = structured.get("currency")
            availability = availability or structured.get("availability")
            image = image or structured.get("image")

        if not title:
            raise ExtractionFailure("No title found", url=url, site=site.key)
        if price is None:
            raise ExtractionFailure("No price found", url=url, site=site.key)
        if not price_in_range(price):
            raise ExtractionFailure(f"Price out of range: {price}", url=url, site=site.key)

        currency = (currency or site.currency or DEFAULT_CURRENCY).strip().upper()
        payload = validate_observation(url, site.name, title[:MAX_TITLE_LENGTH], price, currency)
        return ScrapedProduct(
            url=payload.url,
            site=payload.site,
            title=payload.title,
            price=payload.price,
            currency=payload.currency,
            availability=normalize_availability(availability),
            image_url=image,
        )
