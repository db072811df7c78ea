"""Static site registry: hostname patterns, selectors and pacing per site."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Mapping
from urllib.parse import urlparse

from pricewatch import selectors
from pricewatch.errors import ConfigError
from pricewatch.logging_config import get_logger


LOGGER = get_logger(__name__)

GENERIC_KEY = "generic"


@dataclass(frozen=True)
class RateLimit:
    min_ms: int
    max_ms: int
    backoff_multiplier: float = 2.0
    max_backoff_ms: int = 60000


@dataclass(frozen=True)
class SiteConfig:
    key: str
    name: str
    domain_patterns: tuple[str, ...]
    selectors: Mapping[str, tuple[str, ...]]
    rate_limit: RateLimit
    currency: str = "USD"
    ready_selectors: tuple[str, ...] = field(default=tuple(selectors.READY_SELECTORS))

    def selectors_for(self, field_name: str) -> tuple[str, ...]:
        return tuple(self.selectors.get(field_name, ()))

    def matches(self, hostname: str) -> bool:
        return any(pattern in hostname for pattern in self.domain_patterns)


def _freeze(raw: Mapping[str, list[str]]) -> dict[str, tuple[str, ...]]:
    return {name: tuple(raw.get(name, ())) for name in selectors.FIELDS}


DEFAULT_SITES: dict[str, SiteConfig] = {
    "amazon": SiteConfig(
        "amazon",
        "Amazon",
        ("amazon.com", "amazon.co.uk", "amazon.ca", "amazon.de", "amazon.fr"),
        _freeze(selectors.AMAZON),
        RateLimit(2000, 5000, backoff_multiplier=2.0, max_backoff_ms=30000),
        ready_selectors=("#productTitle", "#dp-container", "span.a-price"),
    ),
    "burton": SiteConfig(
        "burton",
        "Burton",
        ("burton.com",),
        _freeze(selectors.BURTON),
        RateLimit(1000, 3000, backoff_multiplier=1.5, max_backoff_ms=15000),
    ),
    "walmart": SiteConfig(
        "walmart",
        "Walmart",
        ("walmart.com",),
        _freeze(selectors.WALMART),
        RateLimit(2000, 4000),
    ),
    "target": SiteConfig(
        "target",
        "Target",
        ("target.com",),
        _freeze(selectors.TARGET),
        RateLimit(2000, 4000),
    ),
    "bestbuy": SiteConfig(
        "bestbuy",
        "Best Buy",
        ("bestbuy.com",),
        _freeze(selectors.BESTBUY),
        RateLimit(2000, 4000),
    ),
    "ebay": SiteConfig(
        "ebay",
        "eBay",
        ("ebay.com", "ebay.co.uk"),
        _freeze(selectors.EBAY),
        RateLimit(1500, 3500),
    ),
    GENERIC_KEY: SiteConfig(
        GENERIC_KEY,
        "Generic",
        (),
        _freeze(selectors.GENERIC),
        RateLimit(2000, 5000),
    ),
}


class SiteRegistry:
    """Lookup table from hostname to :class:`SiteConfig`."""

    def __init__(self, sites: Mapping[str, SiteConfig] | None = None) -> None:
        self._sites: dict[str, SiteConfig] = dict(DEFAULT_SITES if sites is None else sites)
        if GENERIC_KEY not in self._sites:
            self._sites[GENERIC_KEY] = DEFAULT_SITES[GENERIC_KEY]

    @property
    def generic(self) -> SiteConfig:
        return self._sites[GENERIC_KEY]

    def get(self, key: str) -> SiteConfig | None:
        return self._sites.get(key)

    def all(self) -> list[SiteConfig]:
        return list(self._sites.values())

    def detect(self, url: str) -> SiteConfig:
        """Return the site whose domain pattern matches *url*, else the generic entry."""

        try:
            hostname = (urlparse(url).hostname or "").lower()
        except ValueError:
            hostname = ""
        if hostname.startswith("www."):
            hostname = hostname[4:]

        if hostname:
            for key, site in self._sites.items():
                if key == GENERIC_KEY:
                    continue
                if site.matches(hostname):
                    return site
        return self.generic

    def register(self, key: str, raw: Mapping[str, Any]) -> SiteConfig:
        """Add or replace a site from a config mapping; missing parts fall back to generic."""

        base = self._sites.get(key, self.generic)
        try:
            patterns = tuple(raw.get("domain_patterns") or raw.get("domains") or base.domain_patterns)
            merged_selectors = dict(base.selectors)
            for name, values in (raw.get("selectors") or {}).items():
                if name not in selectors.FIELDS:
                    raise ConfigError(f"Unknown selector field {name!r} for site {key}")
                merged_selectors[name] = tuple(values)

            rate_limit = base.rate_limit
            raw_limit = raw.get("rate_limit") or {}
            if raw_limit:
                rate_limit = replace(
                    rate_limit,
                    min_ms=int(raw_limit.get("min_ms", rate_limit.min_ms)),
                    max_ms=int(raw_limit.get("max_ms", rate_limit.max_ms)),
                    backoff_multiplier=float(raw_limit.get("backoff_multiplier", rate_limit.backoff_multiplier)),
                    max_backoff_ms=int(raw_limit.get("max_backoff_ms", rate_limit.max_backoff_ms)),
                )
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid site entry for {key}: {exc}") from exc

        if rate_limit.min_ms < 0 or rate_limit.min_ms > rate_limit.max_ms:
            raise ConfigError(f"Invalid rate limit for site {key}: min_ms must be <= max_ms")

        site = SiteConfig(
            key=key,
            name=str(raw.get("name") or (base.name if key in self._sites else key.title())),
            domain_patterns=tuple(pattern.lower() for pattern in patterns),
            selectors=merged_selectors,
            rate_limit=rate_limit,
            currency=str(raw.get("currency") or base.currency).upper(),
            ready_selectors=tuple(raw.get("ready_selectors") or base.ready_selectors),
        )
        self._sites[key] = site
        LOGGER.info("Registered site | key=%s | domains=%s", key, ",".join(site.domain_patterns))
        return site

    @classmethod
    def from_config(cls, overrides: Mapping[str, Mapping[str, Any]] | None) -> "SiteRegistry":
        registry = cls()
        for key, raw in (overrides or {}).items():
            registry.register(key, raw or {})
        return registry


__all__ = ["DEFAULT_SITES", "GENERIC_KEY", "RateLimit", "SiteConfig", "SiteRegistry"]
