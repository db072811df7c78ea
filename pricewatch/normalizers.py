"""Utility helpers for normalising scraped text values."""

from __future__ import annotations

_SCHEMA_PREFIXES = ("http://schema.org/", "https://schema.org/")

_AVAILABILITY_LABELS = {
    "instock": "In Stock",
    "outofstock": "Out of Stock",
    "preorder": "Preorder",
    "backorder": "Backorder",
    "soldout": "Sold Out",
    "discontinued": "Discontinued",
    "limitedavailability": "Limited",
    "onlineonly": "Online Only",
    "instoreonly": "In Store Only",
}


def clean_text(value: str | None) -> str | None:
    """Collapse internal whitespace; return None for blank strings."""

    if value is None:
        return None
    collapsed = " ".join(value.split())
    return collapsed or None


def normalize_availability(value: str | None) -> str | None:
    """Convert schema.org availability URIs into human-readable labels."""

    trimmed = clean_text(value)
    if not trimmed:
        return None

    lowered = trimmed.lower()
    for prefix in _SCHEMA_PREFIXES:
        if lowered.startswith(prefix):
            trimmed = trimmed[len(prefix) :]
            lowered = trimmed.lower()
            break

    if lowered in _AVAILABILITY_LABELS:
        return _AVAILABILITY_LABELS[lowered]

    if lowered in {"limited", "limited availability"}:
        return "Limited"

    return trimmed


__all__ = ["clean_text", "normalize_availability"]
