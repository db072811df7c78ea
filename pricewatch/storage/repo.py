"""Repository helpers for interacting with persistent storage."""

from __future__ import annotations

import csv
import os
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from tempfile import NamedTemporaryFile
from typing import Any, Iterable

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from .models_sql import PriceHistory, Product, TrackedProduct

DEDUP_WINDOW = timedelta(minutes=5)

CSV_HEADER = [
    "product_id",
    "url",
    "site",
    "title",
    "price",
    "currency",
    "last_seen_at",
    "created_at",
    "observations",
]


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from backends without tz support."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def get_product_by_url(session: Session, url: str) -> Product | None:
    return session.execute(select(Product).where(Product.url == url)).scalar_one_or_none()


def upsert_product(
    session: Session,
    url: str,
    site: str,
    title: str,
    price: Decimal,
    currency: str,
    *,
    seen_at: datetime,
) -> Product:
    product = get_product_by_url(session, url)
    if product is None:
        product = Product(
            url=url,
            site=site,
            title=title,
            price=price,
            currency=currency,
            created_at=seen_at,
            last_seen_at=seen_at,
        )
        session.add(product)
    else:
        product.site = site
        product.title = title
        product.price = price
        product.currency = currency
        product.last_seen_at = seen_at
    session.flush()
    return product


def find_recent_duplicate(
    session: Session,
    product_id: int,
    price: Decimal,
    *,
    now: datetime,
    window: timedelta = DEDUP_WINDOW,
) -> PriceHistory | None:
    """Return an observation with the same price captured inside *window*, if any."""

    stmt = (
        select(PriceHistory)
        .where(
            PriceHistory.product_id == product_id,
            PriceHistory.price == price,
            PriceHistory.captured_at >= now - window,
        )
        .order_by(PriceHistory.captured_at.desc())
        .limit(1)
    )
    return session.execute(stmt).scalar_one_or_none()


def insert_observation(
    session: Session,
    product_id: int,
    price: Decimal,
    currency: str,
    *,
    captured_at: datetime,
) -> PriceHistory:
    obs = PriceHistory(
        product_id=product_id,
        price=price,
        currency=currency,
        captured_at=captured_at,
    )
    session.add(obs)
    session.flush()
    return obs


def get_observations(session: Session, product_id: int, *, limit: int, offset: int = 0) -> list[PriceHistory]:
    """Return observations for *product_id*, newest first."""

    stmt = (
        select(PriceHistory)
        .where(PriceHistory.product_id == product_id)
        .order_by(PriceHistory.captured_at.desc(), PriceHistory.id.desc())
        .offset(offset)
        .limit(limit)
    )
    return list(session.execute(stmt).scalars())


def count_observations(session: Session, product_id: int | None = None) -> int:
    stmt = select(func.count(PriceHistory.id))
    if product_id is not None:
        stmt = stmt.where(PriceHistory.product_id == product_id)
    return int(session.execute(stmt).scalar_one())


def select_due_targets(session: Session, *, now: datetime, limit: int) -> list[TrackedProduct]:
    """Enabled URL-mode targets that are due, least recently checked first."""

    stmt = (
        select(TrackedProduct)
        .where(
            TrackedProduct.enabled.is_(True),
            TrackedProduct.tracking_mode == "url",
            TrackedProduct.url.is_not(None),
            or_(
                TrackedProduct.next_check_at.is_(None),
                TrackedProduct.next_check_at <= now,
            ),
        )
        .order_by(TrackedProduct.last_checked_at.asc().nulls_first(), TrackedProduct.id.asc())
        .limit(limit)
    )
    return list(session.execute(stmt).scalars())


def get_tracked_by_url(session: Session, url: str) -> TrackedProduct | None:
    return session.execute(
        select(TrackedProduct).where(TrackedProduct.url == url)
    ).scalar_one_or_none()


def upsert_tracked_product(
    session: Session,
    url: str,
    site: str,
    *,
    interval_minutes: int,
    enabled: bool,
    now: datetime,
) -> TrackedProduct:
    tracked = get_tracked_by_url(session, url)
    if tracked is None:
        tracked = TrackedProduct(
            url=url,
            site=site,
            enabled=enabled,
            check_interval_minutes=interval_minutes,
            failure_counter=0,
            tracking_mode="url",
            created_at=now,
            updated_at=now,
        )
        session.add(tracked)
    else:
        tracked.site = site
        tracked.enabled = enabled
        tracked.check_interval_minutes = interval_minutes
        tracked.updated_at = now
    session.flush()
    return tracked


def products_with_latest_price(session: Session) -> list[dict[str, Any]]:
    """Return one row per product with its denormalised price and observation count."""

    counts = (
        select(PriceHistory.product_id, func.count(PriceHistory.id).label("observations"))
        .group_by(PriceHistory.product_id)
        .subquery()
    )
    stmt = (
        select(Product, func.coalesce(counts.c.observations, 0))
        .outerjoin(counts, counts.c.product_id == Product.id)
        .order_by(Product.id)
    )
    rows: list[dict[str, Any]] = []
    for product, observations in session.execute(stmt):
        rows.append(
            {
                "product_id": product.id,
                "url": product.url,
                "site": product.site,
                "title": product.title,
                "price": product.price,
                "currency": product.currency,
                "last_seen_at": as_utc(product.last_seen_at),
                "created_at": as_utc(product.created_at),
                "observations": int(observations),
            }
        )
    return rows


def _format_csv_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Decimal):
        return f"{value:.2f}"
    return "" if value is None else value


def write_csv(rows: Iterable[dict[str, Any]], path: str | os.PathLike[str]) -> Path:
    """Atomically write *rows* to *path* using :data:`CSV_HEADER` columns."""

    target = Path(path)
    if target.parent and not target.parent.exists():
        target.parent.mkdir(parents=True, exist_ok=True)

    with NamedTemporaryFile(
        "w",
        delete=False,
        newline="",
        encoding="utf-8",
        dir=str(target.parent or Path(".")),
        suffix=".tmp",
    ) as handle:
        writer = csv.DictWriter(handle, fieldnames=CSV_HEADER, extrasaction="ignore")
        writer.writeheader()
        for row in rows:
            writer.writerow({key: _format_csv_value(row.get(key)) for key in CSV_HEADER})
        temp_name = handle.name

    os.replace(temp_name, target)
    return target
