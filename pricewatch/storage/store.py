"""Transactional store facade used by the scheduler and change detector."""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Iterator

from sqlalchemy import select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session

from pricewatch.errors import NotFound, StoreUnavailable, ValidationError
from pricewatch.logging_config import get_logger
from pricewatch.schemas import DEFAULT_CURRENCY, validate_interval, validate_observation, validate_url

from . import repo
from .db import get_engine, make_session
from .models_sql import PriceHistory, Product, TrackedProduct


LOGGER = get_logger(__name__)

# Upper bound for the per-target failure counter; it saturates instead of growing.
FAILURE_COUNTER_MAX = 1_000_000


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TrackedTarget:
    """Snapshot of a tracked product taken when a batch is materialised."""

    id: int
    url: str | None
    site: str
    enabled: bool
    interval_minutes: int
    last_checked_at: datetime | None
    next_check_at: datetime | None
    failure_counter: int
    tracking_mode: str = "url"

    @classmethod
    def from_row(cls, row: TrackedProduct) -> "TrackedTarget":
        return cls(
            id=row.id,
            url=row.url,
            site=row.site,
            enabled=row.enabled,
            interval_minutes=row.check_interval_minutes,
            last_checked_at=repo.as_utc(row.last_checked_at),
            next_check_at=repo.as_utc(row.next_check_at),
            failure_counter=row.failure_counter,
            tracking_mode=row.tracking_mode,
        )


@dataclass(frozen=True)
class Observation:
    id: int
    product_id: int
    price: Decimal
    currency: str
    captured_at: datetime

    @classmethod
    def from_row(cls, row: PriceHistory) -> "Observation":
        return cls(
            id=row.id,
            product_id=row.product_id,
            price=Decimal(row.price).quantize(Decimal("0.01")),
            currency=row.currency,
            captured_at=repo.as_utc(row.captured_at),
        )


@dataclass(frozen=True)
class ProductRecord:
    id: int
    url: str
    site: str
    title: str
    price: Decimal | None
    currency: str
    created_at: datetime
    last_seen_at: datetime | None

    @classmethod
    def from_row(cls, row: Product) -> "ProductRecord":
        return cls(
            id=row.id,
            url=row.url,
            site=row.site,
            title=row.title,
            price=row.price,
            currency=row.currency,
            created_at=repo.as_utc(row.created_at),
            last_seen_at=repo.as_utc(row.last_seen_at),
        )


@dataclass(frozen=True)
class UpsertOutcome:
    product_id: int
    observation_id: int | None
    deduplicated: bool

    @property
    def inserted(self) -> bool:
        return self.observation_id is not None


class Store:
    """Owns every persistent row; each public method is one transaction."""

    def __init__(
        self,
        engine: Engine,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.engine = engine
        self._session_factory = make_session(engine)
        self._clock = clock

    @classmethod
    def from_url(cls, url: str, **engine_kwargs: Any) -> "Store":
        return cls(get_engine(url, **engine_kwargs))

    def now(self) -> datetime:
        return self._clock()

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except (OperationalError, InterfaceError, PoolTimeoutError) as exc:
            session.rollback()
            raise StoreUnavailable(f"Store backend unavailable: {exc}") from exc
        except BaseException:
            session.rollback()
            raise
        finally:
            session.close()

    # -- observations ---------------------------------------------------

    def record_observation(
        self,
        url: str,
        site: str,
        title: str,
        price: Any,
        currency: str | None = DEFAULT_CURRENCY,
    ) -> UpsertOutcome:
        """Upsert the product and append an observation unless it is a recent duplicate."""

        payload = validate_observation(url, site, title, price, currency)
        now = self.now()
        with self._transaction() as session:
            product = repo.upsert_product(
                session,
                payload.url,
                payload.site,
                payload.title,
                payload.price,
                payload.currency,
                seen_at=now,
            )
            duplicate = repo.find_recent_duplicate(session, product.id, payload.price, now=now)
            if duplicate is not None:
                LOGGER.debug(
                    "Duplicate observation skipped | product=%s | price=%s", product.id, payload.price
                )
                return UpsertOutcome(product.id, None, True)
            obs = repo.insert_observation(
                session, product.id, payload.price, payload.currency, captured_at=now
            )
            return UpsertOutcome(product.id, obs.id, False)

    def upsert_observation(
        self,
        url: str,
        site: str,
        title: str,
        price: Any,
        currency: str | None = DEFAULT_CURRENCY,
    ) -> int:
        return self.record_observation(url, site, title, price, currency).product_id

    def previous_observation(self, product_id: int) -> Observation | None:
        """Most recent observation strictly before the latest one."""

        with self._transaction() as session:
            rows = repo.get_observations(session, product_id, limit=1, offset=1)
            return Observation.from_row(rows[0]) if rows else None

    def latest_observation(self, product_id: int) -> Observation | None:
        with self._transaction() as session:
            rows = repo.get_observations(session, product_id, limit=1)
            return Observation.from_row(rows[0]) if rows else None

    def price_history(self, product_id: int, limit: int = 100) -> list[Observation]:
        with self._transaction() as session:
            return [Observation.from_row(row) for row in repo.get_observations(session, product_id, limit=limit)]

    def count_observations(self, product_id: int | None = None) -> int:
        with self._transaction() as session:
            return repo.count_observations(session, product_id)

    def get_product(self, url: str) -> ProductRecord | None:
        with self._transaction() as session:
            product = repo.get_product_by_url(session, url)
            return ProductRecord.from_row(product) if product else None

    def products_with_latest_price(self) -> list[dict[str, Any]]:
        with self._transaction() as session:
            return repo.products_with_latest_price(session)

    def export_csv(self, path: str) -> Path:
        rows = self.products_with_latest_price()
        written = repo.write_csv(rows, path)
        LOGGER.info("Exported products | rows=%d | path=%s", len(rows), written)
        return written

    # -- scheduling state -------------------------------------------------

    def due_targets(self, limit: int) -> list[TrackedTarget]:
        now = self.now()
        with self._transaction() as session:
            return [TrackedTarget.from_row(row) for row in repo.select_due_targets(session, now=now, limit=limit)]

    def complete(self, target_id: int, success: bool) -> TrackedTarget:
        """Advance ``last_checked``/``next_due`` and update the failure counter."""

        with self._transaction() as session:
            row = session.get(TrackedProduct, target_id, with_for_update=True)
            if row is None:
                raise NotFound(target_id=target_id)

            now = self.now()
            prior_checked = repo.as_utc(row.last_checked_at)
            if prior_checked is not None and prior_checked > now:
                now = prior_checked

            next_due = now + timedelta(minutes=row.check_interval_minutes)
            prior_next = repo.as_utc(row.next_check_at)
            if prior_next is not None and prior_next > next_due:
                next_due = prior_next

            row.last_checked_at = now
            row.next_check_at = next_due
            row.updated_at = now
            if success:
                row.failure_counter = 0
            else:
                row.failure_counter = min((row.failure_counter or 0) + 1, FAILURE_COUNTER_MAX)
            session.flush()
            return TrackedTarget.from_row(row)

    def add_tracked_target(
        self,
        url: str,
        site: str,
        *,
        interval_minutes: int = 60,
        enabled: bool = True,
    ) -> TrackedTarget:
        """Insert or update a URL-mode target keyed on its URL."""

        clean_url = _validated_url(url)
        interval = validate_interval(interval_minutes)
        with self._transaction() as session:
            row = repo.upsert_tracked_product(
                session, clean_url, site, interval_minutes=interval, enabled=enabled, now=self.now()
            )
            return TrackedTarget.from_row(row)

    def set_enabled(self, target_id: int, enabled: bool) -> TrackedTarget:
        with self._transaction() as session:
            row = session.get(TrackedProduct, target_id)
            if row is None:
                raise NotFound(target_id=target_id)
            row.enabled = enabled
            row.updated_at = self.now()
            session.flush()
            return TrackedTarget.from_row(row)

    def get_target(self, target_id: int) -> TrackedTarget | None:
        with self._transaction() as session:
            row = session.get(TrackedProduct, target_id)
            return TrackedTarget.from_row(row) if row else None

    def list_targets(self) -> list[TrackedTarget]:
        with self._transaction() as session:
            rows = session.execute(select(TrackedProduct).order_by(TrackedProduct.id)).scalars()
            return [TrackedTarget.from_row(row) for row in rows]

    # -- lifecycle ---------------------------------------------------------

    def ping(self) -> bool:
        with self._transaction() as session:
            session.execute(text("SELECT 1"))
        return True

    def close(self) -> None:
        self.engine.dispose()


def _validated_url(url: str) -> str:
    try:
        return validate_url(url)
    except ValueError as exc:
        raise ValidationError(str(exc), url=url) from exc
