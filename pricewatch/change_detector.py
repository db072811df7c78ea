"""Compare a fresh observation with the one before it and classify the move."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Iterable

from pricewatch.logging_config import get_logger
from pricewatch.storage.store import Store


LOGGER = get_logger(__name__)

_CENTS = Decimal("0.01")
_ZERO = Decimal("0")
_HUNDRED = Decimal("100")


@dataclass(frozen=True)
class ChangeThresholds:
    min_absolute: Decimal = Decimal("1.00")
    min_percent: Decimal = Decimal("5")
    alert_drop_threshold: Decimal = Decimal("10")
    alert_increase_threshold: Decimal = Decimal("20")

    @classmethod
    def from_settings(cls, settings: Any) -> "ChangeThresholds":
        return cls(
            min_absolute=Decimal(str(settings.min_absolute)),
            min_percent=Decimal(str(settings.min_percent)),
            alert_drop_threshold=Decimal(str(settings.alert_drop_threshold)),
            alert_increase_threshold=Decimal(str(settings.alert_increase_threshold)),
        )


@dataclass(frozen=True)
class ChangeEvent:
    product_id: int
    old_price: Decimal | None
    new_price: Decimal
    absolute_delta: Decimal
    percent_delta: Decimal
    direction: str
    significant: bool
    severity: str
    first: bool = False
    alert_reason: str | None = None

    def as_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        for key in ("old_price", "new_price", "absolute_delta", "percent_delta"):
            if payload[key] is not None:
                payload[key] = str(payload[key])
        return payload


ChangeSink = Callable[[ChangeEvent], None]


def calculate_change(
    product_id: int,
    old_price: Decimal | None,
    new_price: Decimal,
    thresholds: ChangeThresholds | None = None,
) -> ChangeEvent:
    """Classify the move from *old_price* to *new_price*."""

    limits = thresholds or ChangeThresholds()
    new_price = Decimal(new_price)

    if old_price is None or Decimal(old_price) == _ZERO:
        return ChangeEvent(
            product_id=product_id,
            old_price=old_price,
            new_price=new_price,
            absolute_delta=_ZERO.quantize(_CENTS),
            percent_delta=_ZERO.quantize(_CENTS),
            direction="none",
            significant=False,
            severity="none",
            first=True,
        )

    old_price = Decimal(old_price)
    absolute = new_price - old_price
    percent = absolute / old_price * _HUNDRED
    direction = "up" if absolute > 0 else "down" if absolute < 0 else "none"
    significant = abs(absolute) >= limits.min_absolute and abs(percent) >= limits.min_percent

    severity = "none"
    reason = None
    if significant:
        if direction == "down" and abs(percent) >= limits.alert_drop_threshold:
            reason = "price_drop"
            severity = "high" if abs(percent) >= limits.alert_drop_threshold * 2 else "medium"
        elif direction == "up" and percent >= limits.alert_increase_threshold:
            reason = "price_increase"
            severity = "high" if percent >= limits.alert_increase_threshold * 2 else "medium"

    return ChangeEvent(
        product_id=product_id,
        old_price=old_price,
        new_price=new_price,
        absolute_delta=absolute.quantize(_CENTS, rounding=ROUND_HALF_UP),
        percent_delta=percent.quantize(_CENTS, rounding=ROUND_HALF_UP),
        direction=direction,
        significant=significant,
        severity=severity,
        alert_reason=reason,
    )


def log_sink(event: ChangeEvent) -> None:
    """Default sink: write significant changes to the log."""

    if event.first:
        LOGGER.info("First observation | product=%s | price=%s", event.product_id, event.new_price)
        return
    if not event.significant:
        return
    log = LOGGER.warning if event.severity == "high" else LOGGER.info
    log(
        "Price change | product=%s | %s -> %s | delta=%s | pct=%s | direction=%s | severity=%s",
        event.product_id,
        event.old_price,
        event.new_price,
        event.absolute_delta,
        event.percent_delta,
        event.direction,
        event.severity,
    )


class ChangeDetector:
    """Reads the previous observation from the store and emits a :class:`ChangeEvent`."""

    def __init__(
        self,
        store: Store,
        thresholds: ChangeThresholds | None = None,
        *,
        sinks: Iterable[ChangeSink] | None = None,
    ) -> None:
        self.store = store
        self.thresholds = thresholds or ChangeThresholds()
        self.sinks: list[ChangeSink] = list(sinks) if sinks is not None else [log_sink]

    def detect(self, product_id: int) -> ChangeEvent | None:
        latest = self.store.latest_observation(product_id)
        if latest is None:
            return None
        previous = self.store.previous_observation(product_id)
        event = calculate_change(
            product_id,
            previous.price if previous else None,
            latest.price,
            self.thresholds,
        )
        self._emit(event)
        return event

    def _emit(self, event: ChangeEvent) -> None:
        for sink in self.sinks:
            try:
                sink(event)
            except Exception:
                LOGGER.exception("Change sink failed | product=%s", event.product_id)
