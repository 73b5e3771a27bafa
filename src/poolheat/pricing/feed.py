"""Price feed collaborator interface and normalization.

The controller consumes prices only through PriceFeed.fetch_prices. Provider
specific HTTP/XML parsing lives outside the core; whatever produces the
points must pass them through normalize_price_points so that the classifier
only ever sees one currency, sorted, with no duplicate interval starts.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from poolheat.exceptions import PriceFeedError
from poolheat.logging import get_logger
from poolheat.models import Currency, PricePoint

if TYPE_CHECKING:
    from poolheat.data.store import ControllerStore

logger = get_logger(__name__)


class PriceFeed(ABC):
    """Abstract source of electricity prices for a bidding zone."""

    @abstractmethod
    async def fetch_prices(
        self, zone: str, start: datetime, end: datetime
    ) -> list[PricePoint]:
        """Return price points whose start lies in [start, end], ordered by start.

        Gaps are allowed; duplicates are not.
        """
        ...


def normalize_price_points(
    points: list[PricePoint],
    currency: Currency,
    exchange_rates: dict[str, Decimal] | None = None,
    net_fee_per_kwh: Decimal = Decimal("0"),
    estimated_tax_rate: Decimal = Decimal("0"),
) -> list[PricePoint]:
    """Validate, convert and sort raw price points.

    Consumer price = energy * (1 + estimated_tax_rate) + net_fee_per_kwh,
    computed after currency conversion.

    Args:
        points: Raw points from a provider.
        currency: Target currency for the classifier.
        exchange_rates: Target-currency units per foreign unit, keyed by code.
        net_fee_per_kwh: Network fee added to each price (target currency).
        estimated_tax_rate: Fractional tax added on the energy price.

    Returns:
        New list of points in ``currency``, sorted by start.

    Raises:
        PriceFeedError: On duplicate start timestamps or a currency without
            a configured exchange rate.
    """
    rates = exchange_rates or {}
    seen: set[datetime] = set()
    normalized: list[PricePoint] = []

    for point in points:
        if point.start in seen:
            raise PriceFeedError(f"Duplicate price point start: {point.start.isoformat()}")
        seen.add(point.start)

        value = point.value
        if point.currency != currency:
            rate = rates.get(point.currency.value)
            if rate is None:
                raise PriceFeedError(
                    f"No exchange rate from {point.currency.value} to {currency.value}"
                )
            value = value * rate

        value = value * (Decimal("1") + estimated_tax_rate) + net_fee_per_kwh
        normalized.append(replace(point, value=value, currency=currency))

    normalized.sort(key=lambda p: p.start)
    return normalized


class InMemoryPriceFeed(PriceFeed):
    """Price feed over a fixed list of points (tests and simulated mode)."""

    def __init__(self, points: list[PricePoint] | None = None) -> None:
        self._points: list[PricePoint] = sorted(points or [], key=lambda p: p.start)

    def set_points(self, points: list[PricePoint]) -> None:
        """Replace all points."""
        self._points = sorted(points, key=lambda p: p.start)

    async def fetch_prices(
        self, zone: str, start: datetime, end: datetime
    ) -> list[PricePoint]:
        return [p for p in self._points if start <= p.start <= end]


class StoredPriceFeed(PriceFeed):
    """Price feed reading points a collector wrote into the controller database.

    Args:
        store: Controller store holding the price_points table.
        currency: Currency the classifier expects.
        exchange_rates: Conversion table for foreign-currency rows.
        net_fee_per_kwh: Network fee added to each price.
        estimated_tax_rate: Fractional tax added on the energy price.
    """

    def __init__(
        self,
        store: ControllerStore,
        currency: Currency = Currency.SEK,
        exchange_rates: dict[str, Decimal] | None = None,
        net_fee_per_kwh: Decimal = Decimal("0"),
        estimated_tax_rate: Decimal = Decimal("0"),
    ) -> None:
        self._store = store
        self._currency = currency
        self._exchange_rates = exchange_rates or {}
        self._net_fee_per_kwh = net_fee_per_kwh
        self._estimated_tax_rate = estimated_tax_rate

    async def fetch_prices(
        self, zone: str, start: datetime, end: datetime
    ) -> list[PricePoint]:
        raw = await self._store.get_price_points(zone, start, end)
        points = normalize_price_points(
            raw,
            currency=self._currency,
            exchange_rates=self._exchange_rates,
            net_fee_per_kwh=self._net_fee_per_kwh,
            estimated_tax_rate=self._estimated_tax_rate,
        )
        logger.debug("stored_prices_fetched", zone=zone, count=len(points))
        return points
