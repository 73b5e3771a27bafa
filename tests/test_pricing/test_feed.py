"""Tests for price feed normalization and the in-memory feed."""

from dataclasses import replace
from datetime import timedelta
from decimal import Decimal

import pytest

from poolheat.exceptions import PriceFeedError
from poolheat.models import Currency
from poolheat.pricing.feed import InMemoryPriceFeed, normalize_price_points


class TestNormalizePricePoints:
    def test_sorts_by_start(self, now_dt, make_points) -> None:
        points = make_points(now_dt, ["1", "2", "3"])

        result = normalize_price_points(list(reversed(points)), Currency.SEK)

        assert [p.value for p in result] == [Decimal("1"), Decimal("2"), Decimal("3")]

    def test_duplicate_start_rejected(self, now_dt, make_points) -> None:
        point = make_points(now_dt, ["1"])[0]

        with pytest.raises(PriceFeedError, match="Duplicate"):
            normalize_price_points([point, replace(point, value=Decimal("2"))], Currency.SEK)

    def test_converts_foreign_currency(self, now_dt, make_points) -> None:
        points = make_points(now_dt, ["0.10"], currency=Currency.EUR)

        result = normalize_price_points(points, Currency.SEK, {"EUR": Decimal("11.50")})

        assert result[0].value == Decimal("1.15")
        assert result[0].currency == Currency.SEK

    def test_missing_exchange_rate_rejected(self, now_dt, make_points) -> None:
        points = make_points(now_dt, ["0.10"], currency=Currency.EUR)

        with pytest.raises(PriceFeedError, match="exchange rate"):
            normalize_price_points(points, Currency.SEK)

    def test_consumer_price_adds_tax_then_fee(self, now_dt, make_points) -> None:
        points = make_points(now_dt, ["1.00"])

        result = normalize_price_points(
            points,
            Currency.SEK,
            net_fee_per_kwh=Decimal("0.30"),
            estimated_tax_rate=Decimal("0.25"),
        )

        assert result[0].value == Decimal("1.55")


class TestInMemoryPriceFeed:
    @pytest.mark.asyncio()
    async def test_filters_by_start_range(self, now_dt, make_points) -> None:
        feed = InMemoryPriceFeed(make_points(now_dt, ["1", "2", "3", "4"]))

        result = await feed.fetch_prices("SE3", now_dt + timedelta(hours=1), now_dt + timedelta(hours=2))

        assert [p.value for p in result] == [Decimal("2"), Decimal("3")]

    @pytest.mark.asyncio()
    async def test_set_points_replaces(self, now_dt, make_points) -> None:
        feed = InMemoryPriceFeed(make_points(now_dt, ["1"]))
        feed.set_points(make_points(now_dt, ["5"]))

        result = await feed.fetch_prices("SE3", now_dt, now_dt)

        assert [p.value for p in result] == [Decimal("5")]
