"""Tests for price classification (delta and percentile thresholds)."""

from dataclasses import replace
from datetime import timedelta
from decimal import Decimal

import pytest

from poolheat.models import (
    AutomationSettings,
    ClassificationMethod,
    PriceBaseline,
    PriceClassification,
)
from poolheat.pricing.classifier import (
    PriceClassifier,
    classify_price,
    delta_thresholds,
    percentile,
    select_current_price,
)


def _baseline(*values: str, degraded: bool = False) -> PriceBaseline:
    decimals = tuple(Decimal(v) for v in values)
    return PriceBaseline(
        average=sum(decimals, Decimal("0")) / len(decimals) if decimals else None,
        values=decimals,
        days_covered=Decimal("7"),
        degraded=degraded,
    )


class TestDeltaClassification:
    def test_price_below_low_threshold_is_low(self) -> None:
        settings = AutomationSettings(delta_percent=Decimal("15"))

        result = classify_price(Decimal("0.80"), _baseline("0.90", "1.10"), settings)

        assert result.classification == PriceClassification.LOW
        assert result.low_threshold == Decimal("0.85")
        assert result.high_threshold == Decimal("1.15")

    def test_price_above_high_threshold_is_high(self) -> None:
        result = classify_price(Decimal("1.20"), _baseline("0.90", "1.10"), AutomationSettings())

        assert result.classification == PriceClassification.HIGH

    @pytest.mark.parametrize("price", ["0.85", "1.00", "1.15"])
    def test_boundaries_and_middle_are_normal(self, price: str) -> None:
        result = classify_price(Decimal(price), _baseline("0.90", "1.10"), AutomationSettings())

        assert result.classification == PriceClassification.NORMAL

    def test_thresholds(self) -> None:
        low, high = delta_thresholds(Decimal("2.00"), Decimal("10"))

        assert low == Decimal("1.80")
        assert high == Decimal("2.20")

    def test_reason_names_thresholds_and_average(self) -> None:
        result = classify_price(Decimal("0.80"), _baseline("0.90", "1.10"), AutomationSettings())

        assert "low" in result.reason
        assert "avg 1.00" in result.reason


class TestPercentileClassification:
    @pytest.fixture
    def settings(self) -> AutomationSettings:
        return AutomationSettings(classification_method=ClassificationMethod.PERCENTILE)

    def test_nearest_rank(self) -> None:
        values = [Decimal(i) for i in range(1, 11)]

        assert percentile(values, Decimal("30")) == Decimal("4")
        assert percentile(values, Decimal("70")) == Decimal("8")
        assert percentile(values, Decimal("100")) == Decimal("10")
        assert percentile(values, Decimal("0")) == Decimal("1")

    def test_empty_sample_raises(self) -> None:
        with pytest.raises(ValueError):
            percentile([], Decimal("50"))

    def test_classifies_against_percentiles(self, settings: AutomationSettings) -> None:
        baseline = _baseline(*[str(i) for i in range(1, 11)])

        assert classify_price(Decimal("3"), baseline, settings).classification == PriceClassification.LOW
        assert classify_price(Decimal("9"), baseline, settings).classification == PriceClassification.HIGH
        assert classify_price(Decimal("4"), baseline, settings).classification == PriceClassification.NORMAL
        assert classify_price(Decimal("8"), baseline, settings).classification == PriceClassification.NORMAL


class TestInsufficientData:
    @pytest.mark.parametrize("values", [(), ("1.00",)])
    def test_zero_or_one_sample_is_normal(self, values: tuple[str, ...]) -> None:
        result = classify_price(Decimal("0.01"), _baseline(*values), AutomationSettings())

        assert result.classification == PriceClassification.NORMAL
        assert "insufficient price history" in result.reason

    def test_missing_current_price_is_normal(self) -> None:
        result = classify_price(None, _baseline("1", "2"), AutomationSettings())

        assert result.classification == PriceClassification.NORMAL
        assert result.price is None

    def test_degraded_baseline_is_named(self) -> None:
        baseline = replace(_baseline("0.90", "1.10"), degraded=True)

        result = classify_price(Decimal("1.00"), baseline, AutomationSettings())

        assert "rolling window empty" in result.reason


class TestSelectCurrentPrice:
    def test_point_covering_now(self, now_dt, make_points) -> None:
        points = make_points(now_dt.replace(minute=0) - timedelta(hours=1), ["1", "2", "3"])

        point, degraded = select_current_price(points, now_dt)

        assert point is not None and point.value == Decimal("2")
        assert degraded is False

    def test_gap_uses_latest_earlier_point(self, now_dt, make_points) -> None:
        points = make_points(now_dt - timedelta(hours=5), ["1", "2"])

        point, degraded = select_current_price(points, now_dt)

        assert point is not None and point.value == Decimal("2")
        assert degraded is True

    def test_only_future_points(self, now_dt, make_points) -> None:
        points = make_points(now_dt + timedelta(hours=1), ["1"])

        assert select_current_price(points, now_dt) == (None, True)


class TestPriceClassifier:
    def test_classifies_current_interval(self, now_dt, make_points) -> None:
        start = now_dt.replace(minute=0) - timedelta(hours=3)
        history = make_points(start, ["1.10", "0.90", "1.00", "0.80"])

        result = PriceClassifier().classify(history, now_dt, AutomationSettings())

        assert result.price == Decimal("0.80")
        assert result.classification == PriceClassification.LOW

    def test_feed_gap_noted_in_reason(self, now_dt, make_points) -> None:
        history = make_points(now_dt - timedelta(hours=6), ["1.10", "0.90", "1.00"])

        result = PriceClassifier().classify(history, now_dt, AutomationSettings())

        assert result.price == Decimal("1.00")
        assert "no price for the current interval" in result.reason

    def test_empty_history(self, now_dt) -> None:
        result = PriceClassifier().classify([], now_dt, AutomationSettings())

        assert result.classification == PriceClassification.NORMAL
