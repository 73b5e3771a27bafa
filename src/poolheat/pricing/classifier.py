"""Price classification against a rolling baseline (LOW / NORMAL / HIGH).

Two threshold methods:
- DELTA: low = avg * (1 - delta/100), high = avg * (1 + delta/100)
- PERCENTILE: nearest-rank percentiles of the baseline sample

Boundaries are exclusive for LOW and HIGH: a price exactly on a threshold
is NORMAL. Zero or one baseline sample is a defined neutral state (NORMAL),
not an error.

CRITICAL: All computations use Decimal. Never use float for prices.
"""

from datetime import datetime
from decimal import Decimal

from poolheat.logging import get_logger
from poolheat.models import (
    AutomationSettings,
    ClassificationMethod,
    ClassificationResult,
    PriceBaseline,
    PriceClassification,
    PricePoint,
)
from poolheat.pricing.baseline import compute_baseline

logger = get_logger(__name__)

_HUNDRED = Decimal("100")


def delta_thresholds(avg: Decimal, delta_percent: Decimal) -> tuple[Decimal, Decimal]:
    """Return (low, high) thresholds at +/- delta_percent around avg."""
    fraction = delta_percent / _HUNDRED
    return avg * (Decimal("1") - fraction), avg * (Decimal("1") + fraction)


def percentile(values: list[Decimal] | tuple[Decimal, ...], pct: Decimal) -> Decimal:
    """Nearest-rank percentile: sorted[floor(n * pct / 100)], clamped to the last index.

    Raises:
        ValueError: If values is empty.
    """
    if not values:
        raise ValueError("percentile of empty sample")
    ordered = sorted(values)
    index = int(Decimal(len(ordered)) * pct / _HUNDRED)
    return ordered[min(max(index, 0), len(ordered) - 1)]


def classify_against(price: Decimal, low: Decimal, high: Decimal) -> PriceClassification:
    """Strict comparison against thresholds; ties resolve to NORMAL."""
    if price < low:
        return PriceClassification.LOW
    if price > high:
        return PriceClassification.HIGH
    return PriceClassification.NORMAL


def classify_price(
    price: Decimal | None,
    baseline: PriceBaseline,
    settings: AutomationSettings,
) -> ClassificationResult:
    """Classify a price against a precomputed baseline.

    Args:
        price: Current price, or None when no current price is known.
        baseline: Rolling baseline from compute_baseline.
        settings: Supplies the method and its parameters.

    Returns:
        ClassificationResult with thresholds and a human-readable reason.
    """
    if price is None:
        return ClassificationResult(
            classification=PriceClassification.NORMAL,
            price=None,
            baseline=baseline,
            low_threshold=None,
            high_threshold=None,
            reason="no current price available, treating as normal",
        )

    if baseline.sample_count <= 1 or baseline.average is None:
        return ClassificationResult(
            classification=PriceClassification.NORMAL,
            price=price,
            baseline=baseline,
            low_threshold=None,
            high_threshold=None,
            reason=(
                f"insufficient price history ({baseline.sample_count} point(s)), "
                "treating as normal"
            ),
        )

    if settings.classification_method == ClassificationMethod.PERCENTILE:
        low = percentile(baseline.values, settings.percentile_low)
        high = percentile(baseline.values, settings.percentile_high)
        method = f"p{settings.percentile_low}/p{settings.percentile_high}"
    else:
        low, high = delta_thresholds(baseline.average, settings.delta_percent)
        method = f"+/-{settings.delta_percent}%"

    classification = classify_against(price, low, high)
    reason = (
        f"price {price} is {classification.value} "
        f"(low {low}, high {high}, {method}; "
        f"avg {baseline.average} over {baseline.days_covered} days)"
    )
    if baseline.degraded:
        reason += (
            f"; rolling window empty, baseline from {baseline.days_covered} "
            "days of available history"
        )

    return ClassificationResult(
        classification=classification,
        price=price,
        baseline=baseline,
        low_threshold=low,
        high_threshold=high,
        reason=reason,
    )


def select_current_price(
    points: list[PricePoint], now: datetime
) -> tuple[PricePoint | None, bool]:
    """Pick the price point covering ``now``.

    Falls back to the latest point starting before ``now`` when the feed has
    a gap at the current interval.

    Returns:
        Tuple of (point, degraded). point is None when nothing usable exists.
    """
    latest_before: PricePoint | None = None
    for point in points:
        if point.start <= now < point.end:
            return point, False
        if point.start <= now and (latest_before is None or point.start > latest_before.start):
            latest_before = point
    if latest_before is not None:
        return latest_before, True
    return None, True


class PriceClassifier:
    """Turns a price history plus the current price into a ClassificationResult."""

    def classify(
        self,
        history: list[PricePoint],
        now: datetime,
        settings: AutomationSettings,
        current: PricePoint | None = None,
    ) -> ClassificationResult:
        """Classify the price at ``now``.

        Args:
            history: Price points covering at least the rolling window.
            now: Reference time (timezone-aware).
            settings: Automation settings for this cycle.
            current: Explicit current point; selected from history if None.

        Returns:
            ClassificationResult (never raises on data gaps).
        """
        degraded_current = False
        if current is None:
            current, degraded_current = select_current_price(history, now)

        baseline = compute_baseline(history, now, settings.rolling_window_days)
        result = classify_price(
            current.value if current is not None else None, baseline, settings
        )

        if current is not None and degraded_current:
            result = ClassificationResult(
                classification=result.classification,
                price=result.price,
                baseline=result.baseline,
                low_threshold=result.low_threshold,
                high_threshold=result.high_threshold,
                reason=(
                    f"{result.reason}; no price for the current interval, "
                    f"using {current.start.isoformat()}"
                ),
            )

        logger.info(
            "price_classified",
            classification=result.classification.value,
            price=str(result.price) if result.price is not None else None,
            baseline_avg=str(baseline.average) if baseline.average is not None else None,
            samples=baseline.sample_count,
            days_covered=str(baseline.days_covered),
            degraded=baseline.degraded or degraded_current,
        )
        return result
