"""Rolling price baseline with graceful fallback on feed gaps.

A shorter baseline is preferred over no baseline: when the rolling window
holds no points, the whole available history is averaged instead and the
actual coverage is reported so the degraded condition can be named in the
cycle's reason.

CRITICAL: All computations use Decimal. Never use float for prices.
"""

from datetime import datetime, timedelta
from decimal import Decimal

from poolheat.models import PriceBaseline, PricePoint

_SECONDS_PER_DAY = Decimal("86400")

#: Days are reported with two decimals; finer precision is noise.
_DAYS_QUANTIZE = Decimal("0.01")


def _days_between(start: datetime, end: datetime) -> Decimal:
    seconds = Decimal(str((end - start).total_seconds()))
    if seconds <= 0:
        return Decimal("0.00")
    return (seconds / _SECONDS_PER_DAY).quantize(_DAYS_QUANTIZE)


def average(values: list[Decimal]) -> Decimal | None:
    """Arithmetic mean, or None for an empty list."""
    if not values:
        return None
    return sum(values, Decimal("0")) / Decimal(len(values))


def compute_baseline(
    history: list[PricePoint],
    now: datetime,
    rolling_window_days: int,
) -> PriceBaseline:
    """Compute the rolling average over points starting in [now - days, now].

    Falls back to all available history when the window is empty. Never
    raises: an empty history yields a baseline with no average.

    Args:
        history: Price points, any order.
        now: Reference time (timezone-aware).
        rolling_window_days: Length of the rolling window.

    Returns:
        PriceBaseline with the average, the sample values, the days the
        sample actually covers, and whether the fallback was used.
    """
    window_start = now - timedelta(days=rolling_window_days)
    in_window = sorted(
        (p for p in history if window_start <= p.start <= now),
        key=lambda p: p.start,
    )

    if in_window:
        values = tuple(p.value for p in in_window)
        covered = min(
            _days_between(in_window[0].start, now),
            Decimal(rolling_window_days),
        )
        return PriceBaseline(
            average=average(list(values)),
            values=values,
            days_covered=covered,
            degraded=False,
        )

    if not history:
        return PriceBaseline(
            average=None,
            values=(),
            days_covered=Decimal("0.00"),
            degraded=True,
        )

    ordered = sorted(history, key=lambda p: p.start)
    values = tuple(p.value for p in ordered)
    covered = _days_between(ordered[0].start, max(p.end for p in ordered))
    return PriceBaseline(
        average=average(list(values)),
        values=values,
        days_covered=covered,
        degraded=True,
    )
