"""Price classification: rolling baseline, LOW/NORMAL/HIGH thresholds, feed normalization."""

from poolheat.pricing.baseline import average, compute_baseline
from poolheat.pricing.classifier import (
    PriceClassifier,
    classify_against,
    classify_price,
    delta_thresholds,
    percentile,
    select_current_price,
)
from poolheat.pricing.feed import (
    InMemoryPriceFeed,
    PriceFeed,
    StoredPriceFeed,
    normalize_price_points,
)

__all__ = [
    "InMemoryPriceFeed",
    "PriceClassifier",
    "PriceFeed",
    "StoredPriceFeed",
    "average",
    "classify_against",
    "classify_price",
    "compute_baseline",
    "delta_thresholds",
    "normalize_price_points",
    "percentile",
    "select_current_price",
]
