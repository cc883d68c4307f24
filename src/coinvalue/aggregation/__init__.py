"""coinvalue.aggregation - Weighted estimate computation."""

from coinvalue.aggregation.decay import RecencyDecay
from coinvalue.aggregation.engine import (
    AggregationEngine,
    WeightedObservation,
    compute_estimate,
    weighted_percentile,
)

__all__ = [
    "RecencyDecay",
    "AggregationEngine",
    "WeightedObservation",
    "compute_estimate",
    "weighted_percentile",
]
