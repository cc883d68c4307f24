"""Trend fitting and volatility over estimate history."""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np
from scipy import stats

from coinvalue.core.config import ForecastConfig
from coinvalue.core.models import AggregatedEstimate, RiskLevel, TrendDirection

_SECONDS_PER_DAY = 86_400.0
_HIGH_RISK_VOLATILITY = 0.3
_MEDIUM_RISK_VOLATILITY = 0.15
# Scales a relative two-point change into a [0, 1] strength.
_DELTA_STRENGTH_SCALE = 10.0


@dataclass(frozen=True)
class TrendFit:
    """Result of fitting a trend to estimate history.

    `daily_drift` is the slope expressed relative to the latest average,
    i.e. the fractional change per day.
    """

    direction: TrendDirection
    strength: float
    daily_drift: float
    points: int
    method: str


def _days_since_first(history: Sequence[AggregatedEstimate]) -> np.ndarray:
    t0 = history[0].computed_at
    return np.array(
        [(h.computed_at - t0).total_seconds() / _SECONDS_PER_DAY for h in history],
        dtype=float,
    )


def fit_trend(
    history: Sequence[AggregatedEstimate],
    config: ForecastConfig | None = None,
) -> TrendFit:
    """Fit a trend to estimates ordered oldest first.

    Three or more points use least squares; two points use the delta of
    the two latest aggregates; fewer give a flat, zero-strength trend.
    Strength is moderated by sample count: n / (n + k).
    """
    config = config or ForecastConfig()
    n = len(history)
    if n < 2:
        return TrendFit(TrendDirection.STABLE, 0.0, 0.0, n, "none")

    moderation = n / (n + config.sample_moderation)
    latest = history[-1].average
    days = _days_since_first(history)

    if n >= 3 and np.ptp(days) > 0:
        averages = np.array([h.average for h in history], dtype=float)
        fit = stats.linregress(days, averages)
        r_squared = float(fit.rvalue) ** 2
        if math.isnan(r_squared):
            r_squared = 0.0
        drift = float(fit.slope) / latest if latest > 0 else 0.0
        strength = r_squared * moderation
        method = "linear"
    else:
        prev, last = history[-2], history[-1]
        change = (last.average - prev.average) / prev.average if prev.average > 0 else 0.0
        elapsed = (last.computed_at - prev.computed_at).total_seconds() / _SECONDS_PER_DAY
        drift = change / elapsed if elapsed > 0 else change
        strength = min(1.0, abs(change) * _DELTA_STRENGTH_SCALE) * moderation
        method = "delta"

    if abs(drift) < config.stable_threshold:
        direction = TrendDirection.STABLE
    elif drift > 0:
        direction = TrendDirection.RISING
    else:
        direction = TrendDirection.FALLING

    return TrendFit(
        direction=direction,
        strength=min(1.0, max(0.0, strength)),
        daily_drift=drift,
        points=n,
        method=method,
    )


def volatility(history: Sequence[AggregatedEstimate], cap: float = 0.5) -> float:
    """Coefficient of variation of historical averages, capped."""
    if len(history) < 2:
        return 0.0
    averages = np.array([h.average for h in history], dtype=float)
    mean = float(averages.mean())
    if mean <= 0:
        return 0.0
    return min(cap, float(averages.std()) / mean)


def assess_risk(vol: float) -> RiskLevel:
    if vol > _HIGH_RISK_VOLATILITY:
        return RiskLevel.HIGH
    if vol > _MEDIUM_RISK_VOLATILITY:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW
