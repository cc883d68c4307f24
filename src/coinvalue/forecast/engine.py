"""Forecast engine: project estimates forward over fixed horizons."""

from __future__ import annotations

import logging
import math
from collections.abc import Sequence
from datetime import datetime, timedelta, timezone

import numpy as np

from coinvalue.core.config import ForecastConfig
from coinvalue.core.locks import KeyedLock
from coinvalue.core.models import (
    AggregatedEstimate,
    ForecastPoint,
    Horizon,
    RiskLevel,
    TrendDirection,
    TrendForecast,
)
from coinvalue.forecast.trend import assess_risk, fit_trend, volatility
from coinvalue.storage.store import SqliteStore, to_utc

logger = logging.getLogger(__name__)


def project(
    estimate: AggregatedEstimate,
    history: Sequence[AggregatedEstimate],
    horizon: Horizon,
    config: ForecastConfig,
    generated_at: datetime,
) -> TrendForecast:
    """Deterministic multi-step projection from the latest estimate.

    Each step compounds a clipped daily drift. Step confidence starts from
    the estimate's confidence discounted by volatility and decays linearly
    to a floor. With fewer than two history points the projection is flat
    at a fixed confidence.
    """
    base = estimate.average
    steps = horizon.steps

    if len(history) < 2:
        series = [
            ForecastPoint(step=k, value=base, confidence=config.fallback_confidence)
            for k in range(1, steps + 1)
        ]
        return TrendForecast(
            item_identifier=estimate.item_identifier,
            horizon=horizon,
            predicted_series=series,
            trend_direction=TrendDirection.STABLE,
            trend_strength=0.0,
            base_value=base,
            volatility=0.0,
            risk_assessment=RiskLevel.LOW,
            generated_at=generated_at,
            model_version=config.model_version,
        )

    trend = fit_trend(history, config)
    drift = max(-config.max_step_drift, min(config.max_step_drift, trend.daily_drift))
    vol = volatility(history, cap=config.max_volatility)
    start_confidence = estimate.confidence * (1.0 - vol)

    series = []
    for k in range(1, steps + 1):
        confidence = max(
            config.confidence_floor, start_confidence - k * config.confidence_step_decay
        )
        series.append(
            ForecastPoint(step=k, value=base * (1.0 + drift) ** k, confidence=confidence)
        )

    return TrendForecast(
        item_identifier=estimate.item_identifier,
        horizon=horizon,
        predicted_series=series,
        trend_direction=trend.direction,
        trend_strength=trend.strength,
        base_value=base,
        volatility=vol,
        risk_assessment=assess_risk(vol),
        generated_at=generated_at,
        model_version=config.model_version,
    )


def simulate_paths(forecast: TrendForecast, n_paths: int, seed: int) -> np.ndarray:
    """Scenario paths around a forecast, shape (n_paths, steps).

    Shocks are log-normal with total dispersion equal to the forecast's
    volatility over the horizon. The same seed always yields the same paths.
    """
    if n_paths < 1:
        raise ValueError(f"n_paths must be >= 1, got {n_paths}")
    expected = np.array([p.value for p in forecast.predicted_series], dtype=float)
    steps = expected.size
    if steps == 0:
        return np.empty((n_paths, 0))

    rng = np.random.default_rng(seed)
    sigma = forecast.volatility / math.sqrt(steps)
    shocks = rng.normal(0.0, sigma, size=(n_paths, steps))
    return expected * np.exp(np.cumsum(shocks, axis=1))


class ForecastEngine:
    """Serves forecasts, recomputing only when the cached one is outdated."""

    def __init__(
        self,
        store: SqliteStore,
        config: ForecastConfig | None = None,
        locks: KeyedLock | None = None,
    ) -> None:
        self._store = store
        self._config = config or ForecastConfig()
        self._locks = locks or KeyedLock()

    def _is_fresh(
        self, forecast: TrendForecast, estimate: AggregatedEstimate, now: datetime
    ) -> bool:
        if forecast.model_version != self._config.model_version:
            return False
        if forecast.generated_at < estimate.computed_at:
            return False
        return now - forecast.generated_at < timedelta(minutes=self._config.ttl_minutes)

    async def forecast(
        self,
        item_identifier: str,
        horizon: Horizon = Horizon.SHORT,
        now: datetime | None = None,
        force: bool = False,
    ) -> TrendForecast | None:
        """Latest forecast for the item, or None when it has no estimate."""
        now = to_utc(now) if now is not None else datetime.now(timezone.utc)
        async with self._locks.hold(item_identifier):
            estimate = await self._store.latest_aggregate(item_identifier)
            if estimate is None:
                return None

            if not force:
                cached = await self._store.latest_forecast(item_identifier, horizon)
                if cached is not None and self._is_fresh(cached, estimate, now):
                    return cached

            history = await self._store.aggregate_history(
                item_identifier, limit=self._config.history_limit
            )
            forecast = project(estimate, history, horizon, self._config, now)
            stored = await self._store.save_forecast(forecast)
        logger.info(
            "Forecast %s/%s: %s (strength %.2f, risk %s)",
            item_identifier,
            horizon,
            forecast.trend_direction,
            forecast.trend_strength,
            forecast.risk_assessment,
        )
        return stored

    async def forecast_all(
        self, item_identifier: str, now: datetime | None = None
    ) -> dict[Horizon, TrendForecast | None]:
        return {
            horizon: await self.forecast(item_identifier, horizon, now=now)
            for horizon in Horizon
        }
