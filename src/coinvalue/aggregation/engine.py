"""Aggregation engine: combine weighted observations into one estimate."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Protocol

import numpy as np

from coinvalue.aggregation.decay import RecencyDecay
from coinvalue.core.config import AggregationConfig
from coinvalue.core.exceptions import InsufficientDataError, StaleReliabilityError
from coinvalue.core.locks import KeyedLock
from coinvalue.core.models import AggregatedEstimate, PriceObservation
from coinvalue.sources.registry import SourceRegistry
from coinvalue.storage.store import SqliteStore, to_utc

logger = logging.getLogger(__name__)


class AgreementSink(Protocol):
    """Receives agreement signals after each aggregation."""

    async def record_aggregation(
        self,
        estimate: AggregatedEstimate,
        observations: Sequence[PriceObservation],
    ) -> None: ...


@dataclass(frozen=True)
class WeightedObservation:
    """An observation paired with the two factors of its weight."""

    observation: PriceObservation
    source_weight: float
    recency: float

    @property
    def weight(self) -> float:
        return self.source_weight * self.recency


def weighted_percentile(values: Sequence[float], weights: Sequence[float], q: float) -> float:
    """Inverted weighted CDF.

    Returns the smallest value whose cumulative weight share reaches `q`.
    Zero total weight falls back to equal weights.
    """
    v = np.asarray(values, dtype=float)
    w = np.asarray(weights, dtype=float)
    if v.size == 0:
        raise ValueError("weighted_percentile of empty sequence")
    if w.sum() <= 0:
        w = np.ones_like(v)
    order = np.argsort(v, kind="stable")
    v, w = v[order], w[order]
    cdf = np.cumsum(w) / w.sum()
    idx = int(np.searchsorted(cdf, q - 1e-12, side="left"))
    return float(v[min(idx, v.size - 1)])


def compute_estimate(
    item_identifier: str,
    weighted: Sequence[WeightedObservation],
    config: AggregationConfig,
    computed_at: datetime,
) -> AggregatedEstimate:
    """Pure aggregation over an already-weighted window.

    Raises:
        InsufficientDataError: the window is empty.
    """
    if not weighted:
        raise InsufficientDataError(
            f"No usable observations for {item_identifier}",
            context={"item_identifier": item_identifier},
        )

    prices = np.array([w.observation.price for w in weighted], dtype=float)
    weights = np.array([w.weight for w in weighted], dtype=float)
    if weights.sum() <= 0:
        weights = np.ones_like(prices)

    average = float(np.average(prices, weights=weights))
    spread = float(np.sqrt(np.average((prices - average) ** 2, weights=weights)))

    if len(weighted) == 1:
        low = high = average
    else:
        # Widen so the interval always contains the mean.
        low = min(weighted_percentile(prices, weights, config.low_quantile), average)
        high = max(weighted_percentile(prices, weights, config.high_quantile), average)

    source_weights: dict[str, float] = {}
    for w in weighted:
        source_weights[w.observation.source_id] = w.source_weight
    source_count = len(source_weights)
    mean_source_weight = sum(source_weights.values()) / source_count

    confidence = (
        config.weight_confidence_scale * mean_source_weight
        + config.per_source_bonus * min(source_count, config.source_bonus_cap)
    )
    confidence = min(config.max_confidence, confidence)
    if source_count == 1:
        confidence = min(confidence, config.single_source_ceiling)

    return AggregatedEstimate(
        item_identifier=item_identifier,
        low=low,
        average=average,
        high=high,
        confidence=max(0.0, confidence),
        contributing_source_count=source_count,
        observation_count=len(weighted),
        spread=spread,
        computed_at=computed_at,
    )


class AggregationEngine:
    """Maintains the current estimate and estimate history per item.

    Aggregations of the same item are serialized; different items run
    concurrently.
    """

    def __init__(
        self,
        store: SqliteStore,
        registry: SourceRegistry,
        config: AggregationConfig | None = None,
        feedback: AgreementSink | None = None,
        locks: KeyedLock | None = None,
    ) -> None:
        self._store = store
        self._registry = registry
        self._config = config or AggregationConfig()
        self._decay = RecencyDecay(self._config.decay_tau_days)
        self._feedback = feedback
        self._locks = locks or KeyedLock()

    def attach_feedback(self, feedback: AgreementSink) -> None:
        self._feedback = feedback

    async def collect_window(
        self, item_identifier: str, as_of: datetime
    ) -> list[WeightedObservation]:
        """Weighted observations eligible for aggregation at `as_of`."""
        since = as_of - timedelta(days=self._config.lookback_days)
        observations = await self._store.window(
            item_identifier,
            since=since,
            until=as_of,
            limit=self._config.max_observations,
            active_only=True,
        )

        weights: dict[str, float | None] = {}
        weighted: list[WeightedObservation] = []
        for obs in observations:
            if obs.source_id not in weights:
                try:
                    weights[obs.source_id] = await self._registry.get_weight(obs.source_id)
                except StaleReliabilityError:
                    logger.debug("Excluding inactive source %s", obs.source_id)
                    weights[obs.source_id] = None
            source_weight = weights[obs.source_id]
            if source_weight is None:
                continue
            weighted.append(
                WeightedObservation(
                    observation=obs,
                    source_weight=source_weight,
                    recency=self._decay.compute_weight(obs.observed_at, as_of),
                )
            )
        return weighted

    async def aggregate(
        self, item_identifier: str, as_of: datetime | None = None
    ) -> AggregatedEstimate | None:
        """Recompute and persist the estimate for one item.

        Returns None when no usable observations remain; any previous
        estimate is then flagged stale.
        """
        as_of = to_utc(as_of) if as_of is not None else datetime.now(timezone.utc)
        async with self._locks.hold(item_identifier):
            weighted = await self.collect_window(item_identifier, as_of)
            try:
                estimate = compute_estimate(item_identifier, weighted, self._config, as_of)
            except InsufficientDataError:
                if await self._store.mark_estimate_stale(item_identifier):
                    logger.info("No usable observations for %s, estimate marked stale", item_identifier)
                return None
            await self._store.save_estimate(estimate)

        logger.debug(
            "Aggregated %s: %.2f [%.2f, %.2f] confidence=%.3f from %d sources",
            item_identifier,
            estimate.average,
            estimate.low,
            estimate.high,
            estimate.confidence,
            estimate.contributing_source_count,
        )
        if self._feedback is not None and self._config.learn_from_aggregation:
            await self._feedback.record_aggregation(
                estimate, [w.observation for w in weighted]
            )
        return estimate

    async def aggregate_many(
        self, items: Iterable[str], as_of: datetime | None = None
    ) -> dict[str, AggregatedEstimate | None]:
        unique = sorted(set(items))
        results = await asyncio.gather(*(self.aggregate(i, as_of) for i in unique))
        return dict(zip(unique, results))
