"""Valuation service: the operations exposed to the API and CLI.

Wires the registry, ingestor, aggregation engine, forecast engine and
feedback loop over one store. Each public coroutine is an independently
triggerable job.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime, timedelta
from typing import Any

import numpy as np

from coinvalue.aggregation.engine import AggregationEngine
from coinvalue.core.config import CoinValueConfig
from coinvalue.core.exceptions import ValidationError
from coinvalue.core.locks import KeyedLock
from coinvalue.core.models import (
    AggregatedEstimate,
    FeedbackBatchReport,
    Horizon,
    IngestReport,
    LearningEvent,
    LearningInsights,
    PerformanceMetric,
    RawObservation,
    SourceRecord,
    TrendForecast,
)
from coinvalue.forecast.engine import ForecastEngine, simulate_paths
from coinvalue.ingestion.currency import HttpRateLookup, RateLookup, StaticRateLookup
from coinvalue.ingestion.feeds import FeedCollector, build_feeds
from coinvalue.ingestion.ingestor import ObservationIngestor
from coinvalue.ingestion.normalizer import normalize_item_identifier
from coinvalue.learning.feedback import FeedbackLoop
from coinvalue.sources.registry import SourceRegistry
from coinvalue.storage.store import SqliteStore, create_store

logger = logging.getLogger(__name__)


def build_rate_lookup(config: CoinValueConfig) -> RateLookup:
    static = StaticRateLookup(config.ingestion.static_rates)
    if config.ingestion.rate_url:
        return HttpRateLookup(
            config.ingestion.rate_url,
            timeout=config.ingestion.rate_request_timeout,
            fallback=static,
        )
    return static


class ValuationService:
    """Facade over the valuation pipeline.

    Use via `async with await ValuationService.create(config) as service:`
    or construct with an already-initialized store.
    """

    def __init__(
        self,
        config: CoinValueConfig,
        store: SqliteStore,
        rates: RateLookup | None = None,
        collector: FeedCollector | None = None,
    ) -> None:
        self._config = config
        self._store = store
        self._rates = rates or build_rate_lookup(config)
        self._collector = collector
        source_locks = KeyedLock()
        item_locks = KeyedLock()

        self.registry = SourceRegistry(store, config.registry)
        self.feedback = FeedbackLoop(
            store,
            self.registry,
            config.learning,
            aggregation=config.aggregation,
            locks=source_locks,
        )
        self.ingestor = ObservationIngestor(
            store, self.registry, config.ingestion, rates=self._rates
        )
        self.aggregation = AggregationEngine(
            store,
            self.registry,
            config.aggregation,
            feedback=self.feedback,
            locks=item_locks,
        )
        self.forecasts = ForecastEngine(store, config.forecast, locks=item_locks)

    @classmethod
    async def create(cls, config: CoinValueConfig) -> ValuationService:
        store = await create_store(config.storage)
        return cls(config, store)

    async def __aenter__(self) -> ValuationService:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def close(self) -> None:
        if self._collector is not None:
            await self._collector.close()
        close = getattr(self._rates, "close", None)
        if close is not None:
            await close()
        await self._store.close()

    @property
    def config(self) -> CoinValueConfig:
        return self._config

    @property
    def store(self) -> SqliteStore:
        return self._store

    @property
    def collector(self) -> FeedCollector:
        if self._collector is None:
            self._collector = FeedCollector(
                build_feeds(self._config.ingestion.feeds),
                max_concurrent=self._config.ingestion.max_concurrent_feeds,
                default_timeout=self._config.ingestion.feed_timeout_seconds,
            )
        return self._collector

    # --- Ingestion ---

    async def ingest_observations(
        self,
        entries: Iterable[RawObservation | dict[str, Any]],
        now: datetime | None = None,
    ) -> IngestReport:
        """Ingest a batch, then re-aggregate every item it touched."""
        report = await self.ingestor.ingest(entries, now=now)
        if self._config.ingestion.aggregate_on_ingest and report.items:
            await self.aggregation.aggregate_many(report.items, as_of=now)
        return report

    async def collect_feeds(self, now: datetime | None = None) -> IngestReport:
        """Poll all configured feeds once and ingest what they return."""
        collected = await self.collector.collect()
        entries = [entry for source_entries in collected.values() for entry in source_entries]
        return await self.ingest_observations(entries, now=now)

    # --- Estimates ---

    @staticmethod
    def _key(item_identifier: str) -> str:
        return normalize_item_identifier(item_identifier)

    async def aggregate(
        self, item_identifier: str, as_of: datetime | None = None
    ) -> AggregatedEstimate | None:
        return await self.aggregation.aggregate(self._key(item_identifier), as_of=as_of)

    async def aggregate_all(self, as_of: datetime | None = None) -> dict[str, AggregatedEstimate | None]:
        items = await self._store.list_items()
        return await self.aggregation.aggregate_many(items, as_of=as_of)

    async def get_estimate(self, item_identifier: str) -> AggregatedEstimate | None:
        """Current estimate, or None when the item has never been aggregated."""
        return await self._store.latest_aggregate(self._key(item_identifier))

    async def get_estimate_history(
        self,
        item_identifier: str,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> list[AggregatedEstimate]:
        return await self._store.aggregate_history(
            self._key(item_identifier), since=since, limit=limit
        )

    # --- Forecasts ---

    async def get_forecast(
        self,
        item_identifier: str,
        horizon: Horizon = Horizon.SHORT,
        now: datetime | None = None,
    ) -> TrendForecast | None:
        return await self.forecasts.forecast(self._key(item_identifier), horizon, now=now)

    async def simulate(
        self,
        item_identifier: str,
        horizon: Horizon = Horizon.SHORT,
        n_paths: int = 100,
        seed: int = 0,
    ) -> np.ndarray | None:
        forecast = await self.get_forecast(item_identifier, horizon)
        if forecast is None:
            return None
        return simulate_paths(forecast, n_paths=n_paths, seed=seed)

    # --- Feedback ---

    async def submit_feedback(self, payload: dict[str, Any]) -> LearningEvent:
        return await self.feedback.submit(payload)

    async def apply_feedback(
        self, limit: int | None = None, now: datetime | None = None
    ) -> FeedbackBatchReport:
        if limit is not None and limit < 1:
            raise ValidationError(
                "limit must be >= 1", context={"field": "limit", "value": limit}
            )
        return await self.feedback.apply_pending(limit=limit, now=now)

    async def get_performance(self, category: str | None = None) -> list[PerformanceMetric]:
        return await self._store.list_metrics(category=category)

    async def get_insights(self) -> LearningInsights:
        return await self.feedback.insights()

    async def rebuild_metrics(self, window_days: int | None = None) -> list[PerformanceMetric]:
        return await self.feedback.rebuild_metrics(window_days=window_days)

    # --- Sources ---

    async def list_sources(self, active_only: bool = False) -> list[SourceRecord]:
        return await self.registry.list_sources(active_only=active_only)

    async def deactivate_stale_sources(
        self, max_age_days: int | None = None, now: datetime | None = None
    ) -> list[str]:
        max_age = timedelta(days=max_age_days) if max_age_days is not None else None
        return await self.registry.deactivate_stale(max_age=max_age, now=now)

    async def get_statistics(self) -> dict[str, int]:
        return await self._store.get_statistics()
