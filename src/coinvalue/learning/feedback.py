"""Learning feedback loop.

Turns human feedback and aggregation outcomes into source reliability
updates and per-category performance metrics. This module is the only
writer of source reliability. Applying an event is idempotent: the
`applied` flag is checked and set in the same transaction as its side
effects, so a failure leaves the event pending for the next sweep.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections import defaultdict
from collections.abc import Sequence
from datetime import datetime, timedelta, timezone
from typing import Any

import pydantic

from coinvalue.core.config import AggregationConfig, LearningConfig
from coinvalue.core.exceptions import ValidationError
from coinvalue.core.locks import KeyedLock
from coinvalue.core.models import (
    AggregatedEstimate,
    CorrectionRecord,
    FeedbackBatchReport,
    LearningEvent,
    LearningInsights,
    LearningState,
    PerformanceMetric,
    PriceObservation,
)
from coinvalue.ingestion.normalizer import normalize_item_identifier
from coinvalue.sources.registry import SourceRegistry
from coinvalue.storage.store import SqliteStore, to_utc

logger = logging.getLogger("coinvalue.learning")

# Payload keys that carry a corrected value for the estimate's average.
_CORRECTED_VALUE_KEYS = ("average", "value", "price")
_ESTIMATE_FIELD_ALIASES = {"value": "average", "price": "average"}
_ESTIMATE_FIELDS = ("low", "average", "high", "confidence")


def _corrected_value(payload: dict[str, Any]) -> float | None:
    for key in _CORRECTED_VALUE_KEYS:
        raw = payload.get(key)
        if isinstance(raw, dict):
            raw = raw.get("corrected")
        if raw is None or isinstance(raw, bool):
            continue
        try:
            value = float(raw)
        except (TypeError, ValueError):
            continue
        if math.isfinite(value) and value > 0:
            return value
    return None


def extract_corrections(
    event: LearningEvent,
    estimate: AggregatedEstimate | None,
    recorded_at: datetime,
) -> list[CorrectionRecord]:
    """Diff a correction payload against what the engine reported.

    A payload value may be the corrected value itself or a mapping with
    explicit `original` and `corrected` entries.
    """
    records = []
    for field, value in sorted(event.correction_payload.items()):
        if isinstance(value, dict) and "corrected" in value:
            original = value.get("original")
            corrected = value["corrected"]
        else:
            corrected = value
            target = _ESTIMATE_FIELD_ALIASES.get(field, field)
            original = (
                getattr(estimate, target)
                if estimate is not None and target in _ESTIMATE_FIELDS
                else None
            )
        if original == corrected:
            continue
        records.append(
            CorrectionRecord(
                event_id=event.event_id,
                subject_id=event.subject_id,
                field=field,
                original=original,
                corrected=corrected,
                recorded_at=recorded_at,
            )
        )
    return records


def _latest_per_source(
    observations: Sequence[PriceObservation],
) -> dict[str, PriceObservation]:
    latest: dict[str, PriceObservation] = {}
    for obs in observations:
        current = latest.get(obs.source_id)
        if current is None or obs.observed_at >= current.observed_at:
            latest[obs.source_id] = obs
    return latest


class FeedbackLoop:
    """Applies feedback events and aggregation agreement to the registry."""

    def __init__(
        self,
        store: SqliteStore,
        registry: SourceRegistry,
        config: LearningConfig | None = None,
        aggregation: AggregationConfig | None = None,
        locks: KeyedLock | None = None,
    ) -> None:
        self._store = store
        self._registry = registry
        self._config = config or LearningConfig()
        self._aggregation = aggregation or AggregationConfig()
        self._source_locks = locks or KeyedLock()
        self._applying: set[int] = set()

    def state_of(self, event: LearningEvent) -> LearningState:
        if event.event_id in self._applying and not event.applied:
            return LearningState.APPLYING
        return event.state

    # --- Submission ---

    async def submit(
        self, payload: dict[str, Any] | LearningEvent, now: datetime | None = None
    ) -> LearningEvent:
        """Validate and store a pending feedback event.

        Raises:
            ValidationError: the payload is malformed.
        """
        if isinstance(payload, LearningEvent):
            event = payload.model_copy(update={"applied": False, "applied_at": None, "event_id": None})
        else:
            data = {
                k: v for k, v in payload.items() if k not in ("applied", "applied_at", "event_id")
            }
            if data.get("created_at") is None:
                data["created_at"] = now or datetime.now(timezone.utc)
            if data.get("correction_payload") is None:
                data["correction_payload"] = {}
            try:
                event = LearningEvent.model_validate(data)
            except pydantic.ValidationError as e:
                first = e.errors()[0]
                field = ".".join(str(p) for p in first.get("loc", ())) or "payload"
                raise ValidationError(
                    f"Invalid feedback: {first.get('msg', e)}",
                    context={"field": field, "value": first.get("input")},
                ) from e

        event = event.model_copy(update={"created_at": to_utc(event.created_at)})
        stored = await self._store.save_learning_event(event)
        logger.info(
            "Feedback %d submitted for %s (%s)",
            stored.event_id,
            stored.subject_id,
            stored.category,
        )
        return stored

    # --- Application ---

    async def _contributing(self, estimate: AggregatedEstimate) -> dict[str, PriceObservation]:
        window = await self._store.window(
            estimate.item_identifier,
            since=estimate.computed_at - timedelta(days=self._aggregation.lookback_days),
            until=estimate.computed_at,
            limit=self._aggregation.max_observations,
            active_only=True,
        )
        return _latest_per_source(window)

    async def _find_estimate(self, subject_id: str) -> AggregatedEstimate | None:
        """Current estimate when the subject is an item, by raw or normalized key."""
        estimate = await self._store.latest_aggregate(subject_id)
        if estimate is not None:
            return estimate
        try:
            normalized = normalize_item_identifier(subject_id)
        except ValidationError:
            return None
        if normalized == subject_id:
            return None
        return await self._store.latest_aggregate(normalized)

    @staticmethod
    def _reference(
        event: LearningEvent, estimate: AggregatedEstimate | None
    ) -> AggregatedEstimate | None:
        if estimate is None:
            return None
        corrected = _corrected_value(event.correction_payload)
        if corrected is not None:
            return estimate.model_copy(
                update={
                    "average": corrected,
                    "low": min(estimate.low, corrected),
                    "high": max(estimate.high, corrected),
                }
            )
        if event.is_positive:
            return estimate
        return None

    async def apply(self, event_id: int, now: datetime | None = None) -> bool:
        """Apply one event. Returns False when it was already applied.

        Raises:
            ValidationError: no such event.
            StorageError: the transaction failed; the event stays pending.
        """
        if event_id in self._applying:
            return False
        now = to_utc(now) if now is not None else datetime.now(timezone.utc)
        self._applying.add(event_id)
        try:
            event = await self._store.get_learning_event(event_id)
            if event is None:
                raise ValidationError(
                    f"Unknown learning event {event_id}",
                    context={"field": "event_id", "value": event_id},
                )
            if event.applied:
                return False

            estimate = await self._find_estimate(event.subject_id)
            reference = self._reference(event, estimate)
            contributing = (
                await self._contributing(estimate) if reference is not None else {}
            )

            async with self._source_locks.hold_many(contributing):
                async with self._store.transaction():
                    current = await self._store.get_learning_event(event_id)
                    if current is None or current.applied:
                        return False

                    for source_id, obs in sorted(contributing.items()):
                        await self._registry.record_agreement(source_id, obs, reference)

                    await self._update_metric(event, now)
                    await self._store.save_corrections(
                        extract_corrections(event, estimate, now)
                    )
                    await self._store.mark_event_applied(event_id, now)

            logger.debug(
                "Applied feedback %d (%s, accuracy %.2f, %d sources updated)",
                event_id,
                event.category,
                event.accuracy,
                len(contributing),
            )
            return True
        finally:
            self._applying.discard(event_id)

    async def _update_metric(self, event: LearningEvent, now: datetime) -> PerformanceMetric:
        metric = await self._store.get_metric(event.category)
        count = (metric.total_learning_events if metric else 0) + 1
        previous_mean = metric.mean_accuracy if metric else 0.0
        mean = previous_mean + (event.accuracy - previous_mean) / count
        corrections = (metric.corrections_applied if metric else 0) + (
            1 if event.correction_payload else 0
        )
        updated = PerformanceMetric(
            category=event.category,
            accuracy_improvement=round(mean - self._config.baseline_accuracy, 6),
            mean_accuracy=round(mean, 6),
            total_learning_events=count,
            corrections_applied=corrections,
            last_updated_at=now,
        )
        await self._store.save_metric(updated)
        return updated

    async def apply_pending(
        self, limit: int | None = None, now: datetime | None = None
    ) -> FeedbackBatchReport:
        """Apply the oldest pending events, at most `limit` (default batch size)."""
        cap = self._config.batch_size if limit is None else min(limit, self._config.batch_size)
        events = await self._store.list_learning_events(applied=False, limit=cap)
        semaphore = asyncio.Semaphore(self._config.max_concurrent)

        async def _run(event: LearningEvent) -> bool:
            async with semaphore:
                return await self.apply(event.event_id, now=now)

        raw_results = await asyncio.gather(
            *(_run(e) for e in events), return_exceptions=True
        )

        report = FeedbackBatchReport(selected=len(events))
        for event, result in zip(events, raw_results):
            if isinstance(result, Exception):
                report.failed += 1
                logger.warning("Failed to apply feedback %d: %s", event.event_id, result)
            elif result:
                report.applied += 1
            else:
                report.skipped += 1

        if events:
            logger.info(
                "Feedback sweep: %d applied, %d skipped, %d failed",
                report.applied,
                report.skipped,
                report.failed,
            )
        return report

    # --- Aggregation agreement ---

    async def record_aggregation(
        self,
        estimate: AggregatedEstimate,
        observations: Sequence[PriceObservation],
    ) -> dict[str, float]:
        """Score each contributing source by its latest observation's agreement."""
        latest = _latest_per_source(observations)
        scores: dict[str, float] = {}
        async with self._source_locks.hold_many(latest):
            async with self._store.transaction():
                for source_id, obs in sorted(latest.items()):
                    scores[source_id] = await self._registry.record_agreement(
                        source_id, obs, estimate
                    )
        return scores

    # --- Metrics ---

    async def rebuild_metrics(
        self, window_days: int | None = None, now: datetime | None = None
    ) -> list[PerformanceMetric]:
        """Recompute every category metric from applied events in the window."""
        window_days = window_days or self._config.metrics_window_days
        now = to_utc(now) if now is not None else datetime.now(timezone.utc)
        events = await self._store.list_learning_events(
            applied=True, since=now - timedelta(days=window_days)
        )

        grouped: dict[str, list[LearningEvent]] = defaultdict(list)
        for event in events:
            grouped[event.category].append(event)

        metrics = []
        for category, group in sorted(grouped.items()):
            mean = sum(e.accuracy for e in group) / len(group)
            metrics.append(
                PerformanceMetric(
                    category=category,
                    accuracy_improvement=round(mean - self._config.baseline_accuracy, 6),
                    mean_accuracy=round(mean, 6),
                    total_learning_events=len(group),
                    corrections_applied=sum(1 for e in group if e.correction_payload),
                    last_updated_at=max(e.applied_at or e.created_at for e in group),
                )
            )
        await self._store.replace_metrics(metrics)
        logger.info(
            "Rebuilt %d category metrics from %d events over %d days",
            len(metrics),
            len(events),
            window_days,
        )
        return metrics

    async def insights(self) -> LearningInsights:
        metrics = await self._store.list_metrics()
        if not metrics:
            return LearningInsights(
                total_events=0,
                categories_tracked=0,
                categories_improved=0,
                mean_accuracy_improvement=0.0,
            )
        best = max(metrics, key=lambda m: m.accuracy_improvement)
        return LearningInsights(
            total_events=sum(m.total_learning_events for m in metrics),
            categories_tracked=len(metrics),
            categories_improved=sum(1 for m in metrics if m.accuracy_improvement > 0),
            mean_accuracy_improvement=round(
                sum(m.accuracy_improvement for m in metrics) / len(metrics), 6
            ),
            best_category=best.category,
        )
