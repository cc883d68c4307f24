"""Source registry: per-source reliability and activity tracking.

Reliability starts at a neutral prior and moves by an exponential moving
average of agreement signals. The learning feedback loop is the only caller
of `record_agreement`; ingestion only touches activity fields.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from coinvalue.core.config import RegistryConfig
from coinvalue.core.exceptions import StaleReliabilityError
from coinvalue.core.models import AggregatedEstimate, PriceObservation, SourceRecord
from coinvalue.storage.store import SqliteStore, to_utc

logger = logging.getLogger("coinvalue.sources")


class SourceRegistry:
    """Owns every `SourceRecord` and the weight each source carries."""

    def __init__(self, store: SqliteStore, config: RegistryConfig | None = None) -> None:
        self._store = store
        self._config = config or RegistryConfig()

    @property
    def prior(self) -> float:
        return self._config.prior_weight

    async def get(self, source_id: str) -> SourceRecord | None:
        return await self._store.get_source(source_id)

    async def list_sources(self, active_only: bool = False) -> list[SourceRecord]:
        return await self._store.list_sources(active_only=active_only)

    async def ensure(
        self,
        source_id: str,
        display_name: str | None = None,
        categories: list[str] | None = None,
        now: datetime | None = None,
    ) -> SourceRecord:
        """Return the source, registering it with the prior if unknown."""
        async with self._store.transaction():
            record = await self._store.get_source(source_id)
            if record is not None:
                return record
            record = SourceRecord(
                source_id=source_id,
                display_name=display_name or source_id,
                category_specialization=categories or [],
                reliability_score=self.prior,
                created_at=now or datetime.now(timezone.utc),
            )
            await self._store.save_source(record)
        logger.info("Registered source %s with prior %.2f", source_id, self.prior)
        return record

    async def get_weight(self, source_id: str) -> float:
        """Reliability weight for aggregation.

        Raises:
            StaleReliabilityError: the source has been deactivated.
        """
        record = await self._store.get_source(source_id)
        if record is None:
            record = await self.ensure(source_id)
        if not record.is_active:
            raise StaleReliabilityError(
                f"Source {source_id} is inactive",
                context={
                    "source_id": source_id,
                    "last_seen_at": record.last_seen_at.isoformat()
                    if record.last_seen_at
                    else None,
                },
            )
        return record.reliability_score

    async def touch(
        self,
        source_id: str,
        seen_at: datetime,
        count: int = 1,
        display_name: str | None = None,
    ) -> SourceRecord:
        """Record that a source delivered `count` observations.

        Reactivates a deactivated source. `last_seen_at` only moves forward.
        """
        seen_at = to_utc(seen_at)
        async with self._store.transaction():
            record = await self.ensure(source_id, display_name=display_name, now=seen_at)
            last_seen = record.last_seen_at
            if last_seen is None or seen_at > last_seen:
                last_seen = seen_at
            if not record.is_active:
                logger.info("Reactivating source %s", source_id)
            updated = record.model_copy(
                update={
                    "observation_count": record.observation_count + count,
                    "last_seen_at": last_seen,
                    "is_active": True,
                }
            )
            await self._store.save_source(updated)
        return updated

    def agreement_signal(
        self, observation: PriceObservation, final_aggregate: AggregatedEstimate
    ) -> float:
        """1.0 if the observation landed close to the final aggregate, else 0.0."""
        tolerance = max(
            final_aggregate.spread,
            self._config.agreement_tolerance * final_aggregate.average,
        )
        return 1.0 if abs(observation.price - final_aggregate.average) <= tolerance else 0.0

    async def record_agreement(
        self,
        source_id: str,
        observation: PriceObservation,
        final_aggregate: AggregatedEstimate,
    ) -> float:
        """Move a source's reliability toward its agreement signal. Returns the new score."""
        signal = self.agreement_signal(observation, final_aggregate)
        alpha = self._config.ema_alpha
        async with self._store.transaction():
            record = await self.ensure(source_id)
            score = record.reliability_score * (1 - alpha) + signal * alpha
            score = min(1.0, max(0.0, score))
            await self._store.save_source(
                record.model_copy(update={"reliability_score": round(score, 6)})
            )
        logger.debug(
            "Source %s agreement=%.0f reliability %.4f -> %.4f",
            source_id,
            signal,
            record.reliability_score,
            score,
        )
        return round(score, 6)

    async def deactivate_stale(
        self,
        max_age: timedelta | None = None,
        now: datetime | None = None,
    ) -> list[str]:
        """Deactivate sources not seen within `max_age`. Returns their ids."""
        if max_age is None:
            max_age = timedelta(days=self._config.stale_after_days)
        now = to_utc(now) if now is not None else datetime.now(timezone.utc)
        ids = await self._store.deactivate_sources_before(now - max_age)
        if ids:
            logger.warning("Deactivated %d stale sources: %s", len(ids), ", ".join(ids))
        return ids
