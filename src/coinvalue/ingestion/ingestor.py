"""Observation ingestor: validate, normalize, convert, persist."""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any

from coinvalue.core.config import IngestionConfig
from coinvalue.core.exceptions import RateUnavailableError, ValidationError
from coinvalue.core.models import IngestReport, PriceObservation, RawObservation
from coinvalue.ingestion.currency import RateLookup, StaticRateLookup
from coinvalue.ingestion.normalizer import validate_entry
from coinvalue.sources.registry import SourceRegistry
from coinvalue.storage.store import SqliteStore

logger = logging.getLogger(__name__)


class ObservationIngestor:
    """Gatekeeper between raw collaborator data and the observation log.

    Every entry in a batch is either accepted or rejected. Accepted entries
    whose currency cannot be converted yet are parked in the pending queue
    and retried at the start of each later cycle.
    """

    def __init__(
        self,
        store: SqliteStore,
        registry: SourceRegistry,
        config: IngestionConfig | None = None,
        rates: RateLookup | None = None,
    ) -> None:
        self._store = store
        self._registry = registry
        self._config = config or IngestionConfig()
        self._rates = rates or StaticRateLookup(self._config.static_rates)
        self._display_names = {
            feed.source_id: feed.display_name
            for feed in self._config.feeds
            if feed.display_name
        }

    @property
    def base_currency(self) -> str:
        return self._config.base_currency

    async def ingest(
        self,
        entries: Iterable[RawObservation | dict[str, Any]],
        now: datetime | None = None,
    ) -> IngestReport:
        """Ingest one batch. Pending conversions are retried first."""
        now = now or datetime.now(timezone.utc)
        report = await self.retry_pending()

        validated: list[PriceObservation] = []
        batch_size = 0
        rejected = 0
        for entry in entries:
            batch_size += 1
            try:
                validated.append(validate_entry(self._with_default_currency(entry)))
            except ValidationError as e:
                rejected += 1
                logger.debug("Rejected observation (%s): %s", e.context.get("field"), e)

        ready: list[PriceObservation] = []
        deferred: list[PriceObservation] = []
        for obs in validated:
            try:
                ready.append(await self._convert(obs))
            except RateUnavailableError:
                deferred.append(obs)

        async with self._store.transaction():
            stored = await self._store.append_observations(ready)
            for obs in deferred:
                await self._store.enqueue_pending(obs, queued_at=now)
            await self._touch_sources(stored + deferred, now)

        if deferred:
            logger.info(
                "Deferred %d observations awaiting currency rates", len(deferred)
            )
        if rejected:
            logger.warning("Rejected %d of %d observations", rejected, batch_size)

        batch = IngestReport(
            batch_size=batch_size,
            accepted=len(validated),
            rejected=rejected,
            deferred=len(deferred),
            items=sorted({obs.item_identifier for obs in stored}),
        )
        return report.merge(batch)

    async def retry_pending(self) -> IngestReport:
        """Retry every parked conversion once.

        Entries that have used up `max_conversion_retries` attempts are dropped.
        """
        pending = await self._store.list_pending()
        recovered: set[str] = set()
        recovered_count = 0
        expired = 0
        for entry in pending:
            try:
                converted = await self._convert(entry.observation)
            except RateUnavailableError:
                if entry.attempts + 1 >= self._config.max_conversion_retries:
                    await self._store.resolve_pending(entry.pending_id, None)
                    expired += 1
                    logger.warning(
                        "Dropped observation for %s from %s: no %s rate after %d attempts",
                        entry.observation.item_identifier,
                        entry.observation.source_id,
                        entry.original_currency,
                        entry.attempts + 1,
                    )
                else:
                    await self._store.bump_pending_attempts(entry.pending_id)
                continue
            await self._store.resolve_pending(entry.pending_id, converted)
            recovered.add(converted.item_identifier)
            recovered_count += 1

        if recovered_count:
            logger.info("Recovered %d deferred observations", recovered_count)
        return IngestReport(
            recovered=recovered_count, expired=expired, items=sorted(recovered)
        )

    async def _convert(self, obs: PriceObservation) -> PriceObservation:
        base = self._config.base_currency
        if obs.currency == base:
            return obs
        rate = await self._rates.rate(obs.currency, base)
        payload = dict(obs.raw_payload)
        payload.update(
            {
                "original_price": obs.price,
                "original_currency": obs.currency,
                "conversion_rate": rate,
            }
        )
        return obs.model_copy(
            update={"price": obs.price * rate, "currency": base, "raw_payload": payload}
        )

    def _with_default_currency(
        self, entry: RawObservation | dict[str, Any]
    ) -> RawObservation | dict[str, Any]:
        if isinstance(entry, dict) and entry.get("currency") in (None, ""):
            return {**entry, "currency": self._config.base_currency}
        return entry

    async def _touch_sources(
        self, observations: list[PriceObservation], seen_at: datetime
    ) -> None:
        counts = Counter(obs.source_id for obs in observations)
        for source_id, count in sorted(counts.items()):
            await self._registry.touch(
                source_id,
                seen_at,
                count=count,
                display_name=self._display_names.get(source_id),
            )
