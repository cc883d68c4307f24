"""Storage backend: Protocol definition, SQLite implementation, factory.

The store is the system's time-series log. Observations and estimate history
are append-only: no public method updates or deletes them. Corrections are
recorded by appending newer rows.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, ClassVar, Protocol, runtime_checkable

import aiosqlite

from coinvalue.core.config import StorageConfig
from coinvalue.core.exceptions import StorageError
from coinvalue.core.models import (
    AggregatedEstimate,
    CorrectionRecord,
    ForecastPoint,
    Horizon,
    LearningEvent,
    PendingConversion,
    PerformanceMetric,
    PriceObservation,
    RiskLevel,
    SourceRecord,
    StorageBackend as StorageBackendEnum,
    TrendDirection,
    TrendForecast,
)

logger = logging.getLogger(__name__)


def to_utc(value: datetime) -> datetime:
    """Coerce a datetime to aware UTC. Naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _ts(value: datetime | None) -> str | None:
    if value is None:
        return None
    return to_utc(value).isoformat(timespec="microseconds")


def _parse_ts(value: str | None) -> datetime | None:
    if value is None:
        return None
    return to_utc(datetime.fromisoformat(value))


@runtime_checkable
class StorageProtocol(Protocol):
    """Abstract storage interface for coinvalue data."""

    async def initialize(self) -> None: ...
    async def close(self) -> None: ...
    async def health_check(self) -> bool: ...
    def transaction(self) -> Any: ...
    async def get_source(self, source_id: str) -> SourceRecord | None: ...
    async def save_source(self, record: SourceRecord) -> None: ...
    async def list_sources(self, active_only: bool = False) -> list[SourceRecord]: ...
    async def append_observations(
        self, observations: list[PriceObservation]
    ) -> list[PriceObservation]: ...
    async def window(
        self,
        item_identifier: str,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int | None = None,
        active_only: bool = False,
    ) -> list[PriceObservation]: ...
    async def latest_aggregate(
        self, item_identifier: str
    ) -> AggregatedEstimate | None: ...
    async def save_estimate(self, estimate: AggregatedEstimate) -> None: ...
    async def aggregate_history(
        self,
        item_identifier: str,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> list[AggregatedEstimate]: ...
    async def save_forecast(self, forecast: TrendForecast) -> TrendForecast: ...
    async def latest_forecast(
        self, item_identifier: str, horizon: Horizon
    ) -> TrendForecast | None: ...
    async def save_learning_event(self, event: LearningEvent) -> LearningEvent: ...
    async def get_learning_event(self, event_id: int) -> LearningEvent | None: ...
    async def mark_event_applied(self, event_id: int, applied_at: datetime) -> bool: ...
    async def get_metric(self, category: str) -> PerformanceMetric | None: ...
    async def save_metric(self, metric: PerformanceMetric) -> None: ...


class SqliteStore:
    """SQLite implementation of the storage protocol.

    Uses aiosqlite for async access, WAL mode for concurrent reads,
    and a version-tracked migration system. Writes go through
    `transaction()`, which serializes writers on one lock and lets the
    owning task nest further writes inside the same commit.
    """

    _MIGRATIONS: ClassVar[dict[int, tuple[str, list[str]]]] = {
        1: (
            "Initial schema",
            [
                """CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY,
                    applied_at TEXT DEFAULT (datetime('now'))
                )""",
                """CREATE TABLE IF NOT EXISTS sources (
                    source_id TEXT PRIMARY KEY,
                    display_name TEXT NOT NULL,
                    categories_json TEXT NOT NULL DEFAULT '[]',
                    reliability_score REAL NOT NULL,
                    observation_count INTEGER NOT NULL DEFAULT 0,
                    last_seen_at TEXT,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT
                )""",
                """CREATE TABLE IF NOT EXISTS observations (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    item_identifier TEXT NOT NULL,
                    source_id TEXT NOT NULL,
                    price REAL NOT NULL,
                    currency TEXT NOT NULL,
                    observed_at TEXT NOT NULL,
                    raw_payload_json TEXT,
                    ingested_at TEXT DEFAULT (datetime('now'))
                )""",
                """CREATE TABLE IF NOT EXISTS pending_conversions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    item_identifier TEXT NOT NULL,
                    source_id TEXT NOT NULL,
                    original_price REAL NOT NULL,
                    original_currency TEXT NOT NULL,
                    observed_at TEXT NOT NULL,
                    raw_payload_json TEXT,
                    attempts INTEGER NOT NULL DEFAULT 1,
                    queued_at TEXT NOT NULL
                )""",
                """CREATE TABLE IF NOT EXISTS estimates (
                    item_identifier TEXT PRIMARY KEY,
                    low REAL NOT NULL,
                    average REAL NOT NULL,
                    high REAL NOT NULL,
                    confidence REAL NOT NULL,
                    source_count INTEGER NOT NULL,
                    observation_count INTEGER NOT NULL,
                    spread REAL NOT NULL,
                    computed_at TEXT NOT NULL,
                    is_stale INTEGER NOT NULL DEFAULT 0
                )""",
                """CREATE TABLE IF NOT EXISTS estimate_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    item_identifier TEXT NOT NULL,
                    low REAL NOT NULL,
                    average REAL NOT NULL,
                    high REAL NOT NULL,
                    confidence REAL NOT NULL,
                    source_count INTEGER NOT NULL,
                    observation_count INTEGER NOT NULL,
                    spread REAL NOT NULL,
                    computed_at TEXT NOT NULL
                )""",
                """CREATE TABLE IF NOT EXISTS forecasts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    item_identifier TEXT NOT NULL,
                    horizon TEXT NOT NULL,
                    series_json TEXT NOT NULL,
                    trend_direction TEXT NOT NULL,
                    trend_strength REAL NOT NULL,
                    base_value REAL NOT NULL,
                    volatility REAL NOT NULL,
                    risk_assessment TEXT NOT NULL,
                    generated_at TEXT NOT NULL,
                    model_version TEXT NOT NULL
                )""",
                """CREATE TABLE IF NOT EXISTS learning_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    subject_id TEXT NOT NULL,
                    category TEXT NOT NULL,
                    is_correct INTEGER,
                    accuracy_rating INTEGER,
                    correction_json TEXT,
                    created_at TEXT NOT NULL,
                    applied INTEGER NOT NULL DEFAULT 0,
                    applied_at TEXT
                )""",
                """CREATE TABLE IF NOT EXISTS learning_corrections (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    event_id INTEGER NOT NULL REFERENCES learning_events(id),
                    subject_id TEXT NOT NULL,
                    field TEXT NOT NULL,
                    original_json TEXT,
                    corrected_json TEXT,
                    recorded_at TEXT NOT NULL
                )""",
                """CREATE TABLE IF NOT EXISTS performance_metrics (
                    category TEXT PRIMARY KEY,
                    accuracy_improvement REAL NOT NULL,
                    mean_accuracy REAL NOT NULL,
                    total_learning_events INTEGER NOT NULL,
                    corrections_applied INTEGER NOT NULL,
                    last_updated_at TEXT NOT NULL
                )""",
                # Indexes
                "CREATE INDEX IF NOT EXISTS idx_obs_item_time ON observations(item_identifier, observed_at)",
                "CREATE INDEX IF NOT EXISTS idx_obs_source ON observations(source_id)",
                "CREATE INDEX IF NOT EXISTS idx_history_item_time ON estimate_history(item_identifier, computed_at)",
                "CREATE INDEX IF NOT EXISTS idx_forecast_item_horizon ON forecasts(item_identifier, horizon, generated_at)",
                "CREATE INDEX IF NOT EXISTS idx_events_applied ON learning_events(applied, created_at)",
                "CREATE INDEX IF NOT EXISTS idx_events_category ON learning_events(category)",
                "CREATE INDEX IF NOT EXISTS idx_corrections_event ON learning_corrections(event_id)",
            ],
        ),
    }

    def __init__(self, config: StorageConfig) -> None:
        self._path = config.sqlite_path
        self._db: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()
        self._tx_owner: asyncio.Task | None = None

    async def initialize(self) -> None:
        """Open connection, enable WAL + FK, run migrations."""
        if self._db is not None:
            return
        try:
            self._db = await aiosqlite.connect(self._path)
            self._db.row_factory = aiosqlite.Row
            await self._db.execute("PRAGMA journal_mode=WAL")
            await self._db.execute("PRAGMA foreign_keys=ON")
            current = await self._get_schema_version()
            await self._apply_migrations(current)
            await self._db.commit()
        except Exception as e:
            raise StorageError(
                f"Failed to initialize SQLite store: {e}",
                context={"operation": "initialize", "path": self._path},
            ) from e

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def health_check(self) -> bool:
        if self._db is None:
            return False
        try:
            async with self._db.execute("SELECT 1") as cursor:
                row = await cursor.fetchone()
            return row is not None
        except Exception:
            return False

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """Group writes into one atomic commit.

        Re-entrant for the owning task; other tasks wait for the lock.
        Any exception rolls the whole group back.
        """
        if self._db is None:
            raise StorageError(
                "Store is not initialized",
                context={"operation": "transaction", "path": self._path},
            )
        task = asyncio.current_task()
        if self._tx_owner is not None and self._tx_owner is task:
            yield
            return

        async with self._write_lock:
            self._tx_owner = task
            try:
                yield
                await self._db.commit()
            except BaseException:
                await self._db.rollback()
                raise
            finally:
                self._tx_owner = None

    # --- Schema Migration ---

    async def _get_schema_version(self) -> int:
        try:
            async with self._db.execute(
                "SELECT MAX(version) FROM schema_version"
            ) as cursor:
                row = await cursor.fetchone()
            return row[0] if row[0] is not None else 0
        except aiosqlite.OperationalError:
            return 0

    async def _apply_migrations(self, current_version: int) -> None:
        for version in sorted(self._MIGRATIONS.keys()):
            if version <= current_version:
                continue
            desc, statements = self._MIGRATIONS[version]
            logger.info("Applying migration %d: %s", version, desc)
            for sql in statements:
                await self._db.execute(sql)
            await self._db.execute(
                "INSERT INTO schema_version (version) VALUES (?)", (version,)
            )

    # --- Source Operations ---

    async def get_source(self, source_id: str) -> SourceRecord | None:
        try:
            async with self._db.execute(
                "SELECT * FROM sources WHERE source_id = ?", (source_id,)
            ) as cursor:
                row = await cursor.fetchone()
            return self._row_to_source(row) if row is not None else None
        except Exception as e:
            raise StorageError(
                f"Failed to get source: {e}",
                context={"operation": "query", "table": "sources", "source_id": source_id},
            ) from e

    async def save_source(self, record: SourceRecord) -> None:
        try:
            async with self.transaction():
                await self._db.execute(
                    """INSERT OR REPLACE INTO sources
                       (source_id, display_name, categories_json, reliability_score,
                        observation_count, last_seen_at, is_active, created_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        record.source_id,
                        record.display_name,
                        json.dumps(sorted(record.category_specialization)),
                        record.reliability_score,
                        record.observation_count,
                        _ts(record.last_seen_at),
                        1 if record.is_active else 0,
                        _ts(record.created_at),
                    ),
                )
        except Exception as e:
            if isinstance(e, StorageError):
                raise
            raise StorageError(
                f"Failed to save source: {e}",
                context={"operation": "insert", "table": "sources", "source_id": record.source_id},
            ) from e

    async def list_sources(self, active_only: bool = False) -> list[SourceRecord]:
        try:
            query = "SELECT * FROM sources"
            if active_only:
                query += " WHERE is_active = 1"
            query += " ORDER BY source_id ASC"
            async with self._db.execute(query) as cursor:
                rows = await cursor.fetchall()
            return [self._row_to_source(r) for r in rows]
        except Exception as e:
            raise StorageError(
                f"Failed to list sources: {e}",
                context={"operation": "query", "table": "sources"},
            ) from e

    async def deactivate_sources_before(self, cutoff: datetime) -> list[str]:
        """Flag active sources last seen before `cutoff` inactive.

        A source that was never seen is judged by its registration time.
        """
        try:
            async with self.transaction():
                async with self._db.execute(
                    """SELECT source_id FROM sources
                       WHERE is_active = 1
                         AND (COALESCE(last_seen_at, created_at) IS NULL
                              OR COALESCE(last_seen_at, created_at) < ?)
                       ORDER BY source_id""",
                    (_ts(cutoff),),
                ) as cursor:
                    rows = await cursor.fetchall()
                ids = [r["source_id"] for r in rows]
                if ids:
                    await self._db.executemany(
                        "UPDATE sources SET is_active = 0 WHERE source_id = ?",
                        [(sid,) for sid in ids],
                    )
            return ids
        except Exception as e:
            if isinstance(e, StorageError):
                raise
            raise StorageError(
                f"Failed to deactivate stale sources: {e}",
                context={"operation": "update", "table": "sources"},
            ) from e

    # --- Observation Operations ---

    async def append_observations(
        self, observations: list[PriceObservation]
    ) -> list[PriceObservation]:
        """Append observations; returns them with their assigned ids."""
        if not observations:
            return []
        stored: list[PriceObservation] = []
        try:
            async with self.transaction():
                for obs in observations:
                    cursor = await self._db.execute(
                        """INSERT INTO observations
                           (item_identifier, source_id, price, currency,
                            observed_at, raw_payload_json)
                           VALUES (?, ?, ?, ?, ?, ?)""",
                        (
                            obs.item_identifier,
                            obs.source_id,
                            obs.price,
                            obs.currency,
                            _ts(obs.observed_at),
                            json.dumps(obs.raw_payload, default=str) if obs.raw_payload else None,
                        ),
                    )
                    stored.append(obs.model_copy(update={"observation_id": cursor.lastrowid}))
            return stored
        except Exception as e:
            if isinstance(e, StorageError):
                raise
            raise StorageError(
                f"Failed to append observations: {e}",
                context={"operation": "insert", "table": "observations"},
            ) from e

    async def window(
        self,
        item_identifier: str,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int | None = None,
        active_only: bool = False,
    ) -> list[PriceObservation]:
        """Observations for an item ordered by observed_at ascending.

        With `limit`, the most recent `limit` observations are returned.
        With `active_only`, observations from deactivated sources are skipped;
        unregistered sources count as active.
        """
        try:
            query = "SELECT * FROM observations WHERE item_identifier = ?"
            params: list = [item_identifier]
            if since is not None:
                query += " AND observed_at >= ?"
                params.append(_ts(since))
            if until is not None:
                query += " AND observed_at <= ?"
                params.append(_ts(until))
            if active_only:
                query += (
                    " AND source_id NOT IN"
                    " (SELECT source_id FROM sources WHERE is_active = 0)"
                )
            query += " ORDER BY observed_at DESC, id DESC"
            if limit is not None:
                query += " LIMIT ?"
                params.append(limit)
            async with self._db.execute(query, params) as cursor:
                rows = await cursor.fetchall()
            return [self._row_to_observation(r) for r in reversed(rows)]
        except Exception as e:
            raise StorageError(
                f"Failed to query observation window: {e}",
                context={"operation": "query", "table": "observations"},
            ) from e

    async def list_items(self) -> list[str]:
        """Return every item identifier with at least one observation."""
        try:
            async with self._db.execute(
                "SELECT DISTINCT item_identifier FROM observations ORDER BY item_identifier"
            ) as cursor:
                rows = await cursor.fetchall()
            return [r[0] for r in rows]
        except Exception as e:
            raise StorageError(
                f"Failed to list items: {e}",
                context={"operation": "query", "table": "observations"},
            ) from e

    # --- Pending Conversion Operations ---

    async def enqueue_pending(
        self,
        observation: PriceObservation,
        queued_at: datetime,
    ) -> None:
        """Park an observation (price still in its original currency)."""
        try:
            async with self.transaction():
                await self._db.execute(
                    """INSERT INTO pending_conversions
                       (item_identifier, source_id, original_price, original_currency,
                        observed_at, raw_payload_json, attempts, queued_at)
                       VALUES (?, ?, ?, ?, ?, ?, 1, ?)""",
                    (
                        observation.item_identifier,
                        observation.source_id,
                        observation.price,
                        observation.currency,
                        _ts(observation.observed_at),
                        json.dumps(observation.raw_payload, default=str) if observation.raw_payload else None,
                        _ts(queued_at),
                    ),
                )
        except Exception as e:
            if isinstance(e, StorageError):
                raise
            raise StorageError(
                f"Failed to queue pending conversion: {e}",
                context={"operation": "insert", "table": "pending_conversions"},
            ) from e

    async def list_pending(self) -> list[PendingConversion]:
        try:
            async with self._db.execute(
                "SELECT * FROM pending_conversions ORDER BY id ASC"
            ) as cursor:
                rows = await cursor.fetchall()
            return [self._row_to_pending(r) for r in rows]
        except Exception as e:
            raise StorageError(
                f"Failed to list pending conversions: {e}",
                context={"operation": "query", "table": "pending_conversions"},
            ) from e

    async def resolve_pending(
        self,
        pending_id: int,
        observation: PriceObservation | None,
    ) -> PriceObservation | None:
        """Remove a queued entry, appending its converted observation if given."""
        try:
            async with self.transaction():
                await self._db.execute(
                    "DELETE FROM pending_conversions WHERE id = ?", (pending_id,)
                )
                if observation is None:
                    return None
                stored = await self.append_observations([observation])
            return stored[0]
        except Exception as e:
            if isinstance(e, StorageError):
                raise
            raise StorageError(
                f"Failed to resolve pending conversion: {e}",
                context={"operation": "delete", "table": "pending_conversions"},
            ) from e

    async def bump_pending_attempts(self, pending_id: int) -> None:
        try:
            async with self.transaction():
                await self._db.execute(
                    "UPDATE pending_conversions SET attempts = attempts + 1 WHERE id = ?",
                    (pending_id,),
                )
        except Exception as e:
            if isinstance(e, StorageError):
                raise
            raise StorageError(
                f"Failed to update pending conversion: {e}",
                context={"operation": "update", "table": "pending_conversions"},
            ) from e

    # --- Estimate Operations ---

    async def save_estimate(self, estimate: AggregatedEstimate) -> None:
        """Upsert the current estimate and append it to history atomically."""
        values = (
            estimate.item_identifier,
            estimate.low,
            estimate.average,
            estimate.high,
            estimate.confidence,
            estimate.contributing_source_count,
            estimate.observation_count,
            estimate.spread,
            _ts(estimate.computed_at),
        )
        try:
            async with self.transaction():
                await self._db.execute(
                    """INSERT OR REPLACE INTO estimates
                       (item_identifier, low, average, high, confidence,
                        source_count, observation_count, spread, computed_at, is_stale)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    values + (1 if estimate.is_stale else 0,),
                )
                await self._db.execute(
                    """INSERT INTO estimate_history
                       (item_identifier, low, average, high, confidence,
                        source_count, observation_count, spread, computed_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    values,
                )
        except Exception as e:
            if isinstance(e, StorageError):
                raise
            raise StorageError(
                f"Failed to save estimate: {e}",
                context={
                    "operation": "insert",
                    "table": "estimates",
                    "item_identifier": estimate.item_identifier,
                },
            ) from e

    async def mark_estimate_stale(self, item_identifier: str) -> bool:
        """Flag the current estimate stale. History is left untouched."""
        try:
            async with self.transaction():
                cursor = await self._db.execute(
                    "UPDATE estimates SET is_stale = 1 WHERE item_identifier = ? AND is_stale = 0",
                    (item_identifier,),
                )
            return cursor.rowcount > 0
        except Exception as e:
            if isinstance(e, StorageError):
                raise
            raise StorageError(
                f"Failed to mark estimate stale: {e}",
                context={"operation": "update", "table": "estimates"},
            ) from e

    async def latest_aggregate(self, item_identifier: str) -> AggregatedEstimate | None:
        try:
            async with self._db.execute(
                "SELECT * FROM estimates WHERE item_identifier = ?",
                (item_identifier,),
            ) as cursor:
                row = await cursor.fetchone()
            return self._row_to_estimate(row) if row is not None else None
        except Exception as e:
            raise StorageError(
                f"Failed to get estimate: {e}",
                context={"operation": "query", "table": "estimates"},
            ) from e

    async def list_estimates(self) -> list[AggregatedEstimate]:
        try:
            async with self._db.execute(
                "SELECT * FROM estimates ORDER BY item_identifier"
            ) as cursor:
                rows = await cursor.fetchall()
            return [self._row_to_estimate(r) for r in rows]
        except Exception as e:
            raise StorageError(
                f"Failed to list estimates: {e}",
                context={"operation": "query", "table": "estimates"},
            ) from e

    async def aggregate_history(
        self,
        item_identifier: str,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> list[AggregatedEstimate]:
        """Historical estimates ordered by computed_at ascending (latest `limit`)."""
        try:
            query = "SELECT * FROM estimate_history WHERE item_identifier = ?"
            params: list = [item_identifier]
            if since is not None:
                query += " AND computed_at >= ?"
                params.append(_ts(since))
            query += " ORDER BY computed_at DESC, id DESC"
            if limit is not None:
                query += " LIMIT ?"
                params.append(limit)
            async with self._db.execute(query, params) as cursor:
                rows = await cursor.fetchall()
            return [self._row_to_estimate(r) for r in reversed(rows)]
        except Exception as e:
            raise StorageError(
                f"Failed to get estimate history: {e}",
                context={"operation": "query", "table": "estimate_history"},
            ) from e

    # --- Forecast Operations ---

    async def save_forecast(self, forecast: TrendForecast) -> TrendForecast:
        try:
            async with self.transaction():
                cursor = await self._db.execute(
                    """INSERT INTO forecasts
                       (item_identifier, horizon, series_json, trend_direction,
                        trend_strength, base_value, volatility, risk_assessment,
                        generated_at, model_version)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        forecast.item_identifier,
                        str(forecast.horizon),
                        json.dumps([p.model_dump() for p in forecast.predicted_series]),
                        str(forecast.trend_direction),
                        forecast.trend_strength,
                        forecast.base_value,
                        forecast.volatility,
                        str(forecast.risk_assessment),
                        _ts(forecast.generated_at),
                        forecast.model_version,
                    ),
                )
            return forecast.model_copy(update={"forecast_id": cursor.lastrowid})
        except Exception as e:
            if isinstance(e, StorageError):
                raise
            raise StorageError(
                f"Failed to save forecast: {e}",
                context={"operation": "insert", "table": "forecasts"},
            ) from e

    async def latest_forecast(
        self, item_identifier: str, horizon: Horizon
    ) -> TrendForecast | None:
        try:
            async with self._db.execute(
                """SELECT * FROM forecasts
                   WHERE item_identifier = ? AND horizon = ?
                   ORDER BY generated_at DESC, id DESC LIMIT 1""",
                (item_identifier, str(horizon)),
            ) as cursor:
                row = await cursor.fetchone()
            return self._row_to_forecast(row) if row is not None else None
        except Exception as e:
            raise StorageError(
                f"Failed to get forecast: {e}",
                context={"operation": "query", "table": "forecasts"},
            ) from e

    # --- Learning Operations ---

    async def save_learning_event(self, event: LearningEvent) -> LearningEvent:
        try:
            async with self.transaction():
                cursor = await self._db.execute(
                    """INSERT INTO learning_events
                       (subject_id, category, is_correct, accuracy_rating,
                        correction_json, created_at, applied, applied_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        event.subject_id,
                        event.category,
                        None if event.is_correct is None else int(event.is_correct),
                        event.accuracy_rating,
                        json.dumps(event.correction_payload, default=str)
                        if event.correction_payload
                        else None,
                        _ts(event.created_at),
                        1 if event.applied else 0,
                        _ts(event.applied_at),
                    ),
                )
            return event.model_copy(update={"event_id": cursor.lastrowid})
        except Exception as e:
            if isinstance(e, StorageError):
                raise
            raise StorageError(
                f"Failed to save learning event: {e}",
                context={"operation": "insert", "table": "learning_events"},
            ) from e

    async def get_learning_event(self, event_id: int) -> LearningEvent | None:
        try:
            async with self._db.execute(
                "SELECT * FROM learning_events WHERE id = ?", (event_id,)
            ) as cursor:
                row = await cursor.fetchone()
            return self._row_to_event(row) if row is not None else None
        except Exception as e:
            raise StorageError(
                f"Failed to get learning event: {e}",
                context={"operation": "query", "table": "learning_events"},
            ) from e

    async def list_learning_events(
        self,
        applied: bool | None = None,
        category: str | None = None,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> list[LearningEvent]:
        """Events ordered oldest first."""
        try:
            query = "SELECT * FROM learning_events WHERE 1=1"
            params: list = []
            if applied is not None:
                query += " AND applied = ?"
                params.append(1 if applied else 0)
            if category is not None:
                query += " AND category = ?"
                params.append(category)
            if since is not None:
                query += " AND created_at >= ?"
                params.append(_ts(since))
            query += " ORDER BY created_at ASC, id ASC"
            if limit is not None:
                query += " LIMIT ?"
                params.append(limit)
            async with self._db.execute(query, params) as cursor:
                rows = await cursor.fetchall()
            return [self._row_to_event(r) for r in rows]
        except Exception as e:
            raise StorageError(
                f"Failed to list learning events: {e}",
                context={"operation": "query", "table": "learning_events"},
            ) from e

    async def mark_event_applied(self, event_id: int, applied_at: datetime) -> bool:
        """Flip `applied` false -> true. Returns False if it was already set."""
        try:
            async with self.transaction():
                cursor = await self._db.execute(
                    "UPDATE learning_events SET applied = 1, applied_at = ? WHERE id = ? AND applied = 0",
                    (_ts(applied_at), event_id),
                )
            return cursor.rowcount == 1
        except Exception as e:
            if isinstance(e, StorageError):
                raise
            raise StorageError(
                f"Failed to mark learning event applied: {e}",
                context={"operation": "update", "table": "learning_events", "event_id": event_id},
            ) from e

    async def save_corrections(self, records: list[CorrectionRecord]) -> None:
        if not records:
            return
        try:
            async with self.transaction():
                await self._db.executemany(
                    """INSERT INTO learning_corrections
                       (event_id, subject_id, field, original_json, corrected_json, recorded_at)
                       VALUES (?, ?, ?, ?, ?, ?)""",
                    [
                        (
                            r.event_id,
                            r.subject_id,
                            r.field,
                            json.dumps(r.original, default=str),
                            json.dumps(r.corrected, default=str),
                            _ts(r.recorded_at),
                        )
                        for r in records
                    ],
                )
        except Exception as e:
            if isinstance(e, StorageError):
                raise
            raise StorageError(
                f"Failed to save corrections: {e}",
                context={"operation": "insert", "table": "learning_corrections"},
            ) from e

    async def get_corrections(
        self,
        event_id: int | None = None,
        subject_id: str | None = None,
    ) -> list[CorrectionRecord]:
        try:
            query = "SELECT * FROM learning_corrections WHERE 1=1"
            params: list = []
            if event_id is not None:
                query += " AND event_id = ?"
                params.append(event_id)
            if subject_id is not None:
                query += " AND subject_id = ?"
                params.append(subject_id)
            query += " ORDER BY id ASC"
            async with self._db.execute(query, params) as cursor:
                rows = await cursor.fetchall()
            return [self._row_to_correction(r) for r in rows]
        except Exception as e:
            raise StorageError(
                f"Failed to get corrections: {e}",
                context={"operation": "query", "table": "learning_corrections"},
            ) from e

    # --- Performance Metric Operations ---

    async def get_metric(self, category: str) -> PerformanceMetric | None:
        try:
            async with self._db.execute(
                "SELECT * FROM performance_metrics WHERE category = ?", (category,)
            ) as cursor:
                row = await cursor.fetchone()
            return self._row_to_metric(row) if row is not None else None
        except Exception as e:
            raise StorageError(
                f"Failed to get performance metric: {e}",
                context={"operation": "query", "table": "performance_metrics"},
            ) from e

    async def save_metric(self, metric: PerformanceMetric) -> None:
        try:
            async with self.transaction():
                await self._db.execute(
                    """INSERT OR REPLACE INTO performance_metrics
                       (category, accuracy_improvement, mean_accuracy,
                        total_learning_events, corrections_applied, last_updated_at)
                       VALUES (?, ?, ?, ?, ?, ?)""",
                    (
                        metric.category,
                        metric.accuracy_improvement,
                        metric.mean_accuracy,
                        metric.total_learning_events,
                        metric.corrections_applied,
                        _ts(metric.last_updated_at),
                    ),
                )
        except Exception as e:
            if isinstance(e, StorageError):
                raise
            raise StorageError(
                f"Failed to save performance metric: {e}",
                context={"operation": "insert", "table": "performance_metrics"},
            ) from e

    async def list_metrics(self, category: str | None = None) -> list[PerformanceMetric]:
        try:
            query = "SELECT * FROM performance_metrics"
            params: list = []
            if category is not None:
                query += " WHERE category = ?"
                params.append(category)
            query += " ORDER BY category ASC"
            async with self._db.execute(query, params) as cursor:
                rows = await cursor.fetchall()
            return [self._row_to_metric(r) for r in rows]
        except Exception as e:
            raise StorageError(
                f"Failed to list performance metrics: {e}",
                context={"operation": "query", "table": "performance_metrics"},
            ) from e

    async def replace_metrics(self, metrics: list[PerformanceMetric]) -> None:
        """Swap the whole metrics table for a rebuilt set."""
        try:
            async with self.transaction():
                await self._db.execute("DELETE FROM performance_metrics")
                for metric in metrics:
                    await self.save_metric(metric)
        except Exception as e:
            if isinstance(e, StorageError):
                raise
            raise StorageError(
                f"Failed to replace performance metrics: {e}",
                context={"operation": "replace", "table": "performance_metrics"},
            ) from e

    # --- Statistics ---

    async def get_statistics(self) -> dict[str, int]:
        tables = {
            "total_sources": "sources",
            "total_observations": "observations",
            "pending_conversions": "pending_conversions",
            "total_estimates": "estimates",
            "total_forecasts": "forecasts",
            "total_learning_events": "learning_events",
        }
        stats: dict[str, int] = {}
        try:
            for key, table in tables.items():
                async with self._db.execute(f"SELECT COUNT(*) FROM {table}") as cursor:
                    row = await cursor.fetchone()
                stats[key] = row[0]
            async with self._db.execute(
                "SELECT COUNT(*) FROM learning_events WHERE applied = 0"
            ) as cursor:
                row = await cursor.fetchone()
            stats["pending_learning_events"] = row[0]
            return stats
        except Exception as e:
            raise StorageError(
                f"Failed to gather statistics: {e}",
                context={"operation": "query"},
            ) from e

    # --- Row Mapping Helpers ---

    @staticmethod
    def _row_to_source(row: aiosqlite.Row) -> SourceRecord:
        return SourceRecord(
            source_id=row["source_id"],
            display_name=row["display_name"],
            category_specialization=json.loads(row["categories_json"] or "[]"),
            reliability_score=row["reliability_score"],
            observation_count=row["observation_count"],
            last_seen_at=_parse_ts(row["last_seen_at"]),
            is_active=bool(row["is_active"]),
            created_at=_parse_ts(row["created_at"]),
        )

    @staticmethod
    def _row_to_observation(row: aiosqlite.Row) -> PriceObservation:
        payload = row["raw_payload_json"]
        return PriceObservation(
            observation_id=row["id"],
            item_identifier=row["item_identifier"],
            source_id=row["source_id"],
            price=row["price"],
            currency=row["currency"],
            observed_at=_parse_ts(row["observed_at"]),
            raw_payload=json.loads(payload) if payload else {},
        )

    @staticmethod
    def _row_to_pending(row: aiosqlite.Row) -> PendingConversion:
        payload = row["raw_payload_json"]
        observation = PriceObservation(
            item_identifier=row["item_identifier"],
            source_id=row["source_id"],
            price=row["original_price"],
            currency=row["original_currency"],
            observed_at=_parse_ts(row["observed_at"]),
            raw_payload=json.loads(payload) if payload else {},
        )
        return PendingConversion(
            pending_id=row["id"],
            observation=observation,
            original_currency=row["original_currency"],
            original_price=row["original_price"],
            attempts=row["attempts"],
            queued_at=_parse_ts(row["queued_at"]),
        )

    @staticmethod
    def _row_to_estimate(row: aiosqlite.Row) -> AggregatedEstimate:
        keys = row.keys()
        return AggregatedEstimate(
            item_identifier=row["item_identifier"],
            low=row["low"],
            average=row["average"],
            high=row["high"],
            confidence=row["confidence"],
            contributing_source_count=row["source_count"],
            observation_count=row["observation_count"],
            spread=row["spread"],
            computed_at=_parse_ts(row["computed_at"]),
            is_stale=bool(row["is_stale"]) if "is_stale" in keys else False,
        )

    @staticmethod
    def _row_to_forecast(row: aiosqlite.Row) -> TrendForecast:
        return TrendForecast(
            forecast_id=row["id"],
            item_identifier=row["item_identifier"],
            horizon=Horizon(row["horizon"]),
            predicted_series=[ForecastPoint(**p) for p in json.loads(row["series_json"])],
            trend_direction=TrendDirection(row["trend_direction"]),
            trend_strength=row["trend_strength"],
            base_value=row["base_value"],
            volatility=row["volatility"],
            risk_assessment=RiskLevel(row["risk_assessment"]),
            generated_at=_parse_ts(row["generated_at"]),
            model_version=row["model_version"],
        )

    @staticmethod
    def _row_to_event(row: aiosqlite.Row) -> LearningEvent:
        correction = row["correction_json"]
        is_correct = row["is_correct"]
        return LearningEvent(
            event_id=row["id"],
            subject_id=row["subject_id"],
            category=row["category"],
            is_correct=None if is_correct is None else bool(is_correct),
            accuracy_rating=row["accuracy_rating"],
            correction_payload=json.loads(correction) if correction else {},
            created_at=_parse_ts(row["created_at"]),
            applied=bool(row["applied"]),
            applied_at=_parse_ts(row["applied_at"]),
        )

    @staticmethod
    def _row_to_correction(row: aiosqlite.Row) -> CorrectionRecord:
        return CorrectionRecord(
            event_id=row["event_id"],
            subject_id=row["subject_id"],
            field=row["field"],
            original=json.loads(row["original_json"]) if row["original_json"] else None,
            corrected=json.loads(row["corrected_json"]) if row["corrected_json"] else None,
            recorded_at=_parse_ts(row["recorded_at"]),
        )

    @staticmethod
    def _row_to_metric(row: aiosqlite.Row) -> PerformanceMetric:
        return PerformanceMetric(
            category=row["category"],
            accuracy_improvement=row["accuracy_improvement"],
            mean_accuracy=row["mean_accuracy"],
            total_learning_events=row["total_learning_events"],
            corrections_applied=row["corrections_applied"],
            last_updated_at=_parse_ts(row["last_updated_at"]),
        )


async def create_store(config: StorageConfig) -> SqliteStore:
    """Create and initialize a storage backend based on configuration."""
    if config.backend == StorageBackendEnum.SQLITE:
        store = SqliteStore(config)
        await store.initialize()
        return store
    raise StorageError(
        f"Unsupported storage backend: {config.backend}",
        context={"operation": "create_store", "backend": str(config.backend)},
    )
