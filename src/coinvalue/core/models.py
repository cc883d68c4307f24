"""Pydantic data models - the system's type contracts."""

from __future__ import annotations

import math
from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

# --- Type Aliases ---

ItemIdentifier = str
SourceId = str
Category = str

# --- Enumerations ---


class Horizon(StrEnum):
    """Forecast horizons. Each step is one day."""

    SHORT = "short"
    MEDIUM = "medium"
    LONG = "long"

    @property
    def steps(self) -> int:
        return _HORIZON_STEPS[self]


_HORIZON_STEPS = {Horizon.SHORT: 7, Horizon.MEDIUM: 30, Horizon.LONG: 90}


class TrendDirection(StrEnum):
    """Direction of a fitted price trend."""

    RISING = "rising"
    FALLING = "falling"
    STABLE = "stable"


class RiskLevel(StrEnum):
    """Volatility bucket attached to a forecast."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class LearningState(StrEnum):
    """Lifecycle of a learning event. APPLYING is transient and never stored."""

    PENDING = "pending"
    APPLYING = "applying"
    APPLIED = "applied"


class StorageBackend(StrEnum):
    """Supported storage backends."""

    SQLITE = "sqlite"


# --- Source Models ---


class SourceRecord(BaseModel):
    """One external price source and its learned reliability."""

    model_config = ConfigDict(frozen=True)

    source_id: SourceId
    display_name: str
    category_specialization: list[Category] = []
    reliability_score: float = 0.5
    observation_count: int = 0
    last_seen_at: datetime | None = None
    is_active: bool = True
    created_at: datetime | None = None

    @field_validator("reliability_score")
    @classmethod
    def reliability_in_range(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError(f"reliability_score must be in [0.0, 1.0], got {v}")
        return round(v, 6)

    @field_validator("observation_count")
    @classmethod
    def count_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("observation_count cannot be negative")
        return v


# --- Observation Models ---


class RawObservation(BaseModel):
    """An observation as delivered by a collaborator, before validation.

    Deliberately lax: the ingestor validates and counts failures instead of
    letting them raise at construction time.
    """

    model_config = ConfigDict(frozen=True)

    item_identifier: str
    source_id: SourceId
    price: float
    currency: str = "USD"
    observed_at: datetime
    raw_payload: dict[str, Any] = {}


class PriceObservation(BaseModel):
    """A validated, normalized price point in the base currency."""

    model_config = ConfigDict(frozen=True)

    item_identifier: ItemIdentifier
    source_id: SourceId
    price: float
    currency: str
    observed_at: datetime
    raw_payload: dict[str, Any] = {}
    observation_id: int | None = None

    @field_validator("price")
    @classmethod
    def price_positive(cls, v: float) -> float:
        if not math.isfinite(v) or v <= 0:
            raise ValueError(f"price must be a positive finite number, got {v}")
        return v

    @field_validator("item_identifier")
    @classmethod
    def identifier_not_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("item_identifier must not be empty")
        return v


class PendingConversion(BaseModel):
    """An observation waiting for a currency rate."""

    model_config = ConfigDict(frozen=True)

    pending_id: int
    observation: PriceObservation
    original_currency: str
    original_price: float
    attempts: int
    queued_at: datetime


# --- Estimate Models ---


class AggregatedEstimate(BaseModel):
    """The engine's current belief about one item's value."""

    model_config = ConfigDict(frozen=True)

    item_identifier: ItemIdentifier
    low: float
    average: float
    high: float
    confidence: float
    contributing_source_count: int
    observation_count: int = 0
    spread: float = 0.0
    computed_at: datetime
    is_stale: bool = False

    @field_validator("confidence")
    @classmethod
    def confidence_in_range(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError(f"confidence must be in [0.0, 1.0], got {v}")
        return round(v, 6)

    @field_validator("contributing_source_count")
    @classmethod
    def source_count_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("contributing_source_count must be >= 1")
        return v

    @model_validator(mode="after")
    def bounds_ordered(self) -> AggregatedEstimate:
        if not self.low <= self.average <= self.high:
            raise ValueError(
                f"expected low <= average <= high, got "
                f"{self.low} / {self.average} / {self.high}"
            )
        return self


# --- Forecast Models ---


class ForecastPoint(BaseModel):
    """One projected step of a forecast."""

    model_config = ConfigDict(frozen=True)

    step: int
    value: float
    confidence: float

    @field_validator("confidence")
    @classmethod
    def confidence_in_range(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError(f"confidence must be in [0.0, 1.0], got {v}")
        return round(v, 6)


class TrendForecast(BaseModel):
    """A multi-step projection for one item and horizon."""

    model_config = ConfigDict(frozen=True)

    item_identifier: ItemIdentifier
    horizon: Horizon
    predicted_series: list[ForecastPoint]
    trend_direction: TrendDirection
    trend_strength: float
    base_value: float
    volatility: float = 0.0
    risk_assessment: RiskLevel = RiskLevel.LOW
    generated_at: datetime
    model_version: str
    forecast_id: int | None = None

    @field_validator("trend_strength")
    @classmethod
    def strength_in_range(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError(f"trend_strength must be in [0.0, 1.0], got {v}")
        return round(v, 6)

    @model_validator(mode="after")
    def confidence_decays(self) -> TrendForecast:
        for prev, cur in zip(self.predicted_series, self.predicted_series[1:]):
            if cur.confidence > prev.confidence:
                raise ValueError(
                    f"forecast confidence increased at step {cur.step}"
                )
        return self

    @property
    def final_value(self) -> float:
        if not self.predicted_series:
            return self.base_value
        return self.predicted_series[-1].value


# --- Learning Models ---


class LearningEvent(BaseModel):
    """A unit of human feedback about an estimate or recognition session."""

    model_config = ConfigDict(frozen=True)

    subject_id: str
    category: Category
    is_correct: bool | None = None
    accuracy_rating: int | None = None
    correction_payload: dict[str, Any] = {}
    created_at: datetime
    applied: bool = False
    applied_at: datetime | None = None
    event_id: int | None = None

    @field_validator("accuracy_rating")
    @classmethod
    def rating_in_range(cls, v: int | None) -> int | None:
        if v is not None and not 1 <= v <= 5:
            raise ValueError(f"accuracy_rating must be in [1, 5], got {v}")
        return v

    @field_validator("subject_id", "category")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be empty")
        return v.strip()

    @model_validator(mode="after")
    def has_judgement(self) -> LearningEvent:
        if self.is_correct is None and self.accuracy_rating is None:
            raise ValueError("one of is_correct or accuracy_rating is required")
        return self

    @property
    def state(self) -> LearningState:
        return LearningState.APPLIED if self.applied else LearningState.PENDING

    @property
    def accuracy(self) -> float:
        """Accuracy score in [0, 1]. A rating takes precedence over the flag."""
        if self.accuracy_rating is not None:
            return self.accuracy_rating / 5
        return 1.0 if self.is_correct else 0.0

    @property
    def is_positive(self) -> bool:
        if self.accuracy_rating is not None:
            return self.accuracy_rating >= 4
        return bool(self.is_correct)


class CorrectionRecord(BaseModel):
    """One field a human said the engine got wrong."""

    model_config = ConfigDict(frozen=True)

    event_id: int
    subject_id: str
    field: str
    original: Any = None
    corrected: Any = None
    recorded_at: datetime


class PerformanceMetric(BaseModel):
    """Per-category accuracy rollup, derived from learning events."""

    model_config = ConfigDict(frozen=True)

    category: Category
    accuracy_improvement: float
    mean_accuracy: float
    total_learning_events: int
    corrections_applied: int
    last_updated_at: datetime


class LearningInsights(BaseModel):
    """Cross-category summary of learning progress."""

    model_config = ConfigDict(frozen=True)

    total_events: int
    categories_tracked: int
    categories_improved: int
    mean_accuracy_improvement: float
    best_category: Category | None = None


# --- Job Reports ---


class IngestReport(BaseModel):
    """Outcome of one ingestion cycle.

    `deferred` is a subset of `accepted`: valid observations parked until a
    currency rate is available.
    """

    batch_size: int = 0
    accepted: int = 0
    rejected: int = 0
    deferred: int = 0
    recovered: int = 0
    expired: int = 0
    items: list[ItemIdentifier] = []

    def merge(self, other: IngestReport) -> IngestReport:
        return IngestReport(
            batch_size=self.batch_size + other.batch_size,
            accepted=self.accepted + other.accepted,
            rejected=self.rejected + other.rejected,
            deferred=self.deferred + other.deferred,
            recovered=self.recovered + other.recovered,
            expired=self.expired + other.expired,
            items=sorted(set(self.items) | set(other.items)),
        )


class FeedbackBatchReport(BaseModel):
    """Outcome of one feedback sweep."""

    selected: int = 0
    applied: int = 0
    skipped: int = 0
    failed: int = 0
