"""API-specific request/response schemas (Pydantic v2)."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


# -- Error --


class ErrorResponse(BaseModel):
    """Standard error envelope."""

    error: str
    detail: str | None = None


# -- Observations --


class ObservationBatchRequest(BaseModel):
    """Request body for POST /api/observations.

    Entries are left untyped so malformed ones are counted as rejected
    instead of failing the whole request.
    """

    observations: list[dict[str, Any]] = Field(..., min_length=1, max_length=5000)


class IngestResponse(BaseModel):
    batch_size: int
    accepted: int
    rejected: int
    deferred: int
    recovered: int
    expired: int
    items: list[str]


# -- Estimates --


class EstimateBody(BaseModel):
    """One aggregated estimate in API response format."""

    item_identifier: str
    low: float
    average: float
    high: float
    confidence: float
    contributing_source_count: int
    observation_count: int
    spread: float
    computed_at: datetime
    is_stale: bool = False


class EstimateResponse(BaseModel):
    """Response for GET /api/estimates/{item}. `estimate` is null when status is no_data."""

    status: Literal["ok", "no_data"]
    item_identifier: str
    estimate: EstimateBody | None = None


class EstimateHistoryResponse(BaseModel):
    item_identifier: str
    total: int
    items: list[EstimateBody]


# -- Forecasts --


class ForecastPointBody(BaseModel):
    step: int
    value: float
    confidence: float


class ForecastBody(BaseModel):
    forecast_id: int | None = None
    item_identifier: str
    horizon: str
    predicted_series: list[ForecastPointBody]
    trend_direction: str
    trend_strength: float
    base_value: float
    volatility: float
    risk_assessment: str
    generated_at: datetime
    model_version: str


class ForecastResponse(BaseModel):
    status: Literal["ok", "no_data"]
    item_identifier: str
    horizon: str
    forecast: ForecastBody | None = None


# -- Feedback --


class FeedbackRequest(BaseModel):
    """Request body for POST /api/feedback."""

    subject_id: str = Field(..., min_length=1)
    category: str = Field(..., min_length=1)
    is_correct: bool | None = None
    accuracy_rating: int | None = Field(default=None, ge=1, le=5)
    correction_payload: dict[str, Any] = {}


class FeedbackResponse(BaseModel):
    event_id: int
    subject_id: str
    category: str
    state: str
    created_at: datetime


class ApplyFeedbackRequest(BaseModel):
    """Request body for POST /api/feedback/apply."""

    limit: int | None = Field(default=None, ge=1, le=500)


# -- Performance --


class PerformanceResponse(BaseModel):
    category: str
    accuracy_improvement: float
    mean_accuracy: float
    total_learning_events: int
    corrections_applied: int
    last_updated_at: datetime


class InsightsResponse(BaseModel):
    total_events: int
    categories_tracked: int
    categories_improved: int
    mean_accuracy_improvement: float
    best_category: str | None = None


# -- Sources --


class SourceResponse(BaseModel):
    source_id: str
    display_name: str
    category_specialization: list[str]
    reliability_score: float
    observation_count: int
    last_seen_at: datetime | None = None
    is_active: bool


class DeactivateStaleRequest(BaseModel):
    max_age_days: int | None = Field(default=None, ge=1)


class DeactivateStaleResponse(BaseModel):
    deactivated: list[str]


# -- Jobs --


class JobResponse(BaseModel):
    """Response for async job submission."""

    job_id: str
    status: str
    created_at: datetime
    message: str


class JobStatusResponse(BaseModel):
    """Response for job status polling."""

    job_id: str
    status: str
    created_at: datetime
    completed_at: datetime | None = None
    result: dict | None = None
    error: str | None = None


# -- Health --


class HealthResponse(BaseModel):
    """Response for GET /api/health."""

    status: str = "ok"
    version: str
    storage_backend: str
    total_sources: int
    total_observations: int
    total_estimates: int
    pending_learning_events: int
