"""FastAPI route definitions for the CoinValue API."""

from __future__ import annotations

from datetime import UTC as _UTC, datetime
from uuid import uuid4

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query

import coinvalue
from coinvalue.api.deps import AppState, JobStatus, get_app_state, get_config, get_service
from coinvalue.api.schemas import (
    ApplyFeedbackRequest,
    DeactivateStaleRequest,
    DeactivateStaleResponse,
    EstimateBody,
    EstimateHistoryResponse,
    EstimateResponse,
    FeedbackRequest,
    FeedbackResponse,
    ForecastBody,
    ForecastResponse,
    HealthResponse,
    IngestResponse,
    InsightsResponse,
    JobResponse,
    JobStatusResponse,
    ObservationBatchRequest,
    PerformanceResponse,
    SourceResponse,
)
from coinvalue.core.models import Horizon
from coinvalue.ingestion.normalizer import normalize_item_identifier
from coinvalue.service import ValuationService

router = APIRouter()


# -- Health --


@router.get("/health", response_model=HealthResponse)
async def health_check(
    service: ValuationService = Depends(get_service),
    config=Depends(get_config),
):
    """System health and basic statistics."""
    stats = await service.get_statistics()
    return HealthResponse(
        status="ok",
        version=coinvalue.__version__,
        storage_backend=str(config.storage.backend.value),
        total_sources=stats["total_sources"],
        total_observations=stats["total_observations"],
        total_estimates=stats["total_estimates"],
        pending_learning_events=stats["pending_learning_events"],
    )


# -- Observations --


@router.post("/observations", response_model=IngestResponse)
async def ingest_observations(
    request: ObservationBatchRequest,
    service: ValuationService = Depends(get_service),
):
    """Ingest a batch of raw observations. Invalid entries are counted, not fatal."""
    report = await service.ingest_observations(request.observations)
    return IngestResponse(**report.model_dump())


# -- Estimates --


@router.get("/estimates/{item_identifier}", response_model=EstimateResponse)
async def get_estimate(
    item_identifier: str,
    service: ValuationService = Depends(get_service),
):
    """Current estimate for an item. Missing data is a normal `no_data` response."""
    key = normalize_item_identifier(item_identifier)
    estimate = await service.get_estimate(key)
    if estimate is None:
        return EstimateResponse(status="no_data", item_identifier=key)
    return EstimateResponse(
        status="ok",
        item_identifier=key,
        estimate=EstimateBody(**estimate.model_dump()),
    )


@router.get("/estimates/{item_identifier}/history", response_model=EstimateHistoryResponse)
async def get_estimate_history(
    item_identifier: str,
    since: datetime | None = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    service: ValuationService = Depends(get_service),
):
    """Historical estimates, oldest first."""
    key = normalize_item_identifier(item_identifier)
    history = await service.get_estimate_history(key, since=since, limit=limit)
    return EstimateHistoryResponse(
        item_identifier=key,
        total=len(history),
        items=[EstimateBody(**h.model_dump()) for h in history],
    )


# -- Forecasts --


@router.get("/forecasts/{item_identifier}", response_model=ForecastResponse)
async def get_forecast(
    item_identifier: str,
    horizon: Horizon = Query(Horizon.SHORT),
    service: ValuationService = Depends(get_service),
):
    """Forecast for one horizon (short=7, medium=30, long=90 days)."""
    key = normalize_item_identifier(item_identifier)
    forecast = await service.get_forecast(key, horizon)
    if forecast is None:
        return ForecastResponse(status="no_data", item_identifier=key, horizon=str(horizon))
    return ForecastResponse(
        status="ok",
        item_identifier=key,
        horizon=str(horizon),
        forecast=ForecastBody(**forecast.model_dump(mode="json")),
    )


# -- Feedback --


@router.post("/feedback", response_model=FeedbackResponse, status_code=201)
async def submit_feedback(
    request: FeedbackRequest,
    service: ValuationService = Depends(get_service),
):
    """Record a feedback event. It takes effect when feedback is next applied."""
    event = await service.submit_feedback(request.model_dump())
    return FeedbackResponse(
        event_id=event.event_id,
        subject_id=event.subject_id,
        category=event.category,
        state=str(event.state),
        created_at=event.created_at,
    )


@router.post("/feedback/apply", response_model=JobResponse, status_code=202)
async def trigger_apply_feedback(
    request: ApplyFeedbackRequest,
    background_tasks: BackgroundTasks,
    state: AppState = Depends(get_app_state),
):
    """Apply pending feedback (async job)."""
    job_id = f"feedback-{uuid4().hex[:8]}"
    now = datetime.now(tz=_UTC).isoformat()
    job = JobStatus(job_id=job_id, status="pending", created_at=now)
    state.jobs[job_id] = job

    background_tasks.add_task(_run_apply_feedback_job, state, job, request)

    limit = request.limit or state.config.learning.batch_size
    return JobResponse(
        job_id=job_id,
        status="pending",
        created_at=datetime.fromisoformat(now),
        message=f"Feedback sweep queued (up to {limit} events)",
    )


# -- Jobs --


@router.get("/jobs/{job_id}", response_model=JobStatusResponse)
async def get_job_status(
    job_id: str,
    state: AppState = Depends(get_app_state),
):
    """Poll job status."""
    job = state.jobs.get(job_id)
    if not job:
        raise HTTPException(status_code=404, detail=f"Job '{job_id}' not found")

    return JobStatusResponse(
        job_id=job.job_id,
        status=job.status,
        created_at=datetime.fromisoformat(job.created_at),
        completed_at=(datetime.fromisoformat(job.completed_at) if job.completed_at else None),
        result=job.result,
        error=job.error,
    )


# -- Performance --


@router.get("/performance", response_model=list[PerformanceResponse])
async def get_performance(
    category: str | None = Query(None),
    service: ValuationService = Depends(get_service),
):
    metrics = await service.get_performance(category=category)
    return [PerformanceResponse(**m.model_dump()) for m in metrics]


@router.get("/performance/insights", response_model=InsightsResponse)
async def get_insights(service: ValuationService = Depends(get_service)):
    insights = await service.get_insights()
    return InsightsResponse(**insights.model_dump())


# -- Sources --


@router.get("/sources", response_model=list[SourceResponse])
async def list_sources(
    active_only: bool = Query(False),
    service: ValuationService = Depends(get_service),
):
    sources = await service.list_sources(active_only=active_only)
    return [SourceResponse(**s.model_dump(exclude={"created_at"})) for s in sources]


@router.post("/sources/deactivate-stale", response_model=DeactivateStaleResponse)
async def deactivate_stale_sources(
    request: DeactivateStaleRequest,
    service: ValuationService = Depends(get_service),
):
    """Deactivate sources not seen within the max age (default from config)."""
    ids = await service.deactivate_stale_sources(max_age_days=request.max_age_days)
    return DeactivateStaleResponse(deactivated=ids)


# -- Helpers --


async def _run_apply_feedback_job(
    state: AppState, job: JobStatus, request: ApplyFeedbackRequest
) -> None:
    """Execute a feedback sweep in background."""
    job.status = "running"
    try:
        report = await state.service.apply_feedback(limit=request.limit)

        job.status = "completed"
        job.completed_at = datetime.now(tz=_UTC).isoformat()
        job.result = report.model_dump()

    except Exception as e:
        job.status = "failed"
        job.completed_at = datetime.now(tz=_UTC).isoformat()
        job.error = str(e)
