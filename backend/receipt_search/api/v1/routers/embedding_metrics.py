# backend/receipt_search/api/v1/routers/embedding_metrics.py
"""
Embedding Metrics API Router.

Endpoints used by the embedding worker to report attempts, by operators to
trigger aggregation/cleanup for an explicit window, and by dashboards to
read the hourly and daily rollups.
"""

import logging
from datetime import date, datetime
from typing import Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ....database.base import get_db
from ....database.models import AttemptStatus, ErrorType, UploadContext
from ....services.attempt_recorder import attempt_recorder
from ....services.metrics_aggregator import metrics_aggregator

logger = logging.getLogger("receipt_search.api.embedding_metrics")

router = APIRouter(prefix="/embedding-metrics", tags=["embedding-metrics"])


# =========================================================================
# REQUEST/RESPONSE MODELS
# =========================================================================


class RecordAttemptRequest(BaseModel):
    receipt_id: UUID
    user_id: UUID
    team_id: Optional[UUID] = None
    upload_context: UploadContext = UploadContext.SINGLE
    model: Optional[str] = None
    start_time: Optional[datetime] = Field(None, description="Defaults to now (UTC)")
    content_types: List[str] = Field(default_factory=list, description="Content types being embedded")
    content_length: int = Field(0, ge=0)
    synthetic_content_used: bool = False
    embedding_dimensions: Optional[int] = None
    retry_count: int = Field(0, ge=0)


class RecordAttemptResponse(BaseModel):
    attempt_id: UUID


class CompleteAttemptRequest(BaseModel):
    end_time: Optional[datetime] = Field(None, description="Defaults to now (UTC)")
    status: AttemptStatus
    error_type: Optional[ErrorType] = None
    error_message: Optional[str] = None
    api_calls: Optional[int] = Field(None, ge=0)
    api_tokens: Optional[int] = Field(None, ge=0)
    rate_limited: Optional[bool] = None
    expected_version: Optional[int] = Field(
        None, description="Only apply if the attempt is still at this version"
    )


class AttemptResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True, protected_namespaces=())

    id: UUID
    receipt_id: UUID
    user_id: UUID
    team_id: Optional[UUID] = None
    upload_context: str
    model: Optional[str] = None
    status: str
    start_time: datetime
    end_time: Optional[datetime] = None
    duration_ms: Optional[int] = None
    error_type: Optional[str] = None
    error_message: Optional[str] = None
    total_content_types: int
    successful_content_types: int
    failed_content_types: int
    api_calls_made: int
    api_tokens_used: int
    rate_limited: bool
    version: int


class HourlyAggregationRequest(BaseModel):
    hour_bucket: datetime = Field(..., description="Start of the hour to aggregate")
    team_id: Optional[UUID] = None


class DailyAggregationRequest(BaseModel):
    date_bucket: date = Field(..., description="Day to aggregate (UTC)")
    team_id: Optional[UUID] = None


class CleanupRequest(BaseModel):
    now: Optional[datetime] = Field(None, description="Reference time; defaults to now (UTC)")


class HourlyStatResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    hour_bucket: datetime
    team_id: UUID
    total_attempts: int
    successful_attempts: int
    failed_attempts: int
    timeout_attempts: int
    single_upload_attempts: int
    batch_upload_attempts: int
    single_upload_success: int
    batch_upload_success: int
    avg_duration_ms: Optional[float] = None
    p95_duration_ms: Optional[float] = None
    total_api_calls: int
    total_tokens_used: int
    rate_limited_count: int
    api_limit_errors: int
    network_errors: int
    validation_errors: int
    timeout_errors: int
    unknown_errors: int


class DailyStatResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    date_bucket: date
    team_id: UUID
    total_attempts: int
    successful_attempts: int
    failed_attempts: int
    success_rate: float
    avg_duration_ms: Optional[float] = None
    p95_duration_ms: Optional[float] = None
    p99_duration_ms: Optional[float] = None
    total_api_calls: int
    total_tokens_used: int
    estimated_cost_usd: float
    synthetic_content_percentage: float
    avg_content_types_per_receipt: Optional[float] = None


# =========================================================================
# ATTEMPTS
# =========================================================================


@router.post("/attempts", response_model=RecordAttemptResponse, status_code=201)
async def record_attempt(
    request: RecordAttemptRequest,
    db: AsyncSession = Depends(get_db),
) -> RecordAttemptResponse:
    """Record the start of an embedding attempt (status=pending)."""
    attempt_id = await attempt_recorder.record_attempt(
        db,
        receipt_id=request.receipt_id,
        user_id=request.user_id,
        team_id=request.team_id,
        upload_context=request.upload_context,
        model=request.model,
        start_time=request.start_time,
        content_types=request.content_types,
        content_length=request.content_length,
        synthetic_content_used=request.synthetic_content_used,
        embedding_dimensions=request.embedding_dimensions,
        retry_count=request.retry_count,
    )
    return RecordAttemptResponse(attempt_id=attempt_id)


@router.post("/attempts/{attempt_id}/complete", response_model=AttemptResponse)
async def complete_attempt(
    attempt_id: UUID,
    request: CompleteAttemptRequest,
    db: AsyncSession = Depends(get_db),
) -> AttemptResponse:
    """Record the outcome of an embedding attempt."""
    attempt = await attempt_recorder.complete_attempt(
        db,
        attempt_id,
        end_time=request.end_time or datetime.utcnow(),
        status=request.status,
        error_type=request.error_type,
        error_message=request.error_message,
        api_calls=request.api_calls,
        api_tokens=request.api_tokens,
        rate_limited=request.rate_limited,
        expected_version=request.expected_version,
    )
    return AttemptResponse.model_validate(attempt)


# =========================================================================
# AGGREGATION & RETENTION
# =========================================================================


@router.post("/aggregate/hourly", response_model=List[HourlyStatResponse])
async def aggregate_hourly(
    request: HourlyAggregationRequest,
    db: AsyncSession = Depends(get_db),
) -> List[HourlyStatResponse]:
    """Aggregate one hour bucket. Safe to re-run."""
    stats = await metrics_aggregator.aggregate_hourly(db, request.hour_bucket, team_id=request.team_id)
    return [HourlyStatResponse.model_validate(s) for s in stats]


@router.post("/aggregate/daily", response_model=List[DailyStatResponse])
async def aggregate_daily(
    request: DailyAggregationRequest,
    db: AsyncSession = Depends(get_db),
) -> List[DailyStatResponse]:
    """Aggregate one day bucket. Safe to re-run."""
    stats = await metrics_aggregator.aggregate_daily(db, request.date_bucket, team_id=request.team_id)
    return [DailyStatResponse.model_validate(s) for s in stats]


@router.post("/cleanup")
async def cleanup(
    request: CleanupRequest,
    db: AsyncSession = Depends(get_db),
) -> Dict[str, int]:
    """Delete expired attempts and rollups."""
    return await metrics_aggregator.cleanup(db, now=request.now or datetime.utcnow())


# =========================================================================
# DASHBOARD READS
# =========================================================================


@router.get("/hourly", response_model=List[HourlyStatResponse])
async def list_hourly_stats(
    team_id: UUID = Query(...),
    start: datetime = Query(..., description="Inclusive start of the range"),
    end: datetime = Query(..., description="Exclusive end of the range"),
    db: AsyncSession = Depends(get_db),
) -> List[HourlyStatResponse]:
    stats = await metrics_aggregator.list_hourly_stats(db, team_id, start, end)
    return [HourlyStatResponse.model_validate(s) for s in stats]


@router.get("/daily", response_model=List[DailyStatResponse])
async def list_daily_stats(
    team_id: UUID = Query(...),
    start_date: date = Query(...),
    end_date: date = Query(...),
    db: AsyncSession = Depends(get_db),
) -> List[DailyStatResponse]:
    stats = await metrics_aggregator.list_daily_stats(db, team_id, start_date, end_date)
    return [DailyStatResponse.model_validate(s) for s in stats]
