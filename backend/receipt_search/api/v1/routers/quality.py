# backend/receipt_search/api/v1/routers/quality.py
"""
Quality API Router.

Per-record embedding quality: recording scores reported by the embedding
worker and the dashboard reads (summary, low-quality queue, daily trend).
"""

import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ....database.base import get_db
from ....database.models import ProcessingMethod, SourceType
from ....services.quality_scorer import quality_scorer

logger = logging.getLogger("receipt_search.api.quality")

router = APIRouter(prefix="/quality", tags=["quality"])


# =========================================================================
# REQUEST/RESPONSE MODELS
# =========================================================================


class RecordQualityRequest(BaseModel):
    source_type: SourceType = SourceType.RECEIPT
    source_id: UUID
    user_id: UUID
    team_id: Optional[UUID] = None
    total_content_types: int = Field(..., ge=0)
    successful_embeddings: int = Field(..., ge=0)
    failed_embeddings: int = Field(0, ge=0)
    synthetic_content_used: bool = False
    processing_method: ProcessingMethod = ProcessingMethod.ENHANCED
    content_quality_scores: Dict[str, Any] = Field(default_factory=dict)
    overall_quality_score: Optional[float] = Field(
        None, description="Explicit score; clamped to [0, 100]. Computed when omitted."
    )


class QualityMetricResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    source_type: str
    source_id: UUID
    user_id: UUID
    team_id: Optional[UUID] = None
    total_content_types: int
    successful_embeddings: int
    failed_embeddings: int
    synthetic_content_used: bool
    overall_quality_score: float
    processing_method: str
    content_quality_scores: Dict[str, Any]
    created_at: datetime
    updated_at: datetime


class QualitySummaryResponse(BaseModel):
    avg_quality_score: float
    synthetic_content_rate: float
    enhanced_processing_rate: float
    recent_quality_trend_pct: float
    total_records: int


class QualityTrendPointResponse(BaseModel):
    day: date
    avg_quality_score: float
    record_count: int
    synthetic_content_rate: float
    enhanced_processing_rate: float


# =========================================================================
# ENDPOINTS
# =========================================================================


@router.post("/metrics", response_model=QualityMetricResponse)
async def record_quality_metric(
    request: RecordQualityRequest,
    db: AsyncSession = Depends(get_db),
) -> QualityMetricResponse:
    """Create or overwrite the quality metric of a record."""
    metric = await quality_scorer.record_quality_metric(
        db,
        source_type=request.source_type.value,
        source_id=request.source_id,
        user_id=request.user_id,
        team_id=request.team_id,
        total_content_types=request.total_content_types,
        successful_embeddings=request.successful_embeddings,
        failed_embeddings=request.failed_embeddings,
        synthetic_content_used=request.synthetic_content_used,
        processing_method=request.processing_method,
        content_quality_scores=request.content_quality_scores,
        overall_quality_score=request.overall_quality_score,
    )
    return QualityMetricResponse.model_validate(metric)


@router.get("/summary", response_model=QualitySummaryResponse)
async def quality_summary(
    user_id: UUID = Query(...),
    days_back: int = Query(30, ge=1, le=365),
    db: AsyncSession = Depends(get_db),
) -> QualitySummaryResponse:
    summary = await quality_scorer.summarize(db, user_id, days_back, now=datetime.utcnow())
    return QualitySummaryResponse(
        avg_quality_score=summary.avg_quality_score,
        synthetic_content_rate=summary.synthetic_content_rate,
        enhanced_processing_rate=summary.enhanced_processing_rate,
        recent_quality_trend_pct=summary.recent_quality_trend_pct,
        total_records=summary.total_records,
    )


@router.get("/low", response_model=List[QualityMetricResponse])
async def low_quality_records(
    user_id: UUID = Query(...),
    min_score: float = Query(50.0, ge=0.0, le=100.0),
    limit: int = Query(10, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
) -> List[QualityMetricResponse]:
    """Records below ``min_score``, worst first; feeds the re-processing queue."""
    metrics = await quality_scorer.find_low_quality(db, user_id, min_score, limit)
    return [QualityMetricResponse.model_validate(m) for m in metrics]


@router.get("/trend", response_model=List[QualityTrendPointResponse])
async def quality_trend(
    user_id: UUID = Query(...),
    days_back: int = Query(30, ge=1, le=365),
    db: AsyncSession = Depends(get_db),
) -> List[QualityTrendPointResponse]:
    series = await quality_scorer.track_improvements(db, user_id, days_back, now=datetime.utcnow())
    return [
        QualityTrendPointResponse(
            day=p.day,
            avg_quality_score=p.avg_quality_score,
            record_count=p.record_count,
            synthetic_content_rate=p.synthetic_content_rate,
            enhanced_processing_rate=p.enhanced_processing_rate,
        )
        for p in series
    ]
