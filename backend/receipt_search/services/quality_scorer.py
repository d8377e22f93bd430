# ============================================================================
# backend/receipt_search/services/quality_scorer.py
# ============================================================================
"""
Quality Scorer - per-record embedding quality and dashboard summaries.

Every time a record's embeddings are (re)generated the worker reports how
many content types were embedded, how many failed, whether synthetic
content stood in for missing text and which processing path was used.
This service turns that into a 0-100 quality score, stores one metric per
record and answers the dashboard questions built on top of it.

Scoring:
    score = successful / total * 100
            - synthetic penalty        (when synthetic content was used)
            - processing penalty       (fallback or legacy processing)
    clamped to [0, 100] at write time; 0 when nothing was embedded.

Usage:
    from receipt_search.services.quality_scorer import quality_scorer

    await quality_scorer.record_quality_metric(
        session, source_type="receipt", source_id=receipt.id, user_id=user_id,
        team_id=None, total_content_types=3, successful_embeddings=2,
        failed_embeddings=1, synthetic_content_used=False,
        processing_method="enhanced",
    )
    summary = await quality_scorer.summarize(session, user_id, days_back=30, now=datetime.utcnow())

Author: Receipt Search Development Team
Version: 1.0.0
"""

import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..database.models import ProcessingMethod, RecordQualityMetric

logger = logging.getLogger("receipt_search.quality_scorer")


# =============================================================================
# Data Classes
# =============================================================================

@dataclass
class QualitySummary:
    """Averages over a user's quality metrics in a window."""
    avg_quality_score: float
    synthetic_content_rate: float
    enhanced_processing_rate: float
    recent_quality_trend_pct: float
    total_records: int


@dataclass
class QualityTrendPoint:
    """One day of the quality trend series."""
    day: date
    avg_quality_score: float
    record_count: int
    synthetic_content_rate: float
    enhanced_processing_rate: float


def clamp_score(score: float) -> float:
    return max(0.0, min(100.0, float(score)))


def compute_quality_score(
    total_content_types: int,
    successful_embeddings: int,
    synthetic_content_used: bool,
    processing_method: Union[str, ProcessingMethod],
) -> float:
    """Composite 0-100 quality score for one record."""
    if total_content_types <= 0:
        return 0.0

    successful = max(0, min(successful_embeddings, total_content_types))
    score = successful / total_content_types * 100

    if synthetic_content_used:
        score -= settings.quality_synthetic_penalty

    method = ProcessingMethod(processing_method)
    if method == ProcessingMethod.FALLBACK:
        score -= settings.quality_fallback_penalty
    elif method == ProcessingMethod.LEGACY:
        score -= settings.quality_legacy_penalty

    return round(clamp_score(score), 2)


def _rate(part: int, whole: int) -> float:
    return round(part / whole * 100, 2) if whole else 0.0


def _average(values: List[float]) -> float:
    return sum(values) / len(values) if values else 0.0


# =============================================================================
# Quality Scorer
# =============================================================================

class QualityScorer:
    """Stores per-record quality metrics and summarizes them per user."""

    async def record_quality_metric(
        self,
        session: AsyncSession,
        source_type: str,
        source_id: uuid.UUID,
        user_id: uuid.UUID,
        team_id: Optional[uuid.UUID],
        total_content_types: int,
        successful_embeddings: int,
        failed_embeddings: int,
        synthetic_content_used: bool,
        processing_method: Union[str, ProcessingMethod],
        content_quality_scores: Optional[Dict[str, Any]] = None,
        overall_quality_score: Optional[float] = None,
    ) -> RecordQualityMetric:
        """
        Create or overwrite the quality metric of one record.

        An explicit ``overall_quality_score`` is clamped to [0, 100];
        otherwise the score is computed from the counts.
        """
        method = ProcessingMethod(processing_method)
        if overall_quality_score is None:
            score = compute_quality_score(
                total_content_types, successful_embeddings, synthetic_content_used, method
            )
        else:
            score = clamp_score(overall_quality_score)

        result = await session.execute(
            select(RecordQualityMetric).where(
                RecordQualityMetric.source_type == source_type,
                RecordQualityMetric.source_id == source_id,
            )
        )
        metric = result.scalar_one_or_none()
        if metric is None:
            metric = RecordQualityMetric(
                id=uuid.uuid4(), source_type=source_type, source_id=source_id
            )
            session.add(metric)

        metric.user_id = user_id
        metric.team_id = team_id
        metric.total_content_types = total_content_types
        metric.successful_embeddings = successful_embeddings
        metric.failed_embeddings = failed_embeddings
        metric.synthetic_content_used = synthetic_content_used
        metric.processing_method = method.value
        metric.content_quality_scores = dict(content_quality_scores or {})
        metric.overall_quality_score = score
        metric.updated_at = datetime.utcnow()

        await session.flush()
        return metric

    async def _metrics_since(
        self, session: AsyncSession, user_id: uuid.UUID, since: datetime
    ) -> List[RecordQualityMetric]:
        result = await session.execute(
            select(RecordQualityMetric)
            .where(
                RecordQualityMetric.user_id == user_id,
                RecordQualityMetric.updated_at >= since,
            )
            .order_by(RecordQualityMetric.updated_at)
        )
        return list(result.scalars().all())

    async def summarize(
        self,
        session: AsyncSession,
        user_id: uuid.UUID,
        days_back: int,
        now: datetime,
    ) -> QualitySummary:
        """
        Summarize a user's quality metrics written in the last ``days_back`` days.

        Metrics are windowed by ``updated_at`` so a re-processed record counts
        with its latest score on the day it was re-scored.

        The trend compares the average score of the most recent
        ``quality_trend_recent_days`` with the rest of the window:
        ``(recent - older) / older * 100``, or 0 when the older average is 0.
        """
        metrics = await self._metrics_since(session, user_id, now - timedelta(days=days_back))
        if not metrics:
            return QualitySummary(0.0, 0.0, 0.0, 0.0, 0)

        recent_cutoff = now - timedelta(days=settings.quality_trend_recent_days)
        recent = [m.overall_quality_score for m in metrics if m.updated_at >= recent_cutoff]
        older = [m.overall_quality_score for m in metrics if m.updated_at < recent_cutoff]
        recent_avg = _average(recent)
        older_avg = _average(older)
        trend = (recent_avg - older_avg) / older_avg * 100 if older_avg else 0.0

        total = len(metrics)
        return QualitySummary(
            avg_quality_score=round(_average([m.overall_quality_score for m in metrics]), 2),
            synthetic_content_rate=_rate(sum(1 for m in metrics if m.synthetic_content_used), total),
            enhanced_processing_rate=_rate(
                sum(1 for m in metrics if m.processing_method == ProcessingMethod.ENHANCED.value), total
            ),
            recent_quality_trend_pct=round(trend, 2),
            total_records=total,
        )

    async def find_low_quality(
        self,
        session: AsyncSession,
        user_id: uuid.UUID,
        min_score: float,
        limit: int,
    ) -> List[RecordQualityMetric]:
        """Records scoring below ``min_score``, lowest score first, then most recent."""
        result = await session.execute(
            select(RecordQualityMetric)
            .where(
                RecordQualityMetric.user_id == user_id,
                RecordQualityMetric.overall_quality_score < min_score,
            )
            .order_by(
                RecordQualityMetric.overall_quality_score.asc(),
                RecordQualityMetric.updated_at.desc(),
            )
            .limit(limit)
        )
        return list(result.scalars().all())

    async def track_improvements(
        self,
        session: AsyncSession,
        user_id: uuid.UUID,
        days_back: int,
        now: datetime,
    ) -> List[QualityTrendPoint]:
        """Per-day quality series over the last ``days_back`` days, oldest first."""
        metrics = await self._metrics_since(session, user_id, now - timedelta(days=days_back))

        by_day: Dict[date, List[RecordQualityMetric]] = defaultdict(list)
        for metric in metrics:
            by_day[metric.updated_at.date()].append(metric)

        series = []
        for day in sorted(by_day):
            day_metrics = by_day[day]
            count = len(day_metrics)
            series.append(
                QualityTrendPoint(
                    day=day,
                    avg_quality_score=round(_average([m.overall_quality_score for m in day_metrics]), 2),
                    record_count=count,
                    synthetic_content_rate=_rate(sum(1 for m in day_metrics if m.synthetic_content_used), count),
                    enhanced_processing_rate=_rate(
                        sum(1 for m in day_metrics if m.processing_method == ProcessingMethod.ENHANCED.value),
                        count,
                    ),
                )
            )
        return series


# Global quality scorer instance
quality_scorer = QualityScorer()
