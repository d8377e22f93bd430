# ============================================================================
# backend/receipt_search/services/metrics_aggregator.py
# ============================================================================
"""
Metrics Aggregator - hourly/daily rollups of embedding attempts.

Reads EmbeddingAttempt rows for an explicit time window and writes one
rollup row per team, keyed by (bucket, team). Rollups are a pure function
of the attempts in the window: re-running a bucket overwrites the stored
row with identical values instead of double-counting.

Windows are always passed in by the caller (normally the Celery beat tasks
in receipt_search.tasks); nothing here reads the clock.

Rollup Fields:
    Hourly: attempt counts by status and upload context, mean and p95
        duration, API calls/tokens, rate-limited count, error-type counts
    Daily:  attempt counts, success rate, mean/p95/p99 duration, API
        calls/tokens, estimated cost, synthetic-content percentage, mean
        content types per receipt

Percentiles use continuous interpolation over non-null durations, matching
PostgreSQL's percentile_cont.

Usage:
    from receipt_search.services.metrics_aggregator import metrics_aggregator

    async with database_service.get_session() as session:
        await metrics_aggregator.aggregate_hourly(session, datetime(2026, 3, 1, 14))
        await metrics_aggregator.aggregate_daily(session, date(2026, 3, 1))
        await metrics_aggregator.cleanup(session, now=datetime.utcnow())

Author: Receipt Search Development Team
Version: 1.0.0
"""

import logging
import math
import uuid
from collections import defaultdict
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import and_, delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..database.models import (
    AttemptStatus,
    EmbeddingAttempt,
    EmbeddingDailyStat,
    EmbeddingHourlyStat,
    ErrorType,
    UploadContext,
)

logger = logging.getLogger("receipt_search.metrics_aggregator")


class AggregationWindowError(ValueError):
    """Raised when an aggregation bucket is not aligned to its granularity."""


# =============================================================================
# Pure rollup computation
# =============================================================================

def percentile_cont(values: Sequence[float], fraction: float) -> Optional[float]:
    """
    Continuous percentile with linear interpolation between closest ranks.

    Returns None for an empty input.
    """
    if not values:
        return None
    ordered = sorted(values)
    position = fraction * (len(ordered) - 1)
    lower = math.floor(position)
    upper = math.ceil(position)
    if lower == upper:
        return float(ordered[lower])
    return ordered[lower] + (ordered[upper] - ordered[lower]) * (position - lower)


def _round(value: Optional[float], digits: int) -> Optional[float]:
    return None if value is None else round(value, digits)


def _durations(attempts: Iterable[EmbeddingAttempt]) -> List[float]:
    return [float(a.duration_ms) for a in attempts if a.duration_ms is not None]


def _mean(values: Sequence[float]) -> Optional[float]:
    return sum(values) / len(values) if values else None


def compute_hourly_rollup(attempts: Sequence[EmbeddingAttempt]) -> Dict[str, Any]:
    """Compute hourly rollup column values for one team's attempts."""
    statuses = [a.status for a in attempts]
    durations = _durations(attempts)

    def _context_count(context: UploadContext, success_only: bool = False) -> int:
        return sum(
            1 for a in attempts
            if a.upload_context == context.value
            and (not success_only or a.status == AttemptStatus.SUCCESS.value)
        )

    def _error_count(error_type: ErrorType) -> int:
        return sum(1 for a in attempts if a.error_type == error_type.value)

    return {
        "total_attempts": len(attempts),
        "successful_attempts": statuses.count(AttemptStatus.SUCCESS.value),
        "failed_attempts": statuses.count(AttemptStatus.FAILED.value),
        "timeout_attempts": statuses.count(AttemptStatus.TIMEOUT.value),
        "single_upload_attempts": _context_count(UploadContext.SINGLE),
        "batch_upload_attempts": _context_count(UploadContext.BATCH),
        "single_upload_success": _context_count(UploadContext.SINGLE, success_only=True),
        "batch_upload_success": _context_count(UploadContext.BATCH, success_only=True),
        "avg_duration_ms": _round(_mean(durations), 2),
        "p95_duration_ms": _round(percentile_cont(durations, 0.95), 2),
        "total_api_calls": sum(a.api_calls_made or 0 for a in attempts),
        "total_tokens_used": sum(a.api_tokens_used or 0 for a in attempts),
        "rate_limited_count": sum(1 for a in attempts if a.rate_limited),
        "api_limit_errors": _error_count(ErrorType.API_LIMIT),
        "network_errors": _error_count(ErrorType.NETWORK),
        "validation_errors": _error_count(ErrorType.VALIDATION),
        "timeout_errors": _error_count(ErrorType.TIMEOUT),
        "unknown_errors": _error_count(ErrorType.UNKNOWN),
    }


def compute_daily_rollup(
    attempts: Sequence[EmbeddingAttempt],
    price_per_1k_tokens: float,
) -> Dict[str, Any]:
    """Compute daily rollup column values for one team's attempts."""
    total = len(attempts)
    successful = sum(1 for a in attempts if a.status == AttemptStatus.SUCCESS.value)
    failed = sum(1 for a in attempts if a.status == AttemptStatus.FAILED.value)
    synthetic = sum(1 for a in attempts if a.synthetic_content_used)
    tokens = sum(a.api_tokens_used or 0 for a in attempts)
    durations = _durations(attempts)
    content_types = [float(a.total_content_types) for a in attempts if a.total_content_types is not None]

    return {
        "total_attempts": total,
        "successful_attempts": successful,
        "failed_attempts": failed,
        "success_rate": round(successful / total * 100, 2) if total else 0.0,
        "avg_duration_ms": _round(_mean(durations), 2),
        "p95_duration_ms": _round(percentile_cont(durations, 0.95), 2),
        "p99_duration_ms": _round(percentile_cont(durations, 0.99), 2),
        "total_api_calls": sum(a.api_calls_made or 0 for a in attempts),
        "total_tokens_used": tokens,
        "estimated_cost_usd": round(tokens / 1000 * price_per_1k_tokens, 4),
        "synthetic_content_percentage": round(synthetic / total * 100, 2) if total else 0.0,
        "avg_content_types_per_receipt": _round(_mean(content_types), 1),
    }


def _group_by_team(attempts: Iterable[EmbeddingAttempt]) -> Dict[uuid.UUID, List[EmbeddingAttempt]]:
    grouped: Dict[uuid.UUID, List[EmbeddingAttempt]] = defaultdict(list)
    for attempt in attempts:
        grouped[attempt.team_id].append(attempt)
    return grouped


# =============================================================================
# Metrics Aggregator
# =============================================================================

class MetricsAggregator:
    """
    Periodic, pull-based rollups of embedding attempts.

    Attempts without a team are not rolled up. Each team's rollup is
    flushed on its own; a store failure propagates to the caller and
    leaves rollups already flushed for other teams to the caller's
    transaction.
    """

    def __init__(self, price_per_1k_tokens: Optional[float] = None):
        self.price_per_1k_tokens = (
            price_per_1k_tokens
            if price_per_1k_tokens is not None
            else settings.embedding_price_per_1k_tokens
        )

    async def _attempts_in_window(
        self,
        session: AsyncSession,
        window_start: datetime,
        window_end: datetime,
        team_id: Optional[uuid.UUID],
    ) -> List[EmbeddingAttempt]:
        conditions = [
            EmbeddingAttempt.start_time >= window_start,
            EmbeddingAttempt.start_time < window_end,
            EmbeddingAttempt.team_id.is_not(None),
        ]
        if team_id is not None:
            conditions.append(EmbeddingAttempt.team_id == team_id)
        result = await session.execute(
            select(EmbeddingAttempt)
            .where(and_(*conditions))
            .order_by(EmbeddingAttempt.start_time, EmbeddingAttempt.id)
        )
        return list(result.scalars().all())

    # =========================================================================
    # Hourly
    # =========================================================================

    async def aggregate_hourly(
        self,
        session: AsyncSession,
        hour_bucket: datetime,
        team_id: Optional[uuid.UUID] = None,
    ) -> List[EmbeddingHourlyStat]:
        """
        Roll up attempts started in ``[hour_bucket, hour_bucket + 1h)``.

        Args:
            hour_bucket: Start of the hour (minutes/seconds must be zero)
            team_id: Restrict the run to one team

        Returns:
            The rollup rows written, one per team with attempts

        Raises:
            AggregationWindowError: If hour_bucket is not hour-aligned
        """
        if hour_bucket.minute or hour_bucket.second or hour_bucket.microsecond:
            raise AggregationWindowError(f"Hour bucket must be hour-aligned: {hour_bucket.isoformat()}")

        attempts = await self._attempts_in_window(
            session, hour_bucket, hour_bucket + timedelta(hours=1), team_id
        )
        written: List[EmbeddingHourlyStat] = []
        for team, team_attempts in _group_by_team(attempts).items():
            values = compute_hourly_rollup(team_attempts)
            result = await session.execute(
                select(EmbeddingHourlyStat).where(
                    EmbeddingHourlyStat.hour_bucket == hour_bucket,
                    EmbeddingHourlyStat.team_id == team,
                )
            )
            stat = result.scalar_one_or_none()
            if stat is None:
                stat = EmbeddingHourlyStat(id=uuid.uuid4(), hour_bucket=hour_bucket, team_id=team)
                session.add(stat)
            for column, value in values.items():
                setattr(stat, column, value)
            await session.flush()
            written.append(stat)

        logger.info(
            f"Aggregated hourly embedding metrics for {hour_bucket.isoformat()}: "
            f"{len(attempts)} attempts across {len(written)} teams"
        )
        return written

    # =========================================================================
    # Daily
    # =========================================================================

    async def aggregate_daily(
        self,
        session: AsyncSession,
        date_bucket: date,
        team_id: Optional[uuid.UUID] = None,
    ) -> List[EmbeddingDailyStat]:
        """
        Roll up attempts started on ``date_bucket`` (UTC).

        Returns:
            The rollup rows written, one per team with attempts
        """
        if isinstance(date_bucket, datetime):
            date_bucket = date_bucket.date()

        window_start = datetime.combine(date_bucket, time.min)
        attempts = await self._attempts_in_window(
            session, window_start, window_start + timedelta(days=1), team_id
        )
        written: List[EmbeddingDailyStat] = []
        for team, team_attempts in _group_by_team(attempts).items():
            values = compute_daily_rollup(team_attempts, self.price_per_1k_tokens)
            result = await session.execute(
                select(EmbeddingDailyStat).where(
                    EmbeddingDailyStat.date_bucket == date_bucket,
                    EmbeddingDailyStat.team_id == team,
                )
            )
            stat = result.scalar_one_or_none()
            if stat is None:
                stat = EmbeddingDailyStat(id=uuid.uuid4(), date_bucket=date_bucket, team_id=team)
                session.add(stat)
            for column, value in values.items():
                setattr(stat, column, value)
            await session.flush()
            written.append(stat)

        logger.info(
            f"Aggregated daily embedding metrics for {date_bucket.isoformat()}: "
            f"{len(attempts)} attempts across {len(written)} teams"
        )
        return written

    # =========================================================================
    # Retention
    # =========================================================================

    async def cleanup(self, session: AsyncSession, now: datetime) -> Dict[str, int]:
        """
        Delete expired attempts and rollups.

        Attempts are kept ``attempt_retention_days`` by creation time,
        hourly rollups ``hourly_stats_retention_days`` and daily rollups
        ``daily_stats_retention_days`` by bucket.

        Returns:
            Deleted row counts per table
        """
        attempt_cutoff = now - timedelta(days=settings.attempt_retention_days)
        hourly_cutoff = now - timedelta(days=settings.hourly_stats_retention_days)
        daily_cutoff = (now - timedelta(days=settings.daily_stats_retention_days)).date()

        attempts = await session.execute(
            delete(EmbeddingAttempt).where(EmbeddingAttempt.created_at < attempt_cutoff)
        )
        hourly = await session.execute(
            delete(EmbeddingHourlyStat).where(EmbeddingHourlyStat.hour_bucket < hourly_cutoff)
        )
        daily = await session.execute(
            delete(EmbeddingDailyStat).where(EmbeddingDailyStat.date_bucket < daily_cutoff)
        )

        summary = {
            "attempts_deleted": attempts.rowcount or 0,
            "hourly_stats_deleted": hourly.rowcount or 0,
            "daily_stats_deleted": daily.rowcount or 0,
        }
        logger.info(f"Embedding metrics cleanup complete: {summary}")
        return summary

    # =========================================================================
    # Dashboard reads
    # =========================================================================

    async def list_hourly_stats(
        self,
        session: AsyncSession,
        team_id: uuid.UUID,
        start: datetime,
        end: datetime,
    ) -> List[EmbeddingHourlyStat]:
        """Hourly rollups for a team with ``start <= hour_bucket < end``, oldest first."""
        result = await session.execute(
            select(EmbeddingHourlyStat)
            .where(
                EmbeddingHourlyStat.team_id == team_id,
                EmbeddingHourlyStat.hour_bucket >= start,
                EmbeddingHourlyStat.hour_bucket < end,
            )
            .order_by(EmbeddingHourlyStat.hour_bucket)
        )
        return list(result.scalars().all())

    async def list_daily_stats(
        self,
        session: AsyncSession,
        team_id: uuid.UUID,
        start_date: date,
        end_date: date,
    ) -> List[EmbeddingDailyStat]:
        """Daily rollups for a team with ``start_date <= date_bucket <= end_date``, oldest first."""
        result = await session.execute(
            select(EmbeddingDailyStat)
            .where(
                EmbeddingDailyStat.team_id == team_id,
                EmbeddingDailyStat.date_bucket >= start_date,
                EmbeddingDailyStat.date_bucket <= end_date,
            )
            .order_by(EmbeddingDailyStat.date_bucket)
        )
        return list(result.scalars().all())


# Global metrics aggregator instance
metrics_aggregator = MetricsAggregator()
