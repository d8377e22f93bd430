"""
Celery tasks driving embedding-metrics rollups, retention and index maintenance.

The services never read the clock; the tasks here compute the window to
process (previous full hour / previous day / now) and pass it in. Each task
also accepts an explicit ISO timestamp so operators can backfill a bucket.
"""
import asyncio
import logging
from datetime import date, datetime, timedelta
from typing import Any, Dict, Optional

from celery import shared_task

from .services.content_index_service import content_index_service
from .services.database_service import database_service
from .services.metrics_aggregator import metrics_aggregator

logger = logging.getLogger("receipt_search.tasks")


def previous_hour_bucket(now: datetime) -> datetime:
    """Start of the last full hour before ``now``."""
    return now.replace(minute=0, second=0, microsecond=0) - timedelta(hours=1)


def previous_day_bucket(now: datetime) -> date:
    """The last full UTC day before ``now``."""
    return (now - timedelta(days=1)).date()


async def _aggregate_hourly(hour_bucket: datetime) -> Dict[str, Any]:
    async with database_service.get_session() as session:
        stats = await metrics_aggregator.aggregate_hourly(session, hour_bucket)
    return {"hour_bucket": hour_bucket.isoformat(), "teams": len(stats)}


async def _aggregate_daily(date_bucket: date) -> Dict[str, Any]:
    async with database_service.get_session() as session:
        stats = await metrics_aggregator.aggregate_daily(session, date_bucket)
    return {"date_bucket": date_bucket.isoformat(), "teams": len(stats)}


async def _cleanup(now: datetime) -> Dict[str, Any]:
    async with database_service.get_session() as session:
        return await metrics_aggregator.cleanup(session, now)


async def _migrate() -> Dict[str, Any]:
    async with database_service.get_session() as session:
        report = await content_index_service.migrate_legacy_embeddings(session)
    return {"migrated": report.migrated, "skipped": report.skipped, "errors": report.errors}


async def _repair() -> Dict[str, Any]:
    async with database_service.get_session() as session:
        outcomes = await content_index_service.repair_empty_content(session)
    summary: Dict[str, Any] = {"fixed": 0, "skipped": 0, "error": 0}
    for outcome in outcomes:
        summary[outcome.status] += 1
    return summary


@shared_task(bind=True)
def aggregate_hourly_stats_task(self, hour_bucket: Optional[str] = None) -> Dict[str, Any]:
    """Roll up the previous full hour, or ``hour_bucket`` (ISO) when given."""
    bucket = (
        datetime.fromisoformat(hour_bucket)
        if hour_bucket
        else previous_hour_bucket(datetime.utcnow())
    )
    result = asyncio.run(_aggregate_hourly(bucket))
    logger.info(f"Hourly embedding metrics task finished: {result}")
    return result


@shared_task(bind=True)
def aggregate_daily_stats_task(self, date_bucket: Optional[str] = None) -> Dict[str, Any]:
    """Roll up the previous day, or ``date_bucket`` (ISO date) when given."""
    bucket = (
        date.fromisoformat(date_bucket)
        if date_bucket
        else previous_day_bucket(datetime.utcnow())
    )
    result = asyncio.run(_aggregate_daily(bucket))
    logger.info(f"Daily embedding metrics task finished: {result}")
    return result


@shared_task(bind=True)
def cleanup_embedding_metrics_task(self, now: Optional[str] = None) -> Dict[str, Any]:
    """Apply retention to attempts and rollups."""
    reference = datetime.fromisoformat(now) if now else datetime.utcnow()
    return asyncio.run(_cleanup(reference))


@shared_task(bind=True)
def migrate_legacy_embeddings_task(self) -> Dict[str, Any]:
    """Backfill the unified content index from legacy receipt embeddings."""
    return asyncio.run(_migrate())


@shared_task(bind=True)
def repair_empty_content_task(self) -> Dict[str, Any]:
    """Re-derive text for unified entries with empty content."""
    return asyncio.run(_repair())
