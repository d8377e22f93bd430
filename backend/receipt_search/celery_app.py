"""
Celery application setup for the receipt search backend.

Configures Celery using environment-driven settings so workers and the API
share the same broker/result backend. Tasks live in receipt_search.tasks.

Queue Architecture:
- processing: Default queue for ad hoc work (migration, repair)
- maintenance: Scheduled rollups and retention cleanup (non-blocking)

Beat Schedule:
- aggregate-embedding-metrics-hourly: 5 minutes past every hour, rolls up
  the previous full hour
- aggregate-embedding-metrics-daily: 00:15 UTC, rolls up the previous day
- cleanup-embedding-metrics: cron from METRICS_CLEANUP_CRON (default 03:00)

Cleanup is scheduled away from the aggregation minutes so the two never
touch the same window at once.

Workers run with CELERY_WORKER=1 so the database service builds its engine
with NullPool (see services/database_service.py).
"""
import os

from celery import Celery
from celery.schedules import crontab
from kombu import Queue

from .config import settings


def _bool(val: str, default: bool = False) -> bool:
    if val is None:
        return default
    return str(val).lower() in {"1", "true", "yes", "on"}


def _parse_cron(expression: str, default: crontab) -> crontab:
    """Parse "minute hour day month day_of_week"; fall back to ``default``."""
    parts = expression.split()
    if len(parts) != 5:
        return default
    return crontab(
        minute=parts[0],
        hour=parts[1],
        day_of_month=parts[2],
        month_of_year=parts[3],
        day_of_week=parts[4],
    )


app = Celery(
    "receipt_search",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["receipt_search.tasks"],
)

app.conf.task_queues = (
    Queue("processing", routing_key="processing"),
    Queue("maintenance", routing_key="maintenance"),
)

# Core settings with sensible defaults, overridable via env
app.conf.update(
    task_acks_late=_bool(os.getenv("CELERY_ACKS_LATE", "true"), True),
    worker_prefetch_multiplier=int(os.getenv("CELERY_PREFETCH_MULTIPLIER", "1")),
    worker_max_tasks_per_child=int(os.getenv("CELERY_MAX_TASKS_PER_CHILD", "50")),
    task_soft_time_limit=int(os.getenv("CELERY_TASK_SOFT_TIME_LIMIT", "600")),
    task_time_limit=int(os.getenv("CELERY_TASK_TIME_LIMIT", "900")),
    result_expires=int(os.getenv("CELERY_RESULT_EXPIRES", "259200")),  # 3 days
    task_default_queue=os.getenv("CELERY_DEFAULT_QUEUE", "processing"),
    timezone="UTC",
    enable_utc=True,
    task_routes={
        "receipt_search.tasks.aggregate_hourly_stats_task": {"queue": "maintenance"},
        "receipt_search.tasks.aggregate_daily_stats_task": {"queue": "maintenance"},
        "receipt_search.tasks.cleanup_embedding_metrics_task": {"queue": "maintenance"},
        "receipt_search.tasks.migrate_legacy_embeddings_task": {"queue": "processing"},
        "receipt_search.tasks.repair_empty_content_task": {"queue": "processing"},
    },
)

beat_schedule = {}

if settings.metrics_aggregation_enabled:
    beat_schedule["aggregate-embedding-metrics-hourly"] = {
        "task": "receipt_search.tasks.aggregate_hourly_stats_task",
        "schedule": crontab(minute=5),
        "options": {"queue": "maintenance"},
    }
    beat_schedule["aggregate-embedding-metrics-daily"] = {
        "task": "receipt_search.tasks.aggregate_daily_stats_task",
        "schedule": crontab(hour=0, minute=15),
        "options": {"queue": "maintenance"},
    }

if settings.metrics_cleanup_enabled:
    beat_schedule["cleanup-embedding-metrics"] = {
        "task": "receipt_search.tasks.cleanup_embedding_metrics_task",
        "schedule": _parse_cron(settings.metrics_cleanup_cron, crontab(hour=3, minute=0)),
        "options": {"queue": "maintenance"},
    }

app.conf.beat_schedule = beat_schedule
