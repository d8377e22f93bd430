"""Add embedding metrics and record quality tables.

Revision ID: 20261019_0930
Revises: 20261019_0900
Create Date: 2026-10-19 09:30:00.000000

This migration:
1. Creates embedding_attempts (one row per embedding-generation attempt)
2. Creates embedding_hourly_stats / embedding_daily_stats rollups keyed by (bucket, team)
3. Creates record_quality_metrics (one row per source record)
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID, JSONB

# revision identifiers, used by Alembic.
revision = "20261019_0930"
down_revision = "20261019_0900"
branch_labels = None
depends_on = None


def _counter(name: str) -> sa.Column:
    return sa.Column(name, sa.Integer(), nullable=False, server_default="0")


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "embedding_attempts",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("receipt_id", UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", UUID(as_uuid=True), nullable=False),
        sa.Column("team_id", UUID(as_uuid=True), nullable=True),
        sa.Column("upload_context", sa.String(20), nullable=False, server_default="single"),
        sa.Column("model", sa.String(100), nullable=True),
        sa.Column("start_time", sa.DateTime(), nullable=False),
        sa.Column("end_time", sa.DateTime(), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        _counter("retry_count"),
        sa.Column("error_type", sa.String(20), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("content_types_processed", JSONB(), nullable=False, server_default="[]"),
        _counter("total_content_types"),
        _counter("successful_content_types"),
        _counter("failed_content_types"),
        _counter("api_calls_made"),
        _counter("api_tokens_used"),
        sa.Column("rate_limited", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("embedding_dimensions", sa.Integer(), nullable=True),
        _counter("content_length"),
        sa.Column("synthetic_content_used", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        *_timestamps(),
        sa.CheckConstraint("upload_context IN ('single', 'batch')", name="ck_embedding_attempts_upload_context"),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'success', 'failed', 'timeout')",
            name="ck_embedding_attempts_status",
        ),
        sa.CheckConstraint(
            "error_type IS NULL OR error_type IN ('api_limit', 'network', 'validation', 'timeout', 'unknown')",
            name="ck_embedding_attempts_error_type",
        ),
    )
    op.create_index("ix_embedding_attempts_receipt_id", "embedding_attempts", ["receipt_id"])
    op.create_index("ix_embedding_attempts_user_id", "embedding_attempts", ["user_id"])
    op.create_index("ix_embedding_attempts_team_id", "embedding_attempts", ["team_id"])
    op.create_index("ix_embedding_attempts_team_start", "embedding_attempts", ["team_id", "start_time"])
    op.create_index("ix_embedding_attempts_status", "embedding_attempts", ["status"])
    op.create_index("ix_embedding_attempts_created", "embedding_attempts", ["created_at"])

    op.create_table(
        "embedding_hourly_stats",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("hour_bucket", sa.DateTime(), nullable=False),
        sa.Column("team_id", UUID(as_uuid=True), nullable=False),
        _counter("total_attempts"),
        _counter("successful_attempts"),
        _counter("failed_attempts"),
        _counter("timeout_attempts"),
        _counter("single_upload_attempts"),
        _counter("batch_upload_attempts"),
        _counter("single_upload_success"),
        _counter("batch_upload_success"),
        sa.Column("avg_duration_ms", sa.Float(), nullable=True),
        sa.Column("p95_duration_ms", sa.Float(), nullable=True),
        _counter("total_api_calls"),
        _counter("total_tokens_used"),
        _counter("rate_limited_count"),
        _counter("api_limit_errors"),
        _counter("network_errors"),
        _counter("validation_errors"),
        _counter("timeout_errors"),
        _counter("unknown_errors"),
        *_timestamps(),
        sa.UniqueConstraint("hour_bucket", "team_id", name="uq_embedding_hourly_stats_bucket_team"),
    )

    op.create_table(
        "embedding_daily_stats",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("date_bucket", sa.Date(), nullable=False),
        sa.Column("team_id", UUID(as_uuid=True), nullable=False),
        _counter("total_attempts"),
        _counter("successful_attempts"),
        _counter("failed_attempts"),
        sa.Column("success_rate", sa.Float(), nullable=False, server_default="0"),
        sa.Column("avg_duration_ms", sa.Float(), nullable=True),
        sa.Column("p95_duration_ms", sa.Float(), nullable=True),
        sa.Column("p99_duration_ms", sa.Float(), nullable=True),
        _counter("total_api_calls"),
        _counter("total_tokens_used"),
        sa.Column("estimated_cost_usd", sa.Float(), nullable=False, server_default="0"),
        sa.Column("synthetic_content_percentage", sa.Float(), nullable=False, server_default="0"),
        sa.Column("avg_content_types_per_receipt", sa.Float(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("date_bucket", "team_id", name="uq_embedding_daily_stats_bucket_team"),
    )

    op.create_table(
        "record_quality_metrics",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("source_type", sa.String(50), nullable=False, server_default="receipt"),
        sa.Column("source_id", UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", UUID(as_uuid=True), nullable=False),
        sa.Column("team_id", UUID(as_uuid=True), nullable=True),
        _counter("total_content_types"),
        _counter("successful_embeddings"),
        _counter("failed_embeddings"),
        sa.Column("synthetic_content_used", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("overall_quality_score", sa.Float(), nullable=False, server_default="0"),
        sa.Column("processing_method", sa.String(20), nullable=False, server_default="enhanced"),
        sa.Column("content_quality_scores", JSONB(), nullable=False, server_default="{}"),
        *_timestamps(),
        sa.UniqueConstraint("source_type", "source_id", name="uq_record_quality_metrics_source"),
        sa.CheckConstraint(
            "overall_quality_score >= 0 AND overall_quality_score <= 100",
            name="ck_record_quality_metrics_score_range",
        ),
    )
    op.create_index("ix_record_quality_metrics_user_id", "record_quality_metrics", ["user_id"])
    op.create_index("ix_record_quality_metrics_team_id", "record_quality_metrics", ["team_id"])
    op.create_index(
        "ix_record_quality_metrics_user_updated", "record_quality_metrics", ["user_id", "updated_at"]
    )


def downgrade() -> None:
    op.drop_index("ix_record_quality_metrics_user_updated", table_name="record_quality_metrics")
    op.drop_index("ix_record_quality_metrics_team_id", table_name="record_quality_metrics")
    op.drop_index("ix_record_quality_metrics_user_id", table_name="record_quality_metrics")
    op.drop_table("record_quality_metrics")

    op.drop_table("embedding_daily_stats")
    op.drop_table("embedding_hourly_stats")

    op.drop_index("ix_embedding_attempts_created", table_name="embedding_attempts")
    op.drop_index("ix_embedding_attempts_status", table_name="embedding_attempts")
    op.drop_index("ix_embedding_attempts_team_start", table_name="embedding_attempts")
    op.drop_index("ix_embedding_attempts_team_id", table_name="embedding_attempts")
    op.drop_index("ix_embedding_attempts_user_id", table_name="embedding_attempts")
    op.drop_index("ix_embedding_attempts_receipt_id", table_name="embedding_attempts")
    op.drop_table("embedding_attempts")
