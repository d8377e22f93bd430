# backend/receipt_search/database/models.py
"""
SQLAlchemy ORM models for the receipt search backend.

Record store (read by search, fallback and content reconstruction):
    - Receipt: Uploaded receipt with extracted facts
    - LineItem: Line items belonging to a receipt
    - Claim: Expense claim with an amount and currency
    - LegacyReceiptEmbedding: Pre-unification per-receipt embeddings

Search index:
    - UnifiedContentEntry: (source_type, source_id, content_type) -> text + vector

Embedding pipeline observability:
    - EmbeddingAttempt: One row per embedding-generation attempt
    - EmbeddingHourlyStat: Hourly per-team rollup of attempts
    - EmbeddingDailyStat: Daily per-team rollup of attempts
    - RecordQualityMetric: Per-record embedding quality score

All models use UUID primary keys and naive UTC timestamps.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime
from enum import Enum
from typing import List, Optional

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import relationship
from sqlalchemy.types import UserDefinedType

from ..config import settings
from .base import Base


# =============================================================================
# Enumerations (stored as plain strings)
# =============================================================================

class UploadContext(str, Enum):
    SINGLE = "single"
    BATCH = "batch"


class AttemptStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"
    TIMEOUT = "timeout"


class ErrorType(str, Enum):
    API_LIMIT = "api_limit"
    NETWORK = "network"
    VALIDATION = "validation"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


class ProcessingMethod(str, Enum):
    ENHANCED = "enhanced"
    FALLBACK = "fallback"
    LEGACY = "legacy"


class SourceType(str, Enum):
    RECEIPT = "receipt"
    CLAIM = "claim"
    TEAM_MEMBER = "team_member"
    CUSTOM_CATEGORY = "custom_category"
    BUSINESS_DIRECTORY = "business_directory"


# Source types whose records carry an amount and currency
MONETARY_SOURCE_TYPES = (SourceType.RECEIPT.value, SourceType.CLAIM.value)


# =============================================================================
# Column types
# =============================================================================

# UUID type that works with both SQLite and PostgreSQL
class UUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL's UUID type when available, otherwise uses String(36).
    """
    impl = String
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == 'postgresql':
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == 'postgresql':
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        return str(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if not isinstance(value, uuid.UUID):
            return uuid.UUID(str(value))
        return value


class PgVector(UserDefinedType):
    """pgvector column type, rendered as vector(N) in DDL."""
    cache_ok = True

    def __init__(self, dimensions: int):
        self.dimensions = dimensions

    def get_col_spec(self, **kw):
        return f"vector({self.dimensions})"


def format_vector(values: List[float]) -> str:
    """Format a float list as a pgvector literal: '[0.1,0.2,...]'."""
    return "[" + ",".join(str(float(v)) for v in values) + "]"


def parse_vector(value) -> Optional[List[float]]:
    """Parse a pgvector literal (or already-decoded sequence) into floats."""
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        return [float(v) for v in value]
    raw = str(value).strip()
    if not raw:
        return None
    return [float(v) for v in json.loads(raw)]


class EmbeddingVector(TypeDecorator):
    """Embedding column.

    Stored as pgvector ``vector(N)`` on PostgreSQL and as its text literal on
    other databases. Python side always sees ``List[float]`` or ``None``.
    """
    impl = Text
    cache_ok = True

    def __init__(self, dimensions: Optional[int] = None, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.dimensions = dimensions or settings.embedding_dimensions

    def load_dialect_impl(self, dialect):
        if dialect.name == 'postgresql':
            return dialect.type_descriptor(PgVector(self.dimensions))
        return dialect.type_descriptor(Text())

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return format_vector(value)

    def process_result_value(self, value, dialect):
        return parse_vector(value)


# =============================================================================
# Record store
# =============================================================================

class Receipt(Base):
    """
    Receipt record.

    Attributes:
        id: Receipt identifier
        user_id: Owning user
        team_id: Owning team (nullable for personal receipts)
        merchant: Merchant name as extracted
        date: Receipt date
        total: Receipt total amount
        currency: ISO currency code
        full_text: OCR / extracted full text
        notes: Free-form user notes
        predicted_category: Category predicted during processing
    """

    __tablename__ = "receipts"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(), nullable=False, index=True)
    team_id = Column(UUID(), nullable=True, index=True)
    merchant = Column(String(255), nullable=True)
    date = Column(Date, nullable=True)
    total = Column(Float, nullable=True)
    currency = Column(String(8), nullable=True)
    full_text = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)
    predicted_category = Column(String(100), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    updated_at = Column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    line_items = relationship(
        "LineItem", back_populates="receipt", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<Receipt(id={self.id}, merchant={self.merchant}, total={self.total})>"


class LineItem(Base):
    """Line item belonging to a receipt."""

    __tablename__ = "line_items"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    receipt_id = Column(
        UUID(), ForeignKey("receipts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    description = Column(Text, nullable=True)
    amount = Column(Float, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    receipt = relationship("Receipt", back_populates="line_items")


class Claim(Base):
    """Expense claim submitted within a team."""

    __tablename__ = "claims"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(), nullable=False, index=True)
    team_id = Column(UUID(), nullable=True, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    amount = Column(Float, nullable=True)
    currency = Column(String(8), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class LegacyReceiptEmbedding(Base):
    """
    Per-receipt embedding from before the unified content index.

    Rows are only read by the migration routine; new embeddings are written
    to UnifiedContentEntry.
    """

    __tablename__ = "receipt_embeddings"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    receipt_id = Column(
        UUID(), ForeignKey("receipts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    content_type = Column(String(50), nullable=False, default="full_text")
    embedding = Column(EmbeddingVector(), nullable=True)
    legacy_metadata = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


# =============================================================================
# Unified content index
# =============================================================================

class UnifiedContentEntry(Base):
    """
    Normalized search index entry.

    At most one entry exists per (source_type, source_id, content_type);
    re-embedding overwrites text, vector and metadata in place.

    Attributes:
        source_type: Kind of source record (receipt, claim, team_member, ...)
        source_id: Identifier of the source record
        content_type: Facet of the record (merchant, full_text, notes, ...)
        content_text: Text that was embedded
        embedding: Vector (nullable when not yet generated)
        entry_metadata: Free-form metadata (stored in the "metadata" column)
        user_id / team_id: Ownership used for scoping
        language: ISO language code of content_text
    """

    __tablename__ = "unified_embeddings"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    source_type = Column(String(50), nullable=False)
    source_id = Column(UUID(), nullable=False)
    content_type = Column(String(50), nullable=False)
    content_text = Column(Text, nullable=True)
    embedding = Column(EmbeddingVector(), nullable=True)
    entry_metadata = Column("metadata", JSON, nullable=False, default=dict)
    user_id = Column(UUID(), nullable=True, index=True)
    team_id = Column(UUID(), nullable=True, index=True)
    language = Column(String(10), nullable=False, default="en")

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint(
            "source_type", "source_id", "content_type", name="uq_unified_embeddings_source_content"
        ),
        Index("ix_unified_embeddings_source", "source_type", "source_id"),
        Index("ix_unified_embeddings_content_type", "content_type"),
    )

    def __repr__(self) -> str:
        return (
            f"<UnifiedContentEntry(source_type={self.source_type}, "
            f"source_id={self.source_id}, content_type={self.content_type})>"
        )


# =============================================================================
# Embedding pipeline observability
# =============================================================================

class EmbeddingAttempt(Base):
    """
    One embedding-generation attempt reported by the embedding worker.

    Created with status=pending at attempt start and mutated once at
    completion. ``version`` increments on every completion write.
    """

    __tablename__ = "embedding_attempts"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    receipt_id = Column(UUID(), nullable=False, index=True)
    user_id = Column(UUID(), nullable=False, index=True)
    team_id = Column(UUID(), nullable=True, index=True)

    upload_context = Column(String(20), nullable=False, default=UploadContext.SINGLE.value)
    model = Column(String(100), nullable=True)

    start_time = Column(DateTime, nullable=False, default=datetime.utcnow)
    end_time = Column(DateTime, nullable=True)
    duration_ms = Column(Integer, nullable=True)

    status = Column(String(20), nullable=False, default=AttemptStatus.PENDING.value)
    retry_count = Column(Integer, nullable=False, default=0)
    error_type = Column(String(20), nullable=True)
    error_message = Column(Text, nullable=True)

    content_types_processed = Column(JSON, nullable=False, default=list)
    total_content_types = Column(Integer, nullable=False, default=0)
    successful_content_types = Column(Integer, nullable=False, default=0)
    failed_content_types = Column(Integer, nullable=False, default=0)

    api_calls_made = Column(Integer, nullable=False, default=0)
    api_tokens_used = Column(Integer, nullable=False, default=0)
    rate_limited = Column(Boolean, nullable=False, default=False)

    embedding_dimensions = Column(Integer, nullable=True)
    content_length = Column(Integer, nullable=False, default=0)
    synthetic_content_used = Column(Boolean, nullable=False, default=False)

    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        Index("ix_embedding_attempts_team_start", "team_id", "start_time"),
        Index("ix_embedding_attempts_status", "status"),
        Index("ix_embedding_attempts_created", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<EmbeddingAttempt(id={self.id}, status={self.status}, receipt_id={self.receipt_id})>"


class EmbeddingHourlyStat(Base):
    """Hourly rollup of embedding attempts for one team."""

    __tablename__ = "embedding_hourly_stats"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    hour_bucket = Column(DateTime, nullable=False)
    team_id = Column(UUID(), nullable=False)

    total_attempts = Column(Integer, nullable=False, default=0)
    successful_attempts = Column(Integer, nullable=False, default=0)
    failed_attempts = Column(Integer, nullable=False, default=0)
    timeout_attempts = Column(Integer, nullable=False, default=0)

    single_upload_attempts = Column(Integer, nullable=False, default=0)
    batch_upload_attempts = Column(Integer, nullable=False, default=0)
    single_upload_success = Column(Integer, nullable=False, default=0)
    batch_upload_success = Column(Integer, nullable=False, default=0)

    avg_duration_ms = Column(Float, nullable=True)
    p95_duration_ms = Column(Float, nullable=True)

    total_api_calls = Column(Integer, nullable=False, default=0)
    total_tokens_used = Column(Integer, nullable=False, default=0)
    rate_limited_count = Column(Integer, nullable=False, default=0)

    api_limit_errors = Column(Integer, nullable=False, default=0)
    network_errors = Column(Integer, nullable=False, default=0)
    validation_errors = Column(Integer, nullable=False, default=0)
    timeout_errors = Column(Integer, nullable=False, default=0)
    unknown_errors = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("hour_bucket", "team_id", name="uq_embedding_hourly_stats_bucket_team"),
    )


class EmbeddingDailyStat(Base):
    """Daily rollup of embedding attempts for one team."""

    __tablename__ = "embedding_daily_stats"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    date_bucket = Column(Date, nullable=False)
    team_id = Column(UUID(), nullable=False)

    total_attempts = Column(Integer, nullable=False, default=0)
    successful_attempts = Column(Integer, nullable=False, default=0)
    failed_attempts = Column(Integer, nullable=False, default=0)
    success_rate = Column(Float, nullable=False, default=0.0)

    avg_duration_ms = Column(Float, nullable=True)
    p95_duration_ms = Column(Float, nullable=True)
    p99_duration_ms = Column(Float, nullable=True)

    total_api_calls = Column(Integer, nullable=False, default=0)
    total_tokens_used = Column(Integer, nullable=False, default=0)
    estimated_cost_usd = Column(Float, nullable=False, default=0.0)

    synthetic_content_percentage = Column(Float, nullable=False, default=0.0)
    avg_content_types_per_receipt = Column(Float, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("date_bucket", "team_id", name="uq_embedding_daily_stats_bucket_team"),
    )


class RecordQualityMetric(Base):
    """
    Embedding quality of one source record.

    overall_quality_score is clamped to [0, 100] before every write.
    """

    __tablename__ = "record_quality_metrics"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    source_type = Column(String(50), nullable=False, default=SourceType.RECEIPT.value)
    source_id = Column(UUID(), nullable=False)
    user_id = Column(UUID(), nullable=False, index=True)
    team_id = Column(UUID(), nullable=True, index=True)

    total_content_types = Column(Integer, nullable=False, default=0)
    successful_embeddings = Column(Integer, nullable=False, default=0)
    failed_embeddings = Column(Integer, nullable=False, default=0)
    synthetic_content_used = Column(Boolean, nullable=False, default=False)
    overall_quality_score = Column(Float, nullable=False, default=0.0)
    processing_method = Column(String(20), nullable=False, default=ProcessingMethod.ENHANCED.value)
    content_quality_scores = Column(JSON, nullable=False, default=dict)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("source_type", "source_id", name="uq_record_quality_metrics_source"),
        Index("ix_record_quality_metrics_user_updated", "user_id", "updated_at"),
    )
