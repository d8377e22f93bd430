# backend/receipt_search/database/__init__.py
"""
Database package for the receipt search backend.

Provides SQLAlchemy models, base classes, and database session management.
"""

from .base import Base, get_db
from .models import (
    Claim,
    EmbeddingAttempt,
    EmbeddingDailyStat,
    EmbeddingHourlyStat,
    LegacyReceiptEmbedding,
    LineItem,
    Receipt,
    RecordQualityMetric,
    UnifiedContentEntry,
)

__all__ = [
    "Base",
    "get_db",
    "Claim",
    "EmbeddingAttempt",
    "EmbeddingDailyStat",
    "EmbeddingHourlyStat",
    "LegacyReceiptEmbedding",
    "LineItem",
    "Receipt",
    "RecordQualityMetric",
    "UnifiedContentEntry",
]
