# ============================================================================
# backend/receipt_search/services/content_index_service.py
# ============================================================================
"""
Unified Content Index Service - writes, migration, repair and health checks.

The unified index holds one row per (source_type, source_id, content_type)
with the embedded text, its vector and metadata. The embedding worker writes
through ``upsert_entry``; this service also owns the maintenance routines
that keep the index consistent with the record store:

    - migrate_legacy_embeddings: backfill from the per-receipt legacy table
    - repair_empty_content:      re-derive missing content_text in place
    - content_health:            share of entries with usable text per bucket
    - find_records_missing_entries / migration_stats: coverage reporting

Content Reconstruction:
    Text for a receipt is rebuilt per ContentType by exactly one function in
    CONTENT_RECONSTRUCTORS. The table is checked against the enum at import
    time, so adding a content type without a reconstruction fails loudly.
    When a reconstruction yields nothing, the row is skipped; text is never
    fabricated.

Usage:
    from receipt_search.services.content_index_service import content_index_service

    await content_index_service.upsert_entry(
        session, source_type="receipt", source_id=receipt.id,
        content_type="merchant", content_text="Starbucks",
        embedding=vector, user_id=receipt.user_id,
    )
    report = await content_index_service.migrate_legacy_embeddings(session, now=datetime.utcnow())

Author: Receipt Search Development Team
Version: 1.0.0
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy import and_, case, delete, exists, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..database.models import (
    LegacyReceiptEmbedding,
    LineItem,
    Receipt,
    SourceType,
    UnifiedContentEntry,
)

logger = logging.getLogger("receipt_search.content_index_service")


class ContentIndexError(ValueError):
    """Raised for entries that cannot be stored (e.g. wrong vector size)."""


# =============================================================================
# Content types and reconstruction
# =============================================================================

class ContentType(str, Enum):
    MERCHANT = "merchant"
    FULL_TEXT = "full_text"
    NOTES = "notes"
    ITEMS_DESCRIPTION = "items_description"
    FALLBACK = "fallback"


@dataclass
class ReceiptContent:
    """A receipt with the line items needed for reconstruction."""
    receipt: Receipt
    line_items: List[LineItem] = field(default_factory=list)


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _format_amount(value: Optional[float]) -> Optional[str]:
    if value is None:
        return None
    return f"{value:.2f}"


def _merchant_text(content: ReceiptContent) -> Optional[str]:
    return _clean(content.receipt.merchant)


def _full_text(content: ReceiptContent) -> Optional[str]:
    return _clean(content.receipt.full_text)


def _notes_text(content: ReceiptContent) -> Optional[str]:
    return _clean(content.receipt.notes)


def _items_description_text(content: ReceiptContent) -> Optional[str]:
    descriptions = [_clean(item.description) for item in content.line_items]
    joined = "; ".join(d for d in descriptions if d)
    return joined or None


def _fallback_text(content: ReceiptContent) -> Optional[str]:
    """Full text, else "merchant - total", else merchant, else "Receipt from <date>"."""
    receipt = content.receipt
    full_text = _clean(receipt.full_text)
    if full_text:
        return full_text
    merchant = _clean(receipt.merchant)
    total = _format_amount(receipt.total)
    if merchant and total:
        return f"{merchant} - {total}"
    if merchant:
        return merchant
    if receipt.date is not None:
        return f"Receipt from {receipt.date.isoformat()}"
    return None


CONTENT_RECONSTRUCTORS: Dict[ContentType, Callable[[ReceiptContent], Optional[str]]] = {
    ContentType.MERCHANT: _merchant_text,
    ContentType.FULL_TEXT: _full_text,
    ContentType.NOTES: _notes_text,
    ContentType.ITEMS_DESCRIPTION: _items_description_text,
    ContentType.FALLBACK: _fallback_text,
}

_missing_reconstructors = set(ContentType) - set(CONTENT_RECONSTRUCTORS)
if _missing_reconstructors:
    raise RuntimeError(
        f"Content types without reconstruction: {sorted(c.value for c in _missing_reconstructors)}"
    )

# Content types checked by find_records_missing_entries
DIRECT_FIELD_CONTENT_TYPES = (ContentType.FULL_TEXT, ContentType.MERCHANT, ContentType.NOTES)
_DIRECT_FIELD_COLUMNS = {
    ContentType.FULL_TEXT: Receipt.full_text,
    ContentType.MERCHANT: Receipt.merchant,
    ContentType.NOTES: Receipt.notes,
}


def reconstruct_content(content_type: ContentType, content: ReceiptContent) -> Optional[str]:
    """Rebuild the indexable text of one receipt facet, or None if there is none."""
    return CONTENT_RECONSTRUCTORS[content_type](content)


# =============================================================================
# Data Classes
# =============================================================================

@dataclass
class MigrationReport:
    """Outcome of a legacy embedding migration run."""
    migrated: int = 0
    skipped: int = 0
    errors: int = 0
    details: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class RepairOutcome:
    """Outcome of repairing one entry with empty content."""
    entry_id: uuid.UUID
    source_type: str
    source_id: uuid.UUID
    content_type: str
    status: str  # fixed | skipped | error
    reason: Optional[str] = None


@dataclass
class ContentHealthBucket:
    """Content coverage for one (source_type, content_type) bucket."""
    source_type: str
    content_type: str
    total_embeddings: int
    empty_content: int
    has_content: int
    content_health_percentage: float


# =============================================================================
# Content Index Service
# =============================================================================

class ContentIndexService:
    """Maintains the unified content index."""

    def __init__(self, embedding_dimensions: Optional[int] = None):
        self._embedding_dim = embedding_dimensions or settings.embedding_dimensions

    # =========================================================================
    # Writes
    # =========================================================================

    def _validate_embedding(self, embedding: Optional[Sequence[float]]) -> Optional[List[float]]:
        if embedding is None:
            return None
        values = [float(v) for v in embedding]
        if len(values) != self._embedding_dim:
            raise ContentIndexError(
                f"Embedding has {len(values)} dimensions, expected {self._embedding_dim}"
            )
        return values

    async def get_entry(
        self,
        session: AsyncSession,
        source_type: str,
        source_id: uuid.UUID,
        content_type: str,
    ) -> Optional[UnifiedContentEntry]:
        result = await session.execute(
            select(UnifiedContentEntry).where(
                UnifiedContentEntry.source_type == source_type,
                UnifiedContentEntry.source_id == source_id,
                UnifiedContentEntry.content_type == content_type,
            )
        )
        return result.scalar_one_or_none()

    async def upsert_entry(
        self,
        session: AsyncSession,
        source_type: str,
        source_id: uuid.UUID,
        content_type: str,
        content_text: Optional[str],
        embedding: Optional[Sequence[float]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[uuid.UUID] = None,
        team_id: Optional[uuid.UUID] = None,
        language: Optional[str] = None,
    ) -> UnifiedContentEntry:
        """
        Get-or-create the entry for (source_type, source_id, content_type) and merge.

        Merge rule: content_text, embedding and metadata are overwritten;
        owner and language are only replaced when a value is given.

        Raises:
            ContentIndexError: If the embedding has the wrong dimensionality
        """
        vector = self._validate_embedding(embedding)

        entry = await self.get_entry(session, source_type, source_id, content_type)
        if entry is None:
            entry = UnifiedContentEntry(
                id=uuid.uuid4(),
                source_type=source_type,
                source_id=source_id,
                content_type=content_type,
                language=language or "en",
            )
            session.add(entry)

        entry.content_text = content_text
        entry.embedding = vector
        entry.entry_metadata = dict(metadata or {})
        if user_id is not None:
            entry.user_id = user_id
        if team_id is not None:
            entry.team_id = team_id
        if language is not None:
            entry.language = language
        entry.updated_at = datetime.utcnow()

        await session.flush()
        return entry

    async def delete_source(
        self, session: AsyncSession, source_type: str, source_id: uuid.UUID
    ) -> int:
        """Remove every entry of a deleted source record. Returns rows deleted."""
        result = await session.execute(
            delete(UnifiedContentEntry).where(
                UnifiedContentEntry.source_type == source_type,
                UnifiedContentEntry.source_id == source_id,
            )
        )
        return result.rowcount or 0

    async def _load_receipt_content(
        self, session: AsyncSession, receipt_id: uuid.UUID
    ) -> Optional[ReceiptContent]:
        receipt = await session.get(Receipt, receipt_id)
        if receipt is None:
            return None
        items = await session.execute(
            select(LineItem).where(LineItem.receipt_id == receipt_id).order_by(LineItem.created_at)
        )
        return ReceiptContent(receipt=receipt, line_items=list(items.scalars().all()))

    # =========================================================================
    # Migration
    # =========================================================================

    async def migrate_legacy_embeddings(
        self, session: AsyncSession, now: Optional[datetime] = None
    ) -> MigrationReport:
        """
        Backfill unified entries from legacy per-receipt embeddings.

        Only legacy rows without a unified entry for the same receipt and
        content type are considered. Rows are skipped when the receipt no
        longer exists, the content type is unknown or no text can be
        reconstructed. Each row is written in its own savepoint; failures
        are counted in the report instead of being raised.
        """
        now = now or datetime.utcnow()
        report = MigrationReport()

        result = await session.execute(
            select(LegacyReceiptEmbedding)
            .outerjoin(
                UnifiedContentEntry,
                and_(
                    UnifiedContentEntry.source_type == SourceType.RECEIPT.value,
                    UnifiedContentEntry.source_id == LegacyReceiptEmbedding.receipt_id,
                    UnifiedContentEntry.content_type == LegacyReceiptEmbedding.content_type,
                ),
            )
            .where(UnifiedContentEntry.id.is_(None))
            .order_by(LegacyReceiptEmbedding.created_at, LegacyReceiptEmbedding.id)
        )
        legacy_rows = list(result.scalars().all())

        for legacy in legacy_rows:
            detail = {
                "legacy_id": str(legacy.id),
                "receipt_id": str(legacy.receipt_id),
                "content_type": legacy.content_type,
            }
            report.details.append(detail)

            try:
                content_type = ContentType(legacy.content_type)
            except ValueError:
                detail.update(status="skipped", reason="unknown content type")
                report.skipped += 1
                continue

            content = await self._load_receipt_content(session, legacy.receipt_id)
            if content is None:
                detail.update(status="skipped", reason="receipt not found")
                report.skipped += 1
                continue

            text_value = reconstruct_content(content_type, content)
            if text_value is None:
                detail.update(status="skipped", reason="no content")
                report.skipped += 1
                continue

            receipt = content.receipt
            metadata = dict(legacy.legacy_metadata or {})
            metadata.update(
                migrated_from="receipt_embeddings",
                migration_date=now.isoformat(),
                receipt_date=receipt.date.isoformat() if receipt.date else None,
                receipt_total=receipt.total,
            )

            try:
                async with session.begin_nested():
                    await self.upsert_entry(
                        session,
                        source_type=SourceType.RECEIPT.value,
                        source_id=receipt.id,
                        content_type=content_type.value,
                        content_text=text_value,
                        embedding=legacy.embedding,
                        metadata=metadata,
                        user_id=receipt.user_id,
                        team_id=receipt.team_id,
                        language="en",
                    )
            except (SQLAlchemyError, ContentIndexError) as e:
                logger.error(f"Failed to migrate legacy embedding {legacy.id}: {e}")
                detail.update(status="error", reason=str(e))
                report.errors += 1
                continue

            detail.update(status="migrated")
            report.migrated += 1

        logger.info(
            f"Legacy embedding migration complete: migrated={report.migrated} "
            f"skipped={report.skipped} errors={report.errors}"
        )
        return report

    # =========================================================================
    # Repair
    # =========================================================================

    async def repair_empty_content(self, session: AsyncSession) -> List[RepairOutcome]:
        """
        Re-derive content_text for entries whose text is null or blank.

        Only receipt entries can be rebuilt; anything else is skipped.
        """
        result = await session.execute(
            select(UnifiedContentEntry)
            .where(
                or_(
                    UnifiedContentEntry.content_text.is_(None),
                    func.trim(UnifiedContentEntry.content_text) == "",
                )
            )
            .order_by(UnifiedContentEntry.created_at, UnifiedContentEntry.id)
        )
        entries = list(result.scalars().all())

        outcomes: List[RepairOutcome] = []
        for entry in entries:
            outcome = RepairOutcome(
                entry_id=entry.id,
                source_type=entry.source_type,
                source_id=entry.source_id,
                content_type=entry.content_type,
                status="skipped",
            )
            outcomes.append(outcome)

            if entry.source_type != SourceType.RECEIPT.value:
                outcome.reason = "no reconstruction for source type"
                continue
            try:
                content_type = ContentType(entry.content_type)
            except ValueError:
                outcome.reason = "unknown content type"
                continue

            content = await self._load_receipt_content(session, entry.source_id)
            if content is None:
                outcome.reason = "source record not found"
                continue
            text_value = reconstruct_content(content_type, content)
            if text_value is None:
                outcome.reason = "no content"
                continue

            try:
                async with session.begin_nested():
                    entry.content_text = text_value
                    entry.updated_at = datetime.utcnow()
                    await session.flush()
            except SQLAlchemyError as e:
                logger.error(f"Failed to repair unified entry {entry.id}: {e}")
                outcome.status = "error"
                outcome.reason = str(e)
                continue

            outcome.status = "fixed"

        fixed = sum(1 for o in outcomes if o.status == "fixed")
        if outcomes:
            logger.info(f"Repaired {fixed} of {len(outcomes)} unified entries with empty content")
        return outcomes

    # =========================================================================
    # Reporting
    # =========================================================================

    async def content_health(self, session: AsyncSession) -> List[ContentHealthBucket]:
        """Per (source_type, content_type) share of entries with non-empty text."""
        is_empty = or_(
            UnifiedContentEntry.content_text.is_(None),
            func.trim(UnifiedContentEntry.content_text) == "",
        )
        result = await session.execute(
            select(
                UnifiedContentEntry.source_type,
                UnifiedContentEntry.content_type,
                func.count().label("total"),
                func.sum(case((is_empty, 1), else_=0)).label("empty"),
            )
            .group_by(UnifiedContentEntry.source_type, UnifiedContentEntry.content_type)
            .order_by(UnifiedContentEntry.source_type, UnifiedContentEntry.content_type)
        )

        buckets = []
        for row in result.all():
            total = row.total or 0
            empty = int(row.empty or 0)
            has_content = total - empty
            buckets.append(
                ContentHealthBucket(
                    source_type=row.source_type,
                    content_type=row.content_type,
                    total_embeddings=total,
                    empty_content=empty,
                    has_content=has_content,
                    content_health_percentage=round(has_content / total * 100, 2) if total else 0.0,
                )
            )
        return buckets

    async def find_records_missing_entries(
        self, session: AsyncSession, limit: int = 100
    ) -> List[Dict[str, Any]]:
        """
        Receipts with a non-empty merchant, full text or notes field but no
        unified entry for that content type, most recent receipts first.
        """
        missing: List[Dict[str, Any]] = []
        for content_type in DIRECT_FIELD_CONTENT_TYPES:
            column = _DIRECT_FIELD_COLUMNS[content_type]
            has_entry = exists().where(
                UnifiedContentEntry.source_type == SourceType.RECEIPT.value,
                UnifiedContentEntry.source_id == Receipt.id,
                UnifiedContentEntry.content_type == content_type.value,
            )
            result = await session.execute(
                select(Receipt.id, Receipt.created_at)
                .where(column.is_not(None), func.trim(column) != "", ~has_entry)
                .order_by(Receipt.created_at.desc())
                .limit(limit)
            )
            for row in result.all():
                missing.append(
                    {
                        "receipt_id": row.id,
                        "content_type": content_type.value,
                        "receipt_created_at": row.created_at,
                    }
                )

        missing.sort(key=lambda m: m["receipt_created_at"], reverse=True)
        return missing[:limit]

    async def migration_stats(self, session: AsyncSession) -> Dict[str, int]:
        """Coverage of the unified index relative to receipts and legacy embeddings."""
        total_receipts = await session.scalar(select(func.count()).select_from(Receipt))
        legacy_embeddings = await session.scalar(
            select(func.count()).select_from(LegacyReceiptEmbedding)
        )
        receipts_with_legacy = await session.scalar(
            select(func.count(func.distinct(LegacyReceiptEmbedding.receipt_id)))
        )
        unified_receipt_entries = await session.scalar(
            select(func.count())
            .select_from(UnifiedContentEntry)
            .where(UnifiedContentEntry.source_type == SourceType.RECEIPT.value)
        )
        receipts_with_unified = await session.scalar(
            select(func.count(func.distinct(UnifiedContentEntry.source_id))).where(
                UnifiedContentEntry.source_type == SourceType.RECEIPT.value
            )
        )
        pending = await session.scalar(
            select(func.count())
            .select_from(LegacyReceiptEmbedding)
            .outerjoin(
                UnifiedContentEntry,
                and_(
                    UnifiedContentEntry.source_type == SourceType.RECEIPT.value,
                    UnifiedContentEntry.source_id == LegacyReceiptEmbedding.receipt_id,
                    UnifiedContentEntry.content_type == LegacyReceiptEmbedding.content_type,
                ),
            )
            .where(UnifiedContentEntry.id.is_(None))
        )
        return {
            "total_receipts": total_receipts or 0,
            "legacy_embeddings": legacy_embeddings or 0,
            "receipts_with_legacy_embeddings": receipts_with_legacy or 0,
            "unified_receipt_entries": unified_receipt_entries or 0,
            "receipts_with_unified_entries": receipts_with_unified or 0,
            "legacy_pending_migration": pending or 0,
        }


# Global content index service instance
content_index_service = ContentIndexService()
