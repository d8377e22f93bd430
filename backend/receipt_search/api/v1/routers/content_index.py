# backend/receipt_search/api/v1/routers/content_index.py
"""
Content Index API Router.

Maintenance endpoints for the unified content index: entry upserts from the
embedding worker, legacy migration, empty-content repair and the coverage
reports used to spot pipeline regressions.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ....database.base import get_db
from ....services.content_index_service import content_index_service

logger = logging.getLogger("receipt_search.api.content_index")

router = APIRouter(prefix="/content-index", tags=["content-index"])


# =========================================================================
# REQUEST/RESPONSE MODELS
# =========================================================================


class UpsertEntryRequest(BaseModel):
    source_type: str
    source_id: UUID
    content_type: str
    content_text: Optional[str] = None
    embedding: Optional[List[float]] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    user_id: Optional[UUID] = None
    team_id: Optional[UUID] = None
    language: Optional[str] = None


class EntryResponse(BaseModel):
    id: UUID
    source_type: str
    source_id: UUID
    content_type: str
    content_text: Optional[str] = None
    has_embedding: bool
    metadata: Dict[str, Any]
    language: str


class MigrationReportResponse(BaseModel):
    migrated: int
    skipped: int
    errors: int
    details: List[Dict[str, Any]]


class RepairOutcomeResponse(BaseModel):
    entry_id: UUID
    source_type: str
    source_id: UUID
    content_type: str
    status: str
    reason: Optional[str] = None


class ContentHealthResponse(BaseModel):
    source_type: str
    content_type: str
    total_embeddings: int
    empty_content: int
    has_content: int
    content_health_percentage: float


class MissingEntryResponse(BaseModel):
    receipt_id: UUID
    content_type: str
    receipt_created_at: datetime


# =========================================================================
# ENDPOINTS
# =========================================================================


@router.put("/entries", response_model=EntryResponse)
async def upsert_entry(
    request: UpsertEntryRequest,
    db: AsyncSession = Depends(get_db),
) -> EntryResponse:
    """Create or overwrite the entry for (source_type, source_id, content_type)."""
    entry = await content_index_service.upsert_entry(
        db,
        source_type=request.source_type,
        source_id=request.source_id,
        content_type=request.content_type,
        content_text=request.content_text,
        embedding=request.embedding,
        metadata=request.metadata,
        user_id=request.user_id,
        team_id=request.team_id,
        language=request.language,
    )
    return EntryResponse(
        id=entry.id,
        source_type=entry.source_type,
        source_id=entry.source_id,
        content_type=entry.content_type,
        content_text=entry.content_text,
        has_embedding=entry.embedding is not None,
        metadata=entry.entry_metadata or {},
        language=entry.language,
    )


@router.delete("/sources/{source_type}/{source_id}")
async def delete_source(
    source_type: str,
    source_id: UUID,
    db: AsyncSession = Depends(get_db),
) -> Dict[str, int]:
    """Remove all entries of a deleted source record."""
    deleted = await content_index_service.delete_source(db, source_type, source_id)
    return {"deleted": deleted}


@router.post("/migrate", response_model=MigrationReportResponse)
async def migrate_legacy_embeddings(db: AsyncSession = Depends(get_db)) -> MigrationReportResponse:
    """Backfill the unified index from legacy per-receipt embeddings."""
    report = await content_index_service.migrate_legacy_embeddings(db)
    return MigrationReportResponse(
        migrated=report.migrated,
        skipped=report.skipped,
        errors=report.errors,
        details=report.details,
    )


@router.post("/repair", response_model=List[RepairOutcomeResponse])
async def repair_empty_content(db: AsyncSession = Depends(get_db)) -> List[RepairOutcomeResponse]:
    """Re-derive text for entries with empty content."""
    outcomes = await content_index_service.repair_empty_content(db)
    return [
        RepairOutcomeResponse(
            entry_id=o.entry_id,
            source_type=o.source_type,
            source_id=o.source_id,
            content_type=o.content_type,
            status=o.status,
            reason=o.reason,
        )
        for o in outcomes
    ]


@router.get("/health", response_model=List[ContentHealthResponse])
async def content_health(db: AsyncSession = Depends(get_db)) -> List[ContentHealthResponse]:
    buckets = await content_index_service.content_health(db)
    return [
        ContentHealthResponse(
            source_type=b.source_type,
            content_type=b.content_type,
            total_embeddings=b.total_embeddings,
            empty_content=b.empty_content,
            has_content=b.has_content,
            content_health_percentage=b.content_health_percentage,
        )
        for b in buckets
    ]


@router.get("/missing", response_model=List[MissingEntryResponse])
async def records_missing_entries(
    limit: int = Query(100, ge=1, le=1000),
    db: AsyncSession = Depends(get_db),
) -> List[MissingEntryResponse]:
    missing = await content_index_service.find_records_missing_entries(db, limit=limit)
    return [MissingEntryResponse(**m) for m in missing]


@router.get("/migration-stats")
async def migration_stats(db: AsyncSession = Depends(get_db)) -> Dict[str, int]:
    return await content_index_service.migration_stats(db)
