# backend/receipt_search/api/v1/routers/search.py
"""
Search API Router for hybrid and fallback receipt search.

Provides endpoints for ranked search across the unified content index
(semantic + trigram + keyword rank fusion), the embedding-free fallback
path, fuzzy merchant lookup and index statistics.
"""

import logging
from datetime import date, datetime
from typing import Any, Dict, List, Literal, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ....config import settings
from ....database.base import get_db
from ....services.fallback_search_service import fallback_search_service
from ....services.hybrid_search_service import (
    SearchFilters,
    SearchThresholds,
    SearchWeights,
    hybrid_search_service,
)

logger = logging.getLogger("receipt_search.api.search")

router = APIRouter(prefix="/search", tags=["search"])


# =========================================================================
# REQUEST/RESPONSE MODELS
# =========================================================================


class WeightsModel(BaseModel):
    """Signal weights; must sum to 1.0 (+/- 0.01)."""

    semantic: float = Field(default_factory=lambda: settings.search_semantic_weight)
    keyword: float = Field(default_factory=lambda: settings.search_keyword_weight)
    trigram: float = Field(default_factory=lambda: settings.search_trigram_weight)


class HybridSearchRequest(BaseModel):
    """Hybrid search request with query, filters, weights and thresholds."""

    query: str = Field("", max_length=500, description="Raw query text")
    query_vector: Optional[List[float]] = Field(
        None, description="Query embedding; omit to search on text signals only"
    )
    source_types: Optional[List[str]] = Field(
        None, description="receipt, claim, team_member, custom_category, business_directory"
    )
    content_types: Optional[List[str]] = Field(
        None, description="merchant, full_text, notes, items_description, fallback"
    )
    user_id: Optional[UUID] = Field(None, description="Restrict to entries owned by this user")
    team_id: Optional[UUID] = Field(None, description="Restrict to entries owned by this team")
    language: Optional[str] = Field(None, description="ISO language code")
    amount_min: Optional[float] = Field(None, description="Minimum receipt/claim amount")
    amount_max: Optional[float] = Field(None, description="Maximum receipt/claim amount")
    currency: Optional[str] = Field(None, description="Currency code for the amount filter")
    source_ids: Optional[List[UUID]] = Field(
        None, description="Explicit source id allowlist (e.g. date-window scoped search)"
    )
    weights: WeightsModel = Field(default_factory=WeightsModel)
    similarity_threshold: float = Field(default_factory=lambda: settings.search_similarity_threshold)
    trigram_threshold: float = Field(default_factory=lambda: settings.search_trigram_threshold)
    limit: int = Field(default_factory=lambda: settings.search_default_limit, le=settings.search_max_limit)


class HybridSearchHit(BaseModel):
    """Single hybrid search result with its raw signals."""

    source_type: str
    source_id: UUID
    content_type: str
    content_text: Optional[str] = None
    semantic_score: float = Field(..., description="Cosine similarity signal (0-1)")
    trigram_score: float = Field(..., description="Trigram similarity signal (0-1)")
    keyword_score: float = Field(..., description="Keyword containment signal (0, 0.7 or 1)")
    combined_score: float = Field(..., description="Weighted sum of the three signals")
    metadata: Dict[str, Any] = Field(default_factory=dict)
    snippets: List[str] = Field(default_factory=list, description="Context around query matches")


class HybridSearchResponse(BaseModel):
    """Hybrid search results."""

    query: str
    total: int = Field(..., description="Number of results returned")
    hits: List[HybridSearchHit]


class FallbackSearchRequest(BaseModel):
    """Fallback (substring) search request."""

    query: str = Field("", max_length=500, description="Query text; blank matches everything")
    user_id: Optional[UUID] = None
    team_id: Optional[UUID] = None
    date_from: Optional[date] = Field(None, description="Receipt date >= (inclusive)")
    date_to: Optional[date] = Field(None, description="Receipt date <= (inclusive)")
    amount_min: Optional[float] = None
    amount_max: Optional[float] = None
    merchants: Optional[List[str]] = Field(None, description="Merchant allowlist (excludes claims)")
    source_types: Optional[List[Literal["receipt", "claim"]]] = Field(
        None, description="Record types to search; default both"
    )
    limit: int = Field(20, ge=1, le=100)
    offset: int = Field(0, ge=0)


class FallbackSearchHit(BaseModel):
    source_type: str
    source_id: UUID
    score: float
    title: Optional[str] = Field(None, description="Merchant for receipts, title for claims")
    description: Optional[str] = None
    record_date: Optional[date] = None
    amount: Optional[float] = None
    currency: Optional[str] = None
    predicted_category: Optional[str] = None
    created_at: Optional[datetime] = None


class FallbackSearchResponse(BaseModel):
    total: int = Field(..., description="Total matches before pagination")
    limit: int
    offset: int
    hits: List[FallbackSearchHit]


class MerchantMatchResponse(BaseModel):
    merchant: str
    similarity: float
    occurrence_count: int
    latest_date: Optional[date] = None
    total_amount: float


class IndexStatsResponse(BaseModel):
    total_entries: int
    entries_with_embeddings: int
    entries_with_content: int
    by_source_type: Dict[str, int]
    by_content_type: Dict[str, int]


# =========================================================================
# ENDPOINTS
# =========================================================================


@router.post("", response_model=HybridSearchResponse)
async def hybrid_search(
    request: HybridSearchRequest,
    db: AsyncSession = Depends(get_db),
) -> HybridSearchResponse:
    """
    Ranked search over the unified content index.

    Rejects weight triples that do not sum to 1.0 (+/- 0.01) with a 422
    before anything is scored.
    """
    results = await hybrid_search_service.search(
        db,
        query_vector=request.query_vector,
        query_text=request.query,
        filters=SearchFilters(
            source_types=request.source_types,
            content_types=request.content_types,
            user_id=request.user_id,
            team_id=request.team_id,
            language=request.language,
            amount_min=request.amount_min,
            amount_max=request.amount_max,
            currency=request.currency,
            source_ids=request.source_ids,
        ),
        weights=SearchWeights(
            semantic=request.weights.semantic,
            keyword=request.weights.keyword,
            trigram=request.weights.trigram,
        ),
        thresholds=SearchThresholds(
            similarity=request.similarity_threshold,
            trigram=request.trigram_threshold,
        ),
        limit=request.limit,
    )

    return HybridSearchResponse(
        query=request.query,
        total=len(results),
        hits=[
            HybridSearchHit(
                source_type=r.source_type,
                source_id=r.source_id,
                content_type=r.content_type,
                content_text=r.content_text,
                semantic_score=r.semantic_score,
                trigram_score=r.trigram_score,
                keyword_score=r.keyword_score,
                combined_score=r.combined_score,
                metadata=r.metadata,
                snippets=r.snippets,
            )
            for r in results
        ],
    )


@router.post("/fallback", response_model=FallbackSearchResponse)
async def fallback_search(
    request: FallbackSearchRequest,
    db: AsyncSession = Depends(get_db),
) -> FallbackSearchResponse:
    """Tiered substring search over receipts and claims; works without embeddings."""
    page = await fallback_search_service.search(
        db,
        query_text=request.query,
        limit=request.limit,
        offset=request.offset,
        user_id=request.user_id,
        team_id=request.team_id,
        date_from=request.date_from,
        date_to=request.date_to,
        amount_min=request.amount_min,
        amount_max=request.amount_max,
        merchant_allowlist=request.merchants,
        source_types=request.source_types,
    )
    return FallbackSearchResponse(
        total=page.total_count,
        limit=request.limit,
        offset=request.offset,
        hits=[
            FallbackSearchHit(
                source_type=r.source_type,
                source_id=r.source_id,
                score=r.score,
                title=r.title,
                description=r.description,
                record_date=r.record_date,
                amount=r.amount,
                currency=r.currency,
                predicted_category=r.predicted_category,
                created_at=r.created_at,
            )
            for r in page.results
        ],
    )


@router.get("/merchants", response_model=List[MerchantMatchResponse])
async def fuzzy_merchant_search(
    q: str = Query(..., min_length=1, description="Merchant name (typos tolerated)"),
    threshold: Optional[float] = Query(None, ge=0.0, le=1.0),
    limit: int = Query(10, ge=1, le=100),
    user_id: Optional[UUID] = Query(None),
    db: AsyncSession = Depends(get_db),
) -> List[MerchantMatchResponse]:
    """Fuzzy merchant lookup grouped by merchant name."""
    matches = await hybrid_search_service.fuzzy_merchant_search(
        db, q, threshold=threshold, limit=limit, user_id=user_id
    )
    return [
        MerchantMatchResponse(
            merchant=m.merchant,
            similarity=m.similarity,
            occurrence_count=m.occurrence_count,
            latest_date=m.latest_date,
            total_amount=m.total_amount,
        )
        for m in matches
    ]


@router.get("/stats", response_model=IndexStatsResponse)
async def index_stats(
    user_id: Optional[UUID] = Query(None),
    db: AsyncSession = Depends(get_db),
) -> IndexStatsResponse:
    """Unified content index statistics."""
    stats = await hybrid_search_service.index_stats(db, user_id=user_id)
    return IndexStatsResponse(
        total_entries=stats.total_entries,
        entries_with_embeddings=stats.entries_with_embeddings,
        entries_with_content=stats.entries_with_content,
        by_source_type=stats.by_source_type,
        by_content_type=stats.by_content_type,
    )
