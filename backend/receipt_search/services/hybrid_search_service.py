# ============================================================================
# backend/receipt_search/services/hybrid_search_service.py
# ============================================================================
"""
Hybrid Search Service - rank fusion over the unified content index.

Fuses three independent relevance signals per index entry:

    semantic  max(0, cosine similarity(entry.embedding, query_vector)),
              0 when either vector is missing
    trigram   pg_trgm similarity(entry.content_text, query_text)
    keyword   1.0 full-query containment, 0.7 first or last token, else 0

Search Algorithm:
    1. Validate the request (weights sum to 1.0 +/- 0.01, sane filters).
       Nothing is queried or scored when validation fails.
    2. Candidate generation in SQL: source type, content type, owner,
       language, explicit source-id allowlist, and amount range + currency
       for receipts and claims via joins to the record store.
    3. Per-candidate signal computation (in PostgreSQL when available).
    4. Admission: semantic > similarity threshold OR trigram > trigram
       threshold OR keyword > 0.01.
    5. combined = w_semantic * semantic + w_trigram * trigram + w_keyword * keyword
       (every term counts, including values below their threshold).
    6. Order by combined, then semantic, then trigram (all descending) and
       truncate to the limit.

A candidate without an embedding is not dropped; it just has a zero
semantic signal. Requests where no candidate carries any signal return an
empty result list.

Usage:
    from receipt_search.services.hybrid_search_service import (
        hybrid_search_service, SearchFilters, SearchWeights,
    )

    async with database_service.get_session() as session:
        results = await hybrid_search_service.search(
            session,
            query_vector=embedding,
            query_text="coffee at starbucks",
            filters=SearchFilters(source_types=["receipt"], user_id=user_id),
            weights=SearchWeights(semantic=0.6, keyword=0.25, trigram=0.15),
            limit=20,
        )

Author: Receipt Search Development Team
Version: 1.0.0
"""

import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import Float, and_, case, cast, func, literal, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from ..config import settings
from ..database.models import (
    MONETARY_SOURCE_TYPES,
    Claim,
    PgVector,
    Receipt,
    SourceType,
    UnifiedContentEntry,
    format_vector,
)
from ..utils.text_similarity import (
    FULL_MATCH_SCORE,
    TOKEN_MATCH_SCORE,
    cosine_similarity,
    extract_contextual_snippets,
    keyword_score,
    trigram_similarity,
)

logger = logging.getLogger("receipt_search.hybrid_search_service")

# A keyword signal above this value admits a candidate on its own
KEYWORD_ADMISSION_FLOOR = 0.01


class SearchValidationError(ValueError):
    """
    Raised for malformed search requests before any scoring happens.

    Attributes:
        errors: Field name -> human readable problem
    """

    def __init__(self, errors: Dict[str, str]):
        self.errors = errors
        super().__init__("; ".join(f"{k}: {v}" for k, v in errors.items()))


# =============================================================================
# Data Classes
# =============================================================================

@dataclass
class SearchWeights:
    """Weight triple applied to (semantic, keyword, trigram)."""
    semantic: float
    keyword: float
    trigram: float

    @classmethod
    def default(cls) -> "SearchWeights":
        return cls(
            semantic=settings.search_semantic_weight,
            keyword=settings.search_keyword_weight,
            trigram=settings.search_trigram_weight,
        )

    @property
    def total(self) -> float:
        return self.semantic + self.keyword + self.trigram


@dataclass
class SearchThresholds:
    """Admission thresholds for the semantic and trigram signals."""
    similarity: float
    trigram: float

    @classmethod
    def default(cls) -> "SearchThresholds":
        return cls(
            similarity=settings.search_similarity_threshold,
            trigram=settings.search_trigram_threshold,
        )


@dataclass
class SearchFilters:
    """
    Candidate filters. ``None`` means "no restriction".

    ``source_ids`` is an explicit allowlist (e.g. records inside a date
    window); an empty list matches nothing. Amount and currency only
    constrain receipts and claims.
    """
    source_types: Optional[List[str]] = None
    content_types: Optional[List[str]] = None
    user_id: Optional[uuid.UUID] = None
    team_id: Optional[uuid.UUID] = None
    language: Optional[str] = None
    amount_min: Optional[float] = None
    amount_max: Optional[float] = None
    currency: Optional[str] = None
    source_ids: Optional[List[uuid.UUID]] = None

    @property
    def has_amount_filter(self) -> bool:
        return self.amount_min is not None or self.amount_max is not None or bool(self.currency)


@dataclass
class SignalScores:
    """Raw per-candidate signals."""
    semantic: float
    trigram: float
    keyword: float


@dataclass
class SearchResult:
    """Represents a single ranked search result."""
    source_type: str
    source_id: uuid.UUID
    content_type: str
    content_text: Optional[str]
    semantic_score: float
    trigram_score: float
    keyword_score: float
    combined_score: float
    metadata: Dict[str, Any] = field(default_factory=dict)
    snippets: List[str] = field(default_factory=list)
    created_at: Optional[datetime] = None

    def sort_key(self):
        return (self.combined_score, self.semantic_score, self.trigram_score)


@dataclass
class MerchantMatch:
    """A merchant name matched by fuzzy merchant search."""
    merchant: str
    similarity: float
    occurrence_count: int
    latest_date: Optional[date]
    total_amount: float


@dataclass
class IndexStats:
    """Statistics about the unified content index."""
    total_entries: int
    entries_with_embeddings: int
    entries_with_content: int
    by_source_type: Dict[str, int]
    by_content_type: Dict[str, int]


# =============================================================================
# Scoring primitives
# =============================================================================

def combine_scores(signals: SignalScores, weights: SearchWeights) -> float:
    """Weighted sum of all three signals."""
    return (
        signals.semantic * weights.semantic
        + signals.trigram * weights.trigram
        + signals.keyword * weights.keyword
    )


def is_admitted(signals: SignalScores, thresholds: SearchThresholds) -> bool:
    """True when at least one signal clears its admission bar."""
    return (
        signals.semantic > thresholds.similarity
        or signals.trigram > thresholds.trigram
        or signals.keyword > KEYWORD_ADMISSION_FLOOR
    )


# =============================================================================
# Hybrid Search Service
# =============================================================================

class HybridSearchService:
    """
    Query-time rank fusion over the unified content index.

    On PostgreSQL the signals, admission, ordering and limit all run in the
    database (pgvector ``<=>``, pg_trgm ``similarity()``, a keyword CASE).
    Other dialects select candidates in SQL and score them with the
    pg_trgm-compatible primitives in ``utils.text_similarity``.

    Attributes:
        _embedding_dim: Expected dimensionality of query and entry vectors
    """

    def __init__(self, embedding_dimensions: Optional[int] = None):
        self._embedding_dim = embedding_dimensions or settings.embedding_dimensions

    # =========================================================================
    # Validation
    # =========================================================================

    def validate_request(
        self,
        query_vector: Optional[Sequence[float]],
        filters: SearchFilters,
        weights: SearchWeights,
        thresholds: SearchThresholds,
        limit: int,
    ) -> None:
        """
        Reject malformed requests.

        Raises:
            SearchValidationError: With one message per offending field
        """
        errors: Dict[str, str] = {}

        weight_values = (weights.semantic, weights.keyword, weights.trigram)
        if any(w < 0 for w in weight_values):
            errors["weights"] = "Weights must be non-negative"
        elif abs(weights.total - 1.0) > settings.search_weight_tolerance:
            errors["weights"] = (
                f"Weights must sum to 1.0 (+/- {settings.search_weight_tolerance}), "
                f"got {weights.total:.4f}"
            )

        for name, value in (("similarity", thresholds.similarity), ("trigram", thresholds.trigram)):
            if not 0.0 <= value <= 1.0:
                errors[f"thresholds.{name}"] = f"Threshold must be within [0, 1], got {value}"

        if (
            filters.amount_min is not None
            and filters.amount_max is not None
            and filters.amount_min > filters.amount_max
        ):
            errors["amount_range"] = (
                f"amount_min ({filters.amount_min}) is greater than amount_max ({filters.amount_max})"
            )

        if limit < 1:
            errors["limit"] = f"Limit must be positive, got {limit}"

        if query_vector is not None and len(query_vector) != self._embedding_dim:
            errors["query_vector"] = (
                f"Query vector has {len(query_vector)} dimensions, expected {self._embedding_dim}"
            )

        if errors:
            raise SearchValidationError(errors)

    # =========================================================================
    # Candidate generation
    # =========================================================================

    def _candidate_query(self, filters: SearchFilters):
        stmt = select(UnifiedContentEntry)
        conditions = []

        if filters.source_types is not None:
            conditions.append(UnifiedContentEntry.source_type.in_(filters.source_types))
        if filters.content_types is not None:
            conditions.append(UnifiedContentEntry.content_type.in_(filters.content_types))
        if filters.user_id is not None:
            conditions.append(UnifiedContentEntry.user_id == filters.user_id)
        if filters.team_id is not None:
            conditions.append(UnifiedContentEntry.team_id == filters.team_id)
        if filters.language is not None:
            conditions.append(UnifiedContentEntry.language == filters.language)
        if filters.source_ids is not None:
            conditions.append(UnifiedContentEntry.source_id.in_(filters.source_ids))

        if filters.has_amount_filter:
            stmt = stmt.outerjoin(
                Receipt,
                and_(
                    UnifiedContentEntry.source_type == SourceType.RECEIPT.value,
                    Receipt.id == UnifiedContentEntry.source_id,
                ),
            ).outerjoin(
                Claim,
                and_(
                    UnifiedContentEntry.source_type == SourceType.CLAIM.value,
                    Claim.id == UnifiedContentEntry.source_id,
                ),
            )
            receipt_conditions = [UnifiedContentEntry.source_type == SourceType.RECEIPT.value]
            claim_conditions = [UnifiedContentEntry.source_type == SourceType.CLAIM.value]
            if filters.amount_min is not None:
                receipt_conditions.append(Receipt.total >= filters.amount_min)
                claim_conditions.append(Claim.amount >= filters.amount_min)
            if filters.amount_max is not None:
                receipt_conditions.append(Receipt.total <= filters.amount_max)
                claim_conditions.append(Claim.amount <= filters.amount_max)
            if filters.currency:
                receipt_conditions.append(func.upper(Receipt.currency) == filters.currency.upper())
                claim_conditions.append(func.upper(Claim.currency) == filters.currency.upper())
            conditions.append(
                or_(
                    UnifiedContentEntry.source_type.not_in(MONETARY_SOURCE_TYPES),
                    and_(*receipt_conditions),
                    and_(*claim_conditions),
                )
            )

        if conditions:
            stmt = stmt.where(and_(*conditions))
        return stmt

    # =========================================================================
    # Signals
    # =========================================================================

    def compute_signals(
        self,
        entry: UnifiedContentEntry,
        query_vector: Optional[Sequence[float]],
        query_text: str,
    ) -> SignalScores:
        semantic = 0.0
        if query_vector is not None and entry.embedding is not None:
            if len(entry.embedding) == len(query_vector):
                semantic = max(0.0, cosine_similarity(entry.embedding, query_vector))
            else:
                logger.warning(
                    f"Skipping semantic signal for entry {entry.id}: "
                    f"{len(entry.embedding)} dimensions, expected {len(query_vector)}"
                )

        trigram = max(0.0, trigram_similarity(entry.content_text, query_text))
        keyword = keyword_score(entry.content_text, query_text)
        return SignalScores(semantic=semantic, trigram=trigram, keyword=keyword)

    # =========================================================================
    # Database-side scoring (PostgreSQL: pgvector + pg_trgm)
    # =========================================================================

    def _semantic_expression(self, query_vector: Optional[Sequence[float]]):
        if query_vector is None:
            return literal(0.0, Float)
        query_embedding = cast(literal(format_vector(query_vector)), PgVector(self._embedding_dim))
        distance = UnifiedContentEntry.embedding.op("<=>", return_type=Float)(query_embedding)
        # NULL embeddings give a NULL distance; GREATEST skips NULLs
        return func.coalesce(func.greatest(literal(0.0, Float), 1 - distance), 0.0)

    @staticmethod
    def _trigram_expression(query_text: str):
        if not query_text.strip():
            return literal(0.0, Float)
        content = func.coalesce(UnifiedContentEntry.content_text, "")
        return func.similarity(content, literal(query_text), type_=Float)

    @staticmethod
    def _keyword_expression(query_text: str):
        needle = query_text.strip()
        if not needle:
            return literal(0.0, Float)
        tokens = needle.split()
        haystack = func.lower(func.coalesce(UnifiedContentEntry.content_text, ""))

        def _contains(term: str):
            return func.strpos(haystack, func.lower(literal(term))) > 0

        return case(
            (_contains(needle), literal(FULL_MATCH_SCORE, Float)),
            (or_(_contains(tokens[0]), _contains(tokens[-1])), literal(TOKEN_MATCH_SCORE, Float)),
            else_=literal(0.0, Float),
        )

    def build_scored_query(
        self,
        query_vector: Optional[Sequence[float]],
        query_text: str,
        filters: SearchFilters,
        weights: SearchWeights,
        thresholds: SearchThresholds,
        limit: int,
    ):
        """
        Build the PostgreSQL statement that scores, admits, orders and
        truncates candidates in the database.

        Semantic uses pgvector cosine distance (``1 - (embedding <=> q)``),
        trigram uses pg_trgm ``similarity()``, keyword is a CASE over
        ``strpos``. Rows come back as
        (entry, semantic, trigram, keyword, combined).
        """
        scored = (
            self._candidate_query(filters)
            .add_columns(
                self._semantic_expression(query_vector).label("semantic_score"),
                self._trigram_expression(query_text).label("trigram_score"),
                self._keyword_expression(query_text).label("keyword_score"),
            )
            .subquery("scored")
        )
        entry = aliased(UnifiedContentEntry, scored)
        combined = (
            scored.c.semantic_score * weights.semantic
            + scored.c.trigram_score * weights.trigram
            + scored.c.keyword_score * weights.keyword
        ).label("combined_score")

        return (
            select(
                entry,
                scored.c.semantic_score,
                scored.c.trigram_score,
                scored.c.keyword_score,
                combined,
            )
            .where(
                or_(
                    scored.c.semantic_score > thresholds.similarity,
                    scored.c.trigram_score > thresholds.trigram,
                    scored.c.keyword_score > KEYWORD_ADMISSION_FLOOR,
                )
            )
            .order_by(
                combined.desc(),
                scored.c.semantic_score.desc(),
                scored.c.trigram_score.desc(),
            )
            .limit(limit)
        )

    @staticmethod
    def _dialect_name(session: AsyncSession) -> str:
        return session.get_bind().dialect.name

    @staticmethod
    def _to_result(
        entry: UnifiedContentEntry,
        signals: SignalScores,
        combined: float,
    ) -> SearchResult:
        return SearchResult(
            source_type=entry.source_type,
            source_id=entry.source_id,
            content_type=entry.content_type,
            content_text=entry.content_text,
            semantic_score=signals.semantic,
            trigram_score=signals.trigram,
            keyword_score=signals.keyword,
            combined_score=combined,
            metadata=dict(entry.entry_metadata or {}),
            created_at=entry.created_at,
        )

    async def _search_in_database(
        self,
        session: AsyncSession,
        query_vector: Optional[Sequence[float]],
        query_text: str,
        filters: SearchFilters,
        weights: SearchWeights,
        thresholds: SearchThresholds,
        limit: int,
    ) -> List[SearchResult]:
        stmt = self.build_scored_query(query_vector, query_text, filters, weights, thresholds, limit)
        rows = (await session.execute(stmt)).all()

        return [
            self._to_result(
                entry,
                SignalScores(semantic=float(semantic), trigram=float(trigram), keyword=float(keyword)),
                float(combined),
            )
            for entry, semantic, trigram, keyword, combined in rows
        ]

    async def _search_in_python(
        self,
        session: AsyncSession,
        query_vector: Optional[Sequence[float]],
        query_text: str,
        filters: SearchFilters,
        weights: SearchWeights,
        thresholds: SearchThresholds,
        limit: int,
    ) -> List[SearchResult]:
        """Scoring for databases without pgvector / pg_trgm (SQLite)."""
        result = await session.execute(self._candidate_query(filters))
        candidates = list(result.scalars().unique().all())

        results: List[SearchResult] = []
        for entry in candidates:
            signals = self.compute_signals(entry, query_vector, query_text)
            if not is_admitted(signals, thresholds):
                continue
            results.append(self._to_result(entry, signals, combine_scores(signals, weights)))

        results.sort(key=SearchResult.sort_key, reverse=True)
        logger.debug(f"Scored {len(candidates)} candidates in Python, {len(results)} admitted")
        return results[:limit]

    # =========================================================================
    # Search
    # =========================================================================

    async def search(
        self,
        session: AsyncSession,
        query_vector: Optional[Sequence[float]],
        query_text: str,
        filters: Optional[SearchFilters] = None,
        weights: Optional[SearchWeights] = None,
        thresholds: Optional[SearchThresholds] = None,
        limit: Optional[int] = None,
        include_snippets: bool = True,
    ) -> List[SearchResult]:
        """
        Run a hybrid search.

        Args:
            session: Database session
            query_vector: Embedding of the query (None disables the semantic signal)
            query_text: Raw query text for the trigram and keyword signals
            filters: Candidate filters
            weights: Signal weights, must sum to 1.0 +/- tolerance
            thresholds: Admission thresholds
            limit: Maximum results
            include_snippets: Attach contextual snippets to each result

        Returns:
            Results ordered by combined, semantic and trigram score (desc)

        Raises:
            SearchValidationError: For malformed requests (no partial results)
        """
        filters = filters or SearchFilters()
        weights = weights or SearchWeights.default()
        thresholds = thresholds or SearchThresholds.default()
        limit = settings.search_default_limit if limit is None else limit
        query_text = query_text or ""

        self.validate_request(query_vector, filters, weights, thresholds, limit)

        if filters.source_ids is not None and not filters.source_ids:
            return []

        if self._dialect_name(session) == "postgresql":
            search = self._search_in_database
        else:
            search = self._search_in_python
        results = await search(session, query_vector, query_text, filters, weights, thresholds, limit)

        if include_snippets:
            for item in results:
                item.snippets = extract_contextual_snippets(
                    item.content_text,
                    query_text,
                    window_words=settings.search_snippet_words,
                    max_snippets=settings.search_max_snippets,
                )

        logger.debug(f"Hybrid search '{query_text[:50]}': {len(results)} results")
        return results

    # =========================================================================
    # Merchant lookup
    # =========================================================================

    async def fuzzy_merchant_search(
        self,
        session: AsyncSession,
        merchant_query: str,
        threshold: Optional[float] = None,
        limit: int = 10,
        user_id: Optional[uuid.UUID] = None,
    ) -> List[MerchantMatch]:
        """
        Typo-tolerant merchant lookup over merchant entries of receipts.

        Matches are grouped by merchant text with their occurrence count,
        latest receipt date and summed receipt totals.
        """
        threshold = settings.merchant_similarity_threshold if threshold is None else threshold
        if not merchant_query or not merchant_query.strip():
            return []

        conditions = [
            UnifiedContentEntry.source_type == SourceType.RECEIPT.value,
            UnifiedContentEntry.content_type == "merchant",
            UnifiedContentEntry.content_text.is_not(None),
        ]
        if user_id is not None:
            conditions.append(UnifiedContentEntry.user_id == user_id)

        if self._dialect_name(session) == "postgresql":
            similarity = func.similarity(UnifiedContentEntry.content_text, literal(merchant_query), type_=Float)
            grouped_stmt = (
                select(
                    UnifiedContentEntry.content_text,
                    func.max(similarity).label("similarity"),
                    func.count().label("occurrence_count"),
                    func.max(Receipt.date).label("latest_date"),
                    func.coalesce(func.sum(Receipt.total), 0.0).label("total_amount"),
                )
                .outerjoin(Receipt, Receipt.id == UnifiedContentEntry.source_id)
                .where(*conditions)
                .where(similarity > threshold)
                .group_by(UnifiedContentEntry.content_text)
                .order_by(func.max(similarity).desc(), func.count().desc())
                .limit(limit)
            )
            return [
                MerchantMatch(
                    merchant=row.content_text,
                    similarity=float(row.similarity),
                    occurrence_count=row.occurrence_count,
                    latest_date=row.latest_date,
                    total_amount=round(float(row.total_amount), 2),
                )
                for row in (await session.execute(grouped_stmt)).all()
            ]

        stmt = (
            select(UnifiedContentEntry.content_text, Receipt.date, Receipt.total)
            .outerjoin(Receipt, Receipt.id == UnifiedContentEntry.source_id)
            .where(*conditions)
        )
        rows = (await session.execute(stmt)).all()

        grouped: Dict[str, List[Any]] = defaultdict(list)
        for row in rows:
            grouped[row.content_text].append(row)

        matches = []
        for merchant, merchant_rows in grouped.items():
            similarity = trigram_similarity(merchant, merchant_query)
            if similarity <= threshold:
                continue
            dates = [r.date for r in merchant_rows if r.date is not None]
            matches.append(
                MerchantMatch(
                    merchant=merchant,
                    similarity=similarity,
                    occurrence_count=len(merchant_rows),
                    latest_date=max(dates) if dates else None,
                    total_amount=round(sum(r.total or 0.0 for r in merchant_rows), 2),
                )
            )

        matches.sort(key=lambda m: (m.similarity, m.occurrence_count), reverse=True)
        return matches[:limit]

    # =========================================================================
    # Index Statistics
    # =========================================================================

    async def index_stats(
        self, session: AsyncSession, user_id: Optional[uuid.UUID] = None
    ) -> IndexStats:
        """Counts of entries, embedded entries and entries per type."""
        base = []
        if user_id is not None:
            base.append(UnifiedContentEntry.user_id == user_id)

        async def _count(*conditions) -> int:
            stmt = select(func.count()).select_from(UnifiedContentEntry).where(*base, *conditions)
            return (await session.scalar(stmt)) or 0

        async def _grouped(column) -> Dict[str, int]:
            stmt = select(column, func.count()).where(*base).group_by(column)
            return {key: count for key, count in (await session.execute(stmt)).all()}

        return IndexStats(
            total_entries=await _count(),
            entries_with_embeddings=await _count(UnifiedContentEntry.embedding.is_not(None)),
            entries_with_content=await _count(
                UnifiedContentEntry.content_text.is_not(None),
                func.trim(UnifiedContentEntry.content_text) != "",
            ),
            by_source_type=await _grouped(UnifiedContentEntry.source_type),
            by_content_type=await _grouped(UnifiedContentEntry.content_type),
        )


# Global hybrid search service instance
hybrid_search_service = HybridSearchService()


def get_hybrid_search_service() -> HybridSearchService:
    """Get the global hybrid search service instance."""
    return hybrid_search_service
