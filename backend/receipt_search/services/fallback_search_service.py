# ============================================================================
# backend/receipt_search/services/fallback_search_service.py
# ============================================================================
"""
Fallback Search Service - tiered substring search over receipts and claims.

Used when the vector signal is unavailable or a lightweight path is
preferred. Scoring is tiered rather than fused, and nothing here touches
embeddings, so this path keeps working when the content index is degraded.

Scoring (case-insensitive substring matching, first tier that matches wins):
    receipt   merchant 0.9, predicted category 0.7, full text 0.5
    claim     title 0.9, description 0.5
    blank query                  0.1  (every record matches)

With a non-blank query, records matching no tier are excluded. Both
source types are scored in one UNION ALL, then ordered by score and most
recently created first, and paginated in the database.

Usage:
    from receipt_search.services.fallback_search_service import fallback_search_service

    page = await fallback_search_service.search(session, "coffee", limit=20, offset=0,
                                                user_id=user_id)
    print(page.total_count, [r.title for r in page.results])

Author: Receipt Search Development Team
Version: 1.0.0
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import List, Optional

from sqlalchemy import String, and_, case, func, literal, select, union_all
from sqlalchemy.ext.asyncio import AsyncSession

from ..database.models import Claim, Receipt, SourceType

logger = logging.getLogger("receipt_search.fallback_search_service")

MERCHANT_MATCH_SCORE = 0.9
CATEGORY_MATCH_SCORE = 0.7
FULL_TEXT_MATCH_SCORE = 0.5
CLAIM_TITLE_MATCH_SCORE = 0.9
CLAIM_DESCRIPTION_MATCH_SCORE = 0.5
MATCH_ALL_SCORE = 0.1

FALLBACK_SOURCE_TYPES = (SourceType.RECEIPT.value, SourceType.CLAIM.value)


# =============================================================================
# Data Classes
# =============================================================================

@dataclass
class FallbackSearchResult:
    """
    Represents a single fallback search result.

    ``title`` is the merchant for receipts and the claim title for claims;
    ``record_date`` is the receipt date (claims carry none).
    """
    source_type: str
    source_id: uuid.UUID
    score: float
    title: Optional[str] = None
    description: Optional[str] = None
    record_date: Optional[date] = None
    amount: Optional[float] = None
    currency: Optional[str] = None
    predicted_category: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def receipt_id(self) -> Optional[uuid.UUID]:
        return self.source_id if self.source_type == SourceType.RECEIPT.value else None

    @property
    def merchant(self) -> Optional[str]:
        return self.title if self.source_type == SourceType.RECEIPT.value else None


@dataclass
class FallbackSearchResults:
    """A page of fallback results plus the total match count."""
    results: List[FallbackSearchResult]
    total_count: int


def _contains(column, needle: str):
    return func.lower(column).contains(needle, autoescape=True)


# =============================================================================
# Fallback Search Service
# =============================================================================

class FallbackSearchService:
    """Tiered, embedding-free search over the record store."""

    @staticmethod
    def _receipt_score(needle: str):
        if not needle:
            return literal(MATCH_ALL_SCORE)
        return case(
            (_contains(Receipt.merchant, needle), MERCHANT_MATCH_SCORE),
            (_contains(Receipt.predicted_category, needle), CATEGORY_MATCH_SCORE),
            (_contains(Receipt.full_text, needle), FULL_TEXT_MATCH_SCORE),
            else_=0.0,
        )

    @staticmethod
    def _claim_score(needle: str):
        if not needle:
            return literal(MATCH_ALL_SCORE)
        return case(
            (_contains(Claim.title, needle), CLAIM_TITLE_MATCH_SCORE),
            (_contains(Claim.description, needle), CLAIM_DESCRIPTION_MATCH_SCORE),
            else_=0.0,
        )

    def _receipt_branch(self, needle, user_id, team_id, date_from, date_to,
                        amount_min, amount_max, merchant_allowlist):
        conditions = []
        if user_id is not None:
            conditions.append(Receipt.user_id == user_id)
        if team_id is not None:
            conditions.append(Receipt.team_id == team_id)
        if date_from is not None:
            conditions.append(Receipt.date >= date_from)
        if date_to is not None:
            conditions.append(Receipt.date <= date_to)
        if amount_min is not None:
            conditions.append(Receipt.total >= amount_min)
        if amount_max is not None:
            conditions.append(Receipt.total <= amount_max)
        if merchant_allowlist is not None:
            conditions.append(
                func.lower(Receipt.merchant).in_([m.lower() for m in merchant_allowlist])
            )

        stmt = select(
            literal(SourceType.RECEIPT.value, String).label("source_type"),
            Receipt.id.label("source_id"),
            self._receipt_score(needle).label("score"),
            Receipt.created_at.label("created_at"),
        )
        return stmt.where(and_(*conditions)) if conditions else stmt

    def _claim_branch(self, needle, user_id, team_id, date_from, date_to, amount_min, amount_max):
        conditions = []
        if user_id is not None:
            conditions.append(Claim.user_id == user_id)
        if team_id is not None:
            conditions.append(Claim.team_id == team_id)
        # Claims have no document date; the range applies to their creation day
        if date_from is not None:
            conditions.append(Claim.created_at >= datetime.combine(date_from, time.min))
        if date_to is not None:
            conditions.append(Claim.created_at < datetime.combine(date_to + timedelta(days=1), time.min))
        if amount_min is not None:
            conditions.append(Claim.amount >= amount_min)
        if amount_max is not None:
            conditions.append(Claim.amount <= amount_max)

        stmt = select(
            literal(SourceType.CLAIM.value, String).label("source_type"),
            Claim.id.label("source_id"),
            self._claim_score(needle).label("score"),
            Claim.created_at.label("created_at"),
        )
        return stmt.where(and_(*conditions)) if conditions else stmt

    async def search(
        self,
        session: AsyncSession,
        query_text: Optional[str],
        limit: int = 20,
        offset: int = 0,
        user_id: Optional[uuid.UUID] = None,
        team_id: Optional[uuid.UUID] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        amount_min: Optional[float] = None,
        amount_max: Optional[float] = None,
        merchant_allowlist: Optional[List[str]] = None,
        source_types: Optional[List[str]] = None,
    ) -> FallbackSearchResults:
        """
        Search receipts and claims by tiered substring matching.

        Args:
            session: Database session
            query_text: Query; blank or None matches every record
            limit: Page size
            offset: Page offset
            user_id / team_id: Ownership scoping
            date_from / date_to: Inclusive receipt date (claim creation day) range
            amount_min / amount_max: Inclusive receipt total / claim amount range
            merchant_allowlist: Merchant names to restrict to (case-insensitive);
                claims have no merchant and are excluded when it is set
            source_types: Subset of ("receipt", "claim"); None searches both

        Returns:
            FallbackSearchResults with the requested page and total_count of
            all matches before pagination

        Raises:
            ValueError: For source types this path cannot search
        """
        requested = list(FALLBACK_SOURCE_TYPES) if source_types is None else list(source_types)
        unsupported = [s for s in requested if s not in FALLBACK_SOURCE_TYPES]
        if unsupported:
            raise ValueError(f"Fallback search does not support source types: {unsupported}")

        needle = (query_text or "").strip().lower()

        branches = []
        if SourceType.RECEIPT.value in requested:
            branches.append(
                self._receipt_branch(needle, user_id, team_id, date_from, date_to,
                                     amount_min, amount_max, merchant_allowlist)
            )
        if SourceType.CLAIM.value in requested and merchant_allowlist is None:
            branches.append(
                self._claim_branch(needle, user_id, team_id, date_from, date_to, amount_min, amount_max)
            )
        if not branches:
            return FallbackSearchResults(results=[], total_count=0)

        scored = (union_all(*branches) if len(branches) > 1 else branches[0]).subquery("scored")

        total_count = await session.scalar(
            select(func.count()).select_from(scored).where(scored.c.score > 0)
        ) or 0

        page_rows = (
            await session.execute(
                select(scored.c.source_type, scored.c.source_id, scored.c.score)
                .where(scored.c.score > 0)
                .order_by(scored.c.score.desc(), scored.c.created_at.desc(), scored.c.source_id)
                .offset(offset)
                .limit(limit)
            )
        ).all()

        results = await self._load_page(session, page_rows)

        logger.debug(
            f"Fallback search '{(query_text or '')[:50]}' over {requested}: "
            f"{total_count} matches, returning {len(results)}"
        )
        return FallbackSearchResults(results=results, total_count=total_count)

    async def _load_page(self, session: AsyncSession, page_rows) -> List[FallbackSearchResult]:
        """Hydrate the ranked (source_type, source_id, score) rows of one page."""
        receipt_ids = [r.source_id for r in page_rows if r.source_type == SourceType.RECEIPT.value]
        claim_ids = [r.source_id for r in page_rows if r.source_type == SourceType.CLAIM.value]

        receipts = {}
        if receipt_ids:
            rows = await session.execute(select(Receipt).where(Receipt.id.in_(receipt_ids)))
            receipts = {r.id: r for r in rows.scalars().all()}
        claims = {}
        if claim_ids:
            rows = await session.execute(select(Claim).where(Claim.id.in_(claim_ids)))
            claims = {c.id: c for c in rows.scalars().all()}

        results = []
        for row in page_rows:
            if row.source_type == SourceType.RECEIPT.value:
                receipt = receipts[row.source_id]
                results.append(
                    FallbackSearchResult(
                        source_type=row.source_type,
                        source_id=receipt.id,
                        score=float(row.score),
                        title=receipt.merchant,
                        record_date=receipt.date,
                        amount=receipt.total,
                        currency=receipt.currency,
                        predicted_category=receipt.predicted_category,
                        created_at=receipt.created_at,
                    )
                )
            else:
                claim = claims[row.source_id]
                results.append(
                    FallbackSearchResult(
                        source_type=row.source_type,
                        source_id=claim.id,
                        score=float(row.score),
                        title=claim.title,
                        description=claim.description,
                        amount=claim.amount,
                        currency=claim.currency,
                        created_at=claim.created_at,
                    )
                )
        return results


# Global fallback search service instance
fallback_search_service = FallbackSearchService()
