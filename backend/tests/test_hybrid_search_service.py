"""
Tests for HybridSearchService.

Verifies request validation (weights, thresholds, amount range, vector
size), admission by any single signal, weighted fusion of all three
signals, ordering, filters and the merchant / statistics helpers.
"""

import uuid
from datetime import date
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.dialects import postgresql

from receipt_search.database.models import UnifiedContentEntry
from receipt_search.services.hybrid_search_service import (
    HybridSearchService,
    SearchFilters,
    SearchThresholds,
    SearchValidationError,
    SearchWeights,
    SignalScores,
    combine_scores,
    is_admitted,
)

from conftest import add_claim, add_entry, add_receipt

DEFAULT_WEIGHTS = SearchWeights(semantic=0.6, keyword=0.25, trigram=0.15)
DEFAULT_THRESHOLDS = SearchThresholds(similarity=0.2, trigram=0.3)


@pytest.fixture
def service():
    return HybridSearchService(embedding_dimensions=3)


# =============================================================================
# Scoring primitives
# =============================================================================


class TestScoring:
    """Admission and fusion rules."""

    def test_admitted_by_semantic_alone_and_all_terms_fused(self):
        """Sub-threshold trigram still contributes to the combined score."""
        signals = SignalScores(semantic=0.25, trigram=0.1, keyword=0.0)

        assert is_admitted(signals, DEFAULT_THRESHOLDS) is True
        assert combine_scores(signals, DEFAULT_WEIGHTS) == pytest.approx(0.25 * 0.6 + 0.1 * 0.15)

    def test_admitted_by_keyword(self):
        assert is_admitted(SignalScores(0.0, 0.0, 0.7), DEFAULT_THRESHOLDS) is True

    def test_thresholds_are_strict(self):
        assert is_admitted(SignalScores(0.2, 0.3, 0.0), DEFAULT_THRESHOLDS) is False

    def test_combined_is_monotonic_in_each_signal(self):
        base = SignalScores(semantic=0.3, trigram=0.3, keyword=0.0)
        base_score = combine_scores(base, DEFAULT_WEIGHTS)
        assert combine_scores(SignalScores(0.4, 0.3, 0.0), DEFAULT_WEIGHTS) > base_score
        assert combine_scores(SignalScores(0.3, 0.4, 0.0), DEFAULT_WEIGHTS) > base_score
        assert combine_scores(SignalScores(0.3, 0.3, 0.7), DEFAULT_WEIGHTS) > base_score


# =============================================================================
# Validation
# =============================================================================


class TestValidation:

    @pytest.mark.asyncio
    async def test_accepts_weights_summing_to_one(self, service, session):
        results = await service.search(session, None, "coffee", weights=DEFAULT_WEIGHTS)
        assert results == []

    @pytest.mark.asyncio
    async def test_rejects_weights_before_querying(self, service):
        """Weights summing to 1.1 fail without touching the database."""
        session = AsyncMock()

        with pytest.raises(SearchValidationError) as exc_info:
            await service.search(
                session, None, "coffee", weights=SearchWeights(semantic=0.5, keyword=0.3, trigram=0.3)
            )

        assert "weights" in exc_info.value.errors
        session.execute.assert_not_called()

    def test_weight_tolerance(self, service):
        service.validate_request(
            None, SearchFilters(), SearchWeights(0.6, 0.25, 0.155), DEFAULT_THRESHOLDS, 10
        )

    def test_negative_weight(self, service):
        with pytest.raises(SearchValidationError, match="non-negative"):
            service.validate_request(
                None, SearchFilters(), SearchWeights(1.2, -0.2, 0.0), DEFAULT_THRESHOLDS, 10
            )

    def test_collects_every_problem(self, service):
        with pytest.raises(SearchValidationError) as exc_info:
            service.validate_request(
                [1.0, 0.0],
                SearchFilters(amount_min=50, amount_max=10),
                DEFAULT_WEIGHTS,
                SearchThresholds(similarity=1.5, trigram=0.3),
                0,
            )

        assert set(exc_info.value.errors) == {
            "thresholds.similarity",
            "amount_range",
            "limit",
            "query_vector",
        }


# =============================================================================
# Search
# =============================================================================


class TestSearch:

    @pytest.mark.asyncio
    async def test_ranks_by_combined_score(self, service, session, user_id):
        exact = await add_entry(session, uuid.uuid4(), "Starbucks coffee downtown",
                                embedding=[1.0, 0.0, 0.0], user_id=user_id)
        close = await add_entry(session, uuid.uuid4(), "Coffee beans",
                                embedding=[0.8, 0.6, 0.0], user_id=user_id)
        await add_entry(session, uuid.uuid4(), "Shell fuel", embedding=[0.0, 0.0, 1.0], user_id=user_id)

        results = await service.search(session, [1.0, 0.0, 0.0], "starbucks coffee", weights=DEFAULT_WEIGHTS)

        assert [r.source_id for r in results] == [exact.source_id, close.source_id]
        top = results[0]
        assert top.semantic_score == pytest.approx(1.0)
        assert top.keyword_score == 1.0
        assert top.combined_score == pytest.approx(
            0.6 * top.semantic_score + 0.25 * top.keyword_score + 0.15 * top.trigram_score
        )
        assert results[1].keyword_score == 0.7
        assert top.snippets

    @pytest.mark.asyncio
    async def test_entry_without_embedding_can_match_on_text(self, service, session):
        entry = await add_entry(session, uuid.uuid4(), "Starbucks", embedding=None)

        results = await service.search(session, [1.0, 0.0, 0.0], "starbucks")

        assert [r.source_id for r in results] == [entry.source_id]
        assert results[0].semantic_score == 0.0

    @pytest.mark.asyncio
    async def test_ties_broken_by_semantic_then_trigram(self, service, session):
        weights = SearchWeights(semantic=0.0, keyword=1.0, trigram=0.0)
        low = await add_entry(session, uuid.uuid4(), "coffee", embedding=[0.6, 0.8, 0.0])
        high = await add_entry(session, uuid.uuid4(), "coffee", embedding=[1.0, 0.0, 0.0])

        results = await service.search(session, [1.0, 0.0, 0.0], "coffee", weights=weights)

        assert [r.source_id for r in results] == [high.source_id, low.source_id]

    @pytest.mark.asyncio
    async def test_limit_truncates(self, service, session):
        for _ in range(5):
            await add_entry(session, uuid.uuid4(), "coffee")

        results = await service.search(session, None, "coffee", limit=3)
        assert len(results) == 3

    @pytest.mark.asyncio
    async def test_no_signal_returns_empty(self, service, session):
        await add_entry(session, uuid.uuid4(), "Shell fuel", embedding=[0.0, 1.0, 0.0])

        assert await service.search(session, [1.0, 0.0, 0.0], "xyz") == []

    @pytest.mark.asyncio
    async def test_negative_cosine_clamped(self, service, session):
        await add_entry(session, uuid.uuid4(), "coffee", embedding=[-1.0, 0.0, 0.0])

        results = await service.search(session, [1.0, 0.0, 0.0], "coffee")
        assert results[0].semantic_score == 0.0


class TestSearchFilters:

    @pytest.mark.asyncio
    async def test_source_and_owner_filters(self, service, session, user_id):
        mine = await add_entry(session, uuid.uuid4(), "coffee", user_id=user_id, content_type="merchant")
        await add_entry(session, uuid.uuid4(), "coffee", user_id=uuid.uuid4(), content_type="merchant")
        await add_entry(session, uuid.uuid4(), "coffee", user_id=user_id, source_type="claim")

        results = await service.search(
            session, None, "coffee",
            filters=SearchFilters(source_types=["receipt"], content_types=["merchant"], user_id=user_id),
        )
        assert [r.source_id for r in results] == [mine.source_id]

    @pytest.mark.asyncio
    async def test_empty_source_id_allowlist_matches_nothing(self, service, session):
        await add_entry(session, uuid.uuid4(), "coffee")

        assert await service.search(session, None, "coffee", filters=SearchFilters(source_ids=[])) == []

    @pytest.mark.asyncio
    async def test_source_id_allowlist(self, service, session):
        kept = await add_entry(session, uuid.uuid4(), "coffee")
        await add_entry(session, uuid.uuid4(), "coffee")

        results = await service.search(
            session, None, "coffee", filters=SearchFilters(source_ids=[kept.source_id])
        )
        assert [r.source_id for r in results] == [kept.source_id]

    @pytest.mark.asyncio
    async def test_amount_filter_applies_to_receipts_and_claims(self, service, session, user_id):
        cheap = await add_receipt(session, user_id, merchant="Cafe", total=4.5)
        pricey = await add_receipt(session, user_id, merchant="Cafe", total=80.0)
        claim = await add_claim(session, user_id, title="Cafe", amount=12.0, currency="usd")
        await add_entry(session, cheap.id, "cafe")
        await add_entry(session, pricey.id, "cafe")
        await add_entry(session, claim.id, "cafe", source_type="claim")
        member = await add_entry(session, uuid.uuid4(), "cafe", source_type="team_member")

        results = await service.search(
            session, None, "cafe",
            filters=SearchFilters(amount_min=1, amount_max=20, currency="USD"),
        )

        assert {r.source_id for r in results} == {cheap.id, claim.id, member.source_id}


class TestMerchantSearchAndStats:

    @pytest.mark.asyncio
    async def test_fuzzy_merchant_search_groups_matches(self, service, session, user_id):
        first = await add_receipt(session, user_id, merchant="Starbucks", total=4.5, date=date(2026, 3, 1))
        second = await add_receipt(session, user_id, merchant="Starbucks", total=5.5, date=date(2026, 3, 9))
        other = await add_receipt(session, user_id, merchant="Shell", total=40.0)
        for receipt in (first, second, other):
            await add_entry(session, receipt.id, receipt.merchant, content_type="merchant", user_id=user_id)

        matches = await service.fuzzy_merchant_search(session, "Starbuks")

        assert len(matches) == 1
        match = matches[0]
        assert match.merchant == "Starbucks"
        assert match.occurrence_count == 2
        assert match.latest_date == date(2026, 3, 9)
        assert match.total_amount == 10.0

    @pytest.mark.asyncio
    async def test_blank_merchant_query(self, service, session):
        assert await service.fuzzy_merchant_search(session, "  ") == []

    @pytest.mark.asyncio
    async def test_index_stats(self, service, session):
        await add_entry(session, uuid.uuid4(), "coffee", embedding=[1.0, 0.0, 0.0], content_type="merchant")
        await add_entry(session, uuid.uuid4(), "", source_type="claim")

        stats = await service.index_stats(session)

        assert stats.total_entries == 2
        assert stats.entries_with_embeddings == 1
        assert stats.entries_with_content == 1
        assert stats.by_source_type == {"receipt": 1, "claim": 1}
        assert stats.by_content_type == {"merchant": 1, "full_text": 1}


# =============================================================================
# Ranking invariants
# =============================================================================

WEIGHT_TRIPLES = [
    SearchWeights(semantic=0.6, keyword=0.25, trigram=0.15),
    SearchWeights(semantic=1.0, keyword=0.0, trigram=0.0),
    SearchWeights(semantic=0.0, keyword=1.0, trigram=0.0),
    SearchWeights(semantic=0.0, keyword=0.0, trigram=1.0),
    SearchWeights(semantic=0.5, keyword=0.0, trigram=0.5),
]

# (weaker entry, stronger entry) as (content_text, embedding); the stronger
# entry is at least as good on every signal for the query "coffee beans"
DOMINATED_PAIRS = [
    (("coffee beans", [0.6, 0.8, 0.0]), ("coffee beans", [0.8, 0.6, 0.0])),
    (("coffee beans", [0.0, 1.0, 0.0]), ("coffee beans", [1.0, 0.0, 0.0])),
    (("fresh coffee and roasted beans", [0.8, 0.6, 0.0]), ("coffee beans", [0.8, 0.6, 0.0])),
    (("roasted beans", None), ("coffee beans", None)),
]


class TestRankingInvariants:

    @pytest.mark.parametrize("weights", WEIGHT_TRIPLES)
    @pytest.mark.parametrize(
        "base",
        [SignalScores(0.0, 0.0, 0.0), SignalScores(0.3, 0.3, 0.0), SignalScores(0.9, 0.1, 0.7)],
    )
    def test_combined_never_decreases_when_a_signal_rises(self, weights, base):
        base_score = combine_scores(base, weights)
        for raised in (
            SignalScores(base.semantic + 0.1, base.trigram, base.keyword),
            SignalScores(base.semantic, base.trigram + 0.1, base.keyword),
            SignalScores(base.semantic, base.trigram, base.keyword + 0.3),
        ):
            assert combine_scores(raised, weights) >= base_score

    @pytest.mark.asyncio
    @pytest.mark.parametrize("weights", WEIGHT_TRIPLES)
    @pytest.mark.parametrize("weaker,stronger", DOMINATED_PAIRS)
    async def test_stronger_entry_never_ranks_lower(self, service, session, weights, weaker, stronger):
        weak = await add_entry(session, uuid.uuid4(), weaker[0], embedding=weaker[1])
        strong = await add_entry(session, uuid.uuid4(), stronger[0], embedding=stronger[1])

        results = await service.search(session, [1.0, 0.0, 0.0], "coffee beans", weights=weights)

        by_id = {r.source_id: r for r in results}
        assert by_id[strong.source_id].combined_score >= by_id[weak.source_id].combined_score
        assert [r.source_id for r in results] == [strong.source_id, weak.source_id]

    @pytest.mark.asyncio
    async def test_language_filter(self, service, session):
        german = await add_entry(session, uuid.uuid4(), "Kaffee und coffee", language="de")
        await add_entry(session, uuid.uuid4(), "coffee", language="en")

        results = await service.search(session, None, "coffee", filters=SearchFilters(language="de"))

        assert [r.source_id for r in results] == [german.source_id]


# =============================================================================
# PostgreSQL scoring
# =============================================================================


def _postgres_session(rows):
    session = AsyncMock()
    session.get_bind = MagicMock(return_value=SimpleNamespace(dialect=SimpleNamespace(name="postgresql")))
    session.execute.return_value = MagicMock(all=MagicMock(return_value=rows))
    return session


def _compiled(statement) -> str:
    return str(statement.compile(dialect=postgresql.dialect()))


class TestPostgresScoring:
    """On PostgreSQL, signals, admission, ordering and the limit run in SQL."""

    def test_scored_query_uses_pgvector_and_pg_trgm(self, service):
        statement = service.build_scored_query(
            [1.0, 0.0, 0.0], "starbucks coffee", SearchFilters(user_id=uuid.uuid4()),
            DEFAULT_WEIGHTS, DEFAULT_THRESHOLDS, 5,
        )
        sql = _compiled(statement)

        assert "<=>" in sql
        assert "AS vector(3)" in sql
        assert "similarity(" in sql
        assert "strpos(" in sql
        assert "CASE WHEN" in sql
        assert "ORDER BY combined_score DESC" in sql
        assert "LIMIT" in sql

    def test_no_query_vector_skips_vector_distance(self, service):
        statement = service.build_scored_query(
            None, "coffee", SearchFilters(), DEFAULT_WEIGHTS, DEFAULT_THRESHOLDS, 5,
        )
        assert "<=>" not in _compiled(statement)

    @pytest.mark.asyncio
    async def test_search_reads_scores_from_database(self, service):
        entry = UnifiedContentEntry(
            id=uuid.uuid4(), source_type="receipt", source_id=uuid.uuid4(),
            content_type="merchant", content_text="Starbucks coffee", entry_metadata={},
        )
        session = _postgres_session([(entry, 0.9, 0.4, 1.0, 0.85)])

        results = await service.search(session, [1.0, 0.0, 0.0], "coffee", limit=5)

        session.execute.assert_awaited_once()
        assert "<=>" in _compiled(session.execute.call_args.args[0])
        assert len(results) == 1
        hit = results[0]
        assert (hit.semantic_score, hit.trigram_score, hit.keyword_score) == (0.9, 0.4, 1.0)
        assert hit.combined_score == 0.85
        assert hit.snippets

    @pytest.mark.asyncio
    async def test_merchant_search_groups_in_database(self, service):
        row = SimpleNamespace(
            content_text="Starbucks", similarity=0.6, occurrence_count=2,
            latest_date=date(2026, 3, 9), total_amount=10.0,
        )
        session = _postgres_session([row])

        matches = await service.fuzzy_merchant_search(session, "Starbuks")

        sql = _compiled(session.execute.call_args.args[0])
        assert "similarity(" in sql
        assert "GROUP BY" in sql
        assert matches[0].merchant == "Starbucks"
        assert matches[0].occurrence_count == 2
