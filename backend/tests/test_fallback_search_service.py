"""
Tests for FallbackSearchService tiered substring scoring.
"""

import uuid
from datetime import date, datetime, timedelta

import pytest

from receipt_search.services.fallback_search_service import (
    CATEGORY_MATCH_SCORE,
    CLAIM_DESCRIPTION_MATCH_SCORE,
    CLAIM_TITLE_MATCH_SCORE,
    FULL_TEXT_MATCH_SCORE,
    MATCH_ALL_SCORE,
    MERCHANT_MATCH_SCORE,
    FallbackSearchService,
)

from conftest import add_claim, add_receipt

BASE = datetime(2026, 3, 1, 12, 0, 0)


@pytest.fixture
def service():
    return FallbackSearchService()


class TestFallbackScoring:

    @pytest.mark.asyncio
    async def test_first_matching_tier_wins(self, service, session, user_id):
        merchant = await add_receipt(session, user_id, merchant="Coffee Republic",
                                     full_text="coffee", created_at=BASE)
        category = await add_receipt(session, user_id, merchant="Tesco", predicted_category="Coffee & Tea",
                                     created_at=BASE)
        text_only = await add_receipt(session, user_id, merchant="Shell", full_text="1x COFFEE 2.00",
                                      created_at=BASE)
        await add_receipt(session, user_id, merchant="Ikea", full_text="lamp", created_at=BASE)

        page = await service.search(session, "coffee", user_id=user_id)

        scores = {r.receipt_id: r.score for r in page.results}
        assert scores == {
            merchant.id: MERCHANT_MATCH_SCORE,
            category.id: CATEGORY_MATCH_SCORE,
            text_only.id: FULL_TEXT_MATCH_SCORE,
        }
        assert page.total_count == 3
        assert [r.receipt_id for r in page.results] == [merchant.id, category.id, text_only.id]

    @pytest.mark.asyncio
    async def test_blank_query_matches_everything(self, service, session, user_id):
        for i in range(5):
            await add_receipt(session, user_id, merchant=f"Store {i}", created_at=BASE + timedelta(minutes=i))

        page = await service.search(session, "   ", limit=2, offset=1, user_id=user_id)

        assert page.total_count == 5
        assert [r.merchant for r in page.results] == ["Store 3", "Store 2"]
        assert all(r.score == MATCH_ALL_SCORE for r in page.results)

    @pytest.mark.asyncio
    async def test_equal_scores_most_recent_first(self, service, session, user_id):
        older = await add_receipt(session, user_id, merchant="Starbucks", created_at=BASE)
        newer = await add_receipt(session, user_id, merchant="Starbucks", created_at=BASE + timedelta(days=1))

        page = await service.search(session, "STARBUCKS", user_id=user_id)

        assert [r.receipt_id for r in page.results] == [newer.id, older.id]

    @pytest.mark.asyncio
    async def test_case_insensitive_beyond_ascii(self, service, session, user_id):
        cafe = await add_receipt(session, user_id, merchant="CAFÉ DU MONDE")

        page = await service.search(session, "café", user_id=user_id)

        assert [r.receipt_id for r in page.results] == [cafe.id]
        assert page.results[0].score == MERCHANT_MATCH_SCORE

    @pytest.mark.asyncio
    async def test_like_wildcards_are_literal(self, service, session, user_id):
        await add_receipt(session, user_id, merchant="Shell")

        page = await service.search(session, "%", user_id=user_id)
        assert page.total_count == 0


class TestFallbackFilters:

    @pytest.mark.asyncio
    async def test_date_amount_and_merchant_filters(self, service, session, user_id):
        inside = await add_receipt(session, user_id, merchant="Costco", total=25.0, date=date(2026, 3, 5))
        await add_receipt(session, user_id, merchant="Costco", total=25.0, date=date(2026, 4, 5))
        await add_receipt(session, user_id, merchant="Costco", total=250.0, date=date(2026, 3, 5))
        await add_receipt(session, user_id, merchant="Target", total=25.0, date=date(2026, 3, 5))

        page = await service.search(
            session, "",
            user_id=user_id,
            date_from=date(2026, 3, 1),
            date_to=date(2026, 3, 31),
            amount_min=10,
            amount_max=100,
            merchant_allowlist=["COSTCO"],
        )

        assert [r.receipt_id for r in page.results] == [inside.id]

    @pytest.mark.asyncio
    async def test_scoped_to_user(self, service, session, user_id):
        await add_receipt(session, uuid.uuid4(), merchant="Starbucks")

        page = await service.search(session, "starbucks", user_id=user_id)
        assert page.total_count == 0
        assert page.results == []


class TestFallbackClaims:

    @pytest.mark.asyncio
    async def test_claims_ranked_with_receipts(self, service, session, user_id):
        receipt = await add_receipt(session, user_id, merchant="Hotel Adlon", created_at=BASE)
        titled = await add_claim(session, user_id, title="Hotel stay Berlin",
                                 created_at=BASE + timedelta(days=1))
        described = await add_claim(session, user_id, title="Conference trip",
                                    description="two nights at the hotel", created_at=BASE)
        await add_claim(session, user_id, title="Taxi", description="airport ride", created_at=BASE)

        page = await service.search(session, "hotel", user_id=user_id)

        assert page.total_count == 3
        assert [(r.source_type, r.source_id, r.score) for r in page.results] == [
            ("claim", titled.id, CLAIM_TITLE_MATCH_SCORE),
            ("receipt", receipt.id, MERCHANT_MATCH_SCORE),
            ("claim", described.id, CLAIM_DESCRIPTION_MATCH_SCORE),
        ]
        assert page.results[0].title == "Hotel stay Berlin"
        assert page.results[0].receipt_id is None
        assert page.results[2].description == "two nights at the hotel"

    @pytest.mark.asyncio
    async def test_blank_query_counts_both_source_types(self, service, session, user_id):
        await add_receipt(session, user_id, merchant="Shell")
        await add_claim(session, user_id, title="Mileage")
        await add_claim(session, user_id, title="Per diem")

        page = await service.search(session, "", user_id=user_id)

        assert page.total_count == 3
        assert sorted(r.source_type for r in page.results) == ["claim", "claim", "receipt"]

    @pytest.mark.asyncio
    async def test_source_types_restrict_results(self, service, session, user_id):
        receipt = await add_receipt(session, user_id, merchant="Uber")
        claim = await add_claim(session, user_id, title="Uber to client")

        claims_only = await service.search(session, "uber", user_id=user_id, source_types=["claim"])
        receipts_only = await service.search(session, "uber", user_id=user_id, source_types=["receipt"])

        assert [r.source_id for r in claims_only.results] == [claim.id]
        assert [r.source_id for r in receipts_only.results] == [receipt.id]
        assert claims_only.total_count == receipts_only.total_count == 1

    @pytest.mark.asyncio
    async def test_merchant_allowlist_excludes_claims(self, service, session, user_id):
        receipt = await add_receipt(session, user_id, merchant="Costco")
        await add_claim(session, user_id, title="Costco run")

        page = await service.search(session, "costco", user_id=user_id, merchant_allowlist=["Costco"])

        assert [r.source_id for r in page.results] == [receipt.id]

    @pytest.mark.asyncio
    async def test_claim_amount_and_creation_day_filters(self, service, session, user_id):
        inside = await add_claim(session, user_id, title="Lunch", amount=40.0,
                                 created_at=datetime(2026, 3, 31, 23, 30))
        await add_claim(session, user_id, title="Lunch", amount=400.0,
                        created_at=datetime(2026, 3, 10, 12, 0))
        await add_claim(session, user_id, title="Lunch", amount=40.0,
                        created_at=datetime(2026, 4, 1, 0, 0))

        page = await service.search(
            session, "lunch",
            user_id=user_id,
            date_from=date(2026, 3, 1),
            date_to=date(2026, 3, 31),
            amount_max=100,
        )

        assert [r.source_id for r in page.results] == [inside.id]

    @pytest.mark.asyncio
    async def test_unsupported_source_type(self, service, session, user_id):
        with pytest.raises(ValueError):
            await service.search(session, "x", user_id=user_id, source_types=["line_item"])
