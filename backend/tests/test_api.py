"""
API tests for the search, embedding metrics, quality and content index routers.

Each client gets its own in-memory database through a get_db override.
"""

import uuid
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import async_sessionmaker

from receipt_search.database import Base, get_db
from receipt_search.main import app
from receipt_search.services.database_service import database_service

from conftest import make_engine


@pytest.fixture
def client():
    engine = make_engine()
    factory = async_sessionmaker(engine, expire_on_commit=False)
    state = {"ready": False}

    async def override_get_db():
        if not state["ready"]:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            state["ready"] = True
        async with factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def test_health(client):
    health = {"status": "healthy", "connected": True, "database_type": "sqlite", "tables": {}}
    with patch.object(database_service, "health_check", AsyncMock(return_value=health)):
        response = client.get("/api/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["database"]["connected"] is True


def test_health_degraded(client):
    health = {"status": "unhealthy", "connected": False, "database_type": "sqlite", "error": "down"}
    with patch.object(database_service, "health_check", AsyncMock(return_value=health)):
        response = client.get("/api/health")

    assert response.status_code == 200
    assert response.json()["status"] == "degraded"


def test_search_defaults(client):
    response = client.get("/api/config/search-defaults")
    assert response.status_code == 200
    data = response.json()
    assert data["weights"] == {"semantic": 0.6, "keyword": 0.25, "trigram": 0.15}
    assert data["thresholds"] == {"similarity": 0.2, "trigram": 0.3}


# =============================================================================
# Search
# =============================================================================


def test_hybrid_search_rejects_bad_weights(client):
    response = client.post(
        "/api/v1/search",
        json={"query": "coffee", "weights": {"semantic": 0.5, "keyword": 0.3, "trigram": 0.3}},
    )

    assert response.status_code == 422
    data = response.json()
    assert data["error"] == "Search Validation Error"
    assert "weights" in data["errors"]


def test_hybrid_search_rejects_limit_above_max(client):
    response = client.post("/api/v1/search", json={"query": "coffee", "limit": 1000})
    assert response.status_code == 422


def test_index_then_search(client):
    source_id = str(uuid.uuid4())
    response = client.put(
        "/api/v1/content-index/entries",
        json={
            "source_type": "receipt",
            "source_id": source_id,
            "content_type": "merchant",
            "content_text": "Starbucks",
        },
    )
    assert response.status_code == 200

    response = client.post("/api/v1/search", json={"query": "starbucks"})

    assert response.status_code == 200
    data = response.json()
    assert data["total"] == 1
    hit = data["hits"][0]
    assert hit["source_id"] == source_id
    assert hit["keyword_score"] == 1.0

    stats = client.get("/api/v1/search/stats").json()
    assert stats["total_entries"] == 1
    assert stats["by_content_type"] == {"merchant": 1}


def test_fallback_search_empty_store(client):
    response = client.post("/api/v1/search/fallback", json={"query": ""})

    assert response.status_code == 200
    assert response.json() == {"total": 0, "limit": 20, "offset": 0, "hits": []}


def test_fallback_search_rejects_unknown_source_type(client):
    response = client.post(
        "/api/v1/search/fallback", json={"query": "uber", "source_types": ["line_item"]}
    )

    assert response.status_code == 422


# =============================================================================
# Embedding metrics
# =============================================================================


def _record_attempt(client, team_id):
    response = client.post(
        "/api/v1/embedding-metrics/attempts",
        json={
            "receipt_id": str(uuid.uuid4()),
            "user_id": str(uuid.uuid4()),
            "team_id": team_id,
            "upload_context": "single",
            "start_time": "2026-03-01T14:05:00",
            "content_types": ["merchant", "full_text"],
        },
    )
    assert response.status_code == 201
    return response.json()["attempt_id"]


def test_attempt_lifecycle_and_rollup(client):
    team_id = str(uuid.uuid4())
    attempt_id = _record_attempt(client, team_id)

    response = client.post(
        f"/api/v1/embedding-metrics/attempts/{attempt_id}/complete",
        json={"status": "success", "end_time": "2026-03-01T14:05:02", "api_calls": 2, "api_tokens": 400},
    )
    assert response.status_code == 200
    attempt = response.json()
    assert attempt["duration_ms"] == 2000
    assert attempt["version"] == 2

    response = client.post(
        "/api/v1/embedding-metrics/aggregate/hourly", json={"hour_bucket": "2026-03-01T14:00:00"}
    )
    assert response.status_code == 200
    assert response.json()[0]["total_attempts"] == 1

    response = client.get(
        "/api/v1/embedding-metrics/hourly",
        params={"team_id": team_id, "start": "2026-03-01T00:00:00", "end": "2026-03-02T00:00:00"},
    )
    assert [row["successful_attempts"] for row in response.json()] == [1]


def test_complete_unknown_attempt(client):
    response = client.post(
        f"/api/v1/embedding-metrics/attempts/{uuid.uuid4()}/complete", json={"status": "success"}
    )
    assert response.status_code == 404


def test_complete_with_stale_version(client):
    attempt_id = _record_attempt(client, str(uuid.uuid4()))
    url = f"/api/v1/embedding-metrics/attempts/{attempt_id}/complete"

    first = client.post(url, json={"status": "success", "expected_version": 1})
    second = client.post(url, json={"status": "failed", "expected_version": 1})

    assert first.status_code == 200
    assert second.status_code == 409


def test_unaligned_hour_bucket(client):
    response = client.post(
        "/api/v1/embedding-metrics/aggregate/hourly", json={"hour_bucket": "2026-03-01T14:30:00"}
    )
    assert response.status_code == 422


# =============================================================================
# Quality
# =============================================================================


def test_quality_metric_and_low_listing(client):
    user_id = str(uuid.uuid4())
    for successful in (1, 3):
        response = client.post(
            "/api/v1/quality/metrics",
            json={
                "source_type": "receipt",
                "source_id": str(uuid.uuid4()),
                "user_id": user_id,
                "total_content_types": 3,
                "successful_embeddings": successful,
                "failed_embeddings": 3 - successful,
                "synthetic_content_used": False,
                "processing_method": "enhanced",
            },
        )
        assert response.status_code == 200

    response = client.get("/api/v1/quality/low", params={"user_id": user_id, "min_score": 50})

    assert response.status_code == 200
    scores = [m["overall_quality_score"] for m in response.json()]
    assert scores == [33.33]
