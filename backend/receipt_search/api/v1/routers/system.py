# backend/receipt_search/api/v1/routers/system.py
from datetime import datetime

from fastapi import APIRouter

from ....config import settings
from ....models import HealthStatus
from ....services.database_service import database_service

router = APIRouter()


@router.get("/health", response_model=HealthStatus, tags=["System"])
async def health_check():
    """Health check endpoint."""
    database = await database_service.health_check()

    return HealthStatus(
        status="healthy" if database.get("status") == "healthy" else "degraded",
        timestamp=datetime.now(),
        version=settings.api_version,
        database=database,
    )


@router.get("/config/search-defaults", tags=["Configuration"])
async def get_search_defaults():
    """Get default hybrid search weights and thresholds."""
    return {
        "weights": {
            "semantic": settings.search_semantic_weight,
            "keyword": settings.search_keyword_weight,
            "trigram": settings.search_trigram_weight,
        },
        "thresholds": {
            "similarity": settings.search_similarity_threshold,
            "trigram": settings.search_trigram_threshold,
        },
        "limit": settings.search_default_limit,
        "max_limit": settings.search_max_limit,
        "embedding_dimensions": settings.embedding_dimensions,
    }
