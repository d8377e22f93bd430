from fastapi import APIRouter

# Aggregate all v1 routers here
from .routers import content_index, embedding_metrics, quality, search, system

api_router = APIRouter()
api_router.include_router(system.router)
api_router.include_router(search.router, prefix="/v1")
api_router.include_router(embedding_metrics.router, prefix="/v1")
api_router.include_router(quality.router, prefix="/v1")
api_router.include_router(content_index.router, prefix="/v1")

__all__ = ["api_router"]
