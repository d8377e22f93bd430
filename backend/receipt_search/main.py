# ============================================================================
# Receipt Search - FastAPI Application Entry Point
# ============================================================================
"""
Main FastAPI application module for the receipt search backend.

This module sets up the FastAPI application with:
- CORS middleware configuration for cross-origin requests
- Application startup/shutdown event handlers
- Error handling that maps service errors onto HTTP status codes
- API router integration

Usage:
    Direct: python -m receipt_search.main
    Docker: uvicorn receipt_search.main:app --host 0.0.0.0 --port 8000 --reload

Error Mapping:
    SearchValidationError / AggregationWindowError / ContentIndexError -> 422
    AttemptNotFoundError                                              -> 404
    StaleAttemptError                                                 -> 409
    anything else                                                     -> 500

Author: Receipt Search Development Team
Version: 1.0.0
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from .api.v1 import api_router
from .config import settings
from .models import ErrorResponse
from .services.attempt_recorder import AttemptNotFoundError, StaleAttemptError
from .services.content_index_service import ContentIndexError
from .services.database_service import database_service
from .services.hybrid_search_service import SearchValidationError
from .services.metrics_aggregator import AggregationWindowError

logger = logging.getLogger("receipt_search.main")

# ============================================================================
# APPLICATION LIFECYCLE
# ============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application startup/shutdown.

    Creates missing tables on startup (Alembic owns real migrations) and
    disposes the connection pool on shutdown.
    """
    logger.info(f"Starting {settings.api_title} {settings.api_version} (debug={settings.debug})")
    await database_service.init_db()
    yield
    logger.info(f"Shutting down {settings.api_title}")
    await database_service.close()


# Initialize FastAPI application with metadata
app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description=(
        "Receipt Search - hybrid rank-fusion search over receipts and claims, "
        "with embedding pipeline health tracking and per-record quality scoring."
    ),
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
)

# ============================================================================
# MIDDLEWARE CONFIGURATION
# ============================================================================

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

# ============================================================================
# ERROR HANDLERS
# ============================================================================


def _error_response(
    status_code: int,
    error: str,
    detail: str,
    errors: Optional[Dict[str, Any]] = None,
) -> JSONResponse:
    body = ErrorResponse(error=error, detail=detail, errors=errors, timestamp=datetime.now())
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


@app.exception_handler(SearchValidationError)
async def search_validation_exception_handler(request: Request, exc: SearchValidationError) -> JSONResponse:
    """Malformed search requests are rejected before any scoring."""
    return _error_response(422, "Search Validation Error", str(exc), errors=exc.errors)


@app.exception_handler(AggregationWindowError)
async def aggregation_window_exception_handler(request: Request, exc: AggregationWindowError) -> JSONResponse:
    return _error_response(422, "Aggregation Window Error", str(exc))


@app.exception_handler(ContentIndexError)
async def content_index_exception_handler(request: Request, exc: ContentIndexError) -> JSONResponse:
    return _error_response(422, "Content Index Error", str(exc))


@app.exception_handler(AttemptNotFoundError)
async def attempt_not_found_exception_handler(request: Request, exc: AttemptNotFoundError) -> JSONResponse:
    return _error_response(404, "Not Found", str(exc))


@app.exception_handler(StaleAttemptError)
async def stale_attempt_exception_handler(request: Request, exc: StaleAttemptError) -> JSONResponse:
    """A concurrent completion won the race for this attempt."""
    return _error_response(409, "Conflict", str(exc))


@app.exception_handler(ValidationError)
async def validation_exception_handler(request: Request, exc: ValidationError) -> JSONResponse:
    """Pydantic validation errors raised outside request parsing."""
    return _error_response(422, "Validation Error", str(exc))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return _error_response(exc.status_code, f"HTTP {exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Catch-all handler for unexpected errors.

    The exception is logged; its message is only returned in debug mode.
    """
    logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    detail = str(exc) if settings.debug else "An unexpected error occurred"
    return _error_response(500, "Internal Server Error", detail)


# ============================================================================
# ROUTER CONFIGURATION
# ============================================================================

# System endpoints live at /api/*, domain endpoints at /api/v1/*
app.include_router(api_router, prefix="/api")

# ============================================================================
# ROOT ENDPOINT
# ============================================================================


@app.get("/", tags=["root"])
async def root() -> Dict[str, Any]:
    """
    Root endpoint providing API information.

    Returns:
        Dict[str, Any]: API metadata including version, status, and links
    """
    return {
        "name": settings.api_title,
        "version": settings.api_version,
        "status": "running",
        "docs_url": "/docs",
        "health_check": "/api/health",
        "timestamp": datetime.now().isoformat(),
    }


# ============================================================================
# DEVELOPMENT SERVER
# ============================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "receipt_search.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info",
    )
