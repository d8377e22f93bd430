# ============================================================================
# Receipt Search - Shared API Models
# ============================================================================
"""
Pydantic models shared across API routers.

Endpoint-specific request/response models live next to their router in
receipt_search.api.v1.routers; this module holds the models every endpoint
can return.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """
    Standard error response model for API errors.

    Attributes:
        error: Error category or type
        detail: Detailed error message
        errors: Per-field validation problems (validation errors only)
        timestamp: When the error occurred
        request_id: Unique identifier for the request (optional)

    Example:
        error = ErrorResponse(
            error="Search Validation Error",
            detail="weights: Weights must sum to 1.0 (+/- 0.01), got 1.1000",
            errors={"weights": "Weights must sum to 1.0 (+/- 0.01), got 1.1000"},
            timestamp=datetime.now(),
        )
    """
    error: str
    detail: str
    errors: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=datetime.now)
    request_id: Optional[str] = None


class HealthStatus(BaseModel):
    """Service and database health."""
    status: str = Field(..., description="healthy | degraded")
    version: str
    timestamp: datetime
    database: Dict[str, Any] = Field(default_factory=dict)
