# ============================================================================
# Receipt Search - Application Configuration
# ============================================================================
"""
Application configuration module using Pydantic Settings.

This module defines all configuration parameters for the receipt search
backend, including:
- API/CORS settings
- Database connection and pooling
- Embedding model contract (dimensions, pricing)
- Hybrid search defaults (weights, thresholds, limits)
- Embedding metrics retention windows
- Quality scoring penalties

Environment Variables:
    Every field can be overridden by the upper-cased environment variable
    of the same name (e.g. SEARCH_SEMANTIC_WEIGHT=0.5) or via a .env file.

Usage:
    from receipt_search.config import settings
    dims = settings.embedding_dimensions
"""

from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # =========================================================================
    # API SETTINGS
    # =========================================================================
    api_title: str = "Receipt Search API"
    api_version: str = "1.0.0"
    debug: bool = Field(default=False, description="Enable verbose logging & dev helpers")

    # =========================================================================
    # CORS SETTINGS
    # =========================================================================
    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "http://127.0.0.1:3000"],
        description="Allowed origins for CORS",
    )

    # =========================================================================
    # DATABASE
    # =========================================================================
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/receipt_search.db",
        description="SQLAlchemy async database URL",
    )
    db_pool_size: int = Field(default=20, description="PostgreSQL pool size")
    db_max_overflow: int = Field(default=40, description="PostgreSQL pool overflow")
    db_pool_recycle: int = Field(default=3600, description="Seconds before pooled connections recycle")

    # =========================================================================
    # EMBEDDING CONTRACT
    # =========================================================================
    embedding_model: str = Field(default="gemini-embedding-exp-03-07", description="Embedding model identifier")
    embedding_dimensions: int = Field(default=1536, description="Vector dimensionality of the content index")
    embedding_price_per_1k_tokens: float = Field(
        default=0.00015, description="USD cost per 1,000 embedding tokens"
    )

    # =========================================================================
    # HYBRID SEARCH DEFAULTS
    # =========================================================================
    search_default_limit: int = Field(default=20, description="Results returned when no limit is given")
    search_max_limit: int = Field(default=100, description="Upper bound on requested limit")
    search_similarity_threshold: float = Field(default=0.2, description="Semantic admission threshold (0-1)")
    search_trigram_threshold: float = Field(default=0.3, description="Trigram admission threshold (0-1)")
    search_semantic_weight: float = Field(default=0.6, description="Weight of the semantic signal")
    search_keyword_weight: float = Field(default=0.25, description="Weight of the keyword signal")
    search_trigram_weight: float = Field(default=0.15, description="Weight of the trigram signal")
    search_weight_tolerance: float = Field(default=0.01, description="Allowed deviation of the weight sum from 1.0")
    search_snippet_words: int = Field(default=12, description="Words of context per snippet")
    search_max_snippets: int = Field(default=3, description="Snippets returned per result")
    merchant_similarity_threshold: float = Field(default=0.4, description="Fuzzy merchant match threshold")

    # =========================================================================
    # EMBEDDING METRICS RETENTION
    # =========================================================================
    attempt_retention_days: int = Field(default=90, description="Days to keep raw embedding attempts")
    hourly_stats_retention_days: int = Field(default=30, description="Days to keep hourly rollups")
    daily_stats_retention_days: int = Field(default=365, description="Days to keep daily rollups")

    # =========================================================================
    # QUALITY SCORING
    # =========================================================================
    quality_synthetic_penalty: float = Field(default=20.0, description="Points deducted when synthetic content was used")
    quality_fallback_penalty: float = Field(default=10.0, description="Points deducted for fallback processing")
    quality_legacy_penalty: float = Field(default=20.0, description="Points deducted for legacy processing")
    quality_trend_recent_days: int = Field(default=7, description="Days counted as 'recent' in trend comparisons")

    # =========================================================================
    # SCHEDULING
    # =========================================================================
    celery_broker_url: str = Field(default="redis://redis:6379/0", description="Celery broker URL")
    celery_result_backend: str = Field(default="redis://redis:6379/1", description="Celery result backend URL")
    metrics_aggregation_enabled: bool = Field(default=True, description="Schedule hourly/daily rollups")
    metrics_cleanup_enabled: bool = Field(default=True, description="Schedule retention cleanup")
    metrics_cleanup_cron: str = Field(default="0 3 * * *", description="Cron expression for retention cleanup")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"

    @property
    def default_weights(self) -> tuple:
        return (
            self.search_semantic_weight,
            self.search_keyword_weight,
            self.search_trigram_weight,
        )


# Global settings instance (imported elsewhere)
settings = Settings()
