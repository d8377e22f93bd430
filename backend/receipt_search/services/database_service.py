# backend/receipt_search/services/database_service.py
"""
Database service for async SQLAlchemy session management.

Provides a singleton service for managing database connections,
sessions, and health checks. Supports both SQLite (development/tests)
and PostgreSQL with pgvector + pg_trgm (production).

Usage:
    from receipt_search.services.database_service import database_service

    # Get async session (context manager)
    async with database_service.get_session() as session:
        results = await hybrid_search_service.search(session, ...)

    # Initialize database (create tables)
    await database_service.init_db()

    # Health check
    health = await database_service.health_check()
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Optional

from sqlalchemy import event, func, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from ..config import settings
from ..database.base import Base


def enable_sqlite_savepoints(engine: AsyncEngine) -> None:
    """
    Let SQLAlchemy own SQLite transaction boundaries.

    The sqlite3 driver defers BEGIN until the first DML statement, which
    breaks SAVEPOINT (``session.begin_nested()``). Disabling the driver's
    transaction handling and emitting BEGIN ourselves restores it.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")


def _unicode_lower(value):
    return value.lower() if isinstance(value, str) else value


def enable_sqlite_unicode_lower(engine: AsyncEngine) -> None:
    """
    Replace SQLite's ASCII-only ``lower()`` with Python's ``str.lower``.

    Case-insensitive substring matching lower-cases both sides; without this
    "CAFÉ" in the store would not match the query "café" on SQLite, while it
    does on PostgreSQL.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _register_lower(dbapi_connection, connection_record):
        dbapi_connection.create_function("lower", 1, _unicode_lower)


def _is_celery_worker() -> bool:
    """Check if we're running inside a Celery worker process."""
    return (
        os.getenv("CELERY_WORKER") == "1"
        or "celery" in os.getenv("_", "").lower()
        or os.getenv("FORKED_BY_MULTIPROCESSING") == "1"
    )


class DatabaseService:
    """
    Database service for managing async SQLAlchemy sessions.

    Singleton with a global instance. Services never commit on their own;
    the session scope handed out here commits on success and rolls back on
    error.

    Attributes:
        _engine: Async SQLAlchemy engine
        _session_factory: Async session factory
        _logger: Logger instance
    """

    def __init__(self, database_url: Optional[str] = None):
        self._logger = logging.getLogger("receipt_search.database")
        self._database_url = database_url or settings.database_url
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker] = None
        self._initialize_engine()

    @property
    def database_type(self) -> str:
        return "sqlite" if self._database_url.startswith("sqlite") else "postgresql"

    def _initialize_engine(self) -> None:
        """
        Initialize database engine based on the configured URL.

        SQLite Configuration:
            - Uses aiosqlite async driver
            - check_same_thread=False for async support
            - Creates data directory if needed

        PostgreSQL Configuration:
            - Uses asyncpg async driver
            - Connection pooling from settings (db_pool_size, db_max_overflow)
            - Pool pre-ping for connection health

        Celery workers get NullPool (fresh connection per checkout) because
        every task creates a new event loop with asyncio.run().
        """
        database_url = self._database_url
        self._logger.info(f"Initializing database: {database_url.split('@')[-1].split('?')[0]}")

        is_celery = _is_celery_worker()

        if database_url.startswith("sqlite"):
            if ":///" in database_url:
                db_path = database_url.split("///")[1].split("?")[0]
                db_dir = os.path.dirname(db_path)
                if db_path != ":memory:" and db_dir and not os.path.exists(db_dir):
                    os.makedirs(db_dir, exist_ok=True)
                    self._logger.info(f"Created database directory: {db_dir}")

            engine_kwargs: Dict[str, Any] = {}
            if is_celery and ":memory:" not in database_url:
                engine_kwargs["poolclass"] = NullPool

            self._engine = create_async_engine(
                database_url,
                connect_args={"check_same_thread": False},
                pool_pre_ping=True,
                echo=settings.debug,
                **engine_kwargs,
            )
            enable_sqlite_savepoints(self._engine)
            enable_sqlite_unicode_lower(self._engine)
            self._logger.info("Using SQLite database (development mode)")
        elif is_celery:
            # Each task runs in its own asyncio.run() loop; pooled asyncpg
            # connections would stay bound to the loop that opened them
            self._engine = create_async_engine(
                database_url,
                poolclass=NullPool,
                echo=settings.debug,
                connect_args={
                    "server_settings": {
                        "application_name": "receipt-search-worker",
                        "jit": "off",
                    }
                },
            )
            self._logger.info("PostgreSQL configured with NullPool for Celery worker")
        else:
            self._engine = create_async_engine(
                database_url,
                pool_size=settings.db_pool_size,
                max_overflow=settings.db_max_overflow,
                pool_pre_ping=True,
                pool_recycle=settings.db_pool_recycle,
                echo=settings.debug,
            )
            self._logger.info(
                f"Using PostgreSQL database (pool_size={settings.db_pool_size}, "
                f"max_overflow={settings.db_max_overflow})"
            )

        self._session_factory = async_sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Get async database session as context manager.

        Automatically handles commit on success and rollback on error.

        Yields:
            AsyncSession: Async database session

        Raises:
            RuntimeError: If database is not initialized
            Exception: Any database errors (triggers rollback)
        """
        if not self._session_factory:
            raise RuntimeError("Database not initialized")

        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def init_db(self) -> None:
        """
        Create all tables (and the pgvector/pg_trgm extensions on PostgreSQL).

        Safe to call multiple times. For schema evolution, use Alembic.
        """
        if not self._engine:
            raise RuntimeError("Database engine not initialized")

        self._logger.info("Creating database tables...")

        async with self._engine.begin() as conn:
            from ..database import models  # noqa: F401

            if self.database_type == "postgresql":
                await conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
                await conn.execute(text("CREATE EXTENSION IF NOT EXISTS pg_trgm"))
            await conn.run_sync(Base.metadata.create_all)

        self._logger.info("Database tables created successfully")

    async def health_check(self) -> Dict[str, Any]:
        """
        Check database connectivity and report row counts of the core tables.

        Returns:
            Dict with health status:
                {
                    "status": "healthy" | "unhealthy",
                    "connected": True | False,
                    "database_type": "sqlite" | "postgresql",
                    "tables": {"unified_embeddings": count, ...},
                    "error": "error message" (if unhealthy),
                }
        """
        from ..database.models import (
            EmbeddingAttempt,
            RecordQualityMetric,
            UnifiedContentEntry,
        )

        try:
            async with self.get_session() as session:
                await session.execute(text("SELECT 1"))

                tables = {}
                for model in (UnifiedContentEntry, EmbeddingAttempt, RecordQualityMetric):
                    result = await session.execute(select(func.count()).select_from(model))
                    tables[model.__tablename__] = result.scalar() or 0

            return {
                "status": "healthy",
                "connected": True,
                "database_type": self.database_type,
                "tables": tables,
            }
        except (SQLAlchemyError, OSError) as e:
            self._logger.error(f"Database health check failed: {e}")
            return {
                "status": "unhealthy",
                "connected": False,
                "database_type": self.database_type,
                "error": str(e),
            }

    async def close(self) -> None:
        """Dispose the engine and close pooled connections."""
        if self._engine:
            await self._engine.dispose()
            self._logger.info("Database connections closed")


# Global database service instance
database_service = DatabaseService()
