import os
import uuid
from datetime import date, datetime

# Point the application at an in-memory database before importing app modules.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("CELERY_BROKER_URL", "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from receipt_search.database import Base
from receipt_search.database.models import (
    Claim,
    LegacyReceiptEmbedding,
    LineItem,
    Receipt,
    UnifiedContentEntry,
)
from receipt_search.services.database_service import (
    enable_sqlite_savepoints,
    enable_sqlite_unicode_lower,
)

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


def make_engine():
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_savepoints(engine)
    enable_sqlite_unicode_lower(engine)
    return engine


@pytest_asyncio.fixture
async def engine():
    """Fresh in-memory database per test."""
    engine = make_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session(engine):
    factory = async_sessionmaker(engine, expire_on_commit=False)
    async with factory() as session:
        yield session


@pytest.fixture
def user_id():
    return uuid.uuid4()


@pytest.fixture
def team_id():
    return uuid.uuid4()


# =============================================================================
# Record builders
# =============================================================================

async def add_receipt(session, user_id, **fields) -> Receipt:
    values = {
        "id": uuid.uuid4(),
        "user_id": user_id,
        "merchant": None,
        "date": date(2026, 3, 1),
        "total": None,
        "currency": "USD",
    }
    values.update(fields)
    receipt = Receipt(**values)
    session.add(receipt)
    await session.flush()
    return receipt


async def add_line_item(session, receipt_id, description, amount=None, created_at=None) -> LineItem:
    item = LineItem(
        id=uuid.uuid4(),
        receipt_id=receipt_id,
        description=description,
        amount=amount,
        created_at=created_at or datetime.utcnow(),
    )
    session.add(item)
    await session.flush()
    return item


async def add_claim(session, user_id, **fields) -> Claim:
    values = {"id": uuid.uuid4(), "user_id": user_id, "title": "Claim", "currency": "USD"}
    values.update(fields)
    claim = Claim(**values)
    session.add(claim)
    await session.flush()
    return claim


async def add_entry(session, source_id, content_text, **fields) -> UnifiedContentEntry:
    values = {
        "id": uuid.uuid4(),
        "source_type": "receipt",
        "source_id": source_id,
        "content_type": "full_text",
        "content_text": content_text,
        "entry_metadata": {},
        "language": "en",
    }
    values.update(fields)
    entry = UnifiedContentEntry(**values)
    session.add(entry)
    await session.flush()
    return entry


async def add_legacy_embedding(session, receipt_id, content_type="full_text", embedding=None, **fields):
    values = {
        "id": uuid.uuid4(),
        "receipt_id": receipt_id,
        "content_type": content_type,
        "embedding": embedding,
        "legacy_metadata": {},
    }
    values.update(fields)
    legacy = LegacyReceiptEmbedding(**values)
    session.add(legacy)
    await session.flush()
    return legacy
