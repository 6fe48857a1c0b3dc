import os
import uuid
from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from visibility_tracker.core.config import settings

# Override settings for tests
settings.app_env = "development"
settings.scoring_refresh_view = False
settings.collection_batch_pause_seconds = 0.0

import visibility_tracker.models  # noqa: E402,F401  (registers every table)
from visibility_tracker.db.base import Base  # noqa: E402
from visibility_tracker.db.postgres import get_db  # noqa: E402
from visibility_tracker.main import app  # noqa: E402
from visibility_tracker.models.brand import Brand, Competitor  # noqa: E402
from visibility_tracker.models.collector_result import CollectorResult  # noqa: E402
from visibility_tracker.models.query import Query  # noqa: E402

# Postgres when TEST_DATABASE_URL is set, otherwise a throwaway SQLite file per test
TEST_DB_URL = os.environ.get("TEST_DATABASE_URL", "")


def _make_engine(tmp_path):
    if TEST_DB_URL:
        return create_async_engine(TEST_DB_URL, echo=False, poolclass=NullPool)

    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        echo=False,
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )

    # Take the write lock at BEGIN so concurrent writers queue instead of
    # failing with "database is locked" on lock upgrade.
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    engine = _make_engine(tmp_path)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


# ==========================================================================
# Factories
# ==========================================================================


@pytest_asyncio.fixture
async def brand_setup(session_factory):
    """BrandX with two competitors (CompetitorY active, OldRival inactive) and one query."""
    customer_id = uuid.uuid4()
    brand = Brand(
        id=uuid.uuid4(),
        customer_id=customer_id,
        name="BrandX",
        brand_metadata={"aliases": ["Brand X"]},
    )
    competitor = Competitor(id=uuid.uuid4(), brand_id=brand.id, competitor_name="CompetitorY", is_active=True)
    inactive = Competitor(id=uuid.uuid4(), brand_id=brand.id, competitor_name="OldRival", is_active=False)
    query = Query(
        id=uuid.uuid4(),
        brand_id=brand.id,
        customer_id=customer_id,
        query_text="Which running shoes are best?",
        topic="running shoes",
    )
    async with session_factory() as session:
        session.add(brand)
        await session.flush()
        session.add_all([competitor, inactive, query])
        await session.commit()

    return {
        "customer_id": customer_id,
        "brand_id": brand.id,
        "competitor_id": competitor.id,
        "inactive_competitor_id": inactive.id,
        "query_id": query.id,
    }


@pytest.fixture
def make_result(session_factory, brand_setup):
    """Insert a completed CollectorResult waiting for scoring."""

    async def _make(raw_answer: str | None = "BrandX is great.", **overrides) -> int:
        values = {
            "brand_id": brand_setup["brand_id"],
            "customer_id": brand_setup["customer_id"],
            "query_id": brand_setup["query_id"],
            "collector_type": "chatgpt",
            "provider": "brightdata",
            "question": "Which running shoes are best?",
            "topic": "running shoes",
            "raw_answer": raw_answer,
            "citations": [],
            "urls": [],
            "status": "completed",
            "status_log": [],
            "scoring_status": "pending",
        }
        values.update(overrides)
        async with session_factory() as session:
            row = CollectorResult(**values)
            session.add(row)
            await session.commit()
            return row.id

    return _make


@pytest_asyncio.fixture
async def client(session_factory) -> AsyncGenerator[AsyncClient, None]:
    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()
