"""
Pytest configuration and fixtures
"""

from typing import AsyncGenerator, List

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.pool import NullPool

from core.config import Settings
from core.database import Database
from models.base import Base
from models.refresh_config import RefreshConfig
from tests.fakes import FakeWarehouse
from refresh.runtime import RefreshRuntime


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        DATABASE_URL="sqlite+aiosqlite://",
        SCHEDULER_ENABLED=False,
        REFRESH_BATCH_SIZE=3,
        FUNCTION_TIMEOUT_SECONDS=300,
        TIME_BUDGET_SAFETY_MARGIN_SECONDS=30,
        MIN_REFRESH_INTERVAL_MINUTES=60,
        WEBHOOK_BACKOFF_SECONDS=[5, 30, 300],
        WEBHOOK_MAX_ATTEMPTS=3,
    )


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    """File-backed SQLite so every session gets its own connection"""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'refresh_test.db'}",
        echo=False,
        poolclass=NullPool,
    )
    
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    
    yield engine
    
    await engine.dispose()


@pytest.fixture
def database(test_engine) -> Database:
    return Database(engine=test_engine)


@pytest_asyncio.fixture(scope="function")
async def db_session(database) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for tests"""
    async with database.session() as session:
        yield session
        await session.rollback()


@pytest.fixture
def warehouse() -> FakeWarehouse:
    return FakeWarehouse()


@pytest.fixture
def webhook_requests() -> List[httpx.Request]:
    return []


@pytest_asyncio.fixture
async def http_client(webhook_requests):
    """HTTP client whose subscribers always answer 200"""
    def handler(request: httpx.Request) -> httpx.Response:
        webhook_requests.append(request)
        return httpx.Response(200, json={"ok": True})
    
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        yield client


@pytest.fixture
def runtime(test_settings, database, warehouse, http_client) -> RefreshRuntime:
    return RefreshRuntime(test_settings, database, warehouse, http_client)


@pytest_asyncio.fixture
async def seed_config(db_session):
    """Factory inserting a refresh_config row"""
    async def _seed(
        table_name: str = "asin_performance_data",
        function_name: str = "refresh-asin-performance",
        **overrides
    ) -> RefreshConfig:
        values = dict(
            table_schema="sqp",
            table_name=table_name,
            function_name=function_name,
            is_enabled=True,
            refresh_frequency_hours=24,
            priority=100,
            last_refresh_at=None,
        )
        values.update(overrides)
        config = RefreshConfig(**values)
        db_session.add(config)
        await db_session.commit()
        return config
    
    return _seed
