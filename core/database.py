"""
Database handle for SQLAlchemy async.

The engine is owned by a ``Database`` instance that is created once at
process start and passed to the components that need it, so tests can
hand in an in-memory engine of their own.
"""

from typing import AsyncIterator, Optional
from contextlib import asynccontextmanager
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from models.base import Base
import logging

logger = logging.getLogger(__name__)


class Database:
    """
    Owns the async engine and session factory.

    Responsibilities:
    - Build the engine from a connection URL (or accept a prepared one)
    - Hand out short-lived sessions, one per unit of work
    - Create tables for bootstrap and tests
    - Dispose the connection pool on shutdown
    """

    def __init__(
        self,
        url: Optional[str] = None,
        engine: Optional[AsyncEngine] = None,
        echo: bool = False,
    ):
        if engine is None:
            if not url:
                raise ValueError("Database requires either a URL or an engine")
            engine = create_async_engine(url, echo=echo, pool_pre_ping=True)

        self.engine = engine
        self.session_maker = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    @classmethod
    def from_settings(cls, settings) -> "Database":
        return cls(url=settings.DATABASE_URL, echo=settings.DATABASE_ECHO)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Open a session; uncommitted work is rolled back on exit."""
        async with self.session_maker() as session:
            yield session

    async def create_all(self):
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables created")

    async def dispose(self):
        await self.engine.dispose()
        logger.info("Database engine disposed")

    def describe(self) -> str:
        """Connection target without credentials, for startup logs."""
        url = self.engine.url
        return f"{url.drivername}://{url.host or ''}/{url.database or ''}"
