"""
FastAPI dependencies
"""

from typing import AsyncIterator
from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession
from refresh.runtime import RefreshRuntime


def get_runtime(request: Request) -> RefreshRuntime:
    """Runtime created at application startup"""
    return request.app.state.runtime


async def get_db(request: Request) -> AsyncIterator[AsyncSession]:
    """Database session scoped to one request"""
    runtime = get_runtime(request)
    async with runtime.database.session() as session:
        yield session
