import httpx
import pytest_asyncio

from api.main import create_app


@pytest_asyncio.fixture
async def client(test_settings, runtime):
    """Test client bound to the test runtime"""
    app = create_app(settings=test_settings, runtime=runtime)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as test_client:
        yield test_client
