"""
Integration Test Fixtures
"""

import pytest
from httpx import AsyncClient, ASGITransport

from api.cancellations.main import create_app


@pytest.fixture
async def client(machine):
    """Async client over the API, bound to the test state machine."""
    transport = ASGITransport(app=create_app(engine=machine))
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
