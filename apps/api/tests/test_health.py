import pytest
from httpx import ASGITransport, AsyncClient

from main import app


@pytest.mark.asyncio
async def test_liveness_and_root():
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        live = await client.get("/health/live")
        root = await client.get("/")

    assert live.status_code == 200
    assert live.json() == {"alive": True}
    assert root.json()["name"] == "Content Studio Credits API"


@pytest.mark.asyncio
async def test_readiness_reports_database():
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        ready = await client.get("/health/ready")

    assert ready.status_code == 200
    assert ready.json() == {"ready": True}
