import pytest
from httpx import ASGITransport, AsyncClient


@pytest.mark.asyncio
async def test_healthz(app_with_db) -> None:
    app, _ = app_with_db

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/healthz")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_readyz_reports_component_statuses(app_with_db) -> None:
    app, _ = app_with_db

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/readyz")

    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "ready"
    components = payload["components"]
    assert components["database"]["status"] == "ready"
    assert components["reconciliation_worker"]["status"] == "disabled"
