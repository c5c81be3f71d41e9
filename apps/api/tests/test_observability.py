from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from carsa_api.core.settings import settings

CUSTOMER_WALLET = "9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM"


@pytest.mark.asyncio
async def test_orchestration_snapshot_counts_outcomes(app_with_db, merchant, ledger) -> None:
    app, _ = app_with_db
    body = {"merchantId": str(merchant.id), "customerWallet": CUSTOMER_WALLET, "fiatAmount": 100}

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        await client.post("/purchase", json={**body, "idempotencyKey": "obs-1"})
        await client.post("/purchase", json={**body, "idempotencyKey": "obs-1"})
        ledger.fail_next()
        await client.post("/purchase", json={**body, "idempotencyKey": "obs-2"})
        response = await client.get("/observability/orchestration")

    assert response.status_code == 200
    payload = response.json()
    outcomes = payload["outcomes"]["purchase"]
    assert outcomes["succeeded"] == 1
    assert outcomes["replayed"] == 1
    assert outcomes["ledger"] == 1
    assert payload["ledger_submissions"]["purchase"] == 2
    assert payload["events"]["last_failure_kind"] == "ledger"


@pytest.mark.asyncio
async def test_prometheus_metrics_render(app_with_db, merchant) -> None:
    app, _ = app_with_db
    body = {"merchantId": str(merchant.id), "customerWallet": CUSTOMER_WALLET, "fiatAmount": 100}

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        await client.post("/purchase", json=body)
        response = await client.get("/observability/prometheus")

    assert response.status_code == 200
    assert 'carsa_orchestration_outcomes_total{operation="purchase",outcome="succeeded"} 1' in response.text
    assert 'carsa_ledger_submissions_total{operation="purchase"} 1' in response.text


@pytest.mark.asyncio
async def test_observability_requires_key_when_configured(app_with_db) -> None:
    app, _ = app_with_db
    previous_key = settings.internal_api_key
    settings.internal_api_key = "snapshot-key"

    try:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            response = await client.get("/observability/orchestration")
            authorised = await client.get("/observability/orchestration", headers={"X-API-Key": "snapshot-key"})
        assert response.status_code == 401
        assert authorised.status_code == 200
    finally:
        settings.internal_api_key = previous_key
