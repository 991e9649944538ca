"""
Tests for the scheduler endpoints.
"""

from datetime import date
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from httpx import AsyncClient, ASGITransport

from ads_copilot.main import app
from ads_copilot.routers.cron import get_sync_service


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def sync_service():
    service = MagicMock()
    service.sync_daily_metrics = AsyncMock(return_value={
        "synced_date": "2025-06-29", "accounts": 2, "succeeded": 2, "failed": 0, "results": [],
    })
    app.dependency_overrides[get_sync_service] = lambda: service
    with patch("ads_copilot.routers.cron.get_settings", return_value=SimpleNamespace(cron_secret="cron-s3cret")):
        yield service
    app.dependency_overrides.pop(get_sync_service, None)


async def _post(path, json=None, headers=None):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        return await client.post(path, json=json, headers=headers or {})


@pytest.mark.anyio
async def test_sync_daily_rejects_bad_secret(sync_service):
    response = await _post("/api/cron/sync-daily", headers={"X-Cron-Secret": "wrong"})
    assert response.status_code == 401
    sync_service.sync_daily_metrics.assert_not_called()


@pytest.mark.anyio
async def test_sync_daily_with_bearer_secret(sync_service):
    response = await _post(
        "/api/cron/sync-daily",
        json={"date": "2025-06-29"},
        headers={"Authorization": "Bearer cron-s3cret"},
    )
    assert response.status_code == 200
    assert response.json()["succeeded"] == 2
    sync_service.sync_daily_metrics.assert_awaited_once_with(account_ids=None, day=date(2025, 6, 29))
