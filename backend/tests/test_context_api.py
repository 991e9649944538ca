"""
Tests for the /api/context endpoints: auth, error mapping and payload shape.
"""

import uuid
from datetime import datetime
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from httpx import AsyncClient, ASGITransport

from ads_copilot.errors import AccessDenied, NeedsReconnection
from ads_copilot.main import app
from ads_copilot.routers.context import get_context_builder
from ads_copilot.schemas import Campaign, ConsolidatedAccount, ConsolidatedAccountData, Metrics
from ads_copilot.services.context_builder import build_ai_context
from ads_copilot.services.insights import generate_insights

ACCOUNT_ID = str(uuid.uuid4())


@pytest.fixture
def anyio_backend():
    return "asyncio"


def _bundle(query=None):
    campaigns = [Campaign(id="1", name="Brand", status="ENABLED",
                          metrics=Metrics(clicks=100, impressions=1000, cost=200, conversions=5))]
    data = ConsolidatedAccountData(
        account=ConsolidatedAccount(
            id=ACCOUNT_ID, customer_id="1234567890", account_name="Acme", currency_code="USD",
            connection_status="CONNECTED", last_successful_fetch=datetime(2025, 6, 30, 11, 0),
        ),
        campaigns=campaigns,
        insights=generate_insights(campaigns, [], []),
    )
    return build_ai_context(data, query=query, now=datetime(2025, 6, 30, 12, 0))


@pytest.fixture
def builder():
    mock = MagicMock()
    mock.prepare_ai_context = AsyncMock(side_effect=lambda account_id, filters, query=None, user_id=None: _bundle(query))
    mock.consolidation.load_account = AsyncMock()
    mock.consolidation.clear_account_cache = AsyncMock(return_value=3)
    app.dependency_overrides[get_context_builder] = lambda: mock
    yield mock
    app.dependency_overrides.pop(get_context_builder, None)


def _no_api_key():
    return patch("ads_copilot.auth.get_settings", return_value=SimpleNamespace(api_key="", is_production=False))


async def _post(path, json, headers=None):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        return await client.post(path, json=json, headers=headers or {})


@pytest.mark.anyio
async def test_context_bundle_returned(builder):
    with _no_api_key():
        response = await _post("/api/context", {"account_id": ACCOUNT_ID, "query": "budget check"})
    assert response.status_code == 200
    body = response.json()
    assert body["structured_data"]["account_summary"]["account_name"] == "Acme"
    assert body["query_specific_data"]["type"] == "budget_analysis"
    assert body["natural_language"]["executive_summary"].startswith('Account "Acme"')


@pytest.mark.anyio
async def test_relevant_context_for_question(builder):
    with _no_api_key():
        response = await _post("/api/context/relevant", {"account_id": ACCOUNT_ID, "query": "which campaign has the most conversions?"})
    assert response.status_code == 200
    relevant = response.json()["relevant"]
    assert relevant["focus"] == ["campaigns"]
    assert relevant["metric"] == "conversions"
    assert relevant["data"]["campaigns"][0]["name"] == "Brand"


@pytest.mark.anyio
async def test_refresh_clears_cache_first(builder):
    with _no_api_key():
        response = await _post("/api/context/refresh", {"account_id": ACCOUNT_ID, "user_id": "u1"})
    assert response.status_code == 200
    assert response.json()["cleared"] == 3
    builder.consolidation.load_account.assert_awaited_once_with(ACCOUNT_ID, "u1")
    builder.consolidation.clear_account_cache.assert_awaited_once_with(ACCOUNT_ID)


@pytest.mark.anyio
async def test_access_denied_maps_to_403(builder):
    builder.prepare_ai_context.side_effect = AccessDenied("Account not found or access denied", account_id=ACCOUNT_ID)
    with _no_api_key():
        response = await _post("/api/context", {"account_id": ACCOUNT_ID})
    assert response.status_code == 403
    assert response.json() == {
        "error": "Account not found or access denied",
        "code": "account_access_denied",
        "reconnect": False,
    }


@pytest.mark.anyio
async def test_reconnect_required_maps_to_400(builder):
    builder.prepare_ai_context.side_effect = NeedsReconnection("Reconnect needed", account_id=ACCOUNT_ID)
    with _no_api_key():
        response = await _post("/api/context", {"account_id": ACCOUNT_ID})
    assert response.status_code == 400
    assert response.json()["reconnect"] is True


@pytest.mark.anyio
async def test_api_key_required_when_configured(builder):
    settings = SimpleNamespace(api_key="secret-key", is_production=True)
    with patch("ads_copilot.auth.get_settings", return_value=settings):
        missing = await _post("/api/context", {"account_id": ACCOUNT_ID})
        wrong = await _post("/api/context", {"account_id": ACCOUNT_ID}, {"Authorization": "Bearer nope"})
        ok = await _post("/api/context", {"account_id": ACCOUNT_ID}, {"Authorization": "Bearer secret-key"})
    assert missing.status_code == 401
    assert wrong.status_code == 401
    assert ok.status_code == 200
