"""
Tests for the Google Ads REST client: GAQL building, 401 refresh-and-retry
and upstream error mapping.
"""

import uuid
from datetime import date
from types import SimpleNamespace
from unittest.mock import AsyncMock

import httpx
import pytest

from ads_copilot.ads_client import (
    GoogleAdsClient,
    build_campaign_query,
    build_date_condition,
    build_keyword_query,
)
from pydantic import ValidationError

from ads_copilot.errors import UpstreamError
from ads_copilot.schemas import DataFilters


@pytest.fixture
def anyio_backend():
    return "asyncio"


ACCOUNT = SimpleNamespace(id=uuid.uuid4(), customer_id="123-456-7890")


def _tokens():
    provider = SimpleNamespace()
    provider.get_access_token = AsyncMock(return_value="old-token")
    provider.refresh_access_token = AsyncMock(return_value="new-token")
    return provider


def _client(handler, tokens=None):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GoogleAdsClient("dev-token", tokens or _tokens(), http_client=http), http


# ── GAQL ──────────────────────────────────────────────────────────────

def test_date_condition_variants():
    assert build_date_condition(DataFilters(date_range="LAST_7_DAYS")) == "segments.date DURING LAST_7_DAYS"
    custom = DataFilters(date_range="CUSTOM", start_date=date(2025, 1, 1), end_date=date(2025, 1, 31))
    assert build_date_condition(custom) == "segments.date BETWEEN '20250101' AND '20250131'"
    ninety = build_date_condition(DataFilters(date_range="LAST_90_DAYS"), today=date(2025, 4, 1))
    assert ninety == "segments.date BETWEEN '20250101' AND '20250331'"
    assert build_date_condition(DataFilters(date_range="CUSTOM")) == "segments.date DURING LAST_30_DAYS"


def test_campaign_query_includes_status_and_limit():
    query = build_campaign_query(DataFilters(limit=20, campaign_status=["enabled", "paused"]))
    assert "FROM campaign" in query
    assert "campaign.status IN ('ENABLED', 'PAUSED')" in query
    assert query.endswith("LIMIT 20")
    assert "metrics.cost_micros" in query


def test_keyword_query_always_selects_cost():
    query = build_keyword_query(DataFilters(metrics=["clicks"]))
    assert "metrics.clicks, metrics.cost_micros" in query
    assert "FROM keyword_view" in query


def test_filters_reject_values_that_would_alter_the_query():
    with pytest.raises(ValidationError):
        DataFilters(metrics=["clicks FROM campaign --"])
    with pytest.raises(ValidationError):
        DataFilters(metrics=["Clicks"])
    with pytest.raises(ValidationError):
        DataFilters(campaign_status=["ENABLED') OR ('1'='1"])
    assert DataFilters(campaign_status=["paused"]).campaign_status == ["PAUSED"]


# ── Requests ─────────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_search_flattens_stream_batches():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["headers"] = request.headers
        return httpx.Response(200, json=[{"results": [{"campaign": {"id": "1"}}]}, {"results": [{"campaign": {"id": "2"}}]}])

    client, http = _client(handler)
    async with http:
        result = await client.get_campaigns(ACCOUNT, DataFilters())

    assert [row["campaign"]["id"] for row in result["campaigns"]] == ["1", "2"]
    assert seen["url"].endswith("/v20/customers/1234567890/googleAds:searchStream")
    assert seen["headers"]["developer-token"] == "dev-token"
    assert seen["headers"]["login-customer-id"] == "1234567890"
    assert seen["headers"]["authorization"] == "Bearer old-token"


@pytest.mark.anyio
async def test_unauthorized_refreshes_token_once():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.headers["authorization"])
        if len(calls) == 1:
            return httpx.Response(401, json={"error": "expired"})
        return httpx.Response(200, json=[{"results": [{"adGroup": {"id": "7"}}]}])

    tokens = _tokens()
    client, http = _client(handler, tokens)
    async with http:
        result = await client.get_ad_groups(ACCOUNT, DataFilters())

    assert calls == ["Bearer old-token", "Bearer new-token"]
    tokens.refresh_access_token.assert_awaited_once()
    assert result == {"adGroups": [{"adGroup": {"id": "7"}}]}


@pytest.mark.anyio
async def test_second_unauthorized_raises_upstream_error():
    client, http = _client(lambda request: httpx.Response(401, text="nope"))
    async with http:
        with pytest.raises(UpstreamError) as exc:
            await client.get_keywords(ACCOUNT, DataFilters())
    assert exc.value.upstream_status == 401


@pytest.mark.anyio
async def test_server_error_raises_upstream_error():
    client, http = _client(lambda request: httpx.Response(500, text="backend error"))
    async with http:
        with pytest.raises(UpstreamError) as exc:
            await client.get_campaigns(ACCOUNT, DataFilters())
    assert exc.value.status_code == 502
    assert exc.value.upstream_status == 500


@pytest.mark.anyio
async def test_transport_failure_raises_upstream_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client, http = _client(handler)
    async with http:
        with pytest.raises(UpstreamError):
            await client.get_campaign_daily_metrics(ACCOUNT, date(2025, 6, 29))


@pytest.mark.anyio
async def test_empty_stream_returns_no_rows():
    client, http = _client(lambda request: httpx.Response(200, json=[]))
    async with http:
        assert await client.get_campaigns(ACCOUNT, DataFilters()) == {"campaigns": []}
