"""
Tests for the consolidation service: row normalization, access checks,
cache-first fetching and partial-failure degradation.
"""

import asyncio
import uuid
from contextlib import asynccontextmanager
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import InvalidRequestError
from sqlalchemy.sql.dml import Insert

from ads_copilot.errors import AccessDenied, NeedsReconnection, NotConnected, UpstreamError
from ads_copilot.models import GoogleAdsAccount
from ads_copilot.schemas import Campaign, DataFilters
from ads_copilot.services.consolidation import (
    ConsolidationService,
    aggregate_account_metrics,
    normalize_campaign,
    normalize_keyword,
    normalize_metrics,
)
from ads_copilot.services.insights import InsightThresholds
from ads_copilot.services.metrics_cache import MetricsCache


@pytest.fixture
def anyio_backend():
    return "asyncio"


CAMPAIGN_ROW = {
    "campaign": {"id": "111", "name": "Brand", "status": "ENABLED", "advertisingChannelType": "SEARCH"},
    "campaignBudget": {"amountMicros": "25000000"},
    "metrics": {
        "clicks": "40",
        "impressions": "1000",
        "costMicros": "120500000",
        "conversions": 4.0,
        "averageCpc": "3012500",
    },
}

KEYWORD_ROW = {
    "adGroupCriterion": {"criterionId": "9", "status": "ENABLED", "keyword": {"text": "running shoes", "matchType": "PHRASE"}},
    "campaign": {"name": "Brand"},
    "adGroup": {"name": "Shoes"},
    "metrics": {"clicks": "12", "impressions": "300", "costMicros": "18000000", "conversions": 1},
}


def _account(**overrides) -> GoogleAdsAccount:
    values = dict(
        id=uuid.uuid4(),
        user_id="user-1",
        customer_id="1234567890",
        account_name="Acme",
        currency_code="EUR",
        time_zone="Europe/Amsterdam",
        connection_status="CONNECTED",
        needs_reconnection=False,
        last_successful_fetch=None,
    )
    values.update(overrides)
    return GoogleAdsAccount(**values)


class FakeCache:
    def __init__(self, entries=None):
        self.entries = entries or {}
        self.stored = {}

    async def get(self, account_id, cache_key, ttl_hours=None):
        return self.entries.get(cache_key)

    async def set(self, account_id, cache_key, data, query_hash, ttl_hours=None):
        self.stored[cache_key] = SimpleNamespace(data=data, query_hash=query_hash)
        return True

    async def get_historical_data(self, account_id, entity_type, start_date, end_date):
        return []

    async def clear_account(self, account_id):
        return len(self.entries)


def _client(campaigns=None, ad_groups=None, keywords=None):
    client = MagicMock()
    client.get_campaigns = AsyncMock(return_value={"campaigns": campaigns or []})
    client.get_ad_groups = AsyncMock(return_value={"adGroups": ad_groups or []})
    client.get_keywords = AsyncMock(return_value={"keywords": keywords or []})
    return client


def _service(account, client, cache=None):
    db = MagicMock()
    db.get = AsyncMock(return_value=account)
    return ConsolidationService(db, client, cache=cache or FakeCache(), thresholds=InsightThresholds())


# ── Normalization ─────────────────────────────────────────────────────

def test_normalize_metrics_converts_micros():
    m = normalize_metrics(CAMPAIGN_ROW["metrics"])
    assert m.clicks == 40
    assert m.impressions == 1000
    assert m.cost == 120.5
    assert m.cpc == 3.01
    assert m.ctr == 0.04


def test_normalize_metrics_snake_case_and_missing_fields():
    m = normalize_metrics({"clicks": 0, "cost_micros": 0})
    assert m.cost == 0
    assert m.cpc == 0
    assert m.ctr == 0
    assert normalize_metrics(None).clicks == 0


def test_normalize_campaign_and_keyword():
    campaign = normalize_campaign(CAMPAIGN_ROW)
    assert campaign.id == "111"
    assert campaign.budget_amount == 25.0
    assert campaign.channel_type == "SEARCH"
    assert campaign.is_active

    keyword = normalize_keyword(KEYWORD_ROW)
    assert keyword.text == "running shoes"
    assert keyword.match_type == "PHRASE"
    assert keyword.campaign_name == "Brand"
    assert keyword.ad_group_name == "Shoes"
    assert keyword.metrics.cost == 18.0


def test_aggregate_account_metrics():
    campaigns = [
        normalize_campaign(CAMPAIGN_ROW),
        Campaign(id="2", status="PAUSED"),
    ]
    totals = aggregate_account_metrics(campaigns)
    assert totals.total_campaigns == 2
    assert totals.active_campaigns == 1
    assert totals.total_spend == 120.5
    assert totals.conversion_rate == 0.1

    assert aggregate_account_metrics([]).avg_cpc == 0


# ── Access checks ────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_unknown_account_is_denied():
    service = _service(None, _client())
    with pytest.raises(AccessDenied):
        await service.get_consolidated_account_data(uuid.uuid4())


@pytest.mark.anyio
async def test_invalid_account_id_is_denied():
    service = _service(None, _client())
    with pytest.raises(AccessDenied):
        await service.load_account("not-a-uuid")


@pytest.mark.anyio
async def test_other_users_account_is_denied():
    account = _account(user_id="someone-else")
    service = _service(account, _client())
    with pytest.raises(AccessDenied):
        await service.load_account(account.id, user_id="user-1")


@pytest.mark.anyio
async def test_disconnected_account_rejected():
    account = _account(connection_status="DISCONNECTED")
    client = _client()
    service = _service(account, client)
    with pytest.raises(NotConnected) as exc:
        await service.get_consolidated_account_data(account.id)
    assert exc.value.reconnect is True
    client.get_campaigns.assert_not_called()


@pytest.mark.anyio
async def test_account_flagged_for_reconnection_rejected():
    account = _account(needs_reconnection=True)
    service = _service(account, _client())
    with pytest.raises(NeedsReconnection):
        await service.load_account(account.id)


# ── Fetching ─────────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_consolidates_and_caches_live_fetch():
    account = _account()
    cache = FakeCache()
    service = _service(account, _client(campaigns=[CAMPAIGN_ROW], keywords=[KEYWORD_ROW]), cache)

    data = await service.get_consolidated_account_data(str(account.id), DataFilters(), user_id="user-1")

    assert data.account.currency_code == "EUR"
    assert data.account.metrics.total_spend == 120.5
    assert [c.id for c in data.campaigns] == ["111"]
    assert data.keywords[0].text == "running shoes"
    assert data.ad_groups == []
    assert len(cache.stored) == 3
    assert any(key.startswith("campaign_LAST_30_DAYS_") for key in cache.stored)
    assert any(key.startswith("keyword_LAST_30_DAYS_") for key in cache.stored)
    assert account.last_successful_fetch is not None


@pytest.mark.anyio
async def test_partial_failure_degrades_to_empty_dataset():
    account = _account()
    client = _client(campaigns=[CAMPAIGN_ROW])
    client.get_keywords = AsyncMock(side_effect=UpstreamError("boom", upstream_status=500))
    service = _service(account, client)

    data = await service.get_consolidated_account_data(account.id)

    assert len(data.campaigns) == 1
    assert data.keywords == []
    assert data.insights.keyword_opportunities == []


@pytest.mark.anyio
async def test_reconnection_error_aborts_the_build():
    account = _account()
    client = _client(campaigns=[CAMPAIGN_ROW])
    client.get_ad_groups = AsyncMock(side_effect=NeedsReconnection("expired", account_id=str(account.id)))
    service = _service(account, client)

    with pytest.raises(NeedsReconnection):
        await service.get_consolidated_account_data(account.id)


@pytest.mark.anyio
async def test_cache_hit_skips_network():
    account = _account()
    first_cache = FakeCache()
    await _service(account, _client(campaigns=[CAMPAIGN_ROW]), first_cache).get_consolidated_account_data(account.id)

    client = _client()
    service = _service(account, client, FakeCache(entries=dict(first_cache.stored)))
    data = await service.get_consolidated_account_data(account.id)

    client.get_campaigns.assert_not_called()
    client.get_ad_groups.assert_not_called()
    assert data.campaigns[0].name == "Brand"


@pytest.mark.anyio
async def test_cache_entry_with_other_query_hash_is_a_miss():
    account = _account()
    first_cache = FakeCache()
    await _service(account, _client(campaigns=[CAMPAIGN_ROW]), first_cache).get_consolidated_account_data(account.id)
    stale = {key: SimpleNamespace(data=entry.data, query_hash="different") for key, entry in first_cache.stored.items()}

    client = _client()
    await _service(account, client, FakeCache(entries=stale)).get_consolidated_account_data(account.id)

    client.get_campaigns.assert_awaited_once()


# ── Real cache over one request session ──────────────────────────────

class SingleConnectionSession:
    """
    Stands in for one AsyncSession: rejects overlapping operations the way
    SQLAlchemy does and keeps upserted cache rows in memory.
    """

    def __init__(self):
        self.rows = {}
        self.busy = False

    async def execute(self, stmt):
        if self.busy:
            raise InvalidRequestError("This session is provisioning a new connection; concurrent operations are not permitted")
        self.busy = True
        try:
            await asyncio.sleep(0)
            params = stmt.compile(dialect=postgresql.dialect()).params
            cache_key = next(v for k, v in params.items() if k.startswith("cache_key"))
            result = MagicMock()
            if isinstance(stmt, Insert):
                self.rows[cache_key] = SimpleNamespace(
                    data=params["data"],
                    query_hash=params["query_hash"],
                    created_at=params["created_at"],
                    expires_at=params["expires_at"],
                )
            else:
                result.scalar_one_or_none.return_value = self.rows.get(cache_key)
            return result
        finally:
            self.busy = False

    @asynccontextmanager
    async def begin_nested(self):
        yield


def _slow_client(campaigns=None, ad_groups=None, keywords=None):
    calls = []

    def endpoint(name, key, rows):
        async def call(account, filters):
            calls.append(name)
            await asyncio.sleep(0)
            return {key: rows or []}
        return call

    client = SimpleNamespace(
        get_campaigns=endpoint("campaigns", "campaigns", campaigns),
        get_ad_groups=endpoint("ad_groups", "adGroups", ad_groups),
        get_keywords=endpoint("keywords", "keywords", keywords),
    )
    return client, calls


@pytest.mark.anyio
async def test_cold_fetch_caches_every_dataset_on_one_session():
    account = _account()
    session = SingleConnectionSession()
    client, calls = _slow_client(campaigns=[CAMPAIGN_ROW], keywords=[KEYWORD_ROW])
    service = ConsolidationService(session, client, cache=MetricsCache(session), thresholds=InsightThresholds())

    campaigns, ad_groups, keywords = await service.fetch_entities(account, DataFilters())

    assert sorted(calls) == ["ad_groups", "campaigns", "keywords"]
    assert len(session.rows) == 3
    assert [c.id for c in campaigns] == ["111"]
    assert keywords[0].text == "running shoes"

    warm_client, warm_calls = _slow_client()
    warm = ConsolidationService(session, warm_client, cache=MetricsCache(session), thresholds=InsightThresholds())
    campaigns, ad_groups, keywords = await warm.fetch_entities(account, DataFilters())

    assert warm_calls == []
    assert campaigns[0].name == "Brand"
    assert keywords[0].text == "running shoes"
    assert ad_groups == []


@pytest.mark.anyio
async def test_failed_dataset_is_not_cached():
    account = _account()
    session = SingleConnectionSession()
    client, _ = _slow_client(campaigns=[CAMPAIGN_ROW])

    async def broken(account, filters):
        raise UpstreamError("boom", upstream_status=500)

    client.get_keywords = broken
    service = ConsolidationService(session, client, cache=MetricsCache(session), thresholds=InsightThresholds())

    campaigns, ad_groups, keywords = await service.fetch_entities(account, DataFilters())

    assert keywords == []
    assert len(campaigns) == 1
    assert len(session.rows) == 2
    assert not any(key.startswith("keyword_") for key in session.rows)
