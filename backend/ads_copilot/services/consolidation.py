"""
Data Consolidation Service — one canonical view of a Google Ads account.

Loads and access-checks the account, then reads each dataset from the cache.
Misses are fetched from the API concurrently and written back one at a time.
Raw rows are normalized into typed entities before the insights engine runs.

A failing dataset degrades to an empty list; only credential failures abort.
"""

import asyncio
import logging
import uuid
from datetime import date, timedelta
from dataclasses import dataclass
from typing import Any, Callable, Optional
from sqlalchemy.ext.asyncio import AsyncSession

from ads_copilot.ads_client import (
    AD_GROUP_METRICS,
    CAMPAIGN_METRICS,
    KEYWORD_METRICS,
    AdsDataClient,
)
from ads_copilot.config import get_settings
from ads_copilot.errors import AccessDenied, NeedsReconnection, NotConnected, PartialDatasetFailure
from ads_copilot.models import ConnectionStatus, EntityType, GoogleAdsAccount
from ads_copilot.schemas import (
    AccountMetrics,
    AdGroup,
    Campaign,
    ConsolidatedAccount,
    ConsolidatedAccountData,
    DataFilters,
    Keyword,
    Metrics,
)
from ads_copilot.services.insights import InsightThresholds, generate_insights
from ads_copilot.services.metrics_cache import MetricsCache, generate_cache_key, generate_query_hash
from ads_copilot.utils import micros_to_units, pick, safe_div, to_number, utcnow

logger = logging.getLogger(__name__)

HISTORY_DAYS = 14


# ── Normalization of raw API rows ─────────────────────────────────────

def normalize_metrics(raw: Optional[dict]) -> Metrics:
    """
    Canonical metrics from a REST (camelCase) or snake_case row.
    Micros become major units; ctr/cpc are computed when the source omits them.
    """
    raw = raw or {}
    clicks = int(to_number(pick(raw, "clicks")))
    impressions = int(to_number(pick(raw, "impressions")))

    cost_micros = pick(raw, "costMicros", "cost_micros")
    cost = micros_to_units(cost_micros) if cost_micros is not None else to_number(pick(raw, "cost"))

    ctr = pick(raw, "ctr")
    ctr = to_number(ctr) if ctr is not None else safe_div(clicks, impressions)

    cpc_micros = pick(raw, "averageCpc", "average_cpc")
    if cpc_micros is not None:
        cpc = micros_to_units(cpc_micros)
    else:
        cpc = to_number(pick(raw, "cpc"), default=safe_div(cost, clicks))

    return Metrics(
        clicks=clicks,
        impressions=impressions,
        cost=round(cost, 2),
        conversions=to_number(pick(raw, "conversions")),
        ctr=ctr,
        cpc=round(cpc, 2),
    )


def normalize_campaign(row: dict) -> Campaign:
    campaign = pick(row, "campaign", default={})
    budget = pick(row, "campaignBudget", "campaign_budget", default={})
    budget_micros = pick(budget, "amountMicros", "amount_micros")
    return Campaign(
        id=str(pick(campaign, "id", default="")),
        name=pick(campaign, "name", default=""),
        status=pick(campaign, "status", default="UNKNOWN"),
        channel_type=pick(campaign, "advertisingChannelType", "advertising_channel_type"),
        budget_amount=micros_to_units(budget_micros) if budget_micros is not None else 0.0,
        metrics=normalize_metrics(pick(row, "metrics")),
    )


def normalize_ad_group(row: dict) -> AdGroup:
    ad_group = pick(row, "adGroup", "ad_group", default={})
    campaign = pick(row, "campaign", default={})
    segments = pick(row, "segments", default={})
    return AdGroup(
        id=str(pick(ad_group, "id", default="")),
        name=pick(ad_group, "name", default=""),
        status=pick(ad_group, "status", default="UNKNOWN"),
        campaign_id=str(pick(campaign, "id")) if pick(campaign, "id") is not None else None,
        campaign_name=pick(campaign, "name", default=pick(row, "campaign_name", default="")),
        device=pick(segments, "device"),
        metrics=normalize_metrics(pick(row, "metrics")),
    )


def normalize_keyword(row: dict) -> Keyword:
    criterion = pick(row, "adGroupCriterion", "ad_group_criterion", default={})
    keyword = pick(criterion, "keyword", default={})
    return Keyword(
        id=str(pick(criterion, "criterionId", "criterion_id", default="")),
        text=pick(keyword, "text", default=""),
        match_type=pick(keyword, "matchType", "match_type", default="UNKNOWN"),
        status=pick(criterion, "status", default="UNKNOWN"),
        campaign_name=pick(pick(row, "campaign", default={}), "name", default=""),
        ad_group_name=pick(pick(row, "adGroup", "ad_group", default={}), "name", default=""),
        metrics=normalize_metrics(pick(row, "metrics")),
    )


def aggregate_account_metrics(campaigns: list[Campaign], last_updated=None) -> AccountMetrics:
    clicks = sum(c.metrics.clicks for c in campaigns)
    impressions = sum(c.metrics.impressions for c in campaigns)
    spend = sum(c.metrics.cost for c in campaigns)
    conversions = sum(c.metrics.conversions for c in campaigns)
    return AccountMetrics(
        total_campaigns=len(campaigns),
        active_campaigns=sum(1 for c in campaigns if c.is_active),
        total_spend=round(spend, 2),
        total_clicks=clicks,
        total_impressions=impressions,
        total_conversions=round(conversions, 2),
        avg_ctr=safe_div(clicks, impressions),
        avg_cpc=round(safe_div(spend, clicks), 2),
        conversion_rate=safe_div(conversions, clicks),
        last_updated=last_updated,
    )


# ── Dataset table ─────────────────────────────────────────────────────

@dataclass(frozen=True)
class _Dataset:
    name: str
    entity_type: str
    method: str
    response_key: str
    default_metrics: list[str]
    ttl_setting: str
    model: type
    normalize: Callable[[dict], Any]


DATASETS: dict[str, _Dataset] = {
    "campaigns": _Dataset(
        name="campaigns", entity_type=EntityType.CAMPAIGN.value, method="get_campaigns",
        response_key="campaigns", default_metrics=CAMPAIGN_METRICS,
        ttl_setting="cache_ttl_campaigns_hours", model=Campaign, normalize=normalize_campaign,
    ),
    "ad_groups": _Dataset(
        name="ad_groups", entity_type=EntityType.AD_GROUP.value, method="get_ad_groups",
        response_key="adGroups", default_metrics=AD_GROUP_METRICS,
        ttl_setting="cache_ttl_ad_groups_hours", model=AdGroup, normalize=normalize_ad_group,
    ),
    "keywords": _Dataset(
        name="keywords", entity_type=EntityType.KEYWORD.value, method="get_keywords",
        response_key="keywords", default_metrics=KEYWORD_METRICS,
        ttl_setting="cache_ttl_keywords_hours", model=Keyword, normalize=normalize_keyword,
    ),
}


def _range_token(filters: DataFilters) -> str:
    if filters.date_range == "CUSTOM" and filters.start_date and filters.end_date:
        return f"CUSTOM:{filters.start_date.isoformat()}:{filters.end_date.isoformat()}"
    return filters.date_range


class ConsolidationService:
    """Builds ConsolidatedAccountData for one account. Collaborators are injected per request."""

    def __init__(
        self,
        db: AsyncSession,
        client: AdsDataClient,
        cache: Optional[MetricsCache] = None,
        thresholds: Optional[InsightThresholds] = None,
    ):
        self.db = db
        self.client = client
        self.cache = cache if cache is not None else MetricsCache(db)
        self.thresholds = thresholds or InsightThresholds.from_settings()

    # ── Account access ───────────────────────────────────────────────

    async def load_account(self, account_id: Any, user_id: Optional[str] = None) -> GoogleAdsAccount:
        """Fetch the account and enforce ownership and connection state."""
        try:
            key = account_id if isinstance(account_id, uuid.UUID) else uuid.UUID(str(account_id))
        except ValueError:
            raise AccessDenied("Account not found or access denied", account_id=str(account_id))

        account = await self.db.get(GoogleAdsAccount, key)
        if account is None or (user_id is not None and account.user_id != user_id):
            logger.warning(f"Access denied to account {account_id} for user {user_id}")
            raise AccessDenied("Account not found or access denied", account_id=str(account_id))
        if account.needs_reconnection:
            raise NeedsReconnection(
                "This Google Ads account needs to be reconnected.", account_id=str(account.id)
            )
        if account.connection_status != ConnectionStatus.CONNECTED.value:
            raise NotConnected(
                f"Google Ads account is not connected (status: {account.connection_status}).",
                account_id=str(account.id),
            )
        return account

    # ── Fetching ─────────────────────────────────────────────────────

    def _cache_identity(self, dataset: _Dataset, account: GoogleAdsAccount, filters: DataFilters) -> tuple[str, str]:
        metrics = filters.metrics or dataset.default_metrics
        cache_key = generate_cache_key(dataset.entity_type, _range_token(filters), metrics)
        query_hash = generate_query_hash({
            "account_id": str(account.id),
            "entity_type": dataset.entity_type,
            "filters": filters.model_dump(mode="json"),
        })
        return cache_key, query_hash

    async def _read_cached(self, dataset: _Dataset, account: GoogleAdsAccount, filters: DataFilters) -> Optional[list]:
        cache_key, query_hash = self._cache_identity(dataset, account, filters)
        entry = await self.cache.get(account.id, cache_key)
        if entry is not None and entry.query_hash == query_hash:
            logger.info(f"Cache hit: {cache_key} for account {account.id}")
            return [dataset.model.model_validate(item) for item in entry.data or []]
        return None

    async def _fetch_live(self, dataset: _Dataset, account: GoogleAdsAccount, filters: DataFilters) -> list:
        response = await getattr(self.client, dataset.method)(account, filters)
        rows = (response or {}).get(dataset.response_key) or []
        return [dataset.normalize(row) for row in rows]

    async def _write_cached(
        self, dataset: _Dataset, account: GoogleAdsAccount, filters: DataFilters, entities: list
    ) -> None:
        cache_key, query_hash = self._cache_identity(dataset, account, filters)
        await self.cache.set(
            account.id,
            cache_key,
            [e.model_dump(mode="json") for e in entities],
            query_hash,
            ttl_hours=getattr(get_settings(), dataset.ttl_setting),
        )

    async def fetch_entities(
        self,
        account: GoogleAdsAccount,
        filters: DataFilters,
    ) -> tuple[list[Campaign], list[AdGroup], list[Keyword]]:
        """
        Cache-first fetch of all three datasets with per-dataset degradation.
        Only the API calls run concurrently; cache reads and writes share the
        request session and run one at a time.
        """
        datasets = [DATASETS["campaigns"], DATASETS["ad_groups"], DATASETS["keywords"]]
        cached = {ds.name: await self._read_cached(ds, account, filters) for ds in datasets}

        missing = [ds for ds in datasets if cached[ds.name] is None]
        live = await asyncio.gather(
            *(self._fetch_live(ds, account, filters) for ds in missing),
            return_exceptions=True,
        )
        results = dict(cached)
        results.update({ds.name: result for ds, result in zip(missing, live)})

        resolved: list[list] = []
        for ds in datasets:
            result = results[ds.name]
            if isinstance(result, (NeedsReconnection, asyncio.CancelledError)):
                raise result
            if isinstance(result, BaseException):
                failure = PartialDatasetFailure(ds.name, str(account.id), result)
                logger.warning(f"Partial data for account {account.id}: {failure.message}")
                resolved.append([])
                continue
            if ds in missing:
                await self._write_cached(ds, account, filters, result)
                if ds.entity_type == EntityType.CAMPAIGN.value:
                    account.last_successful_fetch = utcnow()
            resolved.append(result)

        campaigns, ad_groups, keywords = resolved
        logger.info(
            f"Consolidated account {account.id}: {len(campaigns)} campaigns, "
            f"{len(ad_groups)} ad groups, {len(keywords)} keywords"
        )
        return campaigns, ad_groups, keywords

    async def load_history(self, account: GoogleAdsAccount, today: Optional[date] = None) -> list:
        end = today or date.today()
        return await self.cache.get_historical_data(
            account.id, EntityType.CAMPAIGN.value, end - timedelta(days=HISTORY_DAYS), end
        )

    # ── Public operations ────────────────────────────────────────────

    async def get_consolidated_account_data(
        self,
        account_id: Any,
        filters: Optional[DataFilters] = None,
        user_id: Optional[str] = None,
    ) -> ConsolidatedAccountData:
        filters = filters or DataFilters()
        account = await self.load_account(account_id, user_id)
        campaigns, ad_groups, keywords = await self.fetch_entities(account, filters)
        history = await self.load_history(account)

        insights = generate_insights(campaigns, ad_groups, keywords, history=history, thresholds=self.thresholds)

        consolidated = ConsolidatedAccount(
            id=str(account.id),
            customer_id=account.customer_id,
            account_name=account.account_name or "",
            currency_code=account.currency_code or "USD",
            time_zone=account.time_zone or "UTC",
            connection_status=account.connection_status,
            last_successful_fetch=account.last_successful_fetch,
            metrics=aggregate_account_metrics(campaigns, account.last_successful_fetch),
        )
        return ConsolidatedAccountData(
            account=consolidated,
            campaigns=campaigns,
            ad_groups=ad_groups,
            keywords=keywords,
            insights=insights,
        )

    async def clear_account_cache(self, account_id: Any) -> int:
        return await self.cache.clear_account(account_id)
