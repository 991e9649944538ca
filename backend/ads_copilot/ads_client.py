"""
Google Ads REST Client
Runs GAQL queries against googleAds:searchStream and returns raw result rows.
Normalization (micros, ratios) happens in the consolidation service, not here.
"""

import logging
from datetime import date, timedelta
from typing import Any, Optional, Protocol
import httpx

from ads_copilot.errors import UpstreamError
from ads_copilot.schemas import DataFilters

logger = logging.getLogger(__name__)

API_BASE_URL = "https://googleads.googleapis.com"

# ── Default metric selections per entity (GAQL field names) ───────────
CAMPAIGN_METRICS = ["clicks", "impressions", "cost_micros", "conversions", "ctr", "average_cpc"]
AD_GROUP_METRICS = ["clicks", "impressions", "cost_micros", "conversions", "ctr", "average_cpc"]
KEYWORD_METRICS = ["clicks", "impressions", "cost_micros", "conversions", "ctr", "average_cpc"]

_DURING_RANGES = {"LAST_7_DAYS", "LAST_14_DAYS", "LAST_30_DAYS"}


class TokenProvider(Protocol):
    """Supplies OAuth access tokens. The OAuth exchange itself lives elsewhere."""

    async def get_access_token(self, account: Any) -> str: ...

    async def refresh_access_token(self, account: Any) -> str: ...


class AdsDataClient(Protocol):
    """Interface the consolidation service depends on."""

    async def get_campaigns(self, account: Any, filters: DataFilters) -> dict: ...

    async def get_ad_groups(self, account: Any, filters: DataFilters) -> dict: ...

    async def get_keywords(self, account: Any, filters: DataFilters) -> dict: ...


# ── GAQL building ─────────────────────────────────────────────────────

def build_date_condition(filters: DataFilters, today: Optional[date] = None) -> str:
    """GAQL date predicate for a filter set. Unknown or incomplete ranges fall back to 30 days."""
    if filters.date_range == "CUSTOM" and filters.start_date and filters.end_date:
        return (
            f"segments.date BETWEEN '{filters.start_date.strftime('%Y%m%d')}' "
            f"AND '{filters.end_date.strftime('%Y%m%d')}'"
        )
    if filters.date_range == "LAST_90_DAYS":
        # GAQL has no LAST_90_DAYS literal
        end = (today or date.today()) - timedelta(days=1)
        start = end - timedelta(days=89)
        return f"segments.date BETWEEN '{start.strftime('%Y%m%d')}' AND '{end.strftime('%Y%m%d')}'"
    if filters.date_range in _DURING_RANGES:
        return f"segments.date DURING {filters.date_range}"
    return "segments.date DURING LAST_30_DAYS"


def _metric_fields(requested: Optional[list[str]], defaults: list[str]) -> str:
    selected = list(requested) if requested else list(defaults)
    if "cost_micros" not in selected:
        selected.append("cost_micros")
    return ", ".join(f"metrics.{m}" for m in selected)


def _status_condition(field: str, statuses: list[str]) -> str:
    values = ", ".join(f"'{s.upper()}'" for s in statuses if s)
    return f"{field} IN ({values})" if values else ""


def build_campaign_query(filters: DataFilters) -> str:
    conditions = [build_date_condition(filters)]
    status = _status_condition("campaign.status", filters.campaign_status)
    if status:
        conditions.append(status)
    return (
        "SELECT campaign.id, campaign.name, campaign.status, "
        "campaign.advertising_channel_type, campaign_budget.amount_micros, "
        f"{_metric_fields(filters.metrics, CAMPAIGN_METRICS)} "
        "FROM campaign "
        f"WHERE {' AND '.join(conditions)} "
        f"ORDER BY metrics.impressions DESC LIMIT {filters.limit}"
    )


def build_ad_group_query(filters: DataFilters) -> str:
    return (
        "SELECT ad_group.id, ad_group.name, ad_group.status, "
        "campaign.id, campaign.name, segments.device, "
        f"{_metric_fields(filters.metrics, AD_GROUP_METRICS)} "
        "FROM ad_group "
        f"WHERE {build_date_condition(filters)} "
        f"ORDER BY metrics.impressions DESC LIMIT {filters.limit}"
    )


def build_keyword_query(filters: DataFilters) -> str:
    return (
        "SELECT ad_group_criterion.criterion_id, ad_group_criterion.status, "
        "ad_group_criterion.keyword.text, ad_group_criterion.keyword.match_type, "
        "campaign.name, ad_group.name, "
        f"{_metric_fields(filters.metrics, KEYWORD_METRICS)} "
        "FROM keyword_view "
        f"WHERE {build_date_condition(filters)} "
        f"ORDER BY metrics.clicks DESC LIMIT {filters.limit}"
    )


def build_daily_campaign_query(day: date) -> str:
    """Per-campaign metrics for a single day, excluding removed campaigns."""
    return (
        "SELECT campaign.id, campaign.name, campaign.status, "
        "metrics.impressions, metrics.clicks, metrics.cost_micros, metrics.conversions, "
        "metrics.conversions_value, metrics.ctr, metrics.average_cpc, metrics.cost_per_conversion "
        "FROM campaign "
        f"WHERE segments.date = '{day.isoformat()}' AND campaign.status != 'REMOVED'"
    )


# ── Client ────────────────────────────────────────────────────────────

class GoogleAdsClient:
    """
    Thin async wrapper around the Google Ads REST API.
    A 401 triggers one token refresh and one retry; any other failure raises UpstreamError.
    """

    def __init__(
        self,
        developer_token: str,
        token_provider: TokenProvider,
        api_version: str = "v20",
        login_customer_id: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        self.developer_token = developer_token
        self.token_provider = token_provider
        self.api_version = api_version
        self.login_customer_id = login_customer_id
        self._http = http_client
        self.timeout = timeout

    def _url(self, customer_id: str) -> str:
        return f"{API_BASE_URL}/{self.api_version}/customers/{customer_id}/googleAds:searchStream"

    def _headers(self, access_token: str, customer_id: str) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {access_token}",
            "developer-token": self.developer_token,
            "login-customer-id": (self.login_customer_id or customer_id).replace("-", ""),
        }

    async def _post(self, url: str, headers: dict, query: str) -> httpx.Response:
        if self._http is not None:
            return await self._http.post(url, headers=headers, json={"query": query}, timeout=self.timeout)
        async with httpx.AsyncClient() as client:
            return await client.post(url, headers=headers, json={"query": query}, timeout=self.timeout)

    async def search(self, account: Any, query: str) -> list[dict]:
        """Run a GAQL query and return the flattened result rows of every stream batch."""
        customer_id = str(account.customer_id).replace("-", "")
        account_id = str(account.id)
        url = self._url(customer_id)
        logger.info(f"Google Ads query for customer {customer_id}: {query[:120]}")

        try:
            token = await self.token_provider.get_access_token(account)
            response = await self._post(url, self._headers(token, customer_id), query)
            if response.status_code == 401:
                logger.info(f"Access token rejected for customer {customer_id}, refreshing once")
                token = await self.token_provider.refresh_access_token(account)
                response = await self._post(url, self._headers(token, customer_id), query)
        except httpx.HTTPError as e:
            logger.error(f"Google Ads request failed for customer {customer_id}: {e}")
            raise UpstreamError(f"Google Ads request failed: {e}", account_id=account_id) from e

        if response.status_code >= 400:
            body = response.text[:500]
            logger.error(f"Google Ads API error ({response.status_code}) for customer {customer_id}: {body}")
            raise UpstreamError(
                f"Google Ads API error ({response.status_code}): {body}",
                account_id=account_id,
                upstream_status=response.status_code,
            )

        payload = response.json()
        batches = payload if isinstance(payload, list) else [payload]
        rows: list[dict] = []
        for batch in batches:
            if isinstance(batch, dict):
                rows.extend(batch.get("results") or [])
        return rows

    async def get_campaigns(self, account: Any, filters: DataFilters) -> dict:
        return {"campaigns": await self.search(account, build_campaign_query(filters))}

    async def get_ad_groups(self, account: Any, filters: DataFilters) -> dict:
        return {"adGroups": await self.search(account, build_ad_group_query(filters))}

    async def get_keywords(self, account: Any, filters: DataFilters) -> dict:
        return {"keywords": await self.search(account, build_keyword_query(filters))}

    async def get_campaign_daily_metrics(self, account: Any, day: date) -> list[dict]:
        return await self.search(account, build_daily_campaign_query(day))
