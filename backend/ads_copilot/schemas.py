"""
Typed records flowing through the context pipeline:
entities → consolidated account → insights → AI context bundle → relevant context.
"""

import re
from datetime import date, datetime
from typing import Any, Literal, Optional
from pydantic import BaseModel, Field, computed_field, field_validator

from ads_copilot.utils import safe_div

DateRange = Literal["LAST_7_DAYS", "LAST_14_DAYS", "LAST_30_DAYS", "LAST_90_DAYS", "CUSTOM"]
PerformanceTier = Literal["high", "medium", "low"]
Priority = Literal["high", "medium", "low"]
Freshness = Literal["fresh", "stale", "unavailable"]

# Filter values are interpolated into GAQL, so only known shapes get through.
GAQL_METRIC_NAME = re.compile(r"[a-z_]+")
CAMPAIGN_STATUSES = {"ENABLED", "PAUSED", "REMOVED"}


# ── Entities ──────────────────────────────────────────────────────────

class Metrics(BaseModel):
    """Canonical metrics. Money in major currency units, ctr as a fraction."""
    clicks: int = 0
    impressions: int = 0
    cost: float = 0.0
    conversions: float = 0.0
    ctr: float = 0.0
    cpc: float = 0.0

    @computed_field
    @property
    def conversion_rate(self) -> float:
        return safe_div(self.conversions, self.clicks)

    @computed_field
    @property
    def cost_per_conversion(self) -> float:
        return safe_div(self.cost, self.conversions)


class Campaign(BaseModel):
    entity_type: Literal["campaign"] = "campaign"
    id: str
    name: str = ""
    status: str = "UNKNOWN"
    channel_type: Optional[str] = None
    budget_amount: float = 0.0
    metrics: Metrics = Field(default_factory=Metrics)

    @property
    def is_active(self) -> bool:
        return self.status == "ENABLED"


class AdGroup(BaseModel):
    entity_type: Literal["ad_group"] = "ad_group"
    id: str
    name: str = ""
    status: str = "UNKNOWN"
    campaign_id: Optional[str] = None
    campaign_name: str = ""
    device: Optional[str] = None
    metrics: Metrics = Field(default_factory=Metrics)


class Keyword(BaseModel):
    entity_type: Literal["keyword"] = "keyword"
    id: str
    text: str = ""
    match_type: str = "UNKNOWN"
    status: str = "UNKNOWN"
    campaign_name: str = ""
    ad_group_name: str = ""
    metrics: Metrics = Field(default_factory=Metrics)


class DataFilters(BaseModel):
    date_range: DateRange = "LAST_30_DAYS"
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    metrics: Optional[list[str]] = None
    campaign_status: list[str] = Field(default_factory=lambda: ["ENABLED"])
    limit: int = Field(default=50, ge=1, le=10000)

    @field_validator("metrics")
    @classmethod
    def validate_metric_names(cls, v: Optional[list[str]]) -> Optional[list[str]]:
        if v is None:
            return v
        invalid = [m for m in v if not GAQL_METRIC_NAME.fullmatch(m)]
        if invalid:
            raise ValueError(f"Invalid metric names: {invalid}")
        return v

    @field_validator("campaign_status")
    @classmethod
    def validate_campaign_status(cls, v: list[str]) -> list[str]:
        statuses = [s.upper() for s in v if s]
        unknown = [s for s in statuses if s not in CAMPAIGN_STATUSES]
        if unknown:
            raise ValueError(f"Unknown campaign status: {unknown}")
        return statuses

    @property
    def period_label(self) -> str:
        if self.date_range == "CUSTOM" and self.start_date and self.end_date:
            return f"{self.start_date.isoformat()} to {self.end_date.isoformat()}"
        return self.date_range.replace("_", " ").title()


# ── Consolidated account ─────────────────────────────────────────────

class AccountMetrics(BaseModel):
    total_campaigns: int = 0
    active_campaigns: int = 0
    total_spend: float = 0.0
    total_clicks: int = 0
    total_impressions: int = 0
    total_conversions: float = 0.0
    avg_ctr: float = 0.0
    avg_cpc: float = 0.0
    conversion_rate: float = 0.0
    last_updated: Optional[datetime] = None


class ConsolidatedAccount(BaseModel):
    id: str
    customer_id: str
    account_name: str = ""
    currency_code: str = "USD"
    time_zone: str = "UTC"
    connection_status: str = "PENDING"
    last_successful_fetch: Optional[datetime] = None
    metrics: AccountMetrics = Field(default_factory=AccountMetrics)


# ── Insights ─────────────────────────────────────────────────────────

class BudgetRecommendation(BaseModel):
    campaign_id: str
    campaign_name: str
    current_budget: float
    recommended_budget: float
    reason: str
    potential_impact: str


class KeywordOpportunity(BaseModel):
    keyword_id: str
    keyword_text: str
    campaign_name: str
    opportunity_type: Literal["bid_increase", "bid_decrease", "add_negative", "expand_match"]
    current_performance: dict[str, float]
    recommended_action: str
    potential_impact: str


class PerformanceTrend(BaseModel):
    metric: str
    period: Literal["7d", "30d", "90d"] = "7d"
    trend: Literal["increasing", "decreasing", "stable"]
    change_percentage: float
    significance: Literal["high", "medium", "low"]


class SpendDistribution(BaseModel):
    top_20_percent: float = 0.0
    middle_60_percent: float = 0.0
    bottom_20_percent: float = 0.0


class AccountInsights(BaseModel):
    top_performing_campaigns: list[Campaign] = Field(default_factory=list)
    underperforming_campaigns: list[Campaign] = Field(default_factory=list)
    budget_recommendations: list[BudgetRecommendation] = Field(default_factory=list)
    keyword_opportunities: list[KeywordOpportunity] = Field(default_factory=list)
    performance_trends: list[PerformanceTrend] = Field(default_factory=list)
    trends_available: bool = False
    spend_distribution: SpendDistribution = Field(default_factory=SpendDistribution)


class ConsolidatedAccountData(BaseModel):
    account: ConsolidatedAccount
    campaigns: list[Campaign] = Field(default_factory=list)
    ad_groups: list[AdGroup] = Field(default_factory=list)
    keywords: list[Keyword] = Field(default_factory=list)
    insights: AccountInsights = Field(default_factory=AccountInsights)


# ── AI context ───────────────────────────────────────────────────────

class AccountSummary(BaseModel):
    account_name: str
    customer_id: str
    currency: str
    total_campaigns: int
    active_campaigns: int
    connection_status: str
    data_freshness: str
    freshness: Freshness


class TopCampaign(BaseModel):
    name: str
    spend: float
    conversions: float
    conversion_rate: float
    cost_per_conversion: float
    performance_tier: PerformanceTier


class PerformanceDistribution(BaseModel):
    high_performers: int = 0
    medium_performers: int = 0
    low_performers: int = 0
    spend_distribution: SpendDistribution = Field(default_factory=SpendDistribution)


class PerformanceSnapshot(BaseModel):
    period: str
    total_spend: float
    total_clicks: int
    total_impressions: int
    total_conversions: float
    overall_ctr: float
    overall_cpc: float
    overall_conversion_rate: float
    top_campaigns: list[TopCampaign] = Field(default_factory=list)
    performance_distribution: PerformanceDistribution = Field(default_factory=PerformanceDistribution)


class InsightsSummary(BaseModel):
    key_opportunities: list[str] = Field(default_factory=list)
    main_concerns: list[str] = Field(default_factory=list)
    performance_trends: list[str] = Field(default_factory=list)
    budget_efficiency: str = "Good"
    competitive_position: str = ""


class Recommendation(BaseModel):
    type: Literal["budget", "campaign", "keyword"]
    priority: Priority
    title: str
    description: str
    potential_impact: str
    confidence: float
    quick_action: Optional[str] = None


class ContextMetadata(BaseModel):
    data_timestamp: datetime
    account_health_score: int
    data_completeness: float
    data_freshness: Freshness
    needs_refresh: bool
    analysis_scope: str
    available_actions: list[str] = Field(default_factory=list)


class AIContextData(BaseModel):
    account_summary: AccountSummary
    performance_snapshot: PerformanceSnapshot
    insights_summary: InsightsSummary
    actionable_recommendations: list[Recommendation] = Field(default_factory=list)
    context_metadata: ContextMetadata


class NaturalLanguageContext(BaseModel):
    executive_summary: str
    performance_narrative: str
    insights_narrative: str
    recommendation_narrative: str
    data_quality_note: str


class EntityProjections(BaseModel):
    """Compact entity lists kept in the bundle for per-question relevance selection."""
    campaigns: list[dict[str, Any]] = Field(default_factory=list)
    ad_groups: list[dict[str, Any]] = Field(default_factory=list)
    keywords: list[dict[str, Any]] = Field(default_factory=list)


class AIContextBundle(BaseModel):
    structured_data: AIContextData
    natural_language: NaturalLanguageContext
    query_specific_data: Optional[dict[str, Any]] = None
    entities: EntityProjections = Field(default_factory=EntityProjections)


class RelevantContext(BaseModel):
    focus: list[str]
    metric: Literal["conversions", "ctr", "cost", "clicks"]
    top_n: int
    totals: dict[str, int] = Field(default_factory=dict)
    date_range: Optional[str] = None
    data: dict[str, list[dict[str, Any]]] = Field(default_factory=dict)
    summary: Optional[str] = None
