"""
AI Context Builder — turns consolidated account data into an LLM-ready bundle.

The bundle has two faces: structured data (summary, snapshot, insights,
ranked recommendations, metadata) and short natural-language narratives.
Everything except the data fetch is a pure function of the consolidated data
and the clock, so the builder can be tested without a database.
"""

import logging
import math
from datetime import datetime
from typing import Any, Optional

from ads_copilot.schemas import (
    AccountSummary,
    AIContextBundle,
    AIContextData,
    Campaign,
    ConsolidatedAccountData,
    ContextMetadata,
    DataFilters,
    EntityProjections,
    InsightsSummary,
    Metrics,
    NaturalLanguageContext,
    PerformanceDistribution,
    PerformanceSnapshot,
    PerformanceTrend,
    Recommendation,
    TopCampaign,
)
from ads_copilot.services.consolidation import ConsolidationService
from ads_copilot.services.insights import (
    DEFAULT_THRESHOLDS,
    InsightThresholds,
    calculate_spend_distribution,
    performance_tier,
)
from ads_copilot.utils import as_naive_utc, safe_div, utcnow

logger = logging.getLogger(__name__)

FRESH_HOURS = 2
STALE_HOURS = 24
LOW_COMPLETENESS = 0.5
GOOD_COMPLETENESS = 0.8
WASTE_REDUCTION_SHARE = 0.3

PRIORITY_WEIGHT = {"high": 3, "medium": 2, "low": 1}

AVAILABLE_ACTIONS = [
    "Budget optimization",
    "Campaign analysis",
    "Keyword research",
    "Performance forecasting",
    "Competitive analysis",
]


# ── Freshness, completeness, health ───────────────────────────────────

def _hours_since(last_fetch: Optional[datetime], now: datetime) -> Optional[float]:
    if last_fetch is None:
        return None
    return (as_naive_utc(now) - as_naive_utc(last_fetch)).total_seconds() / 3600


def classify_freshness(last_fetch: Optional[datetime], now: Optional[datetime] = None) -> str:
    """fresh (< 2h), stale (< 24h) or unavailable (older, or never fetched)."""
    hours = _hours_since(last_fetch, now or utcnow())
    if hours is None:
        return "unavailable"
    if hours < FRESH_HOURS:
        return "fresh"
    if hours < STALE_HOURS:
        return "stale"
    return "unavailable"


def describe_freshness(last_fetch: Optional[datetime], now: Optional[datetime] = None) -> str:
    hours = _hours_since(last_fetch, now or utcnow())
    if hours is None:
        return "Never updated"
    if hours < 1:
        return "Just updated"
    if hours < 24:
        return f"{round(hours)} hours ago"
    return f"{round(hours / 24)} days ago"


def calculate_data_completeness(data: ConsolidatedAccountData) -> float:
    """Fraction of an 8-point checklist: 5 account facts plus 3 dataset-richness checks."""
    account = data.account
    checks = [
        bool(account.account_name),
        bool(account.currency_code),
        account.last_successful_fetch is not None,
        len(data.campaigns) > 0,
        account.connection_status == "CONNECTED",
        len(data.campaigns) > 0,
        len(data.ad_groups) > 0,
        len(data.keywords) > 0,
    ]
    return sum(checks) / len(checks)


def calculate_health_score(data: ConsolidatedAccountData, now: Optional[datetime] = None) -> int:
    """0–100 score from connection, recency, activity, conversions and cost per conversion."""
    score = 0
    if data.account.connection_status == "CONNECTED":
        score += 20

    hours = _hours_since(data.account.last_successful_fetch, now or utcnow())
    if hours is not None:
        if hours < 24:
            score += 20
        elif hours < 72:
            score += 10

    active = [c for c in data.campaigns if c.is_active]
    conversions = sum(c.metrics.conversions for c in active)
    spend = sum(c.metrics.cost for c in active)
    if active:
        score += 20
    if conversions > 0:
        score += 20
        cpa = spend / conversions
        if spend > 0 and cpa < 50:
            score += 20
        elif spend > 0 and cpa < 100:
            score += 10
    return min(100, score)


# ── Structured sections ───────────────────────────────────────────────

def build_account_summary(data: ConsolidatedAccountData, now: datetime) -> AccountSummary:
    account = data.account
    return AccountSummary(
        account_name=account.account_name,
        customer_id=account.customer_id,
        currency=account.currency_code,
        total_campaigns=len(data.campaigns),
        active_campaigns=sum(1 for c in data.campaigns if c.is_active),
        connection_status=account.connection_status,
        data_freshness=describe_freshness(account.last_successful_fetch, now),
        freshness=classify_freshness(account.last_successful_fetch, now),
    )


def build_performance_snapshot(
    campaigns: list[Campaign],
    filters: DataFilters,
    t: InsightThresholds = DEFAULT_THRESHOLDS,
) -> PerformanceSnapshot:
    active = [c for c in campaigns if c.is_active]
    spend = sum(c.metrics.cost for c in active)
    clicks = sum(c.metrics.clicks for c in active)
    impressions = sum(c.metrics.impressions for c in active)
    conversions = sum(c.metrics.conversions for c in active)

    ranked = sorted(active, key=lambda c: safe_div(c.metrics.conversions, max(c.metrics.clicks, 1)), reverse=True)
    top = [
        TopCampaign(
            name=c.name,
            spend=c.metrics.cost,
            conversions=c.metrics.conversions,
            conversion_rate=round(c.metrics.conversion_rate, 4),
            cost_per_conversion=round(c.metrics.cost_per_conversion, 2),
            performance_tier=performance_tier(c, t),
        )
        for c in ranked[:5]
    ]

    tiers = [performance_tier(c, t) for c in active]
    return PerformanceSnapshot(
        period=filters.period_label,
        total_spend=round(spend, 2),
        total_clicks=clicks,
        total_impressions=impressions,
        total_conversions=round(conversions, 2),
        overall_ctr=safe_div(clicks, impressions),
        overall_cpc=round(safe_div(spend, clicks), 2),
        overall_conversion_rate=safe_div(conversions, clicks),
        top_campaigns=top,
        performance_distribution=PerformanceDistribution(
            high_performers=tiers.count("high"),
            medium_performers=tiers.count("medium"),
            low_performers=tiers.count("low"),
            spend_distribution=calculate_spend_distribution(active),
        ),
    )


def _is_adverse(trend: PerformanceTrend) -> bool:
    # Rising CPC is bad; for everything else a drop is bad.
    if trend.trend == "stable":
        return False
    if trend.metric.upper() == "CPC":
        return trend.trend == "increasing"
    return trend.trend == "decreasing"


def rate_budget_efficiency(campaigns: list[Campaign]) -> str:
    spend = sum(c.metrics.cost for c in campaigns)
    conversions = sum(c.metrics.conversions for c in campaigns)
    if conversions <= 0:
        return "Needs improvement" if spend > 0 else "Not enough data"
    cpa = spend / conversions
    if cpa > 100:
        return "Needs improvement"
    if cpa < 25:
        return "Excellent"
    return "Good"


def build_insights_summary(data: ConsolidatedAccountData) -> InsightsSummary:
    insights = data.insights
    opportunities: list[str] = []
    concerns: list[str] = []

    if insights.budget_recommendations:
        opportunities.append(f"{len(insights.budget_recommendations)} budget optimization opportunities identified")
    if insights.keyword_opportunities:
        opportunities.append(f"{len(insights.keyword_opportunities)} keyword optimization opportunities")

    if insights.underperforming_campaigns:
        names = ", ".join(c.name for c in insights.underperforming_campaigns)
        concerns.append(f"{len(insights.underperforming_campaigns)} campaigns underperforming ({names})")
    adverse = [t for t in insights.performance_trends if _is_adverse(t)]
    if adverse:
        concerns.append(f"Performance declining in {len(adverse)} key metrics")

    if insights.trends_available:
        trends = [
            f"{t.metric} {t.trend} by {abs(t.change_percentage)}% ({t.period})"
            for t in insights.performance_trends
        ]
    else:
        trends = ["Trend data unavailable"]

    return InsightsSummary(
        key_opportunities=opportunities,
        main_concerns=concerns,
        performance_trends=trends,
        budget_efficiency=rate_budget_efficiency(data.campaigns),
        competitive_position="Competitive data not available",
    )


def build_recommendations(data: ConsolidatedAccountData, currency: str = "") -> list[Recommendation]:
    """Budget, campaign and keyword recommendations ranked by priority weight × confidence."""
    insights = data.insights
    prefix = f"{currency} " if currency else ""
    recommendations: list[Recommendation] = []

    for rec in insights.budget_recommendations[:3]:
        recommendations.append(Recommendation(
            type="budget",
            priority="high" if abs(rec.recommended_budget - rec.current_budget) > 50 else "medium",
            title=f"Optimize budget for {rec.campaign_name}",
            description=rec.reason,
            potential_impact=rec.potential_impact,
            confidence=0.85,
            quick_action=f"Adjust budget from {prefix}{rec.current_budget:g} to {prefix}{rec.recommended_budget:g}",
        ))

    for campaign in insights.underperforming_campaigns[:2]:
        recommendations.append(Recommendation(
            type="campaign",
            priority="high",
            title=f"Review underperforming campaign: {campaign.name}",
            description=(
                f"High spend ({campaign.metrics.cost:g}) with low conversions ({campaign.metrics.conversions:g})"
            ),
            potential_impact=(
                f"Potential to reduce wasted spend by {prefix}{round(campaign.metrics.cost * WASTE_REDUCTION_SHARE)}"
            ),
            confidence=0.75,
            quick_action="Pause or optimize targeting",
        ))

    for opp in insights.keyword_opportunities[:3]:
        recommendations.append(Recommendation(
            type="keyword",
            priority="high" if opp.opportunity_type == "add_negative" else "medium",
            title=f"Optimize keyword: {opp.keyword_text}",
            description=opp.recommended_action,
            potential_impact=opp.potential_impact,
            confidence=0.70,
        ))

    # sorted() is stable, so equal scores keep their category order
    return sorted(recommendations, key=lambda r: PRIORITY_WEIGHT[r.priority] * r.confidence, reverse=True)


def build_context_metadata(data: ConsolidatedAccountData, now: datetime) -> ContextMetadata:
    freshness = classify_freshness(data.account.last_successful_fetch, now)
    return ContextMetadata(
        data_timestamp=now,
        account_health_score=calculate_health_score(data, now),
        data_completeness=round(calculate_data_completeness(data), 3),
        data_freshness=freshness,
        needs_refresh=freshness != "fresh",
        analysis_scope=(
            f"{len(data.campaigns)} campaigns, {len(data.ad_groups)} ad groups, {len(data.keywords)} keywords"
        ),
        available_actions=list(AVAILABLE_ACTIONS),
    )


# ── Narratives ────────────────────────────────────────────────────────

def generate_natural_language(data: ConsolidatedAccountData, structured: AIContextData) -> NaturalLanguageContext:
    summary = structured.account_summary
    snapshot = structured.performance_snapshot
    insights = structured.insights_summary
    metadata = structured.context_metadata
    currency = summary.currency or ""

    cost_per_conversion = snapshot.total_spend / max(snapshot.total_conversions, 1)
    executive_summary = (
        f'Account "{summary.account_name}" ({summary.customer_id}) has {summary.total_campaigns} total campaigns '
        f"with {summary.active_campaigns} active. Total spend of {currency} {snapshot.total_spend:.2f} has generated "
        f"{snapshot.total_conversions:g} conversions at an average cost of {currency} {cost_per_conversion:.2f} "
        f"per conversion."
    )

    distribution = snapshot.performance_distribution
    performance = (
        f"Performance shows an overall CTR of {snapshot.overall_ctr * 100:.2f}% and CPC of "
        f"{currency} {snapshot.overall_cpc:.2f}. {distribution.high_performers} campaigns are performing well, "
        f"while {distribution.low_performers} need attention. Budget efficiency is rated as "
        f"{insights.budget_efficiency}."
    )

    if insights.key_opportunities:
        insights_narrative = f"Key opportunities include: {', '.join(insights.key_opportunities)}."
    else:
        insights_narrative = "No major optimization opportunities identified at this time."

    if insights.main_concerns:
        concerns = f"Main concerns are: {', '.join(insights.main_concerns)}."
    else:
        concerns = "Account performance is stable with no major concerns."

    if structured.actionable_recommendations:
        top = structured.actionable_recommendations[0]
        recommendation_narrative = f"Top recommendation: {top.title} - {top.description}".rstrip(" -")
    else:
        recommendation_narrative = "Account is performing well with no immediate actions required."

    if metadata.data_completeness > GOOD_COMPLETENESS:
        quality = "Data quality is good with comprehensive coverage across all account areas."
    else:
        quality = "Data quality is limited - some metrics may be incomplete or unavailable."
    if metadata.data_freshness == "stale":
        quality += f" Data was last refreshed {summary.data_freshness}; a refresh is recommended."
    elif metadata.data_freshness == "unavailable":
        quality += " Current data is unavailable or outdated; refresh the account before acting on these figures."

    if metadata.data_completeness <= LOW_COMPLETENESS:
        executive_summary += " Note: analysis may be incomplete."
        insights_narrative += " This analysis may be incomplete."

    return NaturalLanguageContext(
        executive_summary=executive_summary,
        performance_narrative=f"{performance} {insights_narrative} {concerns}",
        insights_narrative=insights_narrative,
        recommendation_narrative=recommendation_narrative,
        data_quality_note=quality,
    )


# ── Query-specific data ───────────────────────────────────────────────

def _percentile(values: list[float], pct: float) -> float:
    """Nearest-rank percentile on a sorted copy."""
    if not values:
        return 0.0
    ordered = sorted(values)
    rank = max(1, math.ceil(pct / 100 * len(ordered)))
    return ordered[rank - 1]


def calculate_benchmarks(campaigns: list[Campaign]) -> dict[str, dict[str, float]]:
    """p25/p50/p75 of ctr, cpc and conversion rate over active campaigns with clicks."""
    sample = [c for c in campaigns if c.is_active and c.metrics.clicks > 0]
    series = {
        "ctr": [c.metrics.ctr for c in sample],
        "cpc": [c.metrics.cpc or safe_div(c.metrics.cost, c.metrics.clicks) for c in sample],
        "conversion_rate": [c.metrics.conversion_rate for c in sample],
    }
    return {
        name: {
            "p25": round(_percentile(values, 25), 4),
            "p50": round(_percentile(values, 50), 4),
            "p75": round(_percentile(values, 75), 4),
        }
        for name, values in series.items()
    }


def prepare_query_specific_data(data: ConsolidatedAccountData, query: Optional[str]) -> Optional[dict[str, Any]]:
    if not query:
        return None
    q = query.lower()
    campaigns = data.campaigns
    insights = data.insights

    if "budget" in q or "spend" in q:
        return {
            "type": "budget_analysis",
            "total_budget": round(sum(c.budget_amount for c in campaigns), 2),
            "actual_spend": round(sum(c.metrics.cost for c in campaigns), 2),
            "budget_utilization": [
                {
                    "campaign": c.name,
                    "budget": c.budget_amount,
                    "spend": c.metrics.cost,
                    "utilization_rate": round(safe_div(c.metrics.cost, c.budget_amount), 4),
                }
                for c in campaigns
            ],
            "recommendations": [r.model_dump() for r in insights.budget_recommendations],
        }
    if "keyword" in q:
        converting = sorted(
            (k for k in data.keywords if k.metrics.conversions > 0),
            key=lambda k: k.metrics.conversions,
            reverse=True,
        )
        return {
            "type": "keyword_analysis",
            "total_keywords": len(data.keywords),
            "top_keywords": [k.model_dump() for k in converting[:10]],
            "keyword_opportunities": [o.model_dump() for o in insights.keyword_opportunities],
        }
    if "campaign" in q:
        return {
            "type": "campaign_analysis",
            "total_campaigns": len(campaigns),
            "active_campaigns": sum(1 for c in campaigns if c.is_active),
            "top_performing": [c.model_dump() for c in insights.top_performing_campaigns],
            "underperforming": [c.model_dump() for c in insights.underperforming_campaigns],
        }
    if "performance" in q or "metric" in q:
        return {
            "type": "performance_analysis",
            "overall_metrics": {
                "total_spend": round(sum(c.metrics.cost for c in campaigns), 2),
                "total_clicks": sum(c.metrics.clicks for c in campaigns),
                "total_conversions": sum(c.metrics.conversions for c in campaigns),
            },
            "trends": [t.model_dump() for t in insights.performance_trends],
            "benchmarks": calculate_benchmarks(campaigns),
        }
    return None


# ── Entity projections ────────────────────────────────────────────────

def metrics_projection(m: Metrics) -> dict[str, float]:
    return {
        "clicks": m.clicks,
        "impressions": m.impressions,
        "ctr": round(m.ctr, 4),
        "cost": m.cost,
        "conversions": m.conversions,
    }


def build_entity_projections(data: ConsolidatedAccountData) -> EntityProjections:
    return EntityProjections(
        campaigns=[
            {"id": c.id, "name": c.name, "status": c.status, "metrics": metrics_projection(c.metrics)}
            for c in data.campaigns
        ],
        ad_groups=[
            {
                "id": g.id,
                "name": g.name,
                "status": g.status,
                "campaign_name": g.campaign_name,
                "device": g.device,
                "metrics": metrics_projection(g.metrics),
            }
            for g in data.ad_groups
        ],
        keywords=[
            {
                "keyword": k.text,
                "match_type": k.match_type,
                "campaign_name": k.campaign_name,
                "ad_group_name": k.ad_group_name,
                "metrics": metrics_projection(k.metrics),
            }
            for k in data.keywords
        ],
    )


# ── Entry points ──────────────────────────────────────────────────────

def build_ai_context(
    data: ConsolidatedAccountData,
    filters: Optional[DataFilters] = None,
    query: Optional[str] = None,
    now: Optional[datetime] = None,
    thresholds: Optional[InsightThresholds] = None,
) -> AIContextBundle:
    filters = filters or DataFilters()
    now = now or utcnow()
    t = thresholds or DEFAULT_THRESHOLDS

    summary = build_account_summary(data, now)
    structured = AIContextData(
        account_summary=summary,
        performance_snapshot=build_performance_snapshot(data.campaigns, filters, t),
        insights_summary=build_insights_summary(data),
        actionable_recommendations=build_recommendations(data, summary.currency),
        context_metadata=build_context_metadata(data, now),
    )
    return AIContextBundle(
        structured_data=structured,
        natural_language=generate_natural_language(data, structured),
        query_specific_data=prepare_query_specific_data(data, query),
        entities=build_entity_projections(data),
    )


class ContextBuilder:
    """Fetches consolidated data and packages it for the assistant."""

    def __init__(self, consolidation: ConsolidationService):
        self.consolidation = consolidation

    async def prepare_ai_context(
        self,
        account_id: Any,
        filters: Optional[DataFilters] = None,
        query: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> AIContextBundle:
        filters = filters or DataFilters()
        data = await self.consolidation.get_consolidated_account_data(account_id, filters, user_id=user_id)
        bundle = build_ai_context(data, filters, query, thresholds=self.consolidation.thresholds)
        meta = bundle.structured_data.context_metadata
        logger.info(
            f"AI context for account {account_id}: {meta.analysis_scope}, "
            f"health {meta.account_health_score}, completeness {meta.data_completeness}, "
            f"freshness {meta.data_freshness}"
        )
        return bundle
