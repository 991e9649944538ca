"""
Insights Engine — threshold rules over consolidated entities.

Every rule is a pure function of its inputs and an InsightThresholds instance,
so results are reproducible and easy to test. Nothing here touches the network
or the database.
"""

import logging
import math
from collections import defaultdict
from datetime import date, timedelta
from typing import Any, Iterable, Optional
from pydantic import BaseModel

from ads_copilot.config import get_settings
from ads_copilot.schemas import (
    AccountInsights,
    AdGroup,
    BudgetRecommendation,
    Campaign,
    Keyword,
    KeywordOpportunity,
    PerformanceTrend,
    SpendDistribution,
)
from ads_copilot.utils import safe_div, to_number

logger = logging.getLogger(__name__)


class InsightThresholds(BaseModel):
    high_conversion_rate: float = 0.05
    medium_conversion_rate: float = 0.02
    low_conversion_rate: float = 0.01
    low_cost_per_conversion: float = 50.0
    high_cost_per_conversion: float = 100.0
    budget_adjustment_pct: float = 0.2
    underperforming_min_cost: float = 100.0
    keyword_min_clicks: int = 10
    keyword_low_cpc: float = 2.0
    keyword_high_cpc: float = 5.0
    top_campaigns_limit: int = 5
    underperforming_limit: int = 5
    budget_recommendations_limit: int = 10
    keyword_opportunities_limit: int = 20
    trend_stable_pct: float = 2.0
    trend_medium_pct: float = 5.0
    trend_high_pct: float = 10.0

    @classmethod
    def from_settings(cls) -> "InsightThresholds":
        s = get_settings()
        return cls(
            high_conversion_rate=s.high_conversion_rate,
            medium_conversion_rate=s.medium_conversion_rate,
            low_conversion_rate=s.low_conversion_rate,
            low_cost_per_conversion=s.low_cost_per_conversion,
            high_cost_per_conversion=s.high_cost_per_conversion,
            budget_adjustment_pct=s.budget_adjustment_pct,
            underperforming_min_cost=s.underperforming_min_cost,
            keyword_min_clicks=s.keyword_min_clicks,
            keyword_low_cpc=s.keyword_low_cpc,
            keyword_high_cpc=s.keyword_high_cpc,
        )


DEFAULT_THRESHOLDS = InsightThresholds()


# ── Campaign tiers ────────────────────────────────────────────────────

def performance_tier(campaign: Campaign, t: InsightThresholds = DEFAULT_THRESHOLDS) -> str:
    """high / medium / low from conversion rate and cost per conversion. No clicks means low."""
    m = campaign.metrics
    if m.clicks <= 0 or m.conversions <= 0:
        return "low"
    cr = m.conversion_rate
    cpa = m.cost_per_conversion
    if cr > t.high_conversion_rate and cpa < t.low_cost_per_conversion:
        return "high"
    if cr > t.medium_conversion_rate and cpa < t.high_cost_per_conversion:
        return "medium"
    return "low"


def find_top_performing(campaigns: list[Campaign], t: InsightThresholds = DEFAULT_THRESHOLDS) -> list[Campaign]:
    eligible = [c for c in campaigns if c.is_active and c.metrics.clicks > 0 and c.metrics.cost > 0]
    eligible.sort(key=lambda c: c.metrics.conversion_rate, reverse=True)
    return eligible[: t.top_campaigns_limit]


def find_underperforming(campaigns: list[Campaign], t: InsightThresholds = DEFAULT_THRESHOLDS) -> list[Campaign]:
    flagged = [
        c for c in campaigns
        if c.metrics.cost > t.underperforming_min_cost and c.metrics.conversions < 1
    ]
    flagged.sort(key=lambda c: c.metrics.cost, reverse=True)
    return flagged[: t.underperforming_limit]


# ── Budget recommendations ────────────────────────────────────────────

def generate_budget_recommendations(
    campaigns: list[Campaign],
    t: InsightThresholds = DEFAULT_THRESHOLDS,
) -> list[BudgetRecommendation]:
    """
    Scale budgets of converting campaigns up or down by the adjustment percentage.
    Candidates whose rounded recommendation equals the current budget are dropped.
    """
    recommendations: list[BudgetRecommendation] = []
    for c in campaigns:
        m = c.metrics
        if m.conversions <= 0:
            continue
        cr = m.conversion_rate
        cpa = m.cost_per_conversion
        current = c.budget_amount

        if cr > t.high_conversion_rate and cpa < t.low_cost_per_conversion:
            recommended = round(current * (1 + t.budget_adjustment_pct))
            reason = "High conversion rate with low cost per conversion"
        elif cr < t.low_conversion_rate and cpa > t.high_cost_per_conversion:
            recommended = round(current * (1 - t.budget_adjustment_pct))
            reason = "Low conversion rate with high cost per conversion"
        else:
            continue

        if recommended == current:
            continue
        recommendations.append(BudgetRecommendation(
            campaign_id=c.id,
            campaign_name=c.name,
            current_budget=current,
            recommended_budget=float(recommended),
            reason=reason,
            potential_impact=f"Estimated {round(abs(recommended - current), 2)} change in daily spend",
        ))
    return recommendations[: t.budget_recommendations_limit]


# ── Keyword opportunities ─────────────────────────────────────────────

def generate_keyword_opportunities(
    keywords: list[Keyword],
    t: InsightThresholds = DEFAULT_THRESHOLDS,
) -> list[KeywordOpportunity]:
    opportunities: list[KeywordOpportunity] = []
    for k in keywords:
        m = k.metrics
        if m.clicks <= t.keyword_min_clicks:
            continue
        cr = m.conversion_rate
        cpc = m.cpc or safe_div(m.cost, m.clicks)

        opportunity_type = "bid_increase"
        action = ""
        if cr > t.high_conversion_rate and cpc < t.keyword_low_cpc:
            action = "Consider increasing bid to gain more volume"
        elif cr < t.low_conversion_rate and cpc > t.keyword_high_cpc:
            opportunity_type = "bid_decrease"
            action = "Consider decreasing bid or adding as negative keyword"

        opportunities.append(KeywordOpportunity(
            keyword_id=k.id,
            keyword_text=k.text,
            campaign_name=k.campaign_name,
            opportunity_type=opportunity_type,
            current_performance={
                "clicks": m.clicks,
                "cost": m.cost,
                "conversions": m.conversions,
                "ctr": m.ctr,
            },
            recommended_action=action,
            potential_impact=f"Potential to improve performance for {k.campaign_name}",
        ))
    return opportunities[: t.keyword_opportunities_limit]


# ── Spend distribution ────────────────────────────────────────────────

def calculate_spend_distribution(campaigns: list[Campaign]) -> SpendDistribution:
    """Share of spend in the top 20% / middle 60% / bottom 20% of campaigns by cost."""
    ordered = sorted(campaigns, key=lambda c: c.metrics.cost, reverse=True)
    total = sum(c.metrics.cost for c in ordered)
    if not ordered or total <= 0:
        return SpendDistribution()

    n = len(ordered)
    top_count = math.ceil(n * 0.2)
    bottom_count = min(math.floor(n * 0.2), n - top_count)

    top_spend = sum(c.metrics.cost for c in ordered[:top_count])
    bottom_spend = sum(c.metrics.cost for c in ordered[n - bottom_count:]) if bottom_count else 0.0
    middle_spend = total - top_spend - bottom_spend

    return SpendDistribution(
        top_20_percent=round(top_spend / total, 4),
        middle_60_percent=round(middle_spend / total, 4),
        bottom_20_percent=round(bottom_spend / total, 4),
    )


# ── Historical trends ─────────────────────────────────────────────────

def _row_field(row: Any, name: str) -> Any:
    return row.get(name) if isinstance(row, dict) else getattr(row, name, None)


def _aggregate_by_day(history: Iterable[Any]) -> dict[date, dict[str, float]]:
    days: dict[date, dict[str, float]] = defaultdict(lambda: defaultdict(float))
    for row in history:
        day = _row_field(row, "date")
        metrics = _row_field(row, "metrics") or {}
        if isinstance(day, str):
            day = date.fromisoformat(day)
        if not isinstance(day, date):
            continue
        for field in ("clicks", "impressions", "cost", "conversions"):
            days[day][field] += to_number(metrics.get(field))
    return days


def _sum_window(days: dict[date, dict[str, float]], start: date, end: date) -> Optional[dict[str, float]]:
    totals: dict[str, float] = defaultdict(float)
    seen = False
    for day, values in days.items():
        if start <= day <= end:
            seen = True
            for field, value in values.items():
                totals[field] += value
    return totals if seen else None


def _trend(metric: str, current: float, previous: float, t: InsightThresholds) -> Optional[PerformanceTrend]:
    if previous <= 0:
        return None
    change = (current - previous) / previous * 100
    magnitude = abs(change)
    if magnitude < t.trend_stable_pct:
        direction = "stable"
    else:
        direction = "increasing" if change > 0 else "decreasing"
    if magnitude >= t.trend_high_pct:
        significance = "high"
    elif magnitude >= t.trend_medium_pct:
        significance = "medium"
    else:
        significance = "low"
    return PerformanceTrend(
        metric=metric,
        period="7d",
        trend=direction,
        change_percentage=round(change, 1),
        significance=significance,
    )


def compute_performance_trends(
    history: Optional[Iterable[Any]],
    t: InsightThresholds = DEFAULT_THRESHOLDS,
) -> list[PerformanceTrend]:
    """
    Week-over-week trends for CTR, CPC and Conversions from daily rows
    (ORM MetricsDaily objects or dicts with date + metrics).
    Returns [] when there are not two comparable weeks of data.
    """
    days = _aggregate_by_day(history or [])
    if not days:
        return []

    anchor = max(days)
    recent = _sum_window(days, anchor - timedelta(days=6), anchor)
    previous = _sum_window(days, anchor - timedelta(days=13), anchor - timedelta(days=7))
    if recent is None or previous is None:
        return []

    candidates = [
        _trend(
            "CTR",
            safe_div(recent["clicks"], recent["impressions"]),
            safe_div(previous["clicks"], previous["impressions"]),
            t,
        ),
        _trend(
            "CPC",
            safe_div(recent["cost"], recent["clicks"]),
            safe_div(previous["cost"], previous["clicks"]),
            t,
        ),
        _trend("Conversions", recent["conversions"], previous["conversions"], t),
    ]
    return [trend for trend in candidates if trend is not None]


# ── Entry point ───────────────────────────────────────────────────────

def generate_insights(
    campaigns: list[Campaign],
    ad_groups: list[AdGroup],
    keywords: list[Keyword],
    history: Optional[Iterable[Any]] = None,
    thresholds: Optional[InsightThresholds] = None,
) -> AccountInsights:
    t = thresholds or DEFAULT_THRESHOLDS
    trends = compute_performance_trends(history, t)
    insights = AccountInsights(
        top_performing_campaigns=find_top_performing(campaigns, t),
        underperforming_campaigns=find_underperforming(campaigns, t),
        budget_recommendations=generate_budget_recommendations(campaigns, t),
        keyword_opportunities=generate_keyword_opportunities(keywords, t),
        performance_trends=trends,
        trends_available=bool(trends),
        spend_distribution=calculate_spend_distribution(campaigns),
    )
    logger.info(
        f"Insights: {len(insights.top_performing_campaigns)} top, "
        f"{len(insights.underperforming_campaigns)} underperforming, "
        f"{len(insights.budget_recommendations)} budget, "
        f"{len(insights.keyword_opportunities)} keyword opportunities "
        f"(ad groups analysed: {len(ad_groups)})"
    )
    return insights
