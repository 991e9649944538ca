"""
Tests for the AI context builder: freshness, completeness, health score,
recommendation ranking, narratives and query-specific data.
"""

from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from ads_copilot.schemas import (
    AdGroup,
    Campaign,
    ConsolidatedAccount,
    ConsolidatedAccountData,
    DataFilters,
    Keyword,
    Metrics,
)
from ads_copilot.services.context_builder import (
    ContextBuilder,
    build_ai_context,
    calculate_benchmarks,
    calculate_data_completeness,
    calculate_health_score,
    classify_freshness,
    prepare_query_specific_data,
)
from ads_copilot.services.insights import InsightThresholds, generate_insights

NOW = datetime(2025, 6, 30, 12, 0, 0)


@pytest.fixture
def anyio_backend():
    return "asyncio"


def _strong():
    return Campaign(
        id="1", name="Brand", status="ENABLED", budget_amount=100,
        metrics=Metrics(clicks=100, impressions=2000, cost=300, conversions=10, ctr=0.05, cpc=3),
    )


def _wasted():
    return Campaign(
        id="2", name="Generic", status="ENABLED", budget_amount=40,
        metrics=Metrics(clicks=60, impressions=3000, cost=150, conversions=0, ctr=0.02, cpc=2.5),
    )


def _keyword():
    return Keyword(
        id="k1", text="buy shoes", campaign_name="Brand",
        metrics=Metrics(clicks=50, conversions=3, cpc=1.5, cost=75),
    )


def _data(campaigns=None, ad_groups=None, keywords=None, last_fetch=NOW - timedelta(hours=1), **account):
    campaigns = campaigns if campaigns is not None else [_strong(), _wasted()]
    ad_groups = ad_groups if ad_groups is not None else [AdGroup(id="g1", name="Shoes", device="MOBILE")]
    keywords = keywords if keywords is not None else [_keyword()]
    values = dict(
        id="acc-1",
        customer_id="1234567890",
        account_name="Acme",
        currency_code="EUR",
        connection_status="CONNECTED",
        last_successful_fetch=last_fetch,
    )
    values.update(account)
    return ConsolidatedAccountData(
        account=ConsolidatedAccount(**values),
        campaigns=campaigns,
        ad_groups=ad_groups,
        keywords=keywords,
        insights=generate_insights(campaigns, ad_groups, keywords),
    )


# ── Freshness ─────────────────────────────────────────────────────────

def test_freshness_states():
    assert classify_freshness(None, NOW) == "unavailable"
    assert classify_freshness(NOW - timedelta(hours=1), NOW) == "fresh"
    assert classify_freshness(NOW - timedelta(hours=10), NOW) == "stale"
    assert classify_freshness(NOW - timedelta(hours=30), NOW) == "unavailable"


def test_stale_data_flags_refresh():
    bundle = build_ai_context(_data(last_fetch=NOW - timedelta(hours=10)), now=NOW)
    meta = bundle.structured_data.context_metadata
    assert meta.data_freshness == "stale"
    assert meta.needs_refresh is True
    assert "refresh is recommended" in bundle.natural_language.data_quality_note


# ── Completeness and health ──────────────────────────────────────────

def test_completeness_full_and_sparse():
    assert calculate_data_completeness(_data()) == 1.0

    sparse = _data(campaigns=[], ad_groups=[], keywords=[], last_fetch=None,
                   account_name="", connection_status="PENDING")
    score = calculate_data_completeness(sparse)
    assert 0 <= score < 0.5


def test_completeness_grows_with_richer_data():
    base = _data(ad_groups=[], keywords=[])
    richer = _data(keywords=[])
    assert calculate_data_completeness(base) < calculate_data_completeness(richer) <= 1.0


def test_health_score_bands():
    assert calculate_health_score(_data(campaigns=[_strong()]), NOW) == 100

    old = _data(campaigns=[_strong()], last_fetch=NOW - timedelta(hours=48))
    assert calculate_health_score(old, NOW) == 90

    nothing = _data(campaigns=[], last_fetch=None, connection_status="DISCONNECTED")
    assert calculate_health_score(nothing, NOW) == 0


# ── Recommendations ──────────────────────────────────────────────────

def test_recommendations_ranked_by_weighted_confidence():
    bundle = build_ai_context(_data(), now=NOW)
    recs = bundle.structured_data.actionable_recommendations
    assert [r.type for r in recs] == ["campaign", "budget", "keyword"]
    scores = [{"high": 3, "medium": 2, "low": 1}[r.priority] * r.confidence for r in recs]
    assert scores == sorted(scores, reverse=True)
    budget = next(r for r in recs if r.type == "budget")
    assert budget.quick_action == "Adjust budget from EUR 100 to EUR 120"


def test_wasted_campaign_listed_in_concerns():
    summary = build_ai_context(_data(), now=NOW).structured_data.insights_summary
    assert any("Generic" in concern for concern in summary.main_concerns)
    assert summary.performance_trends == ["Trend data unavailable"]
    assert summary.competitive_position == "Competitive data not available"


# ── Narratives ───────────────────────────────────────────────────────

def test_narratives_degrade_gracefully_without_data():
    empty = _data(campaigns=[], ad_groups=[], keywords=[], last_fetch=None, account_name="")
    nl = build_ai_context(empty, now=NOW).natural_language
    assert "no major concerns" in nl.performance_narrative
    assert nl.recommendation_narrative == "Account is performing well with no immediate actions required."
    assert "may be incomplete" in nl.executive_summary
    assert "unavailable" in nl.data_quality_note
    assert "EUR 0.00" in nl.executive_summary


def test_executive_summary_uses_numbers():
    nl = build_ai_context(_data(campaigns=[_strong()]), now=NOW).natural_language
    assert "EUR 300.00" in nl.executive_summary
    assert "10 conversions" in nl.executive_summary
    assert "EUR 30.00 per conversion" in nl.executive_summary


# ── Query-specific data ──────────────────────────────────────────────

def test_query_specific_budget_analysis():
    result = prepare_query_specific_data(_data(), "How is my budget?")
    assert result["type"] == "budget_analysis"
    assert result["total_budget"] == 140
    assert result["actual_spend"] == 450


def test_query_specific_routes():
    data = _data()
    assert prepare_query_specific_data(data, "best keyword")["type"] == "keyword_analysis"
    assert prepare_query_specific_data(data, "campaign overview")["type"] == "campaign_analysis"
    assert prepare_query_specific_data(data, "performance please")["type"] == "performance_analysis"
    assert prepare_query_specific_data(data, "hello") is None
    assert prepare_query_specific_data(data, None) is None


def test_benchmarks_percentiles():
    campaigns = [
        Campaign(id=str(i), status="ENABLED", metrics=Metrics(clicks=100, ctr=ctr, cpc=1, conversions=1))
        for i, ctr in enumerate([0.01, 0.02, 0.03, 0.04])
    ]
    bench = calculate_benchmarks(campaigns)
    assert bench["ctr"] == {"p25": 0.01, "p50": 0.02, "p75": 0.03}
    assert calculate_benchmarks([])["cpc"]["p50"] == 0


# ── Entity projections and builder ───────────────────────────────────

def test_bundle_carries_entity_projections():
    entities = build_ai_context(_data(), now=NOW).entities
    assert entities.campaigns[0]["name"] == "Brand"
    assert entities.ad_groups[0]["device"] == "MOBILE"
    assert entities.keywords[0]["keyword"] == "buy shoes"


@pytest.mark.anyio
async def test_context_builder_uses_consolidation():
    consolidation = MagicMock()
    consolidation.thresholds = InsightThresholds()
    consolidation.get_consolidated_account_data = AsyncMock(return_value=_data())
    filters = DataFilters(date_range="LAST_7_DAYS")

    bundle = await ContextBuilder(consolidation).prepare_ai_context("acc-1", filters, "keyword ideas", user_id="u")

    consolidation.get_consolidated_account_data.assert_awaited_once_with("acc-1", filters, user_id="u")
    assert bundle.structured_data.performance_snapshot.period == "Last 7 Days"
    assert bundle.query_specific_data["type"] == "keyword_analysis"
