"""
Relevance Selector — picks the slice of account data that matches a user question.

Intent detection is an ordered table of (pattern, focus) rules, so adding a
language or entity means adding a row, not another branch. Each selected focus
gets its top-N entities by the preferred metric, trimmed to compact projections
to keep the prompt small.
"""

import logging
import re
from typing import Any, Optional

from ads_copilot.config import get_settings
from ads_copilot.schemas import AIContextBundle, RelevantContext
from ads_copilot.utils import safe_div, to_number

logger = logging.getLogger(__name__)

SUMMARY_KEYWORDS_LIMIT = 10
MAX_TOP_N = 25

# Ordered: the focus list follows this order when several match.
FOCUS_RULES: list[tuple[re.Pattern, str]] = [
    (re.compile(
        r"keyword|zoekwoord|zoekwoorden|search term|terms|ctr|cpc|quality|kwaliteit|match|phrase|exact|broad",
        re.IGNORECASE,
    ), "keywords"),
    (re.compile(r"ad[- ]?group|advertentiegroep|adgroep", re.IGNORECASE), "ad_groups"),
    (re.compile(r"campaign|campagne", re.IGNORECASE), "campaigns"),
]

DEVICE_PATTERN = re.compile(r"device|apparaat|mobile|desktop|tablet", re.IGNORECASE)

# First match wins; clicks is the default.
METRIC_RULES: list[tuple[re.Pattern, str]] = [
    (re.compile(r"convers", re.IGNORECASE), "conversions"),
    (re.compile(r"\bctr\b", re.IGNORECASE), "ctr"),
    (re.compile(r"cost|spent|spend|budget|kosten", re.IGNORECASE), "cost"),
]
DEFAULT_METRIC = "clicks"


def detect_focus(query: str) -> list[str]:
    return [focus for pattern, focus in FOCUS_RULES if pattern.search(query or "")]


def wants_device_breakdown(query: str) -> bool:
    return bool(DEVICE_PATTERN.search(query or ""))


def preferred_metric(query: str) -> str:
    for pattern, metric in METRIC_RULES:
        if pattern.search(query or ""):
            return metric
    return DEFAULT_METRIC


def pick_metrics(item: dict[str, Any]) -> dict[str, float]:
    """Normalized metric view of a projection; missing fields read as 0."""
    m = item.get("metrics") or {}
    clicks = to_number(m.get("clicks"))
    impressions = to_number(m.get("impressions"))
    ctr = m.get("ctr")
    cost = m.get("cost")
    if cost is None and m.get("cost_micros") is not None:
        cost = to_number(m.get("cost_micros")) / 1_000_000
    return {
        "clicks": clicks,
        "impressions": impressions,
        "ctr": to_number(ctr) if ctr is not None else safe_div(clicks, impressions),
        "cost": to_number(cost),
        "conversions": to_number(m.get("conversions")),
    }


def _top(items: list[dict], metric: str, top_n: int) -> list[dict]:
    return sorted(items, key=lambda item: pick_metrics(item)[metric], reverse=True)[:top_n]


def _project_keyword(item: dict) -> dict:
    return {
        "keyword": item.get("keyword"),
        "match_type": item.get("match_type"),
        "campaign_name": item.get("campaign_name"),
        "ad_group_name": item.get("ad_group_name"),
        "metrics": pick_metrics(item),
    }


def _project_ad_group(item: dict, include_device: bool) -> dict:
    projected = {
        "id": item.get("id"),
        "name": item.get("name"),
        "status": item.get("status"),
        "campaign_name": item.get("campaign_name"),
        "metrics": pick_metrics(item),
    }
    if include_device:
        projected["device"] = item.get("device")
    return projected


def _project_campaign(item: dict) -> dict:
    return {
        "id": item.get("id"),
        "name": item.get("name"),
        "status": item.get("status"),
        "metrics": pick_metrics(item),
    }


def select_relevant_context(
    query: str,
    bundle: Optional[AIContextBundle],
    top_n: Optional[int] = None,
) -> Optional[RelevantContext]:
    """
    Focused data for one question, or None when there is no account context at all.
    With no recognized intent, or none backed by data, the result falls back to
    the executive summary plus the most-clicked keywords, never an empty payload.
    """
    if bundle is None:
        return None

    top_n = min(top_n or get_settings().relevance_top_n, MAX_TOP_N)
    entities = bundle.entities
    available = {
        "campaigns": entities.campaigns,
        "ad_groups": entities.ad_groups,
        "keywords": entities.keywords,
    }
    # A matched intent only counts when there is data behind it.
    focus = [f for f in detect_focus(query) if available[f]]
    metric = preferred_metric(query)
    include_device = wants_device_breakdown(query)
    totals = {name: len(items) for name, items in available.items()}
    date_range = bundle.structured_data.performance_snapshot.period

    if not focus:
        summary = bundle.natural_language.executive_summary or bundle.natural_language.performance_narrative
        data: dict[str, list[dict]] = {}
        if entities.keywords:
            data["keywords"] = [
                _project_keyword(k) for k in _top(entities.keywords, "clicks", SUMMARY_KEYWORDS_LIMIT)
            ]
        logger.info(f"Relevance: no specific intent, summary fallback (metric={metric})")
        return RelevantContext(
            focus=["summary"],
            metric=metric,
            top_n=top_n,
            totals=totals,
            date_range=date_range,
            data=data,
            summary=summary,
        )

    data = {}
    if "keywords" in focus:
        data["keywords"] = [_project_keyword(k) for k in _top(entities.keywords, metric, top_n)]
    if "ad_groups" in focus:
        data["ad_groups"] = [
            _project_ad_group(g, include_device) for g in _top(entities.ad_groups, metric, top_n)
        ]
    if "campaigns" in focus:
        data["campaigns"] = [_project_campaign(c) for c in _top(entities.campaigns, metric, top_n)]

    logger.info(f"Relevance: focus={focus} metric={metric} sizes={ {k: len(v) for k, v in data.items()} }")
    return RelevantContext(
        focus=focus,
        metric=metric,
        top_n=top_n,
        totals=totals,
        date_range=date_range,
        data=data,
    )
