"""
Context Router — Consolidated account data, AI context bundles and per-question relevant context.
ContextError subclasses (access denied, not connected, reconnect) are rendered by the app-level handler.
"""

import logging
from typing import Optional
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ads_copilot.database import get_db
from ads_copilot.schemas import DataFilters
from ads_copilot.services.consolidation import ConsolidationService
from ads_copilot.services.context_builder import ContextBuilder
from ads_copilot.services.relevance import select_relevant_context
from ads_copilot.services.token_service import create_ads_client

logger = logging.getLogger(__name__)

router = APIRouter()


# ── Request Models ────────────────────────────────────────────────────

class ContextRequest(BaseModel):
    account_id: str
    user_id: Optional[str] = None
    filters: DataFilters = Field(default_factory=DataFilters)
    query: Optional[str] = None
    force_refresh: bool = False


class RelevantContextRequest(BaseModel):
    account_id: str
    query: str
    user_id: Optional[str] = None
    filters: DataFilters = Field(default_factory=DataFilters)


class RefreshRequest(BaseModel):
    account_id: str
    user_id: Optional[str] = None
    filters: DataFilters = Field(default_factory=DataFilters)


# ── Dependencies ──────────────────────────────────────────────────────

def get_context_builder(db: AsyncSession = Depends(get_db)) -> ContextBuilder:
    """Per-request pipeline wired to this request's session."""
    return ContextBuilder(ConsolidationService(db, create_ads_client(db)))


# ── Endpoints ─────────────────────────────────────────────────────────

@router.post("")
async def get_ai_context(payload: ContextRequest, builder: ContextBuilder = Depends(get_context_builder)):
    """Full AI context bundle (structured data, narratives, optional query-specific data)."""
    if payload.force_refresh:
        await builder.consolidation.load_account(payload.account_id, payload.user_id)
        await builder.consolidation.clear_account_cache(payload.account_id)
    bundle = await builder.prepare_ai_context(
        payload.account_id, payload.filters, query=payload.query, user_id=payload.user_id
    )
    return bundle.model_dump(mode="json")


@router.post("/consolidated")
async def get_consolidated_data(payload: ContextRequest, builder: ContextBuilder = Depends(get_context_builder)):
    """Raw consolidated view: account aggregates, entities and insights."""
    data = await builder.consolidation.get_consolidated_account_data(
        payload.account_id, payload.filters, user_id=payload.user_id
    )
    return data.model_dump(mode="json")


@router.post("/relevant")
async def get_relevant_context(
    payload: RelevantContextRequest,
    builder: ContextBuilder = Depends(get_context_builder),
):
    """The slice of account data that matches one user question."""
    bundle = await builder.prepare_ai_context(
        payload.account_id, payload.filters, query=payload.query, user_id=payload.user_id
    )
    relevant = select_relevant_context(payload.query, bundle)
    return {
        "relevant": relevant.model_dump(mode="json") if relevant else None,
        "query_specific_data": bundle.query_specific_data,
        "context_metadata": bundle.structured_data.context_metadata.model_dump(mode="json"),
    }


@router.post("/refresh")
async def refresh_context(payload: RefreshRequest, builder: ContextBuilder = Depends(get_context_builder)):
    """Drop the account's cached listings and rebuild the context from live data."""
    await builder.consolidation.load_account(payload.account_id, payload.user_id)
    cleared = await builder.consolidation.clear_account_cache(payload.account_id)
    bundle = await builder.prepare_ai_context(payload.account_id, payload.filters, user_id=payload.user_id)
    logger.info(f"Refreshed context for account {payload.account_id} ({cleared} cache entries cleared)")
    return {"cleared": cleared, "context": bundle.model_dump(mode="json")}
