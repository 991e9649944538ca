"""
Cron / Scheduled Jobs — Endpoints for an external scheduler.

These endpoints verify CRON_SECRET and run the daily metrics sync and the
expired-cache cleanup. Send either:
  X-Cron-Secret: <CRON_SECRET>
  OR Authorization: Bearer <CRON_SECRET>
"""

import hmac
import logging
from datetime import date
from typing import Optional
from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ads_copilot.config import get_settings
from ads_copilot.database import async_session, get_db
from ads_copilot.services.metrics_cache import MetricsCache
from ads_copilot.services.sync_service import SyncService
from ads_copilot.services.token_service import create_ads_client
from ads_copilot.utils import parse_uuid, safe_error_detail

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", tags=["Cron"])


class SyncDailyRequest(BaseModel):
    account_id: Optional[str] = None  # Omit to sync all active accounts
    sync_date: Optional[date] = Field(default=None, alias="date")  # Omit to sync yesterday


async def _require_cron_secret(
    x_cron_secret: str | None = Header(None, alias="X-Cron-Secret"),
    authorization: str | None = Header(None),
) -> None:
    """Verify the request came from the scheduler."""
    secret = get_settings().cron_secret
    if not secret:
        raise HTTPException(500, "CRON_SECRET not configured")
    token = x_cron_secret
    if not token and authorization and authorization.startswith("Bearer "):
        token = authorization[7:]
    if not token or not hmac.compare_digest(token, secret):
        raise HTTPException(401, "Invalid cron secret")


def get_sync_service() -> SyncService:
    return SyncService(async_session, create_ads_client)


@router.post("/sync-daily")
async def cron_sync_daily(
    payload: SyncDailyRequest | None = None,
    _: None = Depends(_require_cron_secret),
    service: SyncService = Depends(get_sync_service),
):
    """
    Daily metrics sync (defaults: all active accounts, yesterday).
    POST /api/cron/sync-daily
    Header: X-Cron-Secret: <CRON_SECRET>
    """
    payload = payload or SyncDailyRequest()
    account_ids = [parse_uuid(payload.account_id, "account_id")] if payload.account_id else None
    try:
        result = await service.sync_daily_metrics(account_ids=account_ids, day=payload.sync_date)
    except Exception as e:
        raise HTTPException(500, safe_error_detail(e, "Daily metrics sync failed."))
    logger.info(
        f"Cron daily sync {result['synced_date']}: "
        f"{result['succeeded']} ok, {result['failed']} failed of {result['accounts']}"
    )
    return {"status": "ok", **result}


@router.post("/cleanup-cache")
async def cron_cleanup_cache(
    _: None = Depends(_require_cron_secret),
    db: AsyncSession = Depends(get_db),
):
    """Delete expired metrics cache entries."""
    removed = await MetricsCache(db).cleanup_expired()
    return {"status": "ok", "removed": removed}
