"""
Sync Service — Daily per-campaign metric snapshots for trend analysis.

Accounts are synced in fixed-size batches (default 3) to bound concurrency
against the Google Ads API. Each account gets its own session so a failure in
one account is recorded on that account and never aborts the others.
"""

import asyncio
import logging
import uuid
from datetime import date, timedelta
from typing import Any, Callable, Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ads_copilot.config import get_settings
from ads_copilot.models import EntityType, GoogleAdsAccount
from ads_copilot.services.metrics_cache import MetricsCache
from ads_copilot.utils import micros_to_units, pick, safe_div, to_number, utcnow

logger = logging.getLogger(__name__)


def daily_metrics_from_row(row: dict) -> dict[str, float]:
    """Flat, unit-normalized metrics dict as stored in google_ads_metrics_daily."""
    m = pick(row, "metrics", default={})
    clicks = to_number(pick(m, "clicks"))
    impressions = to_number(pick(m, "impressions"))
    conversions = to_number(pick(m, "conversions"))
    cost = micros_to_units(pick(m, "costMicros", "cost_micros"))
    return {
        "impressions": int(impressions),
        "clicks": int(clicks),
        "cost": round(cost, 2),
        "conversions": conversions,
        "conversion_value": to_number(pick(m, "conversionsValue", "conversions_value")),
        "ctr": to_number(pick(m, "ctr"), default=safe_div(clicks, impressions)),
        "average_cpc": round(micros_to_units(pick(m, "averageCpc", "average_cpc")), 2),
        "cost_per_conversion": round(micros_to_units(pick(m, "costPerConversion", "cost_per_conversion")), 2),
        "conversion_rate": safe_div(conversions, clicks),
    }


class SyncService:
    """Runs the daily metrics sync. Session and client factories are injected."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        client_factory: Callable[[AsyncSession], Any],
        batch_size: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.client_factory = client_factory
        self.batch_size = batch_size or get_settings().sync_batch_size

    async def list_active_account_ids(self) -> list[uuid.UUID]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(GoogleAdsAccount.id).where(GoogleAdsAccount.is_active.is_(True))
            )
            return list(result.scalars().all())

    async def sync_account(self, account_id: Any, day: date) -> dict:
        """Sync one account-day. Errors are stored on the account and reported, not raised."""
        key = account_id if isinstance(account_id, uuid.UUID) else uuid.UUID(str(account_id))
        async with self.session_factory() as db:
            account = await db.get(GoogleAdsAccount, key)
            if account is None or not account.is_active:
                logger.warning(f"Daily sync skipped: account {account_id} not found or inactive")
                return {"account_id": str(account_id), "status": "skipped"}

            try:
                client = self.client_factory(db)
                rows = await client.get_campaign_daily_metrics(account, day)
                cache = MetricsCache(db)
                stored = 0
                for row in rows:
                    campaign = pick(row, "campaign", default={})
                    campaign_id = pick(campaign, "id")
                    if campaign_id is None:
                        continue
                    await cache.store_daily_metrics(
                        account.id,
                        EntityType.CAMPAIGN.value,
                        day,
                        str(campaign_id),
                        pick(campaign, "name"),
                        daily_metrics_from_row(row),
                    )
                    stored += 1
                account.last_successful_fetch = utcnow()
                await db.commit()
                logger.info(f"Synced {stored} campaigns for account {account.id} on {day.isoformat()}")
                return {"account_id": str(account.id), "status": "ok", "campaigns": stored}
            except Exception as e:
                # One account's failure must not stop the batch; record it on the account.
                logger.error(f"Daily sync failed for account {account_id}: {e}", exc_info=True)
                await db.rollback()
                account.last_error_at = utcnow()
                account.last_error_message = str(e)[:1000]
                await db.commit()
                return {"account_id": str(account_id), "status": "error", "error": str(e)}

    async def sync_daily_metrics(
        self,
        account_ids: Optional[list[Any]] = None,
        day: Optional[date] = None,
    ) -> dict:
        """Sync `day` (default: yesterday) for the given accounts, or every active account."""
        day = day or (date.today() - timedelta(days=1))
        ids = list(account_ids) if account_ids else await self.list_active_account_ids()
        logger.info(f"Syncing {len(ids)} accounts for {day.isoformat()} in batches of {self.batch_size}")

        results: list[dict] = []
        for start in range(0, len(ids), self.batch_size):
            batch = ids[start:start + self.batch_size]
            results.extend(await asyncio.gather(*(self.sync_account(a, day) for a in batch)))

        return {
            "synced_date": day.isoformat(),
            "accounts": len(ids),
            "succeeded": sum(1 for r in results if r["status"] == "ok"),
            "failed": sum(1 for r in results if r["status"] == "error"),
            "results": results,
        }
