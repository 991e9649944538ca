"""
Token Service — Supplies Google Ads access tokens to the API client.

OAuth exchange and refresh are done by the account-connection flow, which writes
the (encrypted) access token onto the account row. Here we only read it back;
a "refresh" re-reads the row so a rotated token is picked up.
"""

import asyncio
import logging
from typing import Optional
import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from ads_copilot.ads_client import GoogleAdsClient
from ads_copilot.config import get_settings
from ads_copilot.crypto import decrypt_token
from ads_copilot.errors import NeedsReconnection
from ads_copilot.models import GoogleAdsAccount

logger = logging.getLogger(__name__)


class StoredTokenProvider:
    """TokenProvider backed by the google_ads_accounts table."""

    def __init__(self, db: AsyncSession):
        self.db = db
        # Concurrent dataset fetches can hit a 401 together; the session takes one refresh at a time.
        self._refresh_lock = asyncio.Lock()

    def _decrypt_or_fail(self, account: GoogleAdsAccount) -> str:
        token = decrypt_token(account.access_token)
        if not token:
            raise NeedsReconnection(
                "No access token stored for this Google Ads account. Please reconnect.",
                account_id=str(account.id),
            )
        return token

    async def get_access_token(self, account: GoogleAdsAccount) -> str:
        return self._decrypt_or_fail(account)

    async def refresh_access_token(self, account: GoogleAdsAccount) -> str:
        async with self._refresh_lock:
            await self.db.refresh(account, attribute_names=["access_token", "needs_reconnection"])
        if account.needs_reconnection:
            raise NeedsReconnection(
                "Google Ads account requires reconnection.",
                account_id=str(account.id),
            )
        logger.info(f"Re-read stored access token for account {account.id}")
        return self._decrypt_or_fail(account)


def create_ads_client(db: AsyncSession, http_client: Optional[httpx.AsyncClient] = None) -> GoogleAdsClient:
    """Build a GoogleAdsClient from settings with DB-backed tokens."""
    settings = get_settings()
    return GoogleAdsClient(
        developer_token=settings.google_ads_developer_token,
        token_provider=StoredTokenProvider(db),
        api_version=settings.google_ads_api_version,
        login_customer_id=settings.google_ads_login_customer_id or None,
        http_client=http_client,
        timeout=settings.google_ads_timeout_seconds,
    )
