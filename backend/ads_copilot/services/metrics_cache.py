"""
Metrics Cache — TTL cache of normalized Google Ads listings, keyed per account.

The cache is a reconstructible artifact: read failures count as a miss and
write failures are logged and dropped. Concurrent writers to the same key are
resolved by the upsert (last write wins); there is no locking.

Also owns the daily metrics table used for historical trends.
"""

import hashlib
import json
import logging
import uuid
from datetime import date, timedelta
from typing import Any, Iterable, Optional
from sqlalchemy import select, delete
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ads_copilot.models import MetricsCacheEntry, MetricsDaily
from ads_copilot.utils import utcnow

logger = logging.getLogger(__name__)

DEFAULT_TTL_HOURS = 1.0


def generate_cache_key(entity_type: str, date_range: str, metrics: Optional[Iterable[str]] = None) -> str:
    """Deterministic key: entity, date range and the sorted metric list."""
    metric_part = ",".join(sorted(metrics or []))
    return f"{entity_type}_{date_range}_{metric_part}"


def generate_query_hash(query: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON form of a request (account, entity, filters)."""
    canonical = json.dumps(query, sort_keys=True, default=str, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _as_uuid(value: Any) -> uuid.UUID:
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


class MetricsCache:
    """Cache operations bound to one database session."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ── Cache entries ────────────────────────────────────────────────

    async def get(
        self,
        account_id: Any,
        cache_key: str,
        ttl_hours: Optional[float] = None,
    ) -> Optional[MetricsCacheEntry]:
        """
        Return the live entry for (account, key) or None.
        An entry whose expires_at has passed is never returned. When ttl_hours is
        given, entries created longer ago than that are treated as misses too.
        """
        now = utcnow()
        try:
            result = await self.db.execute(
                select(MetricsCacheEntry).where(
                    MetricsCacheEntry.account_id == _as_uuid(account_id),
                    MetricsCacheEntry.cache_key == cache_key,
                    MetricsCacheEntry.expires_at > now,
                )
            )
            entry = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.warning(f"Cache read failed for {cache_key} (account {account_id}): {e}")
            return None

        if entry is None or entry.expires_at <= now:
            return None
        if ttl_hours is not None and entry.created_at and entry.created_at <= now - timedelta(hours=ttl_hours):
            return None
        return entry

    async def set(
        self,
        account_id: Any,
        cache_key: str,
        payload: Any,
        query_hash: str,
        ttl_hours: float = DEFAULT_TTL_HOURS,
    ) -> bool:
        """Upsert an entry on (account_id, cache_key). Returns False when the write was dropped."""
        now = utcnow()
        expires_at = now + timedelta(hours=ttl_hours)
        stmt = pg_insert(MetricsCacheEntry).values(
            id=uuid.uuid4(),
            account_id=_as_uuid(account_id),
            cache_key=cache_key,
            query_hash=query_hash,
            data=payload,
            created_at=now,
            expires_at=expires_at,
        )
        stmt = stmt.on_conflict_do_update(
            constraint="uq_metrics_cache_account_key",
            set_={
                "query_hash": stmt.excluded.query_hash,
                "data": stmt.excluded.data,
                "created_at": stmt.excluded.created_at,
                "expires_at": stmt.excluded.expires_at,
            },
        )
        try:
            async with self.db.begin_nested():
                await self.db.execute(stmt)
        except SQLAlchemyError as e:
            logger.warning(f"Cache write failed for {cache_key} (account {account_id}): {e}")
            return False
        logger.info(f"Cached {cache_key} for account {account_id} until {expires_at.isoformat()}")
        return True

    async def cleanup_expired(self) -> int:
        """Delete entries whose expires_at has passed. Returns the number removed."""
        result = await self.db.execute(
            delete(MetricsCacheEntry).where(MetricsCacheEntry.expires_at <= utcnow())
        )
        removed = result.rowcount or 0
        logger.info(f"Cache cleanup removed {removed} expired entries")
        return removed

    async def clear_account(self, account_id: Any) -> int:
        """Drop every entry of one account (force refresh)."""
        result = await self.db.execute(
            delete(MetricsCacheEntry).where(MetricsCacheEntry.account_id == _as_uuid(account_id))
        )
        removed = result.rowcount or 0
        logger.info(f"Cleared {removed} cache entries for account {account_id}")
        return removed

    # ── Daily metrics ────────────────────────────────────────────────

    async def store_daily_metrics(
        self,
        account_id: Any,
        entity_type: str,
        day: date,
        entity_id: str,
        entity_name: Optional[str],
        metrics: dict[str, Any],
    ) -> None:
        """Upsert one entity-day row."""
        stmt = pg_insert(MetricsDaily).values(
            id=uuid.uuid4(),
            account_id=_as_uuid(account_id),
            date=day,
            entity_type=entity_type,
            entity_id=str(entity_id),
            entity_name=entity_name,
            metrics=metrics,
            synced_at=utcnow(),
        )
        stmt = stmt.on_conflict_do_update(
            constraint="uq_metrics_daily_entity_day",
            set_={
                "entity_name": stmt.excluded.entity_name,
                "metrics": stmt.excluded.metrics,
                "synced_at": stmt.excluded.synced_at,
            },
        )
        await self.db.execute(stmt)

    async def get_historical_data(
        self,
        account_id: Any,
        entity_type: str,
        start_date: date,
        end_date: date,
    ) -> list[MetricsDaily]:
        """Daily rows for an entity type within [start_date, end_date], oldest first."""
        try:
            result = await self.db.execute(
                select(MetricsDaily)
                .where(
                    MetricsDaily.account_id == _as_uuid(account_id),
                    MetricsDaily.entity_type == entity_type,
                    MetricsDaily.date >= start_date,
                    MetricsDaily.date <= end_date,
                )
                .order_by(MetricsDaily.date.asc())
            )
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.warning(f"Historical metrics read failed for account {account_id}: {e}")
            return []
