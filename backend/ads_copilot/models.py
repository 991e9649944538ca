"""
Google Ads Copilot — Database Models
Connected accounts, the metrics cache, daily metric snapshots and AI conversations.
"""

import uuid
import enum
from datetime import date, datetime
from sqlalchemy import (
    String, Text, Boolean, Date, DateTime,
    JSON, ForeignKey, Index, UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.dialects.postgresql import UUID
from ads_copilot.database import Base
from ads_copilot.utils import utcnow


# ══════════════════════════════════════════════════════════════════════
#  ENUMS
# ══════════════════════════════════════════════════════════════════════

class ConnectionStatus(str, enum.Enum):
    CONNECTED = "CONNECTED"
    DISCONNECTED = "DISCONNECTED"
    ERROR = "ERROR"
    PENDING = "PENDING"


class EntityType(str, enum.Enum):
    CAMPAIGN = "campaign"
    AD_GROUP = "ad_group"
    KEYWORD = "keyword"


# ══════════════════════════════════════════════════════════════════════
#  ACCOUNTS
# ══════════════════════════════════════════════════════════════════════

class GoogleAdsAccount(Base):
    """A Google Ads customer connected by a user. Tokens are written by the OAuth flow."""
    __tablename__ = "google_ads_accounts"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    customer_id: Mapped[str] = mapped_column(String(32), nullable=False)
    account_name: Mapped[str] = mapped_column(String(255), nullable=True)
    currency_code: Mapped[str] = mapped_column(String(8), nullable=True)
    time_zone: Mapped[str] = mapped_column(String(64), nullable=True)
    connection_status: Mapped[str] = mapped_column(String(20), default=ConnectionStatus.PENDING.value)
    needs_reconnection: Mapped[bool] = mapped_column(Boolean, default=False)
    access_token: Mapped[str] = mapped_column(Text, nullable=True)  # Fernet-encrypted
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    last_successful_fetch: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    last_error_message: Mapped[str] = mapped_column(Text, nullable=True)
    last_error_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    cache_entries = relationship("MetricsCacheEntry", back_populates="account", cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint("user_id", "customer_id", name="uq_account_user_customer"),
        Index("ix_google_ads_accounts_user", "user_id"),
    )


# ══════════════════════════════════════════════════════════════════════
#  METRICS CACHE & DAILY SNAPSHOTS
# ══════════════════════════════════════════════════════════════════════

class MetricsCacheEntry(Base):
    """
    Cached, already-normalized entity listing for one (account, cache_key).
    Reconstructible at any time from the Google Ads API.
    """
    __tablename__ = "google_ads_metrics_cache"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("google_ads_accounts.id", ondelete="CASCADE"), nullable=False
    )
    cache_key: Mapped[str] = mapped_column(String(512), nullable=False)
    query_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    data: Mapped[dict] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    account = relationship("GoogleAdsAccount", back_populates="cache_entries")

    __table_args__ = (
        UniqueConstraint("account_id", "cache_key", name="uq_metrics_cache_account_key"),
        Index("ix_metrics_cache_expires", "expires_at"),
    )


class MetricsDaily(Base):
    """Per-entity metrics for a single day, filled by the daily sync job."""
    __tablename__ = "google_ads_metrics_daily"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("google_ads_accounts.id", ondelete="CASCADE"), nullable=False
    )
    date: Mapped[date] = mapped_column(Date, nullable=False)
    entity_type: Mapped[str] = mapped_column(String(20), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_name: Mapped[str] = mapped_column(String(512), nullable=True)
    metrics: Mapped[dict] = mapped_column(JSON, nullable=False)
    synced_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("account_id", "date", "entity_type", "entity_id", name="uq_metrics_daily_entity_day"),
        Index("ix_metrics_daily_account_date", "account_id", "date"),
    )


# ══════════════════════════════════════════════════════════════════════
#  AI CONVERSATIONS
# ══════════════════════════════════════════════════════════════════════

class AIConversation(Base):
    """Chat history with the ads assistant."""
    __tablename__ = "ai_conversations"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(255), nullable=True)
    account_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("google_ads_accounts.id", ondelete="SET NULL"), nullable=True
    )
    title: Mapped[str] = mapped_column(String(255), nullable=True)
    messages: Mapped[list] = mapped_column(JSON, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
