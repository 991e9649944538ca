"""Initial schema: accounts, metrics cache, daily metrics, AI conversations.

Revision ID: 001
Revises:
Create Date: 2025-08-14

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "google_ads_accounts",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", sa.String(255), nullable=False),
        sa.Column("customer_id", sa.String(32), nullable=False),
        sa.Column("account_name", sa.String(255), nullable=True),
        sa.Column("currency_code", sa.String(8), nullable=True),
        sa.Column("time_zone", sa.String(64), nullable=True),
        sa.Column("connection_status", sa.String(20), nullable=True, server_default="PENDING"),
        sa.Column("needs_reconnection", sa.Boolean(), nullable=True, server_default=sa.false()),
        sa.Column("access_token", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=True, server_default=sa.true()),
        sa.Column("last_successful_fetch", sa.DateTime(), nullable=True),
        sa.Column("last_error_message", sa.Text(), nullable=True),
        sa.Column("last_error_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.text("now()"), nullable=True),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.text("now()"), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "customer_id", name="uq_account_user_customer"),
    )
    op.create_index("ix_google_ads_accounts_user", "google_ads_accounts", ["user_id"])

    op.create_table(
        "google_ads_metrics_cache",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("account_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("cache_key", sa.String(512), nullable=False),
        sa.Column("query_hash", sa.String(64), nullable=False),
        sa.Column("data", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(), server_default=sa.text("now()"), nullable=True),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["account_id"], ["google_ads_accounts.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("account_id", "cache_key", name="uq_metrics_cache_account_key"),
    )
    op.create_index("ix_metrics_cache_expires", "google_ads_metrics_cache", ["expires_at"])

    op.create_table(
        "google_ads_metrics_daily",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("account_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("entity_type", sa.String(20), nullable=False),
        sa.Column("entity_id", sa.String(64), nullable=False),
        sa.Column("entity_name", sa.String(512), nullable=True),
        sa.Column("metrics", sa.JSON(), nullable=False),
        sa.Column("synced_at", sa.DateTime(), server_default=sa.text("now()"), nullable=True),
        sa.ForeignKeyConstraint(["account_id"], ["google_ads_accounts.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "account_id", "date", "entity_type", "entity_id", name="uq_metrics_daily_entity_day"
        ),
    )
    op.create_index("ix_metrics_daily_account_date", "google_ads_metrics_daily", ["account_id", "date"])

    op.create_table(
        "ai_conversations",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", sa.String(255), nullable=True),
        sa.Column("account_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("title", sa.String(255), nullable=True),
        sa.Column("messages", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.text("now()"), nullable=True),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.text("now()"), nullable=True),
        sa.ForeignKeyConstraint(["account_id"], ["google_ads_accounts.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )


def downgrade() -> None:
    op.drop_table("ai_conversations")
    op.drop_index("ix_metrics_daily_account_date", table_name="google_ads_metrics_daily")
    op.drop_table("google_ads_metrics_daily")
    op.drop_index("ix_metrics_cache_expires", table_name="google_ads_metrics_cache")
    op.drop_table("google_ads_metrics_cache")
    op.drop_index("ix_google_ads_accounts_user", table_name="google_ads_accounts")
    op.drop_table("google_ads_accounts")
