import logging
from pydantic_settings import BaseSettings
from pydantic import model_validator, ConfigDict
from functools import lru_cache

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Environment: "development" or "production"
    environment: str = "development"

    database_url: str = "postgresql+asyncpg://localhost/ads_copilot"
    db_pool_size: int = 5
    db_max_overflow: int = 10

    @model_validator(mode="before")
    @classmethod
    def _fix_database_url_for_asyncpg(cls, values: dict) -> dict:
        """Managed Postgres gives postgresql://, asyncpg needs postgresql+asyncpg://."""
        if not isinstance(values, dict):
            return values
        url = values.get("database_url") or ""
        if url.startswith("postgresql://") and "+asyncpg" not in url:
            values["database_url"] = url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return values

    api_key: str = ""  # Required in production; in dev, empty = auth disabled
    cron_secret: str = ""
    cors_origins: str = "http://localhost:5173,http://localhost:3000"
    encryption_key: str = ""

    # LLM providers
    openai_api_key: str = ""
    openai_model: str = "gpt-4o"
    anthropic_api_key: str = ""
    default_model_id: str = ""  # "provider:model", e.g. "anthropic:claude-sonnet-4-20250514"

    # Google Ads REST API
    google_ads_developer_token: str = ""
    google_ads_api_version: str = "v20"
    google_ads_login_customer_id: str = ""
    google_ads_timeout_seconds: float = 30.0

    # Metrics cache TTLs (hours)
    cache_ttl_campaigns_hours: float = 1.0
    cache_ttl_ad_groups_hours: float = 1.0
    cache_ttl_keywords_hours: float = 1.0

    # Background sync
    sync_batch_size: int = 3

    # Relevance selection
    relevance_top_n: int = 25

    # Insight thresholds
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

    @model_validator(mode="after")
    def _validate_production_settings(self) -> "Settings":
        """Enforce that critical secrets are set when running in production."""
        if self.is_production:
            if not self.api_key:
                raise ValueError(
                    "API_KEY must be set in production. "
                    "Generate one with: python -c \"import secrets; print(secrets.token_hex(32))\""
                )
            if not self.encryption_key:
                raise ValueError(
                    "ENCRYPTION_KEY must be set in production. "
                    "Generate one with: python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
                )
            if not self.google_ads_developer_token:
                logger.warning("GOOGLE_ADS_DEVELOPER_TOKEN is empty — live Google Ads fetches will fail.")
            if not self.database_url or "localhost" in self.database_url:
                logger.warning("DATABASE_URL appears to point at localhost in production.")
        if self.medium_conversion_rate > self.high_conversion_rate:
            raise ValueError("MEDIUM_CONVERSION_RATE must not exceed HIGH_CONVERSION_RATE")
        return self

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def cors_origin_list(self) -> list[str]:
        origins = [o.strip() for o in self.cors_origins.split(",") if o.strip()]
        return origins or ["http://localhost:5173", "http://localhost:3000"]


@lru_cache
def get_settings() -> Settings:
    return Settings()
