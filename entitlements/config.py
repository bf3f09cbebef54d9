"""
Entitlement Engine Configuration
================================

PURPOSE:
    Pydantic-Settings based configuration for the entitlement service.
    All settings can be overridden via environment variables (ENTITLEMENTS_ prefix).

    Free-tier quota limits, Stripe credentials and retention windows live
    here so that the quota engine, action gateway and webhook reconciler
    read a single source of truth.
"""

import logging
import os
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

_DEFAULT_DATABASE_URL = "sqlite:///./data/entitlements.db"


class Settings(BaseSettings):
    """Runtime settings for the entitlement service."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="ENTITLEMENTS_",
        extra="ignore",
    )

    app_name: str = "entitlements"
    debug: bool = False

    # Upstream gateway auth. The host application authenticates the user and
    # forwards X-User-Id; when internal_api_key is set, X-Internal-Key must match.
    auth_enabled: bool = True
    internal_api_key: Optional[str] = None

    # Persistence. DATABASE_URL (no prefix) wins, for parity with Alembic/Docker.
    database_url: str = os.environ.get("DATABASE_URL", _DEFAULT_DATABASE_URL)

    # Stripe
    stripe_secret_key: Optional[str] = None
    stripe_price_id: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    stripe_webhook_tolerance_s: int = 300
    stripe_max_network_retries: int = 2

    # Free-tier quotas
    free_messages_per_day: int = 10
    free_voice_seconds_per_day: int = 600   # 10 minutes
    free_photo_cap: int = 100               # lifetime, not daily

    # Retention
    usage_retention_days: int = 90
    webhook_ledger_retention_days: int = 30
    retention_interval_s: int = 86400

    # Webhook dedup hot cache (the webhook_events table is authoritative)
    webhook_dedup_cache_size: int = 1000
    webhook_dedup_cache_ttl_s: int = 86400

    # Logging
    log_dir: str = "logs"
    log_level: str = "INFO"

    # CORS
    cors_origins: List[str] = ["http://localhost:3000", "http://localhost:8081"]

    @property
    def stripe_configured(self) -> bool:
        return bool(self.stripe_secret_key)


settings = Settings()

if not settings.stripe_secret_key:
    logger.warning(
        "ENTITLEMENTS_STRIPE_SECRET_KEY not set - subscription create/cancel will answer 503"
    )
