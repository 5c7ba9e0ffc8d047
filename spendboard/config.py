"""Spendboard - Central Configuration via Pydantic Settings."""

import os
from datetime import date
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables / .env file."""

    # ── Meta API ──
    meta_access_token: str = ""  # Fallback when a workspace has no stored token
    meta_api_version: str = "v21.0"
    meta_base_url: str = "https://graph.facebook.com"
    request_timeout: float = 60.0
    max_retries: int = 3
    retry_base_delay: float = 2.0  # seconds
    max_pages: int = 200

    # ── Database ──
    database_url: str = ""
    sqlite_fallback: bool = True
    insert_batch_size: int = 100

    # ── Sync windows ──
    reporting_timezone: str = "UTC"
    full_since: date = date(2025, 1, 1)
    first_sync_days: int = 30
    backfill_days: int = 2
    max_backfill_days: int = 90
    winners_default_days: int = 30
    winners_max_days: int = 60
    account_cache_ttl: int = 300  # seconds

    # ── App ──
    log_level: str = "INFO"
    scheduler_enabled: bool = True
    sync_hour: int = 3  # Daily incremental sync at 3 AM

    @property
    def effective_database_url(self) -> Optional[str]:
        """Return the configured URL, the SQLite fallback, or None."""
        if self.database_url:
            return self.database_url
        if not self.sqlite_fallback:
            return None
        # Vercel has a read-only filesystem; use /tmp for SQLite
        if os.environ.get("VERCEL"):
            return "sqlite:////tmp/spendboard.db"
        return "sqlite:///./spendboard.db"

    @property
    def meta_graph_url(self) -> str:
        return f"{self.meta_base_url}/{self.meta_api_version}"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
