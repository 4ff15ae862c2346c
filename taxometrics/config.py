"""TAXOMETRICS — Central Configuration via Pydantic Settings."""

import os
from pydantic_settings import BaseSettings
from typing import List


class Settings(BaseSettings):
    """Application settings loaded from environment variables / .env file."""

    # ── Database ──
    database_url: str = ""

    # ── Matching ──
    match_confidence_threshold: float = 0.7
    match_workers: int = 4
    match_chunk_size: int = 500
    run_lock_timeout_seconds: float = 300.0

    # ── Sources ──
    source_mode: str = "stored"  # stored | google

    # Google APIs (tokens are issued and refreshed outside this service)
    google_access_token: str = ""
    gsc_base_url: str = "https://searchconsole.googleapis.com/webmasters/v3"
    ga4_base_url: str = "https://analyticsdata.googleapis.com/v1beta"
    merchant_base_url: str = "https://shoppingcontent.googleapis.com/content/v2.1"
    gsc_site_url: str = ""
    ga4_property_id: str = ""
    merchant_id: str = ""
    google_request_timeout: float = 30.0

    # ── App ──
    log_level: str = "INFO"
    scheduler_enabled: bool = True
    integration_hour: int = 3  # Daily run at 3 AM
    scheduled_tenants: List[str] = []
    default_tenant_id: str = "default"

    @property
    def effective_database_url(self) -> str:
        """Return PostgreSQL URL if set, otherwise fall back to SQLite."""
        if self.database_url:
            return self.database_url
        # Vercel has a read-only filesystem; use /tmp for SQLite
        if os.environ.get("VERCEL"):
            return "sqlite:////tmp/taxometrics.db"
        return "sqlite:///./taxometrics.db"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
