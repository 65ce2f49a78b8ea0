"""MindfulAI — Central Configuration via Pydantic Settings."""

import os
from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables / .env file."""

    # ── Meta API ──
    meta_access_token: str = ""
    meta_app_secret: str = ""
    meta_api_version: str = "v21.0"
    meta_base_url: str = "https://graph.facebook.com"
    meta_api_tier: str = "development"  # development | standard

    # ── Database (Supabase Postgres) ──
    database_url: str = ""

    # ── QStash ──
    qstash_token: str = ""
    qstash_url: str = "https://qstash.upstash.io"
    qstash_current_signing_key: str = ""
    qstash_next_signing_key: str = ""
    qstash_verify_signatures: bool = True

    # ── Webhooks / Cron ──
    webhook_base_url: str = ""
    webhook_verify_token: str = ""
    cron_secret: str = ""
    vercel_project_production_url: Optional[str] = None
    nextauth_url: Optional[str] = None

    # ── App ──
    log_level: str = "INFO"
    scheduler_enabled: bool = True
    sync_hour: int = 3  # Daily fan-out at 3 AM UTC
    worker_disabled: bool = False
    global_worker_kill_switch: bool = False

    # ── Worker pacing (seconds) ──
    batch_size: int = 100
    min_delay: float = 0.1
    burst_delay: float = 0.3
    insights_delay: float = 0.6
    max_processing_time: float = 80.0
    safety_buffer: float = 5.0

    # ── Cron pacing ──
    cron_batch_size: int = 3
    cron_max_retries: int = 2
    cron_account_delay: float = 10.0

    @property
    def effective_database_url(self) -> str:
        """Return PostgreSQL URL if set, otherwise fall back to SQLite."""
        if self.database_url:
            return self.database_url
        # Vercel has a read-only filesystem; use /tmp for SQLite
        if os.environ.get("VERCEL"):
            return "sqlite:////tmp/mindful.db"
        return "sqlite:///./mindful.db"

    @property
    def worker_base_url(self) -> str:
        """Public base URL QStash should call back into."""
        if self.webhook_base_url:
            return self.webhook_base_url.rstrip("/")
        if self.vercel_project_production_url:
            return f"https://{self.vercel_project_production_url}"
        if self.nextauth_url:
            return self.nextauth_url.rstrip("/")
        return "http://localhost:8000"

    @property
    def kill_switch_active(self) -> bool:
        return self.worker_disabled or self.global_worker_kill_switch

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


settings = Settings()
