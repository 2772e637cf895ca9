"""ELD sync configuration via pydantic-settings."""

from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings


class EldSettings(BaseSettings):
    environment: str = "development"
    database_url: str = "sqlite+aiosqlite:///eldsync.db"
    echo_sql: bool = False
    app_title: str = "ELD Sync"
    log_level: str = "INFO"
    security_fail_closed: bool = False

    # Tenant resolution for the JSON API
    tenant_header: str = "X-Tenant"
    tenant_token_header: str = "X-Tenant-Token"
    tenant_access_tokens: str = ""
    tenant_auth_required: bool = False

    # Scheduler endpoint bearer secret; the endpoint refuses to run without it.
    cron_secret: str = ""
    # Shared secret for vendor webhook HMAC signatures.
    webhook_secret: str = ""

    oauth_state_secret: str = ""
    oauth_state_max_age_seconds: int = 1800
    oauth_redirect_uri: str = "http://localhost:8030/api/eld/callback"

    # Vendor OAuth apps
    motive_client_id: str | None = None
    motive_client_secret: str | None = None
    motive_api_base: str = "https://api.gomotive.com/v1"
    samsara_client_id: str | None = None
    samsara_client_secret: str | None = None
    samsara_api_base: str = "https://api.samsara.com"

    # Outbound calls
    provider_timeout_seconds: float = 30.0
    provider_call_timeout_seconds: float = 300.0
    token_refresh_margin_seconds: int = 300

    # Sync behaviour
    sync_lock_minutes: int = 5
    sync_stale_minutes: int = 60
    sync_job_timeout_minutes: int = 30
    hos_violation_dedup_hours: int = 24
    manual_hos_days: int = 7
    sync_all_hos_days: int = 14

    # Background scheduler
    scheduler_enabled: bool = False
    scheduler_interval_seconds: int = 3600
    scheduler_max_concurrency: int = 1

    model_config = {"env_prefix": "ELD_", "env_file": ".env", "extra": "ignore"}

    @property
    def base_dir(self) -> Path:
        return Path(__file__).resolve().parent

    @property
    def tenant_access_tokens_map(self) -> dict[str, str]:
        """Parse comma-separated slug:token pairs."""
        mapping: dict[str, str] = {}
        if not self.tenant_access_tokens.strip():
            return mapping

        for item in self.tenant_access_tokens.split(","):
            pair = item.strip()
            if not pair or ":" not in pair:
                continue
            slug, token = pair.split(":", 1)
            slug = slug.strip()
            token = token.strip()
            if slug and token:
                mapping[slug] = token
        return mapping

    @property
    def is_production(self) -> bool:
        return self.environment.strip().lower() in {"prod", "production"}

    @property
    def signing_key(self) -> str:
        """Key for OAuth state signatures; falls back to the webhook secret."""
        return self.oauth_state_secret or self.webhook_secret or "eldsync-dev-state-key"


settings = EldSettings()
