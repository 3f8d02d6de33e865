"""Application settings loaded from environment variables.

Uses pydantic-settings for validation and type coercion. App-specific
settings use the ``CONSENTFLOW_`` prefix; HubSpot / OAuth settings use
their canonical environment variable names via ``validation_alias``.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(StrEnum):
    DEVELOPMENT = "development"
    PRODUCTION = "production"


_DEFAULT_HUBSPOT_SCOPES = (
    "crm.objects.contacts.read "
    "crm.objects.contacts.write "
    "crm.schemas.contacts.read "
    "crm.schemas.contacts.write "
    "timeline "
    "automation"
)


class Settings(BaseSettings):
    """Central configuration for the ConsentFlow service.

    Environment variables are loaded from a ``.env`` file when present.
    App-specific keys are prefixed with ``CONSENTFLOW_``; HubSpot keys
    use their standard names (configured via ``validation_alias``).
    """

    model_config = SettingsConfigDict(
        env_prefix="CONSENTFLOW_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
        populate_by_name=True,
    )

    # ── App ────────────────────────────────────────────────────────────
    env: Literal["development", "production"] = "development"

    # ── HubSpot OAuth ──────────────────────────────────────────────────
    hubspot_client_id: str = Field(default="", validation_alias="HUBSPOT_CLIENT_ID")
    hubspot_client_secret: str = Field(default="", validation_alias="HUBSPOT_CLIENT_SECRET")
    hubspot_redirect_uri: str = Field(
        default="http://localhost:8000/api/v1/oauth/callback",
        validation_alias="HUBSPOT_REDIRECT_URI",
    )
    hubspot_scopes: str = Field(default=_DEFAULT_HUBSPOT_SCOPES, validation_alias="HUBSPOT_SCOPES")
    hubspot_app_id: str = Field(default="", validation_alias="HUBSPOT_APP_ID")
    # Private-app token; when set, OAuth is bypassed entirely.
    hubspot_access_token: str = Field(default="", validation_alias="HUBSPOT_ACCESS_TOKEN")
    hubspot_api_base_url: str = Field(default="https://api.hubapi.com", validation_alias="HUBSPOT_API_BASE_URL")

    # ── API ────────────────────────────────────────────────────────────
    api_host: str = Field(default="0.0.0.0", validation_alias="API_HOST")
    api_port: int = Field(default=8000, validation_alias="API_PORT")
    cors_origins: str = Field(default="", validation_alias="CORS_ORIGINS")

    # ── Admin API Key ──────────────────────────────────────────────────
    admin_api_key: str = Field(default="", validation_alias="ADMIN_API_KEY")

    # ── Logging ────────────────────────────────────────────────────────
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    log_format: str = Field(default="json", validation_alias="LOG_FORMAT")

    # ── Consent lifecycle ──────────────────────────────────────────────
    consent_expiry_months: int = Field(default=24, ge=1, validation_alias="CONSENT_EXPIRY_MONTHS")
    inactivity_threshold_months: int = Field(default=24, ge=3, validation_alias="INACTIVITY_THRESHOLD_MONTHS")
    purge_grace_period_days: int = Field(default=30, ge=0, validation_alias="PURGE_GRACE_PERIOD_DAYS")
    reconsent_grace_days: int = Field(default=30, ge=0, validation_alias="RECONSENT_GRACE_DAYS")
    audit_log_max_records: int = Field(default=100, ge=1, validation_alias="AUDIT_LOG_MAX_RECORDS")
    contact_page_size: int = Field(default=100, ge=1, le=100)

    # ── Scheduler ──────────────────────────────────────────────────────
    enable_scheduler: bool = True
    scheduler_check_interval_seconds: int = 300

    # ── Derived Properties ─────────────────────────────────────────────

    @property
    def is_production(self) -> bool:
        return self.env == Environment.PRODUCTION

    @property
    def hubspot_scope_list(self) -> list[str]:
        return [scope for scope in self.hubspot_scopes.split() if scope]

    @property
    def cors_origin_list(self) -> list[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def oauth_configured(self) -> bool:
        return bool(self.hubspot_client_id and self.hubspot_client_secret)


# Module-level singleton used by the application entry point.
settings = Settings()
