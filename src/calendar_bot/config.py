"""Configuration management for the calendar bot."""

from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class GoogleSettings(BaseSettings):
    """Google OAuth client configuration."""

    model_config = SettingsConfigDict(env_prefix="GOOGLE_", case_sensitive=False)

    client_id: Optional[str] = Field(
        default=None,
        description="OAuth client ID. Env var: GOOGLE_CLIENT_ID",
    )
    client_secret: Optional[str] = Field(
        default=None,
        description="OAuth client secret. Env var: GOOGLE_CLIENT_SECRET",
    )
    # Listing calendars needs the readonly scope, responding to invites needs events
    scopes: List[str] = Field(
        default_factory=lambda: [
            "https://www.googleapis.com/auth/calendar.readonly",
            "https://www.googleapis.com/auth/calendar.events",
        ],
        description="Scopes requested when linking an account. Env var: GOOGLE_SCOPES (JSON list)",
    )
    auth_uri: str = "https://accounts.google.com/o/oauth2/auth"
    token_uri: str = "https://oauth2.googleapis.com/token"

    @property
    def is_configured(self) -> bool:
        """Check if OAuth client credentials are present."""
        return bool(self.client_id and self.client_secret)


class RenewalSettings(BaseSettings):
    """Watch channel renewal configuration."""

    model_config = SettingsConfigDict(env_prefix="RENEWAL_", case_sensitive=False)

    window_hours: int = Field(default=24, description="Renew channels expiring within this window")
    interval_minutes: int = Field(default=60, description="Scheduler tick interval")
    max_failures: int = Field(default=3, description="Consecutive failures before teardown")
    channel_ttl_days: int = Field(default=7, description="Requested channel lifetime (Google max is 7)")
    embedded_scheduler: bool = Field(
        default=True,
        description="Run the renewal loop inside the web server process",
    )


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Service info
    service_name: str = "calendar-bot"
    environment: str = "development"

    # Database
    database_url: str

    # Redis (Celery broker + result backend)
    redis_url: str = "redis://localhost:6379/0"

    # Externally reachable base URL; webhook and OAuth callback paths are appended
    public_base_url: str = "http://localhost:8080"
    webhook_path: str = "/webhook"
    oauth_callback_path: str = "/oauth/callback"

    google: GoogleSettings = Field(default_factory=GoogleSettings)
    renewal: RenewalSettings = Field(default_factory=RenewalSettings)

    # Token and link lifetimes
    token_refresh_margin_seconds: int = 120
    link_token_ttl_minutes: int = 10

    # Timeout applied to every provider call
    provider_timeout_seconds: float = 30.0

    # Logging
    log_level: str = "INFO"

    @property
    def webhook_url(self) -> str:
        """Address registered with the provider for push notifications."""
        return f"{self.public_base_url.rstrip('/')}{self.webhook_path}"

    @property
    def oauth_redirect_url(self) -> str:
        """Redirect URI registered with the OAuth client."""
        return f"{self.public_base_url.rstrip('/')}{self.oauth_callback_path}"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get settings singleton."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
