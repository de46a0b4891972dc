"""Application configuration using pydantic-settings."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="CONNECTORS_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Application
    app_name: str = "Connectors"
    version: str = "0.1.0"
    debug: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Server
    host: str = "0.0.0.0"
    port: int = Field(default=3002, description="Server port")

    # Paths
    config_path: Path = Field(
        default=Path("/config"),
        description="Path for configuration files and database",
    )

    # Database
    database_url: str | None = Field(
        default=None,
        description="Database connection URL (defaults to SQLite under config_path)",
    )

    # CORS
    cors_origins: list[str] = Field(
        default=["*"],
        description="Allowed CORS origins",
    )

    # Google OAuth
    google_client_id: str | None = Field(
        default=None,
        description="Google OAuth client ID",
    )
    google_client_secret: str | None = Field(
        default=None,
        description="Google OAuth client secret",
    )
    google_redirect_uri: str = Field(
        default="http://localhost:3002/api/v1/google/oauth/callback",
        description="OAuth redirect URI registered with Google",
    )
    encryption_key: str | None = Field(
        default=None,
        description="Fernet key used to encrypt stored OAuth tokens",
    )

    # Google API request pacing
    google_request_delay: float = Field(
        default=0.1,
        ge=0.0,
        description="Minimum seconds between Google API requests",
    )
    google_requests_per_minute: int = Field(
        default=600,
        ge=1,
        description="Maximum Google API requests per minute",
    )

    # Permission tree listing
    listing_concurrency: int = Field(
        default=4,
        ge=1,
        le=32,
        description="Concurrent per-node lookups when enriching listed nodes",
    )
    listing_page_size: int = Field(
        default=200,
        ge=1,
        le=1000,
        description="Page size for remote folder listings",
    )

    # Webhooks
    webhook_base_url: str = Field(
        default="http://localhost:3002/api",
        description="Public base URL Google pushes change notifications to",
    )
    webhook_ttl: int = Field(
        default=7 * 24 * 3600,
        ge=300,
        description="Requested lifetime of a push-notification channel in seconds",
    )
    webhook_renewal_margin: int = Field(
        default=12 * 3600,
        ge=60,
        description="Renew channels expiring within this many seconds",
    )

    # Workflow triggers
    workflow_launch_limit_per_minute: int = Field(
        default=10,
        ge=1,
        description="Maximum workflow launches per connector per minute",
    )

    # Workers
    worker_poll_interval: float = Field(
        default=1.0,
        gt=0,
        description="Seconds between job queue polls",
    )
    maintenance_interval: int = Field(
        default=300,
        ge=10,
        description="Seconds between maintenance passes (stale jobs, webhook renewal)",
    )

    @property
    def google_oauth_configured(self) -> bool:
        """Check if Google OAuth client credentials are configured."""
        return self.google_client_id is not None and self.google_client_secret is not None

    @property
    def db_path(self) -> Path:
        """Get the SQLite database file path."""
        return self.config_path / "connectors.db"

    def webhook_url(self, connector_id: str) -> str:
        """Address registered with Google for a connector's change channel."""
        return f"{self.webhook_base_url.rstrip('/')}/webhooks/google_drive/{connector_id}"


# Global settings instance
settings = Settings()
