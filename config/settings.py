"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Cardcom Configuration
    cardcom_terminal_number: str = Field(..., description="Cardcom terminal number")
    cardcom_api_name: str = Field(..., description="Cardcom API name (user)")
    cardcom_api_password: str = Field(default="", description="Cardcom API password")
    cardcom_base_url: str = Field(
        default="https://secure.cardcom.solutions", description="Cardcom API base URL"
    )
    cardcom_timeout_seconds: float = Field(default=30.0, description="Cardcom HTTP timeout")
    cardcom_retry_max_attempts: int = Field(default=5, description="Max gateway retry attempts")
    cardcom_retry_base_delay: float = Field(
        default=1.0, description="Base delay for retry backoff (seconds)"
    )

    # Database Configuration
    database_url: str = Field(..., description="PostgreSQL connection URL")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Redis Configuration
    redis_url: str = Field(..., description="Redis connection URL")
    redis_lock_timeout: int = Field(default=30, description="Distributed lock timeout (seconds)")
    webhook_dedup_ttl: int = Field(
        default=86400 * 7, description="Processed webhook marker TTL (seconds)"
    )

    # Application Configuration
    app_name: str = Field(default="subscription-billing", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:8000",
        description="CORS allowed origins (comma-separated)"
    )
    admin_api_key: str = Field(..., description="API key for admin endpoints")
    api_key_header: str = Field(default="X-API-Key", description="API key header name")

    # Public URLs
    public_base_url: str = Field(
        default="http://localhost:8000", description="Public URL of this API (webhook target)"
    )
    frontend_url: str = Field(
        default="http://localhost:3000", description="Front-end URL for redirects and links"
    )

    # Payment sessions and status tracking
    payment_session_ttl_minutes: int = Field(default=30, description="Payment session lifetime")
    status_poll_interval_seconds: float = Field(default=3.0, description="Status poll interval")
    status_poll_initial_delay_seconds: float = Field(
        default=2.0, description="Delay before the first status poll"
    )
    status_timeout_tiers: str = Field(
        default="30,60,120", description="Status timeout tiers in seconds (comma-separated)"
    )
    status_check_max_attempts: int = Field(
        default=40, description="Status check attempts before the session times out"
    )
    status_poll_max_errors: int = Field(default=3, description="Poll errors tolerated")
    realtime_max_retries: int = Field(
        default=3, description="Realtime failures before falling back to polling"
    )

    # Subscription policy
    trial_days: int = Field(default=30, description="Trial length for monthly plan")
    grace_period_days: int = Field(default=7, description="Grace period after a failed charge")
    max_charge_failures: int = Field(
        default=3, description="Failed renewal charges before suspension"
    )
    token_validity_years: int = Field(default=5, description="Card token validity")
    trial_reminder_days: int = Field(default=3, description="Days before trial end to remind")
    annual_reminder_days: int = Field(
        default=14, description="Days before annual renewal to remind"
    )

    # Webhook retry
    webhook_retry_max_attempts: int = Field(default=3, description="Max webhook retries")
    webhook_retry_age_hours: int = Field(default=48, description="Oldest webhook to retry")
    webhook_retry_batch_limit: int = Field(default=20, description="Webhooks per retry run")
    webhook_retry_interval_seconds: int = Field(default=600, description="Retry worker interval")

    # Scheduled workers
    billing_run_hour: int = Field(default=6, ge=0, le=23, description="Daily billing hour (UTC)")
    reconciliation_run_hour: int = Field(
        default=2, ge=0, le=23, description="Daily reconciliation hour (UTC)"
    )
    outbox_stream: str = Field(default="subscription_events", description="Redis stream for events")
    outbox_batch_size: int = Field(default=100, description="Outbox events per batch")
    outbox_poll_interval_seconds: float = Field(default=1.0, description="Outbox poll interval")

    # Recovery
    recovery_link_ttl_hours: int = Field(default=24, description="Recovery link lifetime")

    # Email
    email_enabled: bool = Field(default=True, description="Send emails")
    smtp_host: str = Field(default="localhost", description="SMTP host")
    smtp_port: int = Field(default=587, description="SMTP port")
    smtp_username: str = Field(default="", description="SMTP username")
    smtp_password: str = Field(default="", description="SMTP password")
    smtp_sender: str = Field(default="support@example.com", description="From address")
    smtp_use_tls: bool = Field(default=True, description="Use STARTTLS")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("cardcom_terminal_number")
    @classmethod
    def validate_terminal_number(cls, v: str) -> str:
        """Cardcom terminal numbers are numeric."""
        if not v.strip().isdigit():
            raise ValueError("Invalid Cardcom terminal number. Must be numeric")
        return v.strip()

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    def get_status_timeout_tiers(self) -> List[float]:
        """Parse the three status timeout tiers, ascending."""
        tiers = sorted(float(t) for t in self.status_timeout_tiers.split(",") if t.strip())
        if len(tiers) != 3:
            raise ValueError("status_timeout_tiers must contain exactly three values")
        return tiers

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def webhook_url(self) -> str:
        """URL Cardcom posts payment results to."""
        return f"{self.public_base_url.rstrip('/')}/webhooks/cardcom"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
