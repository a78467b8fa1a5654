"""Application settings and configuration."""

from functools import lru_cache
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "Subscription Billing Service"
    app_version: str = "1.0.0"
    debug: bool = False
    environment: str = "development"  # development, staging, production

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    # Logging
    log_json: bool = False
    log_level: str = "INFO"

    # Stripe (Payments)
    stripe_api_key: Optional[str] = None
    stripe_api_base: str = "https://api.stripe.com/v1"
    stripe_api_version: Optional[str] = None
    stripe_timeout: Optional[float] = None
    stripe_webhook_url: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None

    # Billing catalog and behaviour
    billing_catalog_path: str = "./catalog.json"
    billing_include_tax_in_price: bool = False
    billing_delete_unknown_entries: bool = False
    billing_default_due_days: int = 7
    billing_redirect_url: Optional[str] = None
    billing_invoice_all_on_dispute_loss: bool = False
    billing_sync_on_startup: bool = True

    # Rate limiting for the webhook route
    webhook_rate_limit: str = "120/minute"

    @field_validator("billing_default_due_days")
    @classmethod
    def check_due_days(cls, v: int) -> int:
        if v < 1:
            raise ValueError("billing_default_due_days must be at least 1")
        return v

    @field_validator("stripe_webhook_secret", "stripe_webhook_url", "billing_redirect_url", mode="before")
    @classmethod
    def empty_as_none(cls, v):
        """Treat empty environment values as unset."""
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development."""
        return self.environment == "development"

    def validate_production_secrets(self) -> None:
        """Validate that production credentials are configured.

        Called automatically by get_settings(). In production/staging the
        app refuses to start without an API key, and without either a
        webhook secret or a webhook URL to register an endpoint at.
        """
        if self.environment in ("production", "staging"):
            if not self.stripe_api_key:
                raise ValueError("STRIPE_API_KEY is required in production!")
            if not self.stripe_webhook_secret and not self.stripe_webhook_url:
                raise ValueError(
                    "STRIPE_WEBHOOK_SECRET or STRIPE_WEBHOOK_URL is required in production!"
                )

        if self.environment == "production" and self.stripe_webhook_url:
            if not self.stripe_webhook_url.startswith("https://"):
                raise ValueError(
                    f"STRIPE_WEBHOOK_URL must be an https:// URL in production "
                    f"(got: {self.stripe_webhook_url!r})"
                )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Automatically validates that production/staging deployments have
    proper credentials configured; the app will refuse to start otherwise.
    """
    s = Settings()
    s.validate_production_secrets()
    return s


# Global settings instance
settings = get_settings()
