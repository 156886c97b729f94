"""Application settings using Pydantic for environment-based configuration."""
from decimal import Decimal
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Razorpay Configuration
    razorpay_key_id: str = Field(..., description="Razorpay key id (rzp_test_...)")
    razorpay_key_secret: str = Field(
        ..., description="Razorpay key secret, also the client signature HMAC key"
    )
    razorpay_webhook_secret: str = Field(..., description="Razorpay webhook signing secret")
    razorpay_api_base_url: str = Field(
        default="https://api.razorpay.com/v1", description="Razorpay REST API base URL"
    )
    gateway_timeout_seconds: float = Field(
        default=10.0, gt=0, description="Timeout for every gateway call (seconds)"
    )

    # Pricing
    currency: str = Field(default="INR", description="Store currency (ISO 4217)")
    free_shipping_threshold: Decimal = Field(
        default=Decimal("999"), description="Subtotal at or above which shipping is free"
    )
    standard_shipping_charge: Decimal = Field(
        default=Decimal("99"), description="Shipping charge below the free threshold"
    )
    tax_rate: Decimal = Field(default=Decimal("0.18"), description="Tax rate on subtotal")
    estimated_delivery_days: int = Field(
        default=3, description="Days added to ship date for estimated delivery"
    )

    # Database Configuration
    database_url: str = Field(..., description="PostgreSQL connection URL")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Application Configuration
    app_name: str = Field(default="order-reconciliation", description="Application name")
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

    # Admin authentication
    jwt_secret_key: str = Field(..., description="Secret used to sign admin JWTs")
    jwt_algorithm: str = Field(default="HS256", description="JWT signing algorithm")
    jwt_expire_minutes: int = Field(default=60 * 24, description="Admin token lifetime")

    # Notifications
    smtp_host: Optional[str] = Field(
        default=None, description="SMTP host; notifications are only logged when unset"
    )
    smtp_port: int = Field(default=587, description="SMTP port")
    smtp_username: Optional[str] = Field(default=None, description="SMTP username")
    smtp_password: Optional[str] = Field(default=None, description="SMTP password")
    smtp_use_tls: bool = Field(default=True, description="Use STARTTLS for SMTP")
    email_from: str = Field(default="orders@example.com", description="Sender address")
    store_name: str = Field(default="Our Store", description="Store name used in emails")

    # Outbox
    outbox_batch_size: int = Field(default=100, description="Outbox events per batch")
    outbox_poll_interval_seconds: float = Field(
        default=1.0, description="Outbox polling interval (seconds)"
    )
    outbox_max_attempts: int = Field(
        default=5, description="Delivery attempts before an outbox event is abandoned"
    )
    outbox_run_in_api: bool = Field(
        default=False, description="Run the outbox publisher inside the API process"
    )

    # Gateway sync sweep
    pending_sync_after_minutes: int = Field(
        default=15, description="Pending orders older than this are synced with the gateway"
    )
    pending_sync_window_hours: int = Field(
        default=48, description="Pending orders older than this are no longer synced"
    )
    pending_sync_interval_seconds: int = Field(
        default=300, description="Interval between gateway sync sweeps (seconds)"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("razorpay_key_id")
    @classmethod
    def validate_razorpay_key(cls, v: str) -> str:
        """Validate the Razorpay key id format."""
        if not v.startswith("rzp_test_") and not v.startswith("rzp_live_"):
            raise ValueError(
                "Invalid Razorpay key id format. Must start with 'rzp_test_' or 'rzp_live_'"
            )
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("tax_rate")
    @classmethod
    def validate_tax_rate(cls, v: Decimal) -> Decimal:
        if not Decimal("0") <= v < Decimal("1"):
            raise ValueError("Tax rate must be a fraction between 0 and 1")
        return v

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        if len(v) != 3:
            raise ValueError("Currency must be a 3-letter ISO code")
        return v.upper()

    @model_validator(mode="after")
    def validate_live_keys_in_production(self) -> "Settings":
        """Production must charge real cards; test keys only simulate payments."""
        if self.is_production and self.is_test_mode:
            raise ValueError("Production requires a live Razorpay key (rzp_live_...)")
        return self

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def is_test_mode(self) -> bool:
        """Check if using Razorpay test keys."""
        return self.razorpay_key_id.startswith("rzp_test_")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
