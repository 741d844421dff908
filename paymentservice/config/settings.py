"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded once from environment variables.

    Instances are frozen; components receive the instance explicitly
    instead of reading the environment during request handling.
    """

    # M-Pesa (Daraja) Configuration
    mpesa_consumer_key: str = Field(..., description="Daraja app consumer key")
    mpesa_consumer_secret: str = Field(..., description="Daraja app consumer secret")
    mpesa_business_shortcode: str = Field(..., description="Paybill / till shortcode")
    mpesa_passkey: str = Field(..., description="Lipa na M-Pesa online passkey")
    mpesa_callback_url: str = Field(..., description="Public URL of POST /callback")
    mpesa_base_url: str = Field(
        default="https://sandbox.safaricom.co.ke", description="Daraja API base URL"
    )
    mpesa_transaction_type: str = Field(
        default="CustomerPayBillOnline", description="STK Push transaction type"
    )
    mpesa_timeout_seconds: float = Field(
        default=30.0, gt=0, description="Timeout for calls to the gateway (seconds)"
    )
    mpesa_token_expiry_margin_seconds: float = Field(
        default=60.0, ge=0, description="Refresh the access token this long before expiry"
    )
    mpesa_utc_offset_hours: int = Field(
        default=3, description="Gateway local time offset used for the password timestamp"
    )
    mpesa_max_amount: int = Field(
        default=250000, gt=0, description="Largest amount accepted for a single STK Push"
    )

    # Order Service Configuration
    orders_service_url: str = Field(..., description="Base URL of the order service")
    order_service_timeout_seconds: float = Field(
        default=10.0, gt=0, description="Timeout for order status updates (seconds)"
    )
    order_status_max_attempts: int = Field(
        default=3, ge=1, description="Status update attempts before backlogging"
    )
    order_status_retry_base_delay: float = Field(
        default=0.5, ge=0, description="Base delay for status update backoff (seconds)"
    )
    order_status_retry_max_delay: float = Field(
        default=8.0, ge=0, description="Max delay between status update attempts (seconds)"
    )

    # Reconciliation Backlog
    backlog_replay_enabled: bool = Field(
        default=True, description="Replay the backlog inside the API process"
    )
    backlog_batch_size: int = Field(default=100, ge=1, description="Entries per replay batch")
    backlog_poll_interval_seconds: float = Field(
        default=30.0, gt=0, description="Backlog polling interval (seconds)"
    )

    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./payments.db", description="Async SQLAlchemy URL"
    )
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Application Configuration
    app_name: str = Field(default="paymentservice", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    port: int = Field(default=8081, description="API port")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    @field_validator("mpesa_business_shortcode")
    @classmethod
    def validate_shortcode(cls, v: str) -> str:
        """Shortcodes are numeric."""
        v = v.strip()
        if not v.isdigit():
            raise ValueError("Business shortcode must contain digits only")
        return v

    @field_validator("mpesa_callback_url", "orders_service_url", "mpesa_base_url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate that URLs are absolute http(s) URLs."""
        if not v.startswith(("http://", "https://")):
            raise ValueError("URL must start with http:// or https://")
        return v.rstrip("/")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def is_sandbox(self) -> bool:
        """Check if pointed at the Daraja sandbox."""
        return "sandbox" in self.mpesa_base_url


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
