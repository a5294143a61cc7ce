"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MPESA_BASE_URLS = {
    "sandbox": "https://sandbox.safaricom.co.ke",
    "production": "https://api.safaricom.co.ke",
}


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # M-Pesa (Daraja) Configuration
    mpesa_environment: str = Field(
        default="sandbox", description="Gateway environment (sandbox/production)"
    )
    mpesa_base_url: Optional[str] = Field(
        default=None, description="Override for the gateway base URL"
    )
    mpesa_consumer_key: str = Field(default="", description="Daraja consumer key")
    mpesa_consumer_secret: str = Field(default="", description="Daraja consumer secret")
    mpesa_shortcode: str = Field(default="174379", description="Paybill/till shortcode")
    mpesa_passkey: str = Field(default="", description="Lipa Na M-Pesa Online passkey")
    mpesa_initiator_name: str = Field(default="testapi", description="B2C initiator name")
    mpesa_security_credential: str = Field(
        default="", description="Encrypted B2C initiator credential"
    )
    mpesa_stk_callback_url: str = Field(
        default="", description="Public URL the gateway posts STK results to"
    )
    mpesa_b2c_result_url: str = Field(
        default="", description="Public URL the gateway posts B2C results to"
    )
    mpesa_b2c_timeout_url: str = Field(
        default="", description="Public URL for B2C queue timeout notifications"
    )
    mpesa_account_reference_prefix: str = Field(
        default="PAY", description="Prefix for push account references"
    )

    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./mpesa_payments.db",
        description="Database connection URL (postgresql+asyncpg in production)",
    )
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Application Configuration
    app_name: str = Field(default="mpesa-payments", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:8000",
        description="CORS allowed origins (comma-separated)",
    )

    # Security
    admin_api_key: str = Field(default="", description="Key required by privileged endpoints")
    admin_api_key_header: str = Field(default="X-Admin-Key", description="Admin key header name")

    # Gateway call timing
    request_timeout_seconds: float = Field(
        default=60.0, description="Timeout for a single outbound gateway request"
    )
    auth_timeout_seconds: float = Field(
        default=30.0, description="Timeout for the OAuth token request"
    )
    token_expiry_buffer_seconds: int = Field(
        default=300, description="Treat cached tokens as expired this long before expiry"
    )

    # Retry/Timeout Supervisor
    staleness_threshold_seconds: int = Field(
        default=30, description="Age after which a processing push is actively recovered"
    )
    max_retries: int = Field(default=3, description="Status query attempts before failing")
    retry_base_delay_seconds: float = Field(
        default=5.0, description="Base delay for supervisor backoff"
    )
    retry_max_delay_seconds: float = Field(
        default=300.0, description="Upper bound for supervisor backoff"
    )
    supervisor_interval_seconds: float = Field(
        default=15.0, description="Interval between supervisor cycles"
    )
    supervisor_batch_size: int = Field(
        default=100, description="Maximum stale transactions handled per cycle"
    )
    supervisor_concurrency: int = Field(
        default=10, description="Stale transactions reconciled in parallel"
    )
    pending_abandon_seconds: int = Field(
        default=300, description="Age after which an unacknowledged push is abandoned"
    )
    disbursement_timeout_seconds: int = Field(
        default=900, description="Age after which a disbursement without result fails"
    )

    # Audit
    transaction_log_retention_days: int = Field(
        default=90, description="Days to keep transaction log entries"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("mpesa_environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate gateway environment."""
        if v.lower() not in MPESA_BASE_URLS:
            raise ValueError(
                f"Invalid M-Pesa environment. Must be one of: {list(MPESA_BASE_URLS)}"
            )
        return v.lower()

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("max_retries")
    @classmethod
    def validate_max_retries(cls, v: int) -> int:
        """At least one status query must be attempted."""
        if v < 1:
            raise ValueError("max_retries must be at least 1")
        return v

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def base_url(self) -> str:
        """Gateway base URL for the configured environment."""
        return (self.mpesa_base_url or MPESA_BASE_URLS[self.mpesa_environment]).rstrip("/")

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def is_sandbox(self) -> bool:
        """Check if talking to the gateway sandbox."""
        return self.mpesa_environment == "sandbox"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
