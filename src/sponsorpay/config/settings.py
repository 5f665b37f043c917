"""Application configuration schema and validation."""

from typing import Literal

from pydantic import Field, PostgresDsn, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppConfig(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    env: Literal["dev", "staging", "prod"] = Field(
        ...,
        description="Application environment",
    )
    db_dsn: PostgresDsn = Field(
        ...,
        description="PostgreSQL database connection string",
    )
    db_pool_min: int = Field(
        default=2,
        ge=1,
        description="Minimum database connection pool size",
    )
    db_pool_max: int = Field(
        default=10,
        ge=1,
        description="Maximum database connection pool size",
    )
    platform_fee_percent: float = Field(
        default=5.0,
        ge=0.0,
        le=100.0,
        description="Platform application fee as a percentage of the subtotal",
    )
    payment_environment: Literal["sandbox", "production"] = Field(
        default="sandbox",
        description="Provider environment (selects Square sandbox/production hosts)",
    )
    stripe_secret: SecretStr = Field(
        default=SecretStr(""),
        description="Stripe platform secret key",
    )
    stripe_client_id: str = Field(
        default="",
        description="Stripe Connect OAuth client id (ca_...)",
    )
    square_app_id: str = Field(
        default="",
        description="Square application id used as the OAuth client id",
    )
    square_app_secret: SecretStr = Field(
        default=SecretStr(""),
        description="Square application secret used for token exchange and refresh",
    )
    api_url: str = Field(
        default="http://localhost:3001",
        description="Public base URL of this API (OAuth redirect target)",
    )
    frontend_url: str = Field(
        default="http://localhost:5173",
        description="Frontend base URL for post-OAuth redirects",
    )
    provider_timeout_seconds: float = Field(
        default=10.0,
        gt=0.0,
        le=60.0,
        description="Timeout for any single outbound payment provider call",
    )
    notification_queue_size: int = Field(
        default=100,
        ge=1,
        le=10000,
        description="Capacity of the background notification queue",
    )
    server_port: int = Field(
        default=3001,
        ge=1,
        le=65535,
        description="Port for the payments HTTP server",
    )
    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )

    @field_validator("db_pool_max")
    @classmethod
    def validate_pool_max(cls, v: int, info) -> int:
        """Ensure pool_max >= pool_min."""
        if "db_pool_min" in info.data and v < info.data["db_pool_min"]:
            raise ValueError("db_pool_max must be >= db_pool_min")
        return v

    @field_validator("api_url", "frontend_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        """Base URLs are joined with absolute paths."""
        return v.rstrip("/")


_config: AppConfig | None = None


def get_config() -> AppConfig:
    """Get or create the singleton AppConfig instance."""
    global _config
    if _config is None:
        _config = AppConfig()
    return _config
