"""Application settings and configuration."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "referral-engine"
    env: str = "development"
    log_level: str = "INFO"
    log_format: str = "console"  # console | json
    allowed_origins: str = "http://localhost:8081"

    # Rate limiting (on by default only in production)
    rate_limit_enabled: bool | None = None
    rate_limit_default: str = "120/minute"
    rate_limit_validate: str = "10/minute"
    rate_limit_storage_uri: str = "memory://"

    # Database
    database_url: str = "sqlite+aiosqlite:///./referrals.db"
    database_echo: bool = False

    # Referral program
    referral_link_base: str = "https://dividela.co/r"
    attribution_window_hours: int = Field(default=24, gt=0)
    referred_bonus_days: int = Field(default=30, gt=0)  # Double-sided reward for the new user
    max_code_attempts: int = Field(default=5, ge=1)


# Global settings instance
settings = Settings()
