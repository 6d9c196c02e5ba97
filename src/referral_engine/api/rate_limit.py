"""Rate limiting for the referral API."""

from slowapi import Limiter
from slowapi.util import get_remote_address

from referral_engine.settings import Settings, settings


def rate_limit_enabled(config: Settings = settings) -> bool:
    """Explicit setting wins, otherwise limits apply in production only."""
    if config.rate_limit_enabled is not None:
        return config.rate_limit_enabled
    return config.env == "production"


def validate_limit() -> str:
    """Per-client limit for code validation, which could otherwise enumerate codes."""
    return settings.rate_limit_validate


limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[settings.rate_limit_default],
    storage_uri=settings.rate_limit_storage_uri,
    enabled=rate_limit_enabled(),
)
