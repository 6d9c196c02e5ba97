"""Premium entitlement checks."""

from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any

from referral_engine.referral.schemas import FeatureAccess, PremiumFeatures, PremiumStatus, User


def utcnow() -> datetime:
    """Current time, timezone-aware UTC."""
    return datetime.now(timezone.utc)


def normalize_timestamp(value: Any) -> datetime | None:
    """Convert a stored timestamp into an aware UTC datetime.

    Accepts ``datetime`` (naive values are read as UTC), wrapper types that
    expose ``to_datetime()`` or ``ToDatetime()`` (such as protobuf
    ``Timestamp``), ISO-8601 strings and epoch seconds.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        dt = value
    elif hasattr(value, "to_datetime"):
        dt = value.to_datetime()
    elif hasattr(value, "ToDatetime"):
        dt = value.ToDatetime()
    elif isinstance(value, str):
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        dt = datetime.fromtimestamp(value, tz=timezone.utc)
    else:
        raise TypeError(f"Unsupported timestamp type: {type(value).__name__}")

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _field(user: User | Mapping[str, Any], name: str) -> Any:
    if isinstance(user, Mapping):
        return user.get(name)
    return getattr(user, name, None)


def is_active_premium(user: User | Mapping[str, Any] | None, now: datetime | None = None) -> bool:
    """Check if a user currently has active premium.

    Args:
        user: User record or plain mapping with the same field names
        now: Evaluation time (defaults to the current time)

    Returns:
        True if premium and either never expiring or not yet expired
    """
    if not user:
        return False

    status = _field(user, "premium_status")
    if status != PremiumStatus.PREMIUM:
        return False

    expires_at = normalize_timestamp(_field(user, "premium_expires_at"))
    if expires_at is None:
        return True

    now = normalize_timestamp(now) if now is not None else utcnow()
    return now < expires_at


def get_premium_features(user: User | Mapping[str, Any] | None, now: datetime | None = None) -> PremiumFeatures:
    """Feature access map for premium-gated screens."""
    has_premium = is_active_premium(user, now)
    return PremiumFeatures(
        has_premium=has_premium,
        features=FeatureAccess(
            receipt_ocr=has_premium,
            advanced_analytics=has_premium,
            recurring_expenses=has_premium,
            category_trends=has_premium,
            custom_exports=has_premium,
            custom_themes=has_premium,
            priority_support=has_premium,
            multiple_groups=has_premium,
        ),
    )
