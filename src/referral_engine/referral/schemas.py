"""Referral domain records and operation results."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class PremiumStatus(str, Enum):
    """Entitlement level."""
    FREE = "free"
    PREMIUM = "premium"


class PremiumSource(str, Enum):
    """Where a user's premium came from."""
    NONE = "none"
    REFERRAL = "referral"              # Referrer's first completed referral (forever)
    REFERRAL_BONUS = "referral_bonus"  # Referred user's time-boxed bonus
    SUBSCRIPTION = "subscription"


class ReferralStatus(str, Enum):
    """Referral record lifecycle. Transitions are one-way out of PENDING."""
    PENDING = "pending"
    COMPLETED = "completed"
    EXPIRED = "expired"


class Outcome(str, Enum):
    """How an operation ended."""
    OK = "ok"
    DEGRADED = "degraded"  # Worked, but through a fallback or with a skipped party
    FAILED = "failed"


class User(BaseModel):
    """User record, referral and premium subset."""

    model_config = ConfigDict(from_attributes=True, extra="ignore")

    user_id: str
    referral_code: str
    referred_by: str | None = None
    referred_by_user_id: str | None = None
    referral_count: int = 0
    referrals_completed: list[str] = Field(default_factory=list)
    premium_status: PremiumStatus = PremiumStatus.FREE
    premium_source: PremiumSource | None = None
    premium_unlocked_at: datetime | None = None
    premium_expires_at: datetime | None = None
    referral_completed_at: datetime | None = None
    created_at: datetime | None = None


class ReferralRecord(BaseModel):
    """One referrer -> referred relationship."""

    model_config = ConfigDict(from_attributes=True, extra="ignore")

    id: str
    referrer_user_id: str
    referred_user_id: str
    status: ReferralStatus = ReferralStatus.PENDING
    created_at: datetime
    expires_at: datetime
    completed_at: datetime | None = None
    referred_couple_id: str | None = None


class InitResult(BaseModel):
    """Referral fields merged into a new user document at signup."""

    referral_code: str
    referred_by: str | None = None
    referred_by_user_id: str | None = None
    referral_id: str | None = None
    premium_status: PremiumStatus = PremiumStatus.FREE
    premium_source: PremiumSource | None = None
    premium_unlocked_at: datetime | None = None
    premium_expires_at: datetime | None = None
    referral_count: int = 0
    referrals_pending: list[str] = Field(default_factory=list)
    referrals_completed: list[str] = Field(default_factory=list)
    outcome: Outcome = Outcome.OK

    def to_user(self, user_id: str) -> User:
        """Build the user record the account layer persists."""
        return User(
            user_id=user_id,
            referral_code=self.referral_code,
            referred_by=self.referred_by,
            referred_by_user_id=self.referred_by_user_id,
            referral_count=self.referral_count,
            referrals_completed=list(self.referrals_completed),
            premium_status=self.premium_status,
            premium_source=self.premium_source,
            premium_unlocked_at=self.premium_unlocked_at,
            premium_expires_at=self.premium_expires_at,
        )


class ReferralOutcome(BaseModel):
    """What happened to one pending record during completion."""

    referral_id: str
    status: ReferralStatus
    completed: bool = False
    reason: str | None = None  # expired | already_processed | referrer_missing | referred_missing
    referrer_user_id: str | None = None
    referred_user_id: str | None = None


class CompletionResult(BaseModel):
    """Result of processing an account-pairing event."""

    success: bool
    count: int = 0
    reason: str | None = None
    error: str | None = None
    outcome: Outcome = Outcome.OK
    results: list[ReferralOutcome] = Field(default_factory=list)


class ReferralStats(BaseModel):
    """Referral status view for a single user."""

    referral_code: str
    referral_count: int
    premium_status: PremiumStatus
    premium_source: PremiumSource | None = None
    premium_unlocked_at: datetime | None = None
    premium_expires_at: datetime | None = None
    pending_referrals: list[ReferralRecord] = Field(default_factory=list)
    completed_referrals: list[ReferralRecord] = Field(default_factory=list)
    referral_link: str


class FeatureAccess(BaseModel):
    """Premium-gated features."""

    receipt_ocr: bool
    advanced_analytics: bool
    recurring_expenses: bool
    category_trends: bool
    custom_exports: bool
    custom_themes: bool
    priority_support: bool
    multiple_groups: bool


class PremiumFeatures(BaseModel):
    """Feature access map for a user."""

    has_premium: bool
    features: FeatureAccess
