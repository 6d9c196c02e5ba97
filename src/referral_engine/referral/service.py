"""Referral service: code issuance, attribution, completion and premium."""

from datetime import datetime, timedelta
from typing import Callable

from referral_engine.logging_config import get_logger
from referral_engine.referral.attribution import AttributionTracker
from referral_engine.referral.codes import generate_code, is_valid_code, normalize_code
from referral_engine.referral.completion import CompletionEngine
from referral_engine.referral.entitlement import get_premium_features, is_active_premium, utcnow
from referral_engine.referral.schemas import (
    CompletionResult,
    InitResult,
    PremiumFeatures,
    PremiumSource,
    PremiumStatus,
    ReferralStats,
    User,
)
from referral_engine.referral.stats import StatsReporter
from referral_engine.settings import Settings, settings as default_settings
from referral_engine.storage.db import db
from referral_engine.storage.repository import ReferralStore, SqlReferralStore

logger = get_logger(__name__)


class ReferralService:
    """Entry point used by the account layer.

    Signup calls ``initialize_referral`` before the user document is
    written; account pairing calls ``complete_referral`` right after the
    shared account exists. Premium-gated features call
    ``is_active_premium``.
    """

    def __init__(
        self,
        store: ReferralStore,
        clock: Callable[[], datetime] = utcnow,
        settings: Settings | None = None,
    ):
        """Initialize referral service.

        Args:
            store: Document store
            clock: Returns the current time (timezone-aware UTC)
            settings: Program configuration (defaults to global settings)
        """
        self.store = store
        self.clock = clock
        self.settings = settings or default_settings
        self.logger = get_logger(__name__)

        self.attribution = AttributionTracker(
            store,
            clock=clock,
            window=timedelta(hours=self.settings.attribution_window_hours),
            max_code_attempts=self.settings.max_code_attempts,
        )
        self.completion = CompletionEngine(
            store,
            clock=clock,
            bonus_period=timedelta(days=self.settings.referred_bonus_days),
        )
        self.reporter = StatsReporter(store, link_base=self.settings.referral_link_base)

    def generate_code(self, user_id: str, attempt: int = 0) -> str:
        """Generate a candidate referral code (no uniqueness check)."""
        return generate_code(user_id, attempt)

    async def initialize_referral(self, user_id: str, referred_by_code: str | None = None) -> InitResult:
        """Referral fields for a new user; never raises."""
        return await self.attribution.initialize(user_id, referred_by_code)

    async def register_user(self, user_id: str, referred_by_code: str | None = None) -> tuple[User, InitResult]:
        """Initialize referral fields and persist the new user.

        Convenience for callers that let this service own the user document.

        Raises:
            StorageError: If the user cannot be written
        """
        init = await self.initialize_referral(user_id, referred_by_code)
        user = await self.store.create_user(init.to_user(user_id))
        return user, init

    async def complete_referral(
        self,
        account_id: str | None,
        user_a_id: str | None,
        user_b_id: str | None,
    ) -> CompletionResult:
        """Complete pending referrals for a freshly paired account; never raises."""
        return await self.completion.complete(account_id, user_a_id, user_b_id)

    async def get_stats(self, user_id: str) -> ReferralStats | None:
        """Referral statistics, or None for an unknown user."""
        return await self.reporter.stats(user_id)

    async def validate_code(self, code: str | None) -> User | None:
        """Resolve a code to its owner, or None if malformed or unknown."""
        code = normalize_code(code)
        if not is_valid_code(code):
            return None
        return await self.store.find_user_by_referral_code(code)

    def is_active_premium(self, user: User | dict | None) -> bool:
        """Check if user has active premium right now."""
        return is_active_premium(user, self.clock())

    def get_premium_features(self, user: User | dict | None) -> PremiumFeatures:
        """Feature access map for a user."""
        return get_premium_features(user, self.clock())

    async def award_premium(
        self,
        user_id: str,
        source: PremiumSource,
        expires_at: datetime | None = None,
    ) -> bool:
        """Grant premium directly, overwriting current premium fields.

        Args:
            user_id: User ID
            source: Where the premium comes from
            expires_at: Expiration (None = forever)

        Returns:
            False if the user does not exist

        Raises:
            StorageError: If the write fails
        """
        updated = await self.store.update_user_premium(
            user_id,
            status=PremiumStatus.PREMIUM,
            source=source,
            unlocked_at=self.clock(),
            expires_at=expires_at,
        )
        if updated:
            self.logger.info(
                "premium_awarded",
                user_id=user_id,
                source=source.value,
                expires_at=expires_at.isoformat() if expires_at else None,
            )
        else:
            self.logger.warning("premium_award_user_missing", user_id=user_id)
        return updated

    async def cleanup_expired_referrals(self) -> int:
        """Expire pending referrals whose window has closed.

        Completed records are never touched.

        Returns:
            Number of referrals expired

        Raises:
            StorageError: If the sweep fails
        """
        count = await self.store.expire_pending_referrals(self.clock())
        self.logger.info("expired_referrals_swept", count=count)
        return count


# Singleton instance
referral_service = ReferralService(SqlReferralStore(db))
