"""Signup-time referral attribution."""

import uuid
from datetime import datetime, timedelta
from typing import Callable

from referral_engine.logging_config import get_logger
from referral_engine.referral.codes import generate_code, is_valid_code, normalize_code, timestamp_code
from referral_engine.referral.entitlement import utcnow
from referral_engine.referral.schemas import InitResult, Outcome, ReferralRecord, ReferralStatus
from referral_engine.storage.repository import ReferralStore

logger = get_logger(__name__)


async def issue_unique_code(store: ReferralStore, user_id: str, max_attempts: int = 5) -> str:
    """Issue a referral code nobody else holds.

    Never raises: if the uniqueness check itself fails the candidate is
    assumed to be available, and after ``max_attempts`` collisions a
    timestamp-derived code is accepted unchecked.
    """
    for attempt in range(max_attempts):
        code = generate_code(user_id, attempt)
        try:
            taken = await store.referral_code_exists(code)
        except Exception as e:
            logger.warning("referral_code_check_failed", user_id=user_id, code=code, error=str(e))
            return code
        if not taken:
            return code
        logger.debug("referral_code_collision", user_id=user_id, code=code, attempt=attempt)

    code = timestamp_code()
    logger.warning("referral_code_fallback", user_id=user_id, code=code, attempts=max_attempts)
    return code


class AttributionTracker:
    """Records who referred a new user."""

    def __init__(
        self,
        store: ReferralStore,
        clock: Callable[[], datetime] = utcnow,
        window: timedelta = timedelta(hours=24),
        max_code_attempts: int = 5,
    ):
        self.store = store
        self.clock = clock
        self.window = window
        self.max_code_attempts = max_code_attempts
        self.logger = get_logger(__name__)

    async def initialize(self, user_id: str, referred_by_code: str | None = None) -> InitResult:
        """Referral fields for a user being created.

        Always issues a fresh code. When ``referred_by_code`` belongs to
        another user, a pending referral record is stored first and then
        reported in the result. Storage failures never propagate: signup
        gets a payload without attribution and a DEGRADED outcome.

        Args:
            user_id: ID of the user being created
            referred_by_code: Code the user signed up with, if any

        Returns:
            Fields to merge into the new user document
        """
        referral_code = await issue_unique_code(self.store, user_id, self.max_code_attempts)

        try:
            return await self._attribute(user_id, referral_code, referred_by_code)
        except Exception as e:
            self.logger.error(
                "referral_initialization_failed",
                user_id=user_id,
                referred_by_code=referred_by_code,
                error=str(e),
            )
            return InitResult(referral_code=referral_code, outcome=Outcome.DEGRADED)

    async def _attribute(self, user_id: str, referral_code: str, referred_by_code: str | None) -> InitResult:
        result = InitResult(referral_code=referral_code)
        if not referred_by_code:
            return result

        code = normalize_code(referred_by_code)
        if not is_valid_code(code):
            self.logger.info("referral_code_malformed", user_id=user_id, code=referred_by_code)
            return result

        referrer = await self.store.find_user_by_referral_code(code)
        if referrer is None:
            self.logger.warning("referral_code_not_found", user_id=user_id, code=code)
            return result

        if referrer.user_id == user_id:
            self.logger.warning("self_referral_ignored", user_id=user_id, code=code)
            return result

        existing = await self.store.get_referral_for_referred_user(user_id)
        if existing is not None:
            self.logger.warning(
                "user_already_referred",
                user_id=user_id,
                referral_id=existing.id,
                referrer_user_id=existing.referrer_user_id,
            )
            return result

        now = self.clock()
        record = await self.store.create_referral(
            ReferralRecord(
                id=str(uuid.uuid4()),
                referrer_user_id=referrer.user_id,
                referred_user_id=user_id,
                status=ReferralStatus.PENDING,
                created_at=now,
                expires_at=now + self.window,
            )
        )

        self.logger.info(
            "referral_pending_created",
            referral_id=record.id,
            referrer_user_id=referrer.user_id,
            referred_user_id=user_id,
            expires_at=record.expires_at.isoformat(),
        )

        result.referred_by = code
        result.referred_by_user_id = referrer.user_id
        result.referral_id = record.id
        return result
