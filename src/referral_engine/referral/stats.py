"""Read-only referral statistics."""

from referral_engine.referral.schemas import ReferralStats, ReferralStatus
from referral_engine.settings import settings
from referral_engine.storage.repository import ReferralStore


def referral_link(code: str, base: str | None = None) -> str:
    """Deep link that opens signup with ``code`` prefilled."""
    return f"{(base or settings.referral_link_base).rstrip('/')}/{code}"


class StatsReporter:
    """Aggregates a user's referral state for display."""

    def __init__(self, store: ReferralStore, link_base: str | None = None):
        self.store = store
        self.link_base = link_base

    async def stats(self, user_id: str) -> ReferralStats | None:
        """Get referral statistics for a user.

        Args:
            user_id: User ID

        Returns:
            Stats, or None if the user does not exist
        """
        user = await self.store.get_user(user_id)
        if user is None:
            return None

        pending = await self.store.query_referrals_by_referrer(user_id, ReferralStatus.PENDING)
        completed = await self.store.query_referrals_by_referrer(user_id, ReferralStatus.COMPLETED)

        return ReferralStats(
            referral_code=user.referral_code,
            referral_count=user.referral_count,
            premium_status=user.premium_status,
            premium_source=user.premium_source,
            premium_unlocked_at=user.premium_unlocked_at,
            premium_expires_at=user.premium_expires_at,
            pending_referrals=pending,
            completed_referrals=completed,
            referral_link=referral_link(user.referral_code, self.link_base),
        )
