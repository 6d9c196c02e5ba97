"""Referral completion when two users pair into a shared account."""

from datetime import datetime, timedelta
from typing import Callable

from referral_engine.logging_config import get_logger
from referral_engine.referral.entitlement import utcnow
from referral_engine.referral.schemas import (
    CompletionResult,
    Outcome,
    ReferralOutcome,
    ReferralRecord,
    ReferralStatus,
)
from referral_engine.storage.repository import (
    CompleteReferral,
    CreditReferrer,
    GrantReferredBonus,
    PreconditionFailedError,
    ReferralStatusIs,
    ReferralStore,
    WriteOp,
)

logger = get_logger(__name__)


class CompletionEngine:
    """Completes pending referrals and grants rewards to both parties.

    Each record is committed on its own in a single atomic write guarded by
    a ``status == pending`` precondition, so a record is rewarded at most
    once even when pairing events race.
    """

    def __init__(
        self,
        store: ReferralStore,
        clock: Callable[[], datetime] = utcnow,
        bonus_period: timedelta = timedelta(days=30),
    ):
        self.store = store
        self.clock = clock
        self.bonus_period = bonus_period
        self.logger = get_logger(__name__)

    async def complete(
        self,
        account_id: str | None,
        user_a_id: str | None,
        user_b_id: str | None,
    ) -> CompletionResult:
        """Process an account-pairing event.

        Args:
            account_id: Shared account that was just created
            user_a_id: First member
            user_b_id: Second member

        Returns:
            ``success`` with the number of records completed by this call,
            or ``success=False`` with ``reason`` (bad input) or ``error``
            (storage or unexpected failure). ``count`` always reflects
            committed records.
        """
        if not account_id or not user_a_id or not user_b_id:
            self.logger.warning(
                "referral_completion_invalid_inputs",
                account_id=account_id,
                user_a_id=user_a_id,
                user_b_id=user_b_id,
            )
            return CompletionResult(success=False, reason="invalid_inputs", outcome=Outcome.FAILED)

        try:
            pending = await self.store.query_referrals_by_referred(
                [user_a_id, user_b_id], ReferralStatus.PENDING
            )
        except Exception as e:
            self.logger.error("pending_referrals_query_failed", account_id=account_id, error=str(e))
            return CompletionResult(success=False, error=str(e), outcome=Outcome.FAILED)

        if not pending:
            self.logger.info("no_pending_referrals", account_id=account_id)
            return CompletionResult(success=True, count=0, reason="no_pending_referrals")

        self.logger.info("pending_referrals_found", account_id=account_id, count=len(pending))

        results: list[ReferralOutcome] = []
        for record in pending:
            try:
                results.append(await self._process(record, account_id))
            except Exception as e:
                self.logger.error(
                    "referral_completion_failed",
                    referral_id=record.id,
                    account_id=account_id,
                    error=str(e),
                )
                return CompletionResult(
                    success=False,
                    count=_completed(results),
                    error=str(e),
                    outcome=Outcome.FAILED,
                    results=results,
                )

        degraded = any(r.reason in ("referrer_missing", "referred_missing") for r in results)
        return CompletionResult(
            success=True,
            count=_completed(results),
            outcome=Outcome.DEGRADED if degraded else Outcome.OK,
            results=results,
        )

    async def _process(self, record: ReferralRecord, account_id: str) -> ReferralOutcome:
        now = self.clock()

        # The expiry instant itself still completes
        if now > record.expires_at:
            moved = await self.store.update_referral_status(
                record.id, ReferralStatus.EXPIRED, expected=ReferralStatus.PENDING
            )
            if not moved:
                self.logger.info("referral_already_processed", referral_id=record.id)
                return await self._already_processed(record)

            self.logger.info("referral_expired", referral_id=record.id, expires_at=record.expires_at.isoformat())
            return ReferralOutcome(
                referral_id=record.id,
                status=ReferralStatus.EXPIRED,
                reason="expired",
                referrer_user_id=record.referrer_user_id,
                referred_user_id=record.referred_user_id,
            )

        reason = None
        ops: list[WriteOp] = [
            CompleteReferral(referral_id=record.id, completed_at=now, referred_couple_id=account_id)
        ]

        referrer = await self.store.get_user(record.referrer_user_id)
        if referrer is None:
            self.logger.warning(
                "referrer_missing",
                referral_id=record.id,
                referrer_user_id=record.referrer_user_id,
            )
            reason = "referrer_missing"
        else:
            ops.append(CreditReferrer(user_id=referrer.user_id, referral_id=record.id, now=now))

        referred = await self.store.get_user(record.referred_user_id)
        if referred is None:
            self.logger.warning(
                "referred_user_missing",
                referral_id=record.id,
                referred_user_id=record.referred_user_id,
            )
            reason = reason or "referred_missing"
        else:
            ops.append(
                GrantReferredBonus(user_id=referred.user_id, now=now, expires_at=now + self.bonus_period)
            )

        try:
            await self.store.atomic_write(ops, precondition=ReferralStatusIs(record.id, ReferralStatus.PENDING))
        except PreconditionFailedError:
            self.logger.info("referral_already_processed", referral_id=record.id)
            return await self._already_processed(record)

        self.logger.info(
            "referral_completed",
            referral_id=record.id,
            account_id=account_id,
            referrer_user_id=record.referrer_user_id,
            referred_user_id=record.referred_user_id,
        )
        return ReferralOutcome(
            referral_id=record.id,
            status=ReferralStatus.COMPLETED,
            completed=True,
            reason=reason,
            referrer_user_id=record.referrer_user_id,
            referred_user_id=record.referred_user_id,
        )

    async def _already_processed(self, record: ReferralRecord) -> ReferralOutcome:
        """Outcome for a record another call moved out of pending first."""
        current = await self.store.get_referral(record.id)
        return ReferralOutcome(
            referral_id=record.id,
            status=current.status if current else record.status,
            reason="already_processed",
            referrer_user_id=record.referrer_user_id,
            referred_user_id=record.referred_user_id,
        )


def _completed(results: list[ReferralOutcome]) -> int:
    return sum(1 for r in results if r.completed)
