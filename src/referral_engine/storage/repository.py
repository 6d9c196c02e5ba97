"""Repository layer for referral data access."""

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import AsyncIterator, Sequence

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from referral_engine.logging_config import get_logger
from referral_engine.referral.schemas import (
    PremiumSource,
    PremiumStatus,
    ReferralRecord,
    ReferralStatus,
    User,
)
from referral_engine.storage.db import Database
from referral_engine.storage.models import Referral, UserAccount

logger = get_logger(__name__)


class StorageError(Exception):
    """Raised when the document store cannot be reached or a write fails."""
    pass


class PreconditionFailedError(Exception):
    """Raised when an atomic write's precondition no longer holds."""

    def __init__(self, referral_id: str, expected: ReferralStatus):
        self.referral_id = referral_id
        self.expected = expected
        super().__init__(f"Referral {referral_id} is no longer {expected.value}")


# ==================== WRITE OPERATIONS ====================


@dataclass(frozen=True)
class ReferralStatusIs:
    """Precondition: commit only if the referral still has this status."""
    referral_id: str
    status: ReferralStatus = ReferralStatus.PENDING


@dataclass(frozen=True)
class CompleteReferral:
    """Mark a referral completed for the shared account that triggered it."""
    referral_id: str
    completed_at: datetime
    referred_couple_id: str


@dataclass(frozen=True)
class CreditReferrer:
    """Count a completed referral for the referrer.

    The first completion also grants forever-premium unless the referrer
    already holds active premium.
    """
    user_id: str
    referral_id: str
    now: datetime


@dataclass(frozen=True)
class GrantReferredBonus:
    """Time-boxed premium for the referred user, skipped if already active."""
    user_id: str
    now: datetime
    expires_at: datetime


WriteOp = CompleteReferral | CreditReferrer | GrantReferredBonus


class ReferralStore(ABC):
    """Document store used by the referral engine."""

    @abstractmethod
    async def get_user(self, user_id: str) -> User | None:
        """Get user by ID."""

    @abstractmethod
    async def create_user(self, user: User) -> User:
        """Persist a new user record."""

    @abstractmethod
    async def find_user_by_referral_code(self, code: str) -> User | None:
        """Get the user owning a referral code."""

    @abstractmethod
    async def referral_code_exists(self, code: str) -> bool:
        """Check whether a referral code is already taken."""

    @abstractmethod
    async def get_referral(self, referral_id: str) -> ReferralRecord | None:
        """Get referral record by ID."""

    @abstractmethod
    async def get_referral_for_referred_user(self, user_id: str) -> ReferralRecord | None:
        """Get the referral record (any status) of a referred user."""

    @abstractmethod
    async def create_referral(self, record: ReferralRecord) -> ReferralRecord:
        """Persist a new referral record."""

    @abstractmethod
    async def query_referrals_by_referred(
        self, user_ids: Sequence[str], status: ReferralStatus
    ) -> list[ReferralRecord]:
        """Referral records whose referred user is one of ``user_ids``."""

    @abstractmethod
    async def query_referrals_by_referrer(
        self, user_id: str, status: ReferralStatus
    ) -> list[ReferralRecord]:
        """Referral records created from a referrer's code."""

    @abstractmethod
    async def update_referral_status(
        self,
        referral_id: str,
        status: ReferralStatus,
        expected: ReferralStatus = ReferralStatus.PENDING,
    ) -> bool:
        """Single-field status transition. Returns False if ``expected`` no longer holds."""

    @abstractmethod
    async def expire_pending_referrals(self, now: datetime) -> int:
        """Flip every pending referral whose window closed before ``now``."""

    @abstractmethod
    async def update_user_premium(
        self,
        user_id: str,
        status: PremiumStatus,
        source: PremiumSource | None,
        unlocked_at: datetime | None,
        expires_at: datetime | None,
    ) -> bool:
        """Overwrite premium fields. Returns False if the user does not exist."""

    @abstractmethod
    async def atomic_write(
        self,
        ops: Sequence[WriteOp],
        precondition: ReferralStatusIs | None = None,
    ) -> None:
        """Apply all ``ops`` as one unit.

        Raises:
            PreconditionFailedError: If ``precondition`` does not hold at commit time
            StorageError: If the write fails
        """


class SqlReferralStore(ReferralStore):
    """SQLAlchemy-backed referral store."""

    def __init__(self, database: Database):
        self.database = database

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self.database.session() as session:
                yield session
        except SQLAlchemyError as e:
            logger.error("storage_error", error=str(e))
            raise StorageError(str(e)) from e

    # ---------- users ----------

    async def get_user(self, user_id: str) -> User | None:
        async with self._session() as session:
            row = await session.get(UserAccount, user_id)
            return User.model_validate(row) if row else None

    async def create_user(self, user: User) -> User:
        async with self._session() as session:
            row = UserAccount(
                user_id=user.user_id,
                referral_code=user.referral_code,
                referred_by=user.referred_by,
                referred_by_user_id=user.referred_by_user_id,
                referral_count=user.referral_count,
                referrals_completed=list(user.referrals_completed),
                premium_status=user.premium_status.value,
                premium_source=user.premium_source.value if user.premium_source else None,
                premium_unlocked_at=user.premium_unlocked_at,
                premium_expires_at=user.premium_expires_at,
                referral_completed_at=user.referral_completed_at,
            )
            if user.created_at is not None:
                row.created_at = user.created_at
            session.add(row)
            await session.flush()
            await session.refresh(row)
            logger.info("user_created", user_id=user.user_id, referral_code=user.referral_code)
            return User.model_validate(row)

    async def find_user_by_referral_code(self, code: str) -> User | None:
        async with self._session() as session:
            row = await session.scalar(
                select(UserAccount).where(UserAccount.referral_code == code)
            )
            return User.model_validate(row) if row else None

    async def referral_code_exists(self, code: str) -> bool:
        async with self._session() as session:
            found = await session.scalar(
                select(UserAccount.user_id).where(UserAccount.referral_code == code).limit(1)
            )
            return found is not None

    async def update_user_premium(
        self,
        user_id: str,
        status: PremiumStatus,
        source: PremiumSource | None,
        unlocked_at: datetime | None,
        expires_at: datetime | None,
    ) -> bool:
        async with self._session() as session:
            result = await session.execute(
                update(UserAccount)
                .where(UserAccount.user_id == user_id)
                .values(
                    premium_status=status.value,
                    premium_source=source.value if source else None,
                    premium_unlocked_at=unlocked_at,
                    premium_expires_at=expires_at,
                )
            )
            return result.rowcount > 0

    # ---------- referrals ----------

    async def get_referral(self, referral_id: str) -> ReferralRecord | None:
        async with self._session() as session:
            row = await session.get(Referral, referral_id)
            return ReferralRecord.model_validate(row) if row else None

    async def get_referral_for_referred_user(self, user_id: str) -> ReferralRecord | None:
        async with self._session() as session:
            row = await session.scalar(
                select(Referral).where(Referral.referred_user_id == user_id)
            )
            return ReferralRecord.model_validate(row) if row else None

    async def create_referral(self, record: ReferralRecord) -> ReferralRecord:
        async with self._session() as session:
            row = Referral(
                id=record.id,
                referrer_user_id=record.referrer_user_id,
                referred_user_id=record.referred_user_id,
                status=record.status.value,
                created_at=record.created_at,
                expires_at=record.expires_at,
            )
            session.add(row)
            await session.flush()
            await session.refresh(row)
            return ReferralRecord.model_validate(row)

    async def query_referrals_by_referred(
        self, user_ids: Sequence[str], status: ReferralStatus
    ) -> list[ReferralRecord]:
        async with self._session() as session:
            rows = await session.scalars(
                select(Referral)
                .where(
                    Referral.referred_user_id.in_(list(user_ids)),
                    Referral.status == status.value,
                )
                .order_by(Referral.created_at)
            )
            return [ReferralRecord.model_validate(r) for r in rows]

    async def query_referrals_by_referrer(
        self, user_id: str, status: ReferralStatus
    ) -> list[ReferralRecord]:
        async with self._session() as session:
            rows = await session.scalars(
                select(Referral)
                .where(
                    Referral.referrer_user_id == user_id,
                    Referral.status == status.value,
                )
                .order_by(Referral.created_at.desc())
            )
            return [ReferralRecord.model_validate(r) for r in rows]

    async def update_referral_status(
        self,
        referral_id: str,
        status: ReferralStatus,
        expected: ReferralStatus = ReferralStatus.PENDING,
    ) -> bool:
        async with self._session() as session:
            result = await session.execute(
                update(Referral)
                .where(Referral.id == referral_id, Referral.status == expected.value)
                .values(status=status.value)
            )
            return result.rowcount > 0

    async def expire_pending_referrals(self, now: datetime) -> int:
        async with self._session() as session:
            result = await session.execute(
                update(Referral)
                .where(
                    Referral.status == ReferralStatus.PENDING.value,
                    Referral.expires_at < now,
                )
                .values(status=ReferralStatus.EXPIRED.value)
            )
            return result.rowcount

    # ---------- atomic write ----------

    async def atomic_write(
        self,
        ops: Sequence[WriteOp],
        precondition: ReferralStatusIs | None = None,
    ) -> None:
        async with self._session() as session:
            if precondition is not None:
                # Guarded no-op update: takes the row lock and checks the status in one statement
                result = await session.execute(
                    update(Referral)
                    .where(
                        Referral.id == precondition.referral_id,
                        Referral.status == precondition.status.value,
                    )
                    .values(status=precondition.status.value)
                )
                if result.rowcount == 0:
                    raise PreconditionFailedError(precondition.referral_id, precondition.status)

            for op in ops:
                if isinstance(op, CompleteReferral):
                    await self._complete_referral(session, op)
                elif isinstance(op, CreditReferrer):
                    await self._credit_referrer(session, op)
                elif isinstance(op, GrantReferredBonus):
                    await self._grant_referred_bonus(session, op)
                else:
                    raise TypeError(f"Unsupported write op: {type(op).__name__}")

    async def _complete_referral(self, session: AsyncSession, op: CompleteReferral) -> None:
        await session.execute(
            update(Referral)
            .where(Referral.id == op.referral_id)
            .values(
                status=ReferralStatus.COMPLETED.value,
                completed_at=op.completed_at,
                referred_couple_id=op.referred_couple_id,
            )
        )

    async def _credit_referrer(self, session: AsyncSession, op: CreditReferrer) -> None:
        # In-database increment; the row stays locked until commit
        result = await session.execute(
            update(UserAccount)
            .where(UserAccount.user_id == op.user_id)
            .values(referral_count=UserAccount.referral_count + 1)
        )
        if result.rowcount == 0:
            logger.warning("referrer_missing_at_commit", user_id=op.user_id, referral_id=op.referral_id)
            return

        row = (
            await session.execute(
                select(
                    UserAccount.referral_count,
                    UserAccount.referrals_completed,
                    UserAccount.premium_status,
                    UserAccount.premium_expires_at,
                ).where(UserAccount.user_id == op.user_id)
            )
        ).one()

        values: dict = {"referrals_completed": [*(row.referrals_completed or []), op.referral_id]}

        has_active_premium = row.premium_status == PremiumStatus.PREMIUM.value and (
            row.premium_expires_at is None or op.now < row.premium_expires_at
        )
        if row.referral_count == 1 and not has_active_premium:
            values.update(
                premium_status=PremiumStatus.PREMIUM.value,
                premium_source=PremiumSource.REFERRAL.value,
                premium_unlocked_at=op.now,
                premium_expires_at=None,
            )
            logger.info("referrer_premium_granted", user_id=op.user_id, referral_id=op.referral_id)

        await session.execute(
            update(UserAccount).where(UserAccount.user_id == op.user_id).values(**values)
        )

    async def _grant_referred_bonus(self, session: AsyncSession, op: GrantReferredBonus) -> None:
        has_active_premium = and_(
            UserAccount.premium_status == PremiumStatus.PREMIUM.value,
            or_(
                UserAccount.premium_expires_at.is_(None),
                UserAccount.premium_expires_at > op.now,
            ),
        )
        result = await session.execute(
            update(UserAccount)
            .where(UserAccount.user_id == op.user_id, ~has_active_premium)
            .values(
                premium_status=PremiumStatus.PREMIUM.value,
                premium_source=PremiumSource.REFERRAL_BONUS.value,
                premium_unlocked_at=op.now,
                premium_expires_at=op.expires_at,
                referral_completed_at=op.now,
            )
        )
        if result.rowcount:
            logger.info("referred_bonus_granted", user_id=op.user_id, expires_at=op.expires_at.isoformat())
        else:
            logger.info("referred_bonus_skipped", user_id=op.user_id)
