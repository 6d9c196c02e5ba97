from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from referral_engine.referral.schemas import PremiumSource, PremiumStatus, User
from referral_engine.referral.service import ReferralService
from referral_engine.settings import Settings
from referral_engine.storage.db import Database
from referral_engine.storage.repository import SqlReferralStore

# Fixed signup instant so window arithmetic is exact
T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Controllable clock passed to the service instead of the wall clock."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, now: datetime) -> None:
        self.now = now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(T0)


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        referral_link_base="https://dividela.co/r",
        attribution_window_hours=24,
        referred_bonus_days=30,
        max_code_attempts=5,
    )


@pytest_asyncio.fixture
async def database(tmp_path):
    """Fresh SQLite database file for each test."""
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'referrals.db'}", echo=False)
    await database.create_tables()
    try:
        yield database
    finally:
        await database.drop_tables()
        await database.dispose()


@pytest.fixture
def store(database) -> SqlReferralStore:
    return SqlReferralStore(database)


@pytest.fixture
def service(store, clock, test_settings) -> ReferralService:
    return ReferralService(store, clock=clock, settings=test_settings)


@pytest.fixture
def make_user(store):
    """Insert a user directly, bypassing signup."""

    async def _make_user(
        user_id: str,
        referral_code: str,
        premium_status: PremiumStatus = PremiumStatus.FREE,
        premium_source: PremiumSource | None = None,
        premium_expires_at: datetime | None = None,
        **fields,
    ) -> User:
        return await store.create_user(
            User(
                user_id=user_id,
                referral_code=referral_code,
                premium_status=premium_status,
                premium_source=premium_source,
                premium_expires_at=premium_expires_at,
                **fields,
            )
        )

    return _make_user
