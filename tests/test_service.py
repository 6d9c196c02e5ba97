from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from referral_engine.referral.codes import is_valid_code
from referral_engine.referral.schemas import PremiumSource, PremiumStatus, ReferralStatus
from referral_engine.referral.stats import referral_link
from referral_engine.storage.repository import StorageError

from tests.conftest import T0


@pytest.mark.asyncio
async def test_stats_for_unknown_user(service):
    assert await service.get_stats("nobody") is None


@pytest.mark.asyncio
async def test_stats_lists_referrals_by_status(service, make_user, clock):
    await make_user("alice", "ABCDEF")
    await service.register_user("bob", "ABCDEF")
    await service.register_user("carol", "ABCDEF")
    await service.complete_referral("couple-1", "bob", "zed")

    stats = await service.get_stats("alice")

    assert stats.referral_code == "ABCDEF"
    assert stats.referral_link == "https://dividela.co/r/ABCDEF"
    assert stats.referral_count == 1
    assert stats.premium_status == PremiumStatus.PREMIUM
    assert stats.premium_source == PremiumSource.REFERRAL
    assert stats.premium_expires_at is None
    assert [r.referred_user_id for r in stats.pending_referrals] == ["carol"]
    assert [r.referred_user_id for r in stats.completed_referrals] == ["bob"]


@pytest.mark.asyncio
async def test_stats_for_user_without_referrals(service, make_user):
    await make_user("alice", "ABCDEF")

    stats = await service.get_stats("alice")

    assert stats.referral_count == 0
    assert stats.premium_status == PremiumStatus.FREE
    assert stats.pending_referrals == []
    assert stats.completed_referrals == []


@pytest.mark.asyncio
async def test_stats_propagates_storage_errors(service, store, mocker):
    mocker.patch.object(store, "get_user", AsyncMock(side_effect=StorageError("unavailable")))

    with pytest.raises(StorageError):
        await service.get_stats("alice")


def test_referral_link_is_deterministic():
    assert referral_link("ABCDEF", "https://example.com/r/") == "https://example.com/r/ABCDEF"
    assert referral_link("ABCDEF", "https://example.com/r/") == referral_link("ABCDEF", "https://example.com/r")


@pytest.mark.asyncio
async def test_register_user_persists_init_result(service, store, make_user):
    await make_user("alice", "ABCDEF")

    user, init = await service.register_user("bob", "abcdef")

    assert user.user_id == "bob"
    assert user.referral_code == init.referral_code
    assert is_valid_code(user.referral_code)
    assert user.referred_by == "ABCDEF"
    assert user.referred_by_user_id == "alice"
    assert user.premium_status == PremiumStatus.FREE
    assert (await store.find_user_by_referral_code(user.referral_code)).user_id == "bob"


@pytest.mark.asyncio
async def test_validate_code(service, make_user):
    await make_user("alice", "ABCDEF")

    assert (await service.validate_code("abcdef")).user_id == "alice"
    assert await service.validate_code("GHJKLM") is None
    assert await service.validate_code("not-a-code") is None
    assert await service.validate_code(None) is None


@pytest.mark.asyncio
async def test_award_premium(service, store, make_user, clock):
    await make_user("alice", "ABCDEF")
    expires = T0 + timedelta(days=365)

    assert await service.award_premium("alice", PremiumSource.SUBSCRIPTION, expires) is True

    alice = await store.get_user("alice")
    assert alice.premium_status == PremiumStatus.PREMIUM
    assert alice.premium_source == PremiumSource.SUBSCRIPTION
    assert alice.premium_expires_at == expires
    assert alice.premium_unlocked_at == T0
    assert service.is_active_premium(alice) is True


@pytest.mark.asyncio
async def test_award_premium_to_unknown_user(service):
    assert await service.award_premium("ghost", PremiumSource.SUBSCRIPTION) is False


@pytest.mark.asyncio
async def test_award_premium_raises_storage_errors(service, store, mocker):
    mocker.patch.object(store, "update_user_premium", AsyncMock(side_effect=StorageError("unavailable")))

    with pytest.raises(StorageError):
        await service.award_premium("alice", PremiumSource.SUBSCRIPTION)


@pytest.mark.asyncio
async def test_sweep_expires_only_stale_pending(service, store, make_user, clock):
    await make_user("alice", "ABCDEF")
    _, stale = await service.register_user("bob", "ABCDEF")
    _, done = await service.register_user("carol", "ABCDEF")
    await service.complete_referral("couple-1", "carol", "zed")
    clock.advance(hours=20)
    _, fresh = await service.register_user("dave", "ABCDEF")
    clock.advance(hours=5)

    assert await service.cleanup_expired_referrals() == 1

    assert (await store.get_referral(stale.referral_id)).status == ReferralStatus.EXPIRED
    assert (await store.get_referral(done.referral_id)).status == ReferralStatus.COMPLETED
    assert (await store.get_referral(fresh.referral_id)).status == ReferralStatus.PENDING


@pytest.mark.asyncio
async def test_sweep_leaves_boundary_instant_pending(service, store, make_user, clock):
    await make_user("alice", "ABCDEF")
    _, init = await service.register_user("bob", "ABCDEF")
    clock.advance(hours=24)

    assert await service.cleanup_expired_referrals() == 0
    assert (await store.get_referral(init.referral_id)).status == ReferralStatus.PENDING


@pytest.mark.asyncio
async def test_premium_helpers_use_service_clock(service, clock):
    user = {"premium_status": "premium", "premium_expires_at": T0 + timedelta(hours=1)}

    assert service.is_active_premium(user) is True
    assert service.get_premium_features(user).has_premium is True
    clock.advance(hours=2)
    assert service.is_active_premium(user) is False
    assert service.is_active_premium(None) is False
