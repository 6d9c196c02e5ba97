from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from referral_engine.referral.schemas import (
    Outcome,
    PremiumSource,
    PremiumStatus,
    ReferralRecord,
    ReferralStatus,
)
from referral_engine.storage.repository import StorageError

from tests.conftest import T0


@pytest_asyncio.fixture
async def referral(service, make_user):
    """alice refers bob at T0."""
    await make_user("alice", "ABCDEF")
    _, init = await service.register_user("bob", "ABCDEF")
    assert init.referral_id is not None
    return init.referral_id


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "args",
    [
        (None, "alice", "bob"),
        ("couple-1", None, "bob"),
        ("couple-1", "alice", None),
        ("", "alice", "bob"),
    ],
)
async def test_invalid_inputs(service, args):
    result = await service.complete_referral(*args)

    assert result.success is False
    assert result.reason == "invalid_inputs"
    assert result.count == 0
    assert result.outcome == Outcome.FAILED


@pytest.mark.asyncio
async def test_invalid_inputs_have_no_side_effects(service, store, referral):
    await service.complete_referral("couple-1", "alice", None)

    record = await store.get_referral(referral)
    assert record.status == ReferralStatus.PENDING


@pytest.mark.asyncio
async def test_pairing_without_referrals_is_not_an_error(service, make_user):
    await make_user("dan", "GHJKLM")
    await make_user("erin", "NPQRST")

    result = await service.complete_referral("couple-1", "dan", "erin")

    assert result.success is True
    assert result.count == 0


@pytest.mark.asyncio
async def test_completion_inside_window(service, store, clock, referral):
    clock.set(T0 + timedelta(hours=23, minutes=59))

    result = await service.complete_referral("couple-1", "alice", "bob")

    assert result.success is True
    assert result.count == 1
    assert result.outcome == Outcome.OK
    assert result.results[0].referral_id == referral
    assert result.results[0].completed is True

    record = await store.get_referral(referral)
    assert record.status == ReferralStatus.COMPLETED
    assert record.completed_at == clock.now
    assert record.referred_couple_id == "couple-1"

    alice = await store.get_user("alice")
    assert alice.referral_count == 1
    assert alice.referrals_completed == [referral]
    assert alice.premium_status == PremiumStatus.PREMIUM
    assert alice.premium_source == PremiumSource.REFERRAL
    assert alice.premium_expires_at is None
    assert alice.premium_unlocked_at == clock.now

    bob = await store.get_user("bob")
    assert bob.premium_status == PremiumStatus.PREMIUM
    assert bob.premium_source == PremiumSource.REFERRAL_BONUS
    assert bob.premium_expires_at == clock.now + timedelta(days=30)
    assert bob.referral_completed_at == clock.now
    assert bob.referral_count == 0


@pytest.mark.asyncio
async def test_member_order_does_not_matter(service, store, referral):
    result = await service.complete_referral("couple-1", "bob", "alice")

    assert result.count == 1


@pytest.mark.asyncio
async def test_expiry_instant_still_completes(service, store, clock, referral):
    clock.set(T0 + timedelta(hours=24))

    result = await service.complete_referral("couple-1", "alice", "bob")

    assert result.count == 1
    assert (await store.get_referral(referral)).status == ReferralStatus.COMPLETED


@pytest.mark.asyncio
async def test_completion_after_window_expires_record(service, store, clock, referral):
    clock.set(T0 + timedelta(hours=24, minutes=1))

    result = await service.complete_referral("couple-1", "alice", "bob")

    assert result.success is True
    assert result.count == 0
    assert result.results[0].status == ReferralStatus.EXPIRED
    assert result.results[0].reason == "expired"

    record = await store.get_referral(referral)
    assert record.status == ReferralStatus.EXPIRED
    assert record.completed_at is None
    assert record.referred_couple_id is None

    alice = await store.get_user("alice")
    assert alice.referral_count == 0
    assert alice.premium_status == PremiumStatus.FREE
    bob = await store.get_user("bob")
    assert bob.premium_status == PremiumStatus.FREE


@pytest.mark.asyncio
async def test_second_completion_only_increments_count(service, store, clock, referral):
    await service.complete_referral("couple-1", "alice", "bob")
    first_unlock = (await store.get_user("alice")).premium_unlocked_at

    clock.advance(days=3)
    _, init = await service.register_user("carol", "ABCDEF")
    clock.advance(hours=2)
    result = await service.complete_referral("couple-2", "carol", "dave")

    assert result.count == 1
    alice = await store.get_user("alice")
    assert alice.referral_count == 2
    assert alice.referrals_completed == [referral, init.referral_id]
    assert alice.premium_status == PremiumStatus.PREMIUM
    assert alice.premium_source == PremiumSource.REFERRAL
    assert alice.premium_expires_at is None
    assert alice.premium_unlocked_at == first_unlock


@pytest.mark.asyncio
async def test_referrer_with_subscription_keeps_premium_fields(service, store, make_user):
    sub_end = T0 + timedelta(days=200)
    await make_user(
        "alice",
        "ABCDEF",
        premium_status=PremiumStatus.PREMIUM,
        premium_source=PremiumSource.SUBSCRIPTION,
        premium_expires_at=sub_end,
    )
    await service.register_user("bob", "ABCDEF")

    result = await service.complete_referral("couple-1", "alice", "bob")

    assert result.count == 1
    alice = await store.get_user("alice")
    assert alice.referral_count == 1
    assert alice.premium_source == PremiumSource.SUBSCRIPTION
    assert alice.premium_expires_at == sub_end


@pytest.mark.asyncio
async def test_referrer_with_lapsed_premium_gets_forever(service, store, make_user):
    await make_user(
        "alice",
        "ABCDEF",
        premium_status=PremiumStatus.PREMIUM,
        premium_source=PremiumSource.SUBSCRIPTION,
        premium_expires_at=T0 - timedelta(days=1),
    )
    await service.register_user("bob", "ABCDEF")

    await service.complete_referral("couple-1", "alice", "bob")

    alice = await store.get_user("alice")
    assert alice.premium_source == PremiumSource.REFERRAL
    assert alice.premium_expires_at is None


@pytest.mark.asyncio
async def test_referred_user_with_premium_is_untouched(service, store, make_user, clock):
    await make_user("alice", "ABCDEF")
    await service.register_user("bob", "ABCDEF")
    await store.update_user_premium(
        "bob", PremiumStatus.PREMIUM, PremiumSource.SUBSCRIPTION, unlocked_at=T0, expires_at=None
    )

    result = await service.complete_referral("couple-1", "alice", "bob")

    assert result.count == 1
    bob = await store.get_user("bob")
    assert bob.premium_source == PremiumSource.SUBSCRIPTION
    assert bob.premium_expires_at is None
    assert bob.referral_completed_at is None


@pytest.mark.asyncio
async def test_repeat_pairing_is_idempotent(service, store, referral):
    first = await service.complete_referral("couple-1", "alice", "bob")
    second = await service.complete_referral("couple-1", "alice", "bob")

    assert first.count == 1
    assert second.success is True
    assert second.count == 0
    assert (await store.get_user("alice")).referral_count == 1


@pytest.mark.asyncio
async def test_stale_pending_read_is_not_rewarded_twice(service, store, referral, mocker):
    stale = await store.query_referrals_by_referred(["bob"], ReferralStatus.PENDING)
    await service.complete_referral("couple-1", "alice", "bob")

    # A concurrent caller that read the record before the first commit
    mocker.patch.object(store, "query_referrals_by_referred", AsyncMock(return_value=stale))
    result = await service.complete_referral("couple-1", "alice", "bob")

    assert result.success is True
    assert result.count == 0
    assert result.results[0].reason == "already_processed"
    assert result.results[0].status == ReferralStatus.COMPLETED

    alice = await store.get_user("alice")
    assert alice.referral_count == 1
    assert alice.referrals_completed == [referral]


@pytest.mark.asyncio
async def test_missing_referrer_completes_without_reward(service, store, make_user, clock):
    await make_user("bob", "GHJKLM")
    await store.create_referral(
        ReferralRecord(
            id="ghost-ref",
            referrer_user_id="ghost",
            referred_user_id="bob",
            created_at=T0,
            expires_at=T0 + timedelta(hours=24),
        )
    )

    result = await service.complete_referral("couple-1", "bob", "carol")

    assert result.success is True
    assert result.count == 1
    assert result.outcome == Outcome.DEGRADED
    assert result.results[0].reason == "referrer_missing"
    assert (await store.get_referral("ghost-ref")).status == ReferralStatus.COMPLETED

    bob = await store.get_user("bob")
    assert bob.premium_source == PremiumSource.REFERRAL_BONUS


@pytest.mark.asyncio
async def test_both_members_referred(service, store, make_user, clock):
    await make_user("alice", "ABCDEF")
    await make_user("carol", "GHJKLM")
    await service.register_user("bob", "ABCDEF")
    clock.advance(minutes=5)
    await service.register_user("dave", "GHJKLM")

    result = await service.complete_referral("couple-1", "bob", "dave")

    assert result.count == 2
    assert (await store.get_user("alice")).referral_count == 1
    assert (await store.get_user("carol")).referral_count == 1


@pytest.mark.asyncio
async def test_one_expired_one_valid(service, store, make_user, clock):
    await make_user("alice", "ABCDEF")
    await make_user("carol", "GHJKLM")
    await service.register_user("bob", "ABCDEF")
    clock.advance(hours=20)
    await service.register_user("dave", "GHJKLM")
    clock.advance(hours=5)

    result = await service.complete_referral("couple-1", "bob", "dave")

    assert result.success is True
    assert result.count == 1
    assert [r.status for r in result.results] == [ReferralStatus.EXPIRED, ReferralStatus.COMPLETED]
    assert (await store.get_user("alice")).referral_count == 0
    assert (await store.get_user("carol")).referral_count == 1


@pytest.mark.asyncio
async def test_commit_failure_stops_and_reports_progress(service, store, make_user, clock, mocker):
    await make_user("alice", "ABCDEF")
    await make_user("carol", "GHJKLM")
    await service.register_user("bob", "ABCDEF")
    clock.advance(minutes=5)
    await service.register_user("dave", "GHJKLM")

    real_write = store.atomic_write
    commits = []

    async def flaky_write(ops, precondition=None):
        if commits:
            raise StorageError("unavailable")
        commits.append(precondition.referral_id)
        await real_write(ops, precondition)

    mocker.patch.object(store, "atomic_write", side_effect=flaky_write)

    result = await service.complete_referral("couple-1", "bob", "dave")

    assert result.success is False
    assert result.error == "unavailable"
    assert result.count == 1
    assert result.outcome == Outcome.FAILED
    assert (await store.get_user("alice")).referral_count == 1
    assert (await store.get_user("carol")).referral_count == 0
    dave_ref = await store.get_referral_for_referred_user("dave")
    assert dave_ref.status == ReferralStatus.PENDING


@pytest.mark.asyncio
async def test_query_failure_is_reported(service, store, mocker):
    mocker.patch.object(
        store, "query_referrals_by_referred", AsyncMock(side_effect=StorageError("timeout"))
    )

    result = await service.complete_referral("couple-1", "alice", "bob")

    assert result.success is False
    assert result.error == "timeout"
    assert result.count == 0


@pytest.mark.asyncio
async def test_failed_batch_writes_nothing(service, store, referral, mocker):
    mocker.patch(
        "referral_engine.storage.repository.SqlReferralStore._grant_referred_bonus",
        side_effect=StorageError("disk full"),
    )

    result = await service.complete_referral("couple-1", "alice", "bob")

    assert result.success is False
    assert (await store.get_referral(referral)).status == ReferralStatus.PENDING
    alice = await store.get_user("alice")
    assert alice.referral_count == 0
    assert alice.premium_status == PremiumStatus.FREE


@pytest.mark.asyncio
async def test_stale_read_past_window_reports_current_status(service, store, clock, referral, mocker):
    stale = await store.query_referrals_by_referred(["bob"], ReferralStatus.PENDING)
    await service.complete_referral("couple-1", "alice", "bob")

    # Read before the first commit, processed after the window closed
    clock.set(T0 + timedelta(hours=25))
    mocker.patch.object(store, "query_referrals_by_referred", AsyncMock(return_value=stale))
    result = await service.complete_referral("couple-1", "alice", "bob")

    assert result.count == 0
    assert result.results[0].status == ReferralStatus.COMPLETED
    assert result.results[0].reason == "already_processed"
    assert (await store.get_referral(referral)).status == ReferralStatus.COMPLETED


@pytest.mark.asyncio
async def test_unexpected_error_is_reported_not_raised(service, store, referral, mocker):
    mocker.patch.object(store, "atomic_write", AsyncMock(side_effect=TypeError("unsupported write op")))

    result = await service.complete_referral("couple-1", "alice", "bob")

    assert result.success is False
    assert result.error == "unsupported write op"
    assert result.outcome == Outcome.FAILED
    assert result.count == 0


@pytest.mark.asyncio
async def test_unexpected_query_error_is_reported(service, store, mocker):
    mocker.patch.object(
        store, "query_referrals_by_referred", AsyncMock(side_effect=ValueError("corrupt row"))
    )

    result = await service.complete_referral("couple-1", "alice", "bob")

    assert result.success is False
    assert result.error == "corrupt row"
