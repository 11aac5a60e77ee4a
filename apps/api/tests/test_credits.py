import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from sqlalchemy import func, update
from sqlalchemy.future import select

from models.account import Account
from models.credit_transaction import CreditTransaction
from services.credits import (
    award_one_time_bonus,
    decrement_credits,
    expire_lapsed_trials,
    get_account,
    get_or_create_account,
    grant_credits,
    release_reservation,
    reserve_credits,
    set_subscription_state,
    settle_reservation,
)
from services.errors import InsufficientCreditsError
from services.identity import GuestIdentity, UserIdentity


async def _balance(session_maker, identity):
    async with session_maker() as session:
        account = await get_account(session, identity)
        return account.total_credits, account.reserved_credits


@pytest.mark.asyncio
async def test_guest_account_starts_with_guest_credits_once(db):
    guest = GuestIdentity("device-1")
    with patch("config.settings.GUEST_STARTING_CREDITS", 600):
        first = await get_or_create_account(db, guest)
        second = await get_or_create_account(db, guest)

    assert first.id == second.id
    assert first.total_credits == 600
    count = (
        await db.execute(select(func.count(CreditTransaction.id)).where(CreditTransaction.account_id == first.id))
    ).scalar_one()
    assert count == 1


@pytest.mark.asyncio
async def test_user_account_starts_empty(db):
    account = await get_or_create_account(db, UserIdentity("user-1"), device_id="device-9")
    assert account.total_credits == 0
    assert account.device_id == "device-9"
    assert account.identity_key == "user:user-1"


@pytest.mark.asyncio
async def test_decrement_rejects_when_balance_too_low(db):
    guest = GuestIdentity("device-low")
    with patch("config.settings.GUEST_STARTING_CREDITS", 100):
        await get_or_create_account(db, guest)
        with pytest.raises(InsufficientCreditsError) as exc_info:
            await decrement_credits(db, guest, 200)

    assert exc_info.value.required == 200
    assert exc_info.value.available == 100


@pytest.mark.asyncio
async def test_concurrent_decrements_never_overdraw(session_maker):
    guest = GuestIdentity("device-race")
    with patch("config.settings.GUEST_STARTING_CREDITS", 600):
        async with session_maker() as session:
            await get_or_create_account(session, guest)

        async def spend():
            async with session_maker() as session:
                try:
                    await decrement_credits(session, guest, 200)
                    return True
                except InsufficientCreditsError:
                    return False

        results = await asyncio.gather(*[spend() for _ in range(5)])

    assert results.count(True) == 3
    assert results.count(False) == 2
    total, reserved = await _balance(session_maker, guest)
    assert total == 0
    assert reserved == 0


@pytest.mark.asyncio
async def test_grant_with_same_key_applies_once(db):
    user = UserIdentity("user-trial")
    first = await grant_credits(db, user, 1000, idempotency_key="evt_123", transaction_type="trial_grant")
    second = await grant_credits(db, user, 1000, idempotency_key="evt_123", transaction_type="trial_grant")

    assert first.applied is True
    assert second.applied is False
    assert second.duplicate is True
    assert second.transaction_id == first.transaction_id
    account = await get_account(db, user)
    await db.refresh(account)
    assert account.total_credits == 1000


@pytest.mark.asyncio
async def test_concurrent_grants_with_same_key_apply_once(session_maker):
    user = UserIdentity("user-grant-race")
    async with session_maker() as session:
        await get_or_create_account(session, user)

    async def grant():
        async with session_maker() as session:
            return await grant_credits(session, user, 3000, idempotency_key="rc:evt-9", transaction_type="subscription_grant")

    results = await asyncio.gather(grant(), grant(), grant())

    assert sum(1 for result in results if result.applied) == 1
    total, _ = await _balance(session_maker, user)
    assert total == 3000


@pytest.mark.asyncio
async def test_grant_rejects_non_positive_amount(db):
    with pytest.raises(ValueError):
        await grant_credits(db, UserIdentity("u"), 0, idempotency_key="k", transaction_type="purchase")


@pytest.mark.asyncio
async def test_one_time_bonus_is_awarded_once_under_concurrency(session_maker):
    user = UserIdentity("user-rating")
    async with session_maker() as session:
        await get_or_create_account(session, user)

    async def award():
        async with session_maker() as session:
            return await award_one_time_bonus(session, user, 400, "rating_bonus_awarded")

    results = await asyncio.gather(award(), award(), award())

    assert sum(1 for result in results if result.applied) == 1
    async with session_maker() as session:
        account = await get_account(session, user)
        assert account.total_credits == 400
        assert account.free_credits == 400
        assert account.rating_bonus_awarded is True


@pytest.mark.asyncio
async def test_verification_bonus_marks_email_verified(db):
    user = UserIdentity("user-verified")
    result = await award_one_time_bonus(db, user, 600, "credits_awarded")
    assert result.applied is True
    account = await get_account(db, user)
    await db.refresh(account)
    assert account.email_verified is True
    assert account.credits_awarded is True


@pytest.mark.asyncio
async def test_unknown_bonus_flag_is_rejected(db):
    with pytest.raises(ValueError):
        await award_one_time_bonus(db, UserIdentity("u"), 10, "is_subscribed")


@pytest.mark.asyncio
async def test_reserve_then_settle_charges_exactly_once(db):
    guest = GuestIdentity("device-hold")
    with patch("config.settings.GUEST_STARTING_CREDITS", 600):
        account = await get_or_create_account(db, guest)
    await reserve_credits(db, account, 200)
    await db.commit()

    with pytest.raises(InsufficientCreditsError):
        await decrement_credits(db, guest, 500)

    first = await settle_reservation(db, account.id, 200, generation_id="gen-1")
    await db.commit()
    again = await settle_reservation(db, account.id, 200, generation_id="gen-1")

    assert first.applied is True
    assert again.duplicate is True
    await db.refresh(account)
    assert account.total_credits == 400
    assert account.reserved_credits == 0
    decrements = (
        await db.execute(
            select(func.count(CreditTransaction.id)).where(
                CreditTransaction.account_id == account.id,
                CreditTransaction.transaction_type == "decrement",
            )
        )
    ).scalar_one()
    assert decrements == 1


@pytest.mark.asyncio
async def test_release_returns_hold_without_charging(db):
    guest = GuestIdentity("device-release")
    with patch("config.settings.GUEST_STARTING_CREDITS", 600):
        account = await get_or_create_account(db, guest)
    await reserve_credits(db, account, 200)
    assert await release_reservation(db, account.id, 200, generation_id="gen-2") is True
    await db.commit()
    assert await release_reservation(db, account.id, 200, generation_id="gen-2") is False

    await db.refresh(account)
    assert account.total_credits == 600
    assert account.reserved_credits == 0


@pytest.mark.asyncio
async def test_subscription_flags_are_mutually_exclusive(db):
    with pytest.raises(ValueError):
        await set_subscription_state(db, UserIdentity("u"), is_subscribed=True, is_trial_active=True)


@pytest.mark.asyncio
async def test_expire_lapsed_trials_only_touches_ended_trials(db):
    now = datetime.now(timezone.utc)
    ended = UserIdentity("trial-ended")
    running = UserIdentity("trial-running")
    await set_subscription_state(
        db, ended, is_subscribed=False, is_trial_active=True, trial_window=(now - timedelta(days=4), now - timedelta(days=1))
    )
    await set_subscription_state(
        db, running, is_subscribed=False, is_trial_active=True, trial_window=(now, now + timedelta(days=3))
    )

    assert await expire_lapsed_trials(db) == 1
    rows = dict(
        (await db.execute(select(Account.identity_key, Account.is_trial_active))).all()
    )
    assert rows["user:trial-ended"] is False
    assert rows["user:trial-running"] is True


@pytest.mark.asyncio
async def test_inert_guest_cannot_spend(db):
    guest = GuestIdentity("device-inert")
    account = await get_or_create_account(db, guest)
    await db.execute(update(Account).where(Account.id == account.id).values(is_inert=True))
    await db.commit()
    await db.refresh(account)

    from services.errors import GuestAccountMergedError

    with pytest.raises(GuestAccountMergedError):
        await decrement_credits(db, guest, 10)
