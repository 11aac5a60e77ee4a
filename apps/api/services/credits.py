"""Credit ledger: atomic balance primitives over accounts and transactions.

Every balance change is a single conditional UPDATE on the account row plus an
appended ``CreditTransaction``; callers never read-then-write a balance.
Functions accept ``commit=False`` when they are composed into a larger unit of
work (webhook reconciliation, worker finalization, migration) and only flush.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.account import Account
from models.credit_transaction import CreditTransaction
from services.errors import GuestAccountMergedError, IdempotencyConflict, InsufficientCreditsError
from services.identity import Identity

logger = logging.getLogger(__name__)

TRANSACTION_TYPES = (
    "purchase",
    "rating_bonus",
    "verification_bonus",
    "decrement",
    "subscription_grant",
    "trial_grant",
    "starting_grant",
    "migration_in",
    "migration_out",
)
FREE_CREDIT_TYPES = {"starting_grant", "verification_bonus", "rating_bonus"}
ONE_TIME_BONUS_FLAGS = {
    "credits_awarded": "verification_bonus",
    "rating_bonus_awarded": "rating_bonus",
}


@dataclass(frozen=True)
class LedgerResult:
    applied: bool
    balance_after: int
    transaction_id: Optional[str] = None
    duplicate: bool = False


def _now() -> datetime:
    return datetime.now(timezone.utc)


async def get_account(db: AsyncSession, identity: Identity) -> Optional[Account]:
    result = await db.execute(
        select(Account)
        .where(Account.identity_key == identity.key)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_or_create_account(
    db: AsyncSession,
    identity: Identity,
    *,
    device_id: Optional[str] = None,
    email: Optional[str] = None,
    commit: bool = True,
) -> Account:
    """Return the identity's account, creating it (with starting credits) on first use."""
    account = await get_account(db, identity)
    if account:
        if device_id and not account.device_id and not identity.is_guest:
            account.device_id = device_id
            if commit:
                await db.commit()
            else:
                await db.flush()
        return account

    starting_credits = max(
        int(settings.GUEST_STARTING_CREDITS if identity.is_guest else settings.USER_STARTING_CREDITS),
        0,
    )
    account = Account(
        identity_key=identity.key,
        identity_kind=identity.kind,
        user_id=None if identity.is_guest else identity.user_id,
        device_id=identity.device_id if identity.is_guest else device_id,
        email=email,
        free_credits=starting_credits,
        total_credits=starting_credits,
        reserved_credits=0,
    )
    db.add(account)
    try:
        await db.flush()
        if starting_credits > 0:
            db.add(
                CreditTransaction(
                    account_id=account.id,
                    identity_key=identity.key,
                    transaction_type="starting_grant",
                    delta=starting_credits,
                    balance_after=starting_credits,
                    idempotency_key=f"starting:{identity.key}",
                    reason="Starting credits",
                )
            )
            await db.flush()
        if commit:
            await db.commit()
    except IntegrityError:
        if not commit:
            raise
        # Lost a concurrent first-use race; the other request created it.
        await db.rollback()
        existing = await get_account(db, identity)
        if existing is None:
            raise
        return existing

    logger.info("Created %s account %s with %s starting credits", identity.kind, account.id, starting_credits)
    return account


async def _read_balance(db: AsyncSession, account_id: str) -> Tuple[int, int]:
    result = await db.execute(
        select(Account.total_credits, Account.reserved_credits).where(Account.id == account_id)
    )
    row = result.one_or_none()
    if row is None:
        return 0, 0
    return int(row[0] or 0), int(row[1] or 0)


async def _find_transaction(db: AsyncSession, idempotency_key: str) -> Optional[CreditTransaction]:
    result = await db.execute(
        select(CreditTransaction).where(CreditTransaction.idempotency_key == idempotency_key)
    )
    return result.scalar_one_or_none()


async def _duplicate_result(db: AsyncSession, existing: CreditTransaction) -> LedgerResult:
    total, reserved = await _read_balance(db, existing.account_id)
    return LedgerResult(
        applied=False,
        balance_after=total - reserved,
        transaction_id=existing.id,
        duplicate=True,
    )


async def _record(
    db: AsyncSession,
    account: Account,
    *,
    transaction_type: str,
    delta: int,
    idempotency_key: Optional[str] = None,
    provider: Optional[str] = None,
    reference_id: Optional[str] = None,
    reason: Optional[str] = None,
) -> CreditTransaction:
    if transaction_type not in TRANSACTION_TYPES:
        raise ValueError(f"Unknown credit transaction type: {transaction_type}")
    entry = CreditTransaction(
        account_id=account.id,
        identity_key=account.identity_key,
        transaction_type=transaction_type,
        delta=int(delta),
        idempotency_key=idempotency_key,
        provider=provider,
        reference_id=reference_id,
        reason=reason,
    )
    db.add(entry)
    await db.flush()
    return entry


async def _finish(db: AsyncSession, commit: bool, idempotency_key: Optional[str]) -> Optional[LedgerResult]:
    """Commit a keyed mutation; a concurrent writer of the same key turns it into a replay."""
    if not commit:
        return None
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        if not idempotency_key:
            raise
        existing = await _find_transaction(db, idempotency_key)
        if existing is None:
            raise
        return await _duplicate_result(db, existing)
    return None


def _ensure_spendable(account: Account) -> None:
    if account.is_inert:
        raise GuestAccountMergedError(
            f"Account {account.identity_key} was merged into {account.merged_into_identity_key}"
        )


async def decrement_credits(
    db: AsyncSession,
    identity: Identity,
    amount: int,
    *,
    reason: str = "Credit decrement",
    idempotency_key: Optional[str] = None,
    reference_id: Optional[str] = None,
    commit: bool = True,
) -> LedgerResult:
    """Atomically subtract ``amount`` if the spendable balance covers it."""
    cost = max(int(amount), 0)
    if idempotency_key:
        existing = await _find_transaction(db, idempotency_key)
        if existing:
            return await _duplicate_result(db, existing)

    account = await get_or_create_account(db, identity, commit=commit)
    _ensure_spendable(account)
    if cost == 0:
        total, reserved = await _read_balance(db, account.id)
        return LedgerResult(applied=False, balance_after=total - reserved)

    result = await db.execute(
        update(Account)
        .where(
            Account.id == account.id,
            Account.total_credits - Account.reserved_credits >= cost,
        )
        .values(total_credits=Account.total_credits - cost, updated_at=_now())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        if commit:
            await db.rollback()
        total, reserved = await _read_balance(db, account.id)
        raise InsufficientCreditsError(cost, total - reserved)

    total, reserved = await _read_balance(db, account.id)
    entry = await _record(
        db,
        account,
        transaction_type="decrement",
        delta=-cost,
        idempotency_key=idempotency_key,
        reference_id=reference_id,
        reason=reason,
    )
    entry.balance_after = total
    replay = await _finish(db, commit, idempotency_key)
    if replay:
        return replay
    return LedgerResult(applied=True, balance_after=total - reserved, transaction_id=entry.id)


async def grant_credits(
    db: AsyncSession,
    identity: Identity,
    amount: int,
    *,
    idempotency_key: str,
    transaction_type: str,
    provider: Optional[str] = None,
    reason: Optional[str] = None,
    reference_id: Optional[str] = None,
    commit: bool = True,
) -> LedgerResult:
    """Add credits once per ``idempotency_key``; replays return the existing result."""
    grant = int(amount)
    if grant <= 0:
        raise ValueError("grant amount must be greater than 0")
    if not idempotency_key:
        raise ValueError("idempotency_key is required for grants")

    existing = await _find_transaction(db, idempotency_key)
    if existing:
        logger.info("Grant %s already applied; replay is a no-op", idempotency_key)
        return await _duplicate_result(db, existing)

    account = await get_or_create_account(db, identity, commit=commit)
    try:
        entry = await _record(
            db,
            account,
            transaction_type=transaction_type,
            delta=grant,
            idempotency_key=idempotency_key,
            provider=provider,
            reference_id=reference_id,
            reason=reason,
        )
    except IntegrityError:
        if not commit:
            raise IdempotencyConflict(idempotency_key)
        await db.rollback()
        existing = await _find_transaction(db, idempotency_key)
        if existing is None:
            raise
        return await _duplicate_result(db, existing)

    values: Dict[str, Any] = {
        "total_credits": Account.total_credits + grant,
        "updated_at": _now(),
    }
    if transaction_type in FREE_CREDIT_TYPES:
        values["free_credits"] = Account.free_credits + grant
    await db.execute(
        update(Account)
        .where(Account.id == account.id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    total, reserved = await _read_balance(db, account.id)
    entry.balance_after = total
    replay = await _finish(db, commit, idempotency_key)
    if replay:
        return replay
    logger.info("Granted %s credits (%s) to %s", grant, transaction_type, account.identity_key)
    return LedgerResult(applied=True, balance_after=total - reserved, transaction_id=entry.id)


async def set_subscription_state(
    db: AsyncSession,
    identity: Identity,
    *,
    is_subscribed: bool,
    is_trial_active: bool,
    trial_window: Optional[Tuple[datetime, datetime]] = None,
    commit: bool = True,
) -> Account:
    """Update entitlement flags only; credit grants are separate ``grant_credits`` calls."""
    if is_subscribed and is_trial_active:
        raise ValueError("is_subscribed and is_trial_active are mutually exclusive")

    account = await get_or_create_account(db, identity, commit=commit)
    values: Dict[str, Any] = {
        "is_subscribed": bool(is_subscribed),
        "is_trial_active": bool(is_trial_active),
        "updated_at": _now(),
    }
    if trial_window is not None:
        values["trial_start_at"], values["trial_end_at"] = trial_window
    await db.execute(
        update(Account)
        .where(Account.id == account.id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if commit:
        await db.commit()
    else:
        await db.flush()
    await db.refresh(account)
    return account


async def award_one_time_bonus(
    db: AsyncSession,
    identity: Identity,
    amount: int,
    flag_name: str,
    *,
    commit: bool = True,
) -> LedgerResult:
    """Grant ``amount`` only if the named one-time flag is unset, then set it."""
    transaction_type = ONE_TIME_BONUS_FLAGS.get(flag_name)
    if transaction_type is None:
        raise ValueError(f"Unknown one-time bonus flag: {flag_name}")
    bonus = max(int(amount), 0)

    account = await get_or_create_account(db, identity, commit=commit)
    _ensure_spendable(account)
    flag_column = getattr(Account, flag_name)
    values: Dict[str, Any] = {
        flag_name: True,
        "total_credits": Account.total_credits + bonus,
        "free_credits": Account.free_credits + bonus,
        "updated_at": _now(),
    }
    if flag_name == "credits_awarded":
        values["email_verified"] = True
    result = await db.execute(
        update(Account)
        .where(Account.id == account.id, flag_column.is_(False))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    total, reserved = await _read_balance(db, account.id)
    if result.rowcount != 1:
        if commit:
            await db.rollback()
        return LedgerResult(applied=False, balance_after=total - reserved, duplicate=True)

    entry_id = None
    if bonus > 0:
        entry = await _record(
            db,
            account,
            transaction_type=transaction_type,
            delta=bonus,
            idempotency_key=f"bonus:{flag_name}:{account.id}",
            reason=f"One-time {transaction_type.replace('_', ' ')}",
        )
        entry.balance_after = total
        entry_id = entry.id
    if commit:
        await db.commit()
    logger.info("Awarded %s %s credits to %s", bonus, transaction_type, account.identity_key)
    return LedgerResult(applied=True, balance_after=total - reserved, transaction_id=entry_id)


async def reserve_credits(db: AsyncSession, account: Account, amount: int) -> None:
    """Hold ``amount`` of the spendable balance for an in-flight job (flush only)."""
    hold = max(int(amount), 0)
    _ensure_spendable(account)
    if hold == 0:
        return
    result = await db.execute(
        update(Account)
        .where(
            Account.id == account.id,
            Account.is_inert.is_(False),
            Account.total_credits - Account.reserved_credits >= hold,
        )
        .values(reserved_credits=Account.reserved_credits + hold, updated_at=_now())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        total, reserved = await _read_balance(db, account.id)
        raise InsufficientCreditsError(hold, total - reserved)


async def settle_reservation(
    db: AsyncSession,
    account_id: str,
    amount: int,
    *,
    generation_id: str,
) -> LedgerResult:
    """Convert a job's hold into the single ``decrement`` for its generation (flush only)."""
    cost = max(int(amount), 0)
    idempotency_key = f"generation:{generation_id}"
    existing = await _find_transaction(db, idempotency_key)
    if existing:
        return await _duplicate_result(db, existing)
    if cost == 0:
        total, reserved = await _read_balance(db, account_id)
        return LedgerResult(applied=False, balance_after=total - reserved)

    result = await db.execute(
        update(Account)
        .where(
            Account.id == account_id,
            Account.reserved_credits >= cost,
            Account.total_credits >= cost,
        )
        .values(
            total_credits=Account.total_credits - cost,
            reserved_credits=Account.reserved_credits - cost,
            updated_at=_now(),
        )
        .execution_options(synchronize_session=False)
    )
    total, reserved = await _read_balance(db, account_id)
    if result.rowcount != 1:
        logger.error("Account %s has no %s-credit hold for generation %s", account_id, cost, generation_id)
        raise InsufficientCreditsError(cost, total - reserved)

    account = await db.get(Account, account_id)
    entry = await _record(
        db,
        account,
        transaction_type="decrement",
        delta=-cost,
        idempotency_key=idempotency_key,
        reference_id=generation_id,
        reason="Portrait generation",
    )
    entry.balance_after = total
    return LedgerResult(applied=True, balance_after=total - reserved, transaction_id=entry.id)


async def release_reservation(
    db: AsyncSession,
    account_id: str,
    amount: int,
    *,
    generation_id: str,
) -> bool:
    """Return a job's hold to the spendable balance without charging (flush only)."""
    hold = max(int(amount), 0)
    if hold == 0:
        return False
    result = await db.execute(
        update(Account)
        .where(Account.id == account_id, Account.reserved_credits >= hold)
        .values(reserved_credits=Account.reserved_credits - hold, updated_at=_now())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.warning("No %s-credit hold to release on account %s (generation %s)", hold, account_id, generation_id)
        return False
    return True


async def expire_lapsed_trials(db: AsyncSession, now: Optional[datetime] = None) -> int:
    """Deactivate trials whose window ended without a conversion."""
    current = now or _now()
    result = await db.execute(
        update(Account)
        .where(
            Account.is_trial_active.is_(True),
            Account.is_subscribed.is_(False),
            Account.trial_end_at.is_not(None),
            Account.trial_end_at < current,
        )
        .values(is_trial_active=False, updated_at=current)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return int(result.rowcount or 0)


def generation_cost(style_key: str) -> int:
    if style_key == "edit":
        return max(int(settings.EDIT_CREDIT_COST), 0)
    return max(int(settings.GENERATION_CREDIT_COST), 0)


async def get_credit_summary(db: AsyncSession, account: Account) -> Dict[str, Any]:
    await db.refresh(account)
    result = await db.execute(
        select(CreditTransaction)
        .where(CreditTransaction.account_id == account.id)
        .order_by(CreditTransaction.created_at.desc())
        .limit(30)
    )
    entries = result.scalars().all()
    available = account.available_credits
    return {
        "identity": account.identity_key,
        "balance": available,
        "total_credits": int(account.total_credits or 0),
        "reserved_credits": int(account.reserved_credits or 0),
        "free_credits": int(account.free_credits or 0),
        "is_subscribed": bool(account.is_subscribed),
        "is_trial_active": bool(account.is_trial_active),
        "trial_end_at": account.trial_end_at.isoformat() if account.trial_end_at else None,
        "email_verified": bool(account.email_verified),
        "has_credits": bool(account.is_subscribed) or available >= generation_cost("edit"),
        "costs": {
            "generation": generation_cost("generation"),
            "edit": generation_cost("edit"),
        },
        "recent_entries": [
            {
                "id": entry.id,
                "transaction_type": entry.transaction_type,
                "delta": entry.delta,
                "balance_after": entry.balance_after,
                "reason": entry.reason,
                "created_at": entry.created_at.isoformat() if entry.created_at else None,
            }
            for entry in entries
        ],
    }
