"""Guest to user account migration."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.account import Account
from models.credit_transaction import CreditTransaction
from models.generation import Generation
from models.generation_job import GenerationJob
from services.credits import get_account, get_or_create_account
from services.errors import MigrationConflictError
from services.identity import GuestIdentity, UserIdentity

logger = logging.getLogger(__name__)


def migration_key(guest: GuestIdentity, user: UserIdentity) -> str:
    return f"migration:{guest.key}->{user.key}"


async def migrate_guest_to_user(db: AsyncSession, guest: GuestIdentity, user: UserIdentity) -> Dict[str, Any]:
    """Move a guest's credits, holds, generations and jobs onto the user's account.

    Runs in one transaction. The guest account is compare-and-swapped to inert
    so a concurrent or repeated call can move the balance only once.
    """
    user_account = await get_or_create_account(db, user, device_id=guest.device_id)
    guest_account = await get_account(db, guest)
    if guest_account is None:
        return {"status": "nothing_to_migrate", "credits_migrated": 0, "generations_migrated": 0}

    await db.refresh(guest_account)
    if guest_account.is_inert:
        if guest_account.merged_into_identity_key == user.key:
            return {"status": "already_migrated", "credits_migrated": 0, "generations_migrated": 0}
        raise MigrationConflictError(f"Guest device {guest.device_id} was already migrated to another account")

    seen_total = int(guest_account.total_credits or 0)
    seen_reserved = int(guest_account.reserved_credits or 0)
    now = datetime.now(timezone.utc)
    try:
        swapped = await db.execute(
            update(Account)
            .where(
                Account.id == guest_account.id,
                Account.is_inert.is_(False),
                Account.total_credits == seen_total,
                Account.reserved_credits == seen_reserved,
            )
            .values(
                is_inert=True,
                merged_into_identity_key=user.key,
                total_credits=0,
                reserved_credits=0,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if swapped.rowcount != 1:
            await db.rollback()
            return await _resolve_lost_race(db, guest, user)

        merged_values: Dict[str, Any] = {
            "total_credits": Account.total_credits + seen_total,
            "reserved_credits": Account.reserved_credits + seen_reserved,
            "free_credits": Account.free_credits + int(guest_account.free_credits or 0),
            "updated_at": now,
        }
        if guest_account.is_subscribed:
            merged_values.update(is_subscribed=True, is_trial_active=False)
        await db.execute(
            update(Account)
            .where(Account.id == user_account.id)
            .values(**merged_values)
            .execution_options(synchronize_session=False)
        )
        await db.execute(
            update(Account)
            .where(Account.id == user_account.id, Account.device_id.is_(None))
            .values(device_id=guest.device_id)
            .execution_options(synchronize_session=False)
        )
        user_total = (
            await db.execute(select(Account.total_credits).where(Account.id == user_account.id))
        ).scalar_one()

        key = migration_key(guest, user)
        if seen_total:
            db.add(
                CreditTransaction(
                    account_id=guest_account.id,
                    identity_key=guest.key,
                    transaction_type="migration_out",
                    delta=-seen_total,
                    balance_after=0,
                    idempotency_key=f"{key}:out",
                    reference_id=user.key,
                    reason="Migrated to signed-in account",
                )
            )
            db.add(
                CreditTransaction(
                    account_id=user_account.id,
                    identity_key=user.key,
                    transaction_type="migration_in",
                    delta=seen_total,
                    balance_after=int(user_total or 0),
                    idempotency_key=f"{key}:in",
                    reference_id=guest.key,
                    reason="Migrated from guest device",
                )
            )

        generations = await db.execute(
            update(Generation)
            .where(Generation.guest_device_id == guest.device_id, Generation.user_id.is_(None))
            .values(user_id=user.user_id, guest_device_id=None, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await db.execute(
            update(GenerationJob)
            .where(GenerationJob.guest_device_id == guest.device_id, GenerationJob.user_id.is_(None))
            .values(user_id=user.user_id, guest_device_id=None, account_id=user_account.id, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    except IntegrityError:
        await db.rollback()
        return await _resolve_lost_race(db, guest, user)
    except Exception:
        await db.rollback()
        raise

    moved = int(generations.rowcount or 0)
    logger.info(
        "Migrated guest %s to %s: credits=%s reserved=%s generations=%s",
        guest.device_id,
        user.user_id,
        seen_total,
        seen_reserved,
        moved,
    )
    return {"status": "migrated", "credits_migrated": seen_total, "generations_migrated": moved}


async def _resolve_lost_race(db: AsyncSession, guest: GuestIdentity, user: UserIdentity) -> Dict[str, Any]:
    """The guest account changed under us; report the state it ended in."""
    guest_account = await get_account(db, guest)
    if guest_account is not None:
        await db.refresh(guest_account)
    if guest_account is None or not guest_account.is_inert:
        raise MigrationConflictError("Guest balance changed during migration; retry the request")
    if guest_account.merged_into_identity_key == user.key:
        return {"status": "already_migrated", "credits_migrated": 0, "generations_migrated": 0}
    raise MigrationConflictError(f"Guest device {guest.device_id} was already migrated to another account")
