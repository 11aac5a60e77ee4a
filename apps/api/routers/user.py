"""
Account endpoints: credits, history, bonuses and guest migration.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.auth_scope import AuthContext, get_auth_context, get_user_context
from routers.rate_limit import rate_limit
from services.credits import award_one_time_bonus, get_credit_summary, get_or_create_account
from services.errors import GenerationBusyError, GenerationNotFoundError, GuestAccountMergedError, MigrationConflictError
from services.generations import delete_batch, list_batches, list_generations
from services.identity import GuestIdentity
from services.migration import migrate_guest_to_user

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/credits")
async def credits_summary(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    account = await get_or_create_account(db, auth.identity, device_id=auth.device_id, email=auth.email)
    verification_bonus = None
    if auth.email_verified and not auth.identity.is_guest and not account.credits_awarded:
        result = await award_one_time_bonus(
            db,
            auth.identity,
            settings.VERIFICATION_BONUS_CREDITS,
            "credits_awarded",
        )
        verification_bonus = settings.VERIFICATION_BONUS_CREDITS if result.applied else None
    summary = await get_credit_summary(db, account)
    summary["verification_bonus_awarded"] = verification_bonus
    return summary


@router.get("/generations")
async def user_generations(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return {"generations": await list_generations(db, auth.identity, limit=limit, offset=offset)}


@router.get("/batches")
async def user_batches(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return {"batches": await list_batches(db, auth.identity)}


@router.delete("/batches/{batch_id}")
async def remove_batch(
    batch_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    try:
        return await delete_batch(db, auth.identity, batch_id)
    except GenerationNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Batch not found") from exc
    except GenerationBusyError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc


@router.post("/rate-reward")
async def rate_reward(
    _rate_limit: None = Depends(rate_limit("rate_reward", limit=10, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    try:
        result = await award_one_time_bonus(
            db,
            auth.identity,
            settings.RATING_BONUS_CREDITS,
            "rating_bonus_awarded",
        )
    except GuestAccountMergedError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return {
        "awarded": result.applied,
        "credits_added": settings.RATING_BONUS_CREDITS if result.applied else 0,
        "balance": result.balance_after,
    }


@router.post("/migrate-guest")
async def migrate_guest(
    auth: AuthContext = Depends(get_user_context),
    db: AsyncSession = Depends(get_db),
):
    if not auth.device_id:
        raise HTTPException(status_code=400, detail="X-Guest-Device-Id header is required.")
    try:
        return await migrate_guest_to_user(db, GuestIdentity(auth.device_id), auth.identity)
    except MigrationConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
