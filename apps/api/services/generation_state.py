"""Generation record lifecycle: pending -> processing -> completed | failed."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.generation import Generation
from services.errors import GenerationNotFoundError, InvalidTransitionError

# target status -> statuses it may be entered from
ALLOWED_TRANSITIONS = {
    "processing": ("pending", "processing", "failed"),
    "completed": ("processing",),
    "failed": ("processing",),
}
TERMINAL_STATUSES = ("completed", "failed")


def can_transition(current: Optional[str], target: str) -> bool:
    return current in ALLOWED_TRANSITIONS.get(target, ())


async def transition(
    db: AsyncSession,
    generation_id: str,
    target: str,
    *,
    generated_image_url: Optional[str] = None,
    error_message: Optional[str] = None,
    commit: bool = False,
) -> None:
    """Move a generation to ``target`` with a conditional update on its current status."""
    sources = ALLOWED_TRANSITIONS.get(target)
    if not sources:
        raise InvalidTransitionError(generation_id, target, None)

    now = datetime.now(timezone.utc)
    values: Dict[str, Any] = {"status": target, "updated_at": now}
    if target == "completed":
        values.update(generated_image_url=generated_image_url, completed_at=now, error_message=None)
    elif target == "failed":
        values["error_message"] = str(error_message or "Generation failed")[:1000]
    else:
        values["error_message"] = None

    result = await db.execute(
        update(Generation)
        .where(Generation.id == generation_id, Generation.status.in_(sources))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        current = (
            await db.execute(select(Generation.status).where(Generation.id == generation_id))
        ).scalar_one_or_none()
        if current is None:
            raise GenerationNotFoundError(generation_id)
        raise InvalidTransitionError(generation_id, target, current)
    if commit:
        await db.commit()


async def mark_processing(db: AsyncSession, generation_id: str, *, commit: bool = True) -> None:
    await transition(db, generation_id, "processing", commit=commit)


async def mark_completed(db: AsyncSession, generation_id: str, generated_image_url: str, *, commit: bool = False) -> None:
    await transition(db, generation_id, "completed", generated_image_url=generated_image_url, commit=commit)


async def mark_failed(db: AsyncSession, generation_id: str, error_message: str, *, commit: bool = False) -> None:
    await transition(db, generation_id, "failed", error_message=error_message, commit=commit)
