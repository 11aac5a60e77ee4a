"""Generation submission, status reads, listing and deletion."""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.account import Account
from models.generation import Generation
from models.generation_job import GenerationJob
from services import storage
from services.credits import generation_cost, get_or_create_account, release_reservation, reserve_credits
from services.errors import GenerationBusyError, GenerationNotFoundError, GuestAccountMergedError
from services.identity import Identity
from services.job_queue import enqueue_job
from services.styles import CUSTOM_STYLE, EDIT_STYLE, STYLE_CATALOG, is_known_style
from services.worker_loop import trigger_worker

logger = logging.getLogger(__name__)


def validate_request(style_key: str, custom_prompt: Optional[str], edit_prompt: Optional[str]) -> None:
    """Raise ValueError for requests that can never be fulfilled."""
    if not style_key:
        raise ValueError("Style key is required")
    if not is_known_style(style_key):
        raise ValueError(f"Unknown style: {style_key}")
    if style_key == CUSTOM_STYLE and not (custom_prompt or "").strip():
        raise ValueError("Custom prompt is required for the custom style")
    if style_key == EDIT_STYLE and not (edit_prompt or "").strip():
        raise ValueError("Edit prompt is required for edits")


def validate_upload(data: bytes, content_type: Optional[str]) -> str:
    mime_type = (content_type or "").split(";")[0].strip().lower()
    if not mime_type.startswith("image/"):
        raise ValueError("Only image uploads are allowed")
    if not data:
        raise ValueError("No image uploaded")
    if len(data) > int(settings.MAX_UPLOAD_BYTES):
        raise ValueError("Image exceeds the maximum upload size")
    return mime_type


def _owner_folder(identity: Identity) -> str:
    return f"{identity.kind}s/{identity.user_id if not identity.is_guest else identity.device_id}"


async def _store_source(identity: Identity, data: bytes, mime_type: str) -> str:
    path = f"{_owner_folder(identity)}/{uuid.uuid4()}-original{storage.extension_for(mime_type)}"
    return await storage.store(settings.PORTRAIT_BUCKET, path, data, mime_type)


async def _ready_account(db: AsyncSession, identity: Identity, device_id: Optional[str]) -> Account:
    account = await get_or_create_account(db, identity, device_id=device_id)
    await db.refresh(account)
    if account.is_inert:
        raise GuestAccountMergedError(
            f"Guest account was merged into {account.merged_into_identity_key}; sign in to continue"
        )
    return account


async def submit_batch(
    db: AsyncSession,
    identity: Identity,
    *,
    image_bytes: bytes,
    content_type: Optional[str],
    style_keys: Sequence[str],
    custom_prompt: Optional[str] = None,
    edit_prompt: Optional[str] = None,
    original_style_key: Optional[str] = None,
    device_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Create one generation and one queued job per style, holding the whole cost at once."""
    keys = [str(key).strip() for key in style_keys if str(key or "").strip()]
    if not keys:
        raise ValueError("At least one style key is required")
    if len(keys) > max(int(settings.MAX_BATCH_STYLES), 1):
        raise ValueError(f"A batch may contain at most {settings.MAX_BATCH_STYLES} styles")
    for key in keys:
        validate_request(key, custom_prompt, edit_prompt)
    mime_type = validate_upload(image_bytes, content_type)

    account = await _ready_account(db, identity, device_id)
    costs = [generation_cost(key) for key in keys]
    total_hold = 0 if account.is_subscribed else sum(costs)
    original_image_url = await _store_source(identity, image_bytes, mime_type)
    batch_id = str(uuid.uuid4()) if len(keys) > 1 else None

    try:
        await reserve_credits(db, account, total_hold)
        items = []
        for key, cost in zip(keys, costs):
            is_edited = key == EDIT_STYLE
            generation = Generation(
                **identity.owner_values(),
                style_key=(original_style_key or key) if is_edited else key,
                custom_prompt=custom_prompt if key == CUSTOM_STYLE else None,
                edit_prompt=edit_prompt if is_edited else None,
                original_image_url=original_image_url,
                status="pending",
                is_edited=is_edited,
                batch_id=batch_id,
                credit_cost=cost,
            )
            db.add(generation)
            await db.flush()
            hold = 0 if account.is_subscribed else cost
            job = await enqueue_job(db, generation, account, hold)
            items.append({"generation_id": generation.id, "job_id": job.id, "style_key": key, "credit_cost": cost})
        await db.commit()
    except Exception:
        await db.rollback()
        await storage.delete(original_image_url)
        raise

    logger.info(
        "Queued %s generation(s) for %s (hold=%s, batch=%s)",
        len(items),
        identity.key,
        total_hold,
        batch_id,
    )
    trigger_worker()
    return {"batch_id": batch_id, "status": "pending", "credits_reserved": total_hold, "generations": items}


async def submit_generation(
    db: AsyncSession,
    identity: Identity,
    *,
    image_bytes: bytes,
    content_type: Optional[str],
    style_key: str,
    custom_prompt: Optional[str] = None,
    edit_prompt: Optional[str] = None,
    original_style_key: Optional[str] = None,
    device_id: Optional[str] = None,
) -> Dict[str, Any]:
    result = await submit_batch(
        db,
        identity,
        image_bytes=image_bytes,
        content_type=content_type,
        style_keys=[style_key],
        custom_prompt=custom_prompt,
        edit_prompt=edit_prompt,
        original_style_key=original_style_key,
        device_id=device_id,
    )
    item = result["generations"][0]
    return {
        "generation_id": item["generation_id"],
        "job_id": item["job_id"],
        "status": "pending",
        "credit_cost": item["credit_cost"],
    }


async def get_owned_generation(db: AsyncSession, identity: Identity, generation_id: str) -> Generation:
    result = await db.execute(
        select(Generation).where(Generation.id == generation_id, identity.owner_clause(Generation))
    )
    generation = result.scalar_one_or_none()
    if generation is None:
        raise GenerationNotFoundError(generation_id)
    return generation


async def _latest_job(db: AsyncSession, generation_id: str) -> Optional[GenerationJob]:
    result = await db.execute(
        select(GenerationJob)
        .where(GenerationJob.generation_id == generation_id)
        .order_by(GenerationJob.created_at.desc(), GenerationJob.queued_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


def serialize_generation(generation: Generation, job: Optional[GenerationJob] = None) -> Dict[str, Any]:
    payload = {
        "id": generation.id,
        "user_id": generation.user_id,
        "guest_device_id": generation.guest_device_id,
        "style_key": generation.style_key,
        "custom_prompt": generation.custom_prompt,
        "original_image_url": generation.original_image_url,
        "generated_image_url": generation.generated_image_url,
        "status": generation.status,
        "is_edited": bool(generation.is_edited),
        "batch_id": generation.batch_id,
        "credit_cost": int(generation.credit_cost or 0),
        "error_message": generation.error_message,
        "created_at": generation.created_at.isoformat() if generation.created_at else None,
        "completed_at": generation.completed_at.isoformat() if generation.completed_at else None,
    }
    if job is not None:
        payload["job"] = {
            "id": job.id,
            "status": job.status,
            "attempts": int(job.attempts or 0),
            "max_attempts": int(job.max_attempts or 0),
            "error_message": job.error_message,
        }
        if generation.status == "failed" and job.error_message:
            payload["error_message"] = job.error_message
    return payload


async def get_generation_status(db: AsyncSession, identity: Identity, generation_id: str) -> Dict[str, Any]:
    generation = await get_owned_generation(db, identity, generation_id)
    job = await _latest_job(db, generation.id)
    return serialize_generation(generation, job)


async def _discard_generation(db: AsyncSession, generation: Generation) -> int:
    """Delete a generation and its jobs, releasing any queued hold (flush only)."""
    jobs = (
        await db.execute(select(GenerationJob).where(GenerationJob.generation_id == generation.id))
    ).scalars().all()
    released = 0
    for job in jobs:
        if job.status == "claimed":
            raise GenerationBusyError(f"Generation {generation.id} is being processed")
        if job.status == "queued" and job.reserved_credits:
            if await release_reservation(db, job.account_id, job.reserved_credits, generation_id=generation.id):
                released += int(job.reserved_credits)
    await db.execute(
        sa_delete(GenerationJob)
        .where(GenerationJob.generation_id == generation.id)
        .execution_options(synchronize_session=False)
    )
    await db.delete(generation)
    await db.flush()
    return released


async def _delete_orphaned_sources(db: AsyncSession, urls: Sequence[Optional[str]]) -> None:
    """Remove source uploads that no remaining generation points at."""
    for url in sorted({url for url in urls if url}):
        references = (
            await db.execute(
                select(func.count(Generation.id)).where(
                    (Generation.original_image_url == url) | (Generation.generated_image_url == url)
                )
            )
        ).scalar_one()
        if references:
            continue
        await storage.delete(url)


async def delete_generation(db: AsyncSession, identity: Identity, generation_id: str) -> Dict[str, Any]:
    generation = await get_owned_generation(db, identity, generation_id)
    urls = [generation.generated_image_url]
    source = generation.original_image_url
    try:
        released = await _discard_generation(db, generation)
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    for url in urls:
        await storage.delete(url)
    await _delete_orphaned_sources(db, [source])
    return {"deleted": True, "generation_id": generation_id, "credits_released": released}


async def list_generations(
    db: AsyncSession,
    identity: Identity,
    *,
    limit: int = 50,
    offset: int = 0,
) -> List[Dict[str, Any]]:
    result = await db.execute(
        select(Generation)
        .where(identity.owner_clause(Generation))
        .order_by(Generation.created_at.desc(), Generation.id.desc())
        .offset(max(int(offset), 0))
        .limit(max(min(int(limit), 200), 1))
    )
    return [serialize_generation(row) for row in result.scalars().all()]


async def list_batches(db: AsyncSession, identity: Identity) -> List[Dict[str, Any]]:
    result = await db.execute(
        select(Generation)
        .where(identity.owner_clause(Generation), Generation.batch_id.is_not(None))
        .order_by(Generation.created_at.desc(), Generation.id.asc())
    )
    batches: Dict[str, Dict[str, Any]] = {}
    for row in result.scalars().all():
        batch = batches.setdefault(
            row.batch_id,
            {
                "batch_id": row.batch_id,
                "original_image_url": row.original_image_url,
                "created_at": row.created_at.isoformat() if row.created_at else None,
                "generations": [],
            },
        )
        batch["generations"].append(serialize_generation(row))
    for batch in batches.values():
        statuses = [item["status"] for item in batch["generations"]]
        batch["total"] = len(statuses)
        batch["completed"] = statuses.count("completed")
        batch["failed"] = statuses.count("failed")
        batch["done"] = all(status in ("completed", "failed") for status in statuses)
    return list(batches.values())


async def delete_batch(db: AsyncSession, identity: Identity, batch_id: str) -> Dict[str, Any]:
    result = await db.execute(
        select(Generation).where(identity.owner_clause(Generation), Generation.batch_id == batch_id)
    )
    generations = result.scalars().all()
    if not generations:
        raise GenerationNotFoundError(batch_id)

    urls = [row.generated_image_url for row in generations]
    sources = [row.original_image_url for row in generations]
    released = 0
    try:
        for generation in generations:
            released += await _discard_generation(db, generation)
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    for url in urls:
        await storage.delete(url)
    await _delete_orphaned_sources(db, sources)
    return {"deleted": True, "batch_id": batch_id, "count": len(generations), "credits_released": released}


async def get_most_used_styles(db: AsyncSession, limit: int = 3) -> List[Dict[str, Any]]:
    result = await db.execute(
        select(Generation.style_key, func.count(Generation.id).label("uses"))
        .where(Generation.style_key.in_(list(STYLE_CATALOG.keys())))
        .group_by(Generation.style_key)
        .order_by(func.count(Generation.id).desc(), Generation.style_key.asc())
        .limit(max(int(limit), 1))
    )
    return [
        {"key": key, "name": STYLE_CATALOG[key]["name"], "uses": int(uses or 0)}
        for key, uses in result.all()
    ]
