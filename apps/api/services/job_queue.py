"""Durable generation job queue backed by the ``generation_jobs`` table.

Workers claim jobs with a conditional UPDATE on the row's status, so two
workers can never both own the same job. Completion and failure are
conditional on the claim token handed out by ``claim_next``.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.account import Account
from models.generation import Generation
from models.generation_job import LIVE_JOB_STATUSES, GenerationJob
from services.errors import DuplicateJobError
from services.styles import EDIT_STYLE

logger = logging.getLogger(__name__)

JOB_STATUSES = ("queued", "claimed", "completed", "failed")
CLAIM_CANDIDATES = 10


def _now() -> datetime:
    return datetime.now(timezone.utc)


def retry_delay_seconds(attempts: int) -> int:
    """Backoff before the next attempt, given the attempts made so far."""
    schedule = list(settings.JOB_RETRY_BACKOFF_SECONDS or [0])
    index = min(max(int(attempts) - 1, 0), len(schedule) - 1)
    return max(int(schedule[index]), 0)


async def get_live_job(db: AsyncSession, generation_id: str) -> Optional[GenerationJob]:
    result = await db.execute(
        select(GenerationJob).where(
            GenerationJob.generation_id == generation_id,
            GenerationJob.status.in_(LIVE_JOB_STATUSES),
        )
    )
    return result.scalars().first()


async def enqueue_job(
    db: AsyncSession,
    generation: Generation,
    account: Account,
    reserved_credits: int,
) -> GenerationJob:
    """Add a queued job for ``generation`` (flush only; the caller commits)."""
    if await get_live_job(db, generation.id):
        raise DuplicateJobError(generation.id)

    now = _now()
    job = GenerationJob(
        generation_id=generation.id,
        user_id=generation.user_id,
        guest_device_id=generation.guest_device_id,
        account_id=account.id,
        style_key=EDIT_STYLE if generation.is_edited else generation.style_key,
        custom_prompt=generation.custom_prompt,
        edit_prompt=generation.edit_prompt,
        original_image_url=generation.original_image_url,
        status="queued",
        attempts=0,
        max_attempts=max(int(settings.JOB_MAX_ATTEMPTS), 1),
        reserved_credits=max(int(reserved_credits), 0),
        queued_at=now,
        available_at=now,
    )
    db.add(job)
    try:
        await db.flush()
    except IntegrityError as exc:
        raise DuplicateJobError(generation.id) from exc
    return job


async def claim_next(db: AsyncSession, worker_id: str) -> Optional[GenerationJob]:
    """Claim the oldest available queued job, or return None when there is none."""
    tried: set = set()
    while True:
        now = _now()
        query = (
            select(GenerationJob.id)
            .where(
                GenerationJob.status == "queued",
                GenerationJob.available_at <= now,
            )
            .order_by(GenerationJob.queued_at.asc(), GenerationJob.id.asc())
            .limit(CLAIM_CANDIDATES)
        )
        if tried:
            query = query.where(GenerationJob.id.not_in(tried))
        candidates = list((await db.execute(query)).scalars().all())
        await db.rollback()
        if not candidates:
            return None

        for job_id in candidates:
            tried.add(job_id)
            claim_token = str(uuid.uuid4())
            result = await db.execute(
                update(GenerationJob)
                .where(GenerationJob.id == job_id, GenerationJob.status == "queued")
                .values(
                    status="claimed",
                    claim_token=claim_token,
                    claimed_by=worker_id,
                    claimed_at=_now(),
                    updated_at=_now(),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                # Another worker won this row.
                await db.rollback()
                continue
            await db.commit()
            claimed = await db.execute(
                select(GenerationJob)
                .where(GenerationJob.id == job_id)
                .execution_options(populate_existing=True)
            )
            job = claimed.scalar_one()
            logger.info("Worker %s claimed job %s (attempt %s)", worker_id, job.id, job.attempts + 1)
            return job


async def complete_job(db: AsyncSession, job_id: str, claim_token: str, *, commit: bool = True) -> bool:
    """Mark a claimed job completed; False when the claim was lost."""
    now = _now()
    result = await db.execute(
        update(GenerationJob)
        .where(
            GenerationJob.id == job_id,
            GenerationJob.status == "claimed",
            GenerationJob.claim_token == claim_token,
        )
        .values(status="completed", completed_at=now, error_message=None, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False
    if commit:
        await db.commit()
    return True


async def fail_job(
    db: AsyncSession,
    job_id: str,
    message: str,
    claim_token: str,
    *,
    permanent: bool = False,
    commit: bool = True,
) -> Optional[str]:
    """Record a failed attempt.

    Returns the job's new status: ``queued`` when it will be retried,
    ``failed`` when it is terminal, or None when the claim was lost.
    """
    result = await db.execute(
        select(GenerationJob.attempts, GenerationJob.max_attempts).where(
            GenerationJob.id == job_id,
            GenerationJob.status == "claimed",
            GenerationJob.claim_token == claim_token,
        )
    )
    row = result.one_or_none()
    if row is None:
        return None

    attempts = int(row[0] or 0) + 1
    max_attempts = max(int(row[1] or 1), 1)
    now = _now()
    error_message = str(message or "Generation failed")[:1000]
    values: Dict[str, Any] = {
        "attempts": attempts,
        "error_message": error_message,
        "claim_token": None,
        "claimed_by": None,
        "claimed_at": None,
        "updated_at": now,
    }
    if permanent or attempts >= max_attempts:
        values.update(status="failed", completed_at=now)
    else:
        values.update(
            status="queued",
            queued_at=now,
            available_at=now + timedelta(seconds=retry_delay_seconds(attempts)),
        )

    result = await db.execute(
        update(GenerationJob)
        .where(
            GenerationJob.id == job_id,
            GenerationJob.status == "claimed",
            GenerationJob.claim_token == claim_token,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return None
    if commit:
        await db.commit()
    if values["status"] == "queued":
        logger.warning("Job %s attempt %s/%s failed, retrying: %s", job_id, attempts, max_attempts, error_message)
    else:
        logger.error("Job %s failed permanently after %s attempt(s): %s", job_id, attempts, error_message)
    return values["status"]


async def find_stale_claims(db: AsyncSession, older_than_seconds: Optional[int] = None) -> List[GenerationJob]:
    """Claimed jobs whose worker has held them past the staleness threshold."""
    threshold = settings.JOB_STALE_CLAIM_SECONDS if older_than_seconds is None else older_than_seconds
    cutoff = _now() - timedelta(seconds=max(int(threshold), 0))
    result = await db.execute(
        select(GenerationJob)
        .where(
            GenerationJob.status == "claimed",
            GenerationJob.claimed_at < cutoff,
        )
        .order_by(GenerationJob.claimed_at.asc())
    )
    return list(result.scalars().all())


async def get_queue_stats(db: AsyncSession) -> Dict[str, int]:
    result = await db.execute(
        select(GenerationJob.status, func.count(GenerationJob.id)).group_by(GenerationJob.status)
    )
    stats = {status: 0 for status in JOB_STATUSES}
    for status, count in result.all():
        stats[str(status)] = int(count or 0)
    return stats
