"""Generation worker loop.

Each ``GenerationWorker`` processes at most one job at a time. It wakes on a
fixed poll interval or when ``trigger_worker()`` is called after a
submission, and immediately looks for more work after finishing a job.
"""

from __future__ import annotations

import asyncio
import logging
import os
import socket
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Set

import redis.asyncio as redis
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import async_session_maker
from models.account import Account
from models.generation_job import GenerationJob
from services import storage
from services.credits import expire_lapsed_trials, release_reservation, settle_reservation
from services.errors import GenerationNotFoundError, InvalidTransitionError, ProviderPermanentError
from services.generation_state import mark_completed, mark_failed, mark_processing
from services.image_provider import ImageProvider, get_image_provider
from services.job_queue import claim_next, complete_job, fail_job, find_stale_claims
from services.styles import build_prompt

logger = logging.getLogger(__name__)

STALE_CLAIM_MESSAGE = "Worker stopped before finishing this job"


def _default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class GenerationWorker:
    def __init__(
        self,
        *,
        worker_id: Optional[str] = None,
        session_factory: Optional[Callable[[], AsyncSession]] = None,
        provider: Optional[ImageProvider] = None,
        poll_interval: Optional[float] = None,
        reclaim_interval: Optional[float] = None,
    ):
        self.worker_id = worker_id or _default_worker_id()
        self._session_factory = session_factory or async_session_maker
        self._provider = provider
        self.poll_interval = float(
            settings.WORKER_POLL_INTERVAL_SECONDS if poll_interval is None else poll_interval
        )
        self.reclaim_interval = float(
            settings.WORKER_RECLAIM_INTERVAL_SECONDS if reclaim_interval is None else reclaim_interval
        )
        self._in_flight = asyncio.Semaphore(1)
        self._wakeup = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._stopping = False
        self._last_maintenance = 0.0
        self.processed = 0
        self.failed = 0
        self.current_job_id: Optional[str] = None
        self.started_at: Optional[datetime] = None
        self.last_error: Optional[str] = None

    @property
    def provider(self) -> ImageProvider:
        return self._provider or get_image_provider()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def is_processing(self) -> bool:
        return self._in_flight.locked()

    def trigger(self) -> None:
        self._wakeup.set()

    async def run_once(self) -> bool:
        """Claim and process at most one job; False when idle or already busy."""
        if self._in_flight.locked():
            return False
        async with self._in_flight:
            async with self._session_factory() as db:
                job = await claim_next(db, self.worker_id)
            if job is None:
                return False
            self.current_job_id = job.id
            try:
                await self._process(job)
            finally:
                self.current_job_id = None
            return True

    async def drain(self, max_jobs: int = 100) -> int:
        """Process available jobs until the queue has nothing claimable."""
        handled = 0
        while handled < max_jobs and await self.run_once():
            handled += 1
        return handled

    async def _process(self, job: GenerationJob) -> None:
        claim_token = job.claim_token
        try:
            async with self._session_factory() as db:
                await mark_processing(db, job.generation_id)
        except (InvalidTransitionError, GenerationNotFoundError) as exc:
            await self._handle_failure(job, claim_token, str(exc), permanent=True)
            return

        permanent = False
        try:
            source_bytes, mime_type = await storage.fetch(job.original_image_url)
            prompt = build_prompt(job.style_key, job.custom_prompt, job.edit_prompt)
            image_bytes = await asyncio.wait_for(
                asyncio.to_thread(self.provider.generate, source_bytes, prompt, mime_type),
                timeout=float(settings.PROVIDER_TIMEOUT_SECONDS),
            )
            generated_url = await storage.store(
                settings.PORTRAIT_BUCKET,
                f"generated/{job.generation_id}/{uuid.uuid4().hex}.png",
                image_bytes,
                "image/png",
            )
        except ProviderPermanentError as exc:
            message, permanent = str(exc), True
        except FileNotFoundError as exc:
            message, permanent = f"Source image unavailable: {exc}", True
        except asyncio.TimeoutError:
            message = f"Image generation timed out after {settings.PROVIDER_TIMEOUT_SECONDS}s"
        except Exception as exc:
            logger.exception("Job %s attempt failed", job.id)
            message = str(exc) or exc.__class__.__name__
        else:
            try:
                await self._finalize_success(job, claim_token, generated_url)
                return
            except Exception as exc:
                logger.exception("Could not finalize job %s", job.id)
                await storage.delete(generated_url)
                message = f"Could not save generation result: {exc}"

        await self._handle_failure(job, claim_token, message, permanent=permanent)

    async def _finalize_success(self, job: GenerationJob, claim_token: str, generated_url: str) -> None:
        """Complete the job, the record and the charge in one transaction."""
        async with self._session_factory() as db:
            try:
                if not await complete_job(db, job.id, claim_token, commit=False):
                    await db.rollback()
                    logger.warning("Job %s was reclaimed while running; discarding result", job.id)
                    await storage.delete(generated_url)
                    return
                await mark_completed(db, job.generation_id, generated_url)

                row = (
                    await db.execute(
                        select(GenerationJob.account_id, GenerationJob.reserved_credits).where(
                            GenerationJob.id == job.id
                        )
                    )
                ).one()
                account_id, hold = row[0], int(row[1] or 0)
                is_subscribed = (
                    await db.execute(select(Account.is_subscribed).where(Account.id == account_id))
                ).scalar_one()
                if hold and is_subscribed:
                    await release_reservation(db, account_id, hold, generation_id=job.generation_id)
                elif hold:
                    await settle_reservation(db, account_id, hold, generation_id=job.generation_id)
                await db.commit()
            except Exception:
                await db.rollback()
                raise

        self.processed += 1
        logger.info("Job %s completed generation %s", job.id, job.generation_id)

    async def _handle_failure(
        self,
        job: GenerationJob,
        claim_token: Optional[str],
        message: str,
        *,
        permanent: bool = False,
    ) -> Optional[str]:
        status = None
        async with self._session_factory() as db:
            try:
                try:
                    await mark_failed(db, job.generation_id, message)
                except (InvalidTransitionError, GenerationNotFoundError) as exc:
                    logger.warning("Generation %s not marked failed: %s", job.generation_id, exc)

                status = await fail_job(db, job.id, message, claim_token, permanent=permanent, commit=False)
                if status is None:
                    await db.rollback()
                    logger.warning("Job %s claim was lost before failure could be recorded", job.id)
                    return None
                if status == "failed":
                    row = (
                        await db.execute(
                            select(GenerationJob.account_id, GenerationJob.reserved_credits).where(
                                GenerationJob.id == job.id
                            )
                        )
                    ).one()
                    await release_reservation(db, row[0], int(row[1] or 0), generation_id=job.generation_id)
                await db.commit()
            except Exception:
                await db.rollback()
                logger.exception("Could not record failure for job %s", job.id)
                return None

        self.failed += 1
        self.last_error = message
        return status

    async def reclaim_stale_jobs(self, older_than_seconds: Optional[int] = None) -> int:
        """Treat claims held past the staleness threshold as transient failures."""
        async with self._session_factory() as db:
            stale = await find_stale_claims(db, older_than_seconds)
        reclaimed = 0
        for job in stale:
            if job.id == self.current_job_id:
                continue
            logger.warning("Reclaiming stale job %s claimed by %s at %s", job.id, job.claimed_by, job.claimed_at)
            if await self._handle_failure(job, job.claim_token, STALE_CLAIM_MESSAGE):
                reclaimed += 1
        return reclaimed

    async def run_maintenance(self) -> Dict[str, int]:
        self._last_maintenance = time.monotonic()
        reclaimed = await self.reclaim_stale_jobs()
        async with self._session_factory() as db:
            expired = await expire_lapsed_trials(db)
        if reclaimed or expired:
            logger.info("Worker maintenance: reclaimed=%s expired_trials=%s", reclaimed, expired)
        return {"reclaimed": reclaimed, "expired_trials": expired}

    async def run(self) -> None:
        self.started_at = datetime.now(timezone.utc)
        logger.info("Generation worker %s started (poll=%ss)", self.worker_id, self.poll_interval)
        while not self._stopping:
            try:
                if time.monotonic() - self._last_maintenance >= self.reclaim_interval:
                    await self.run_maintenance()
                self._wakeup.clear()
                if await self.run_once():
                    continue
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self.last_error = str(exc)
                logger.exception("Worker iteration failed")
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Generation worker %s stopped", self.worker_id)

    def start(self) -> asyncio.Task:
        if not self.is_running:
            self._stopping = False
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self, timeout: float = 10.0) -> None:
        self._stopping = True
        self._wakeup.set()
        if self._task is None:
            return
        try:
            await asyncio.wait_for(self._task, timeout=timeout)
        except asyncio.TimeoutError:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None

    def status(self) -> Dict[str, Any]:
        return {
            "worker_id": self.worker_id,
            "running": self.is_running,
            "processing": self.is_processing,
            "current_job_id": self.current_job_id,
            "processed": self.processed,
            "failed": self.failed,
            "last_error": self.last_error,
            "started_at": self.started_at.isoformat() if self.started_at else None,
        }


_worker: Optional[GenerationWorker] = None
_pending_publishes: Set[asyncio.Task] = set()


def get_worker() -> GenerationWorker:
    global _worker
    if _worker is None:
        _worker = GenerationWorker()
    return _worker


def set_worker(worker: Optional[GenerationWorker]) -> None:
    global _worker
    _worker = worker


async def _publish_trigger() -> None:
    try:
        client = redis.from_url(settings.REDIS_URL, decode_responses=True)
        try:
            await client.publish(settings.WORKER_TRIGGER_CHANNEL, "job")
        finally:
            await client.aclose()
    except Exception as exc:
        logger.debug("Worker trigger publish skipped: %s", exc)


def trigger_worker() -> None:
    """Wake the in-process worker and hint standalone workers that work is queued."""
    if _worker is not None:
        _worker.trigger()
    if not settings.WORKER_TRIGGER_VIA_REDIS:
        return
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        return
    task = loop.create_task(_publish_trigger())
    _pending_publishes.add(task)
    task.add_done_callback(_pending_publishes.discard)


def get_worker_status() -> Dict[str, Any]:
    if _worker is None:
        return {"running": False, "processing": False, "processed": 0, "failed": 0}
    return _worker.status()
