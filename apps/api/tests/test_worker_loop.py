from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from sqlalchemy import func, update
from sqlalchemy.future import select

from models.account import Account
from models.credit_transaction import CreditTransaction
from models.generation import Generation
from models.generation_job import GenerationJob
from services import storage
from services.credits import get_account, set_subscription_state
from services.errors import ProviderError, ProviderPermanentError
from services.identity import GuestIdentity
from services.job_queue import claim_next
from services.worker_loop import GenerationWorker, get_worker_status, set_worker, trigger_worker


class FakeProvider:
    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.prompts = []

    def generate(self, image_bytes, prompt, mime_type):
        self.prompts.append(prompt)
        outcome = self.outcomes.pop(0) if self.outcomes else b"generated-png"
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture
def source_image(isolated_storage):
    path = isolated_storage / "portraits" / "source.jpg"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"jpeg-bytes")
    return path


async def _state(session_maker, generation_id, job_id, identity):
    async with session_maker() as session:
        generation = await session.get(Generation, generation_id)
        job = await session.get(GenerationJob, job_id)
        account = await get_account(session, identity)
        decrements = (
            await session.execute(
                select(func.count(CreditTransaction.id)).where(
                    CreditTransaction.reference_id == generation_id,
                    CreditTransaction.transaction_type == "decrement",
                )
            )
        ).scalar_one()
        return generation, job, account, decrements


@pytest.mark.asyncio
async def test_successful_job_completes_record_and_charges_once(session_maker, queued_generation, source_image):
    guest = GuestIdentity("device-ok")
    generation_id, job_id = await queued_generation(guest)
    provider = FakeProvider(b"portrait")
    worker = GenerationWorker(session_factory=session_maker, provider=provider)

    assert await worker.run_once() is True

    generation, job, account, decrements = await _state(session_maker, generation_id, job_id, guest)
    assert generation.status == "completed"
    assert generation.generated_image_url.startswith("http://test/media/portraits/generated/")
    assert job.status == "completed"
    assert account.total_credits == 400
    assert account.reserved_credits == 0
    assert decrements == 1
    assert worker.processed == 1
    stored_bytes, _ = await storage.fetch(generation.generated_image_url)
    assert stored_bytes == b"portrait"


@pytest.mark.asyncio
async def test_failed_attempts_never_charge(session_maker, queued_generation, source_image):
    guest = GuestIdentity("device-fail")
    generation_id, job_id = await queued_generation(guest)
    provider = FakeProvider(ProviderError("503"), ProviderError("503"), ProviderError("503"))
    worker = GenerationWorker(session_factory=session_maker, provider=provider)

    with patch("config.settings.JOB_RETRY_BACKOFF_SECONDS", [0]):
        assert await worker.drain() == 3

    generation, job, account, decrements = await _state(session_maker, generation_id, job_id, guest)
    assert generation.status == "failed"
    assert job.status == "failed"
    assert job.attempts == 3
    assert account.total_credits == 600
    assert account.reserved_credits == 0
    assert decrements == 0


@pytest.mark.asyncio
async def test_job_succeeding_on_third_attempt_charges_exactly_once(session_maker, queued_generation, source_image):
    guest = GuestIdentity("device-third")
    generation_id, job_id = await queued_generation(guest)
    provider = FakeProvider(ProviderError("timeout"), ProviderError("rate limited"), b"portrait")
    worker = GenerationWorker(session_factory=session_maker, provider=provider)

    with patch("config.settings.JOB_RETRY_BACKOFF_SECONDS", [0]):
        assert await worker.run_once() is True
        generation, job, _, _ = await _state(session_maker, generation_id, job_id, guest)
        assert generation.status == "failed"
        assert job.status == "queued"

        assert await worker.drain() == 2

    generation, job, account, decrements = await _state(session_maker, generation_id, job_id, guest)
    assert generation.status == "completed"
    assert job.status == "completed"
    assert job.attempts == 2
    assert account.total_credits == 400
    assert decrements == 1


@pytest.mark.asyncio
async def test_permanent_provider_error_fails_without_retry(session_maker, queued_generation, source_image):
    guest = GuestIdentity("device-policy")
    generation_id, job_id = await queued_generation(guest)
    worker = GenerationWorker(
        session_factory=session_maker,
        provider=FakeProvider(ProviderPermanentError("content policy violation")),
    )

    assert await worker.drain() == 1

    generation, job, account, _ = await _state(session_maker, generation_id, job_id, guest)
    assert generation.status == "failed"
    assert "content policy" in generation.error_message
    assert job.status == "failed"
    assert job.attempts == 1
    assert account.reserved_credits == 0
    assert account.total_credits == 600


@pytest.mark.asyncio
async def test_unknown_style_is_a_permanent_failure(session_maker, queued_generation, source_image):
    guest = GuestIdentity("device-style")
    generation_id, job_id = await queued_generation(guest, style_key="no-such-style")
    provider = FakeProvider()
    worker = GenerationWorker(session_factory=session_maker, provider=provider)

    await worker.run_once()

    _, job, _, _ = await _state(session_maker, generation_id, job_id, guest)
    assert job.status == "failed"
    assert provider.prompts == []


@pytest.mark.asyncio
async def test_subscribed_account_is_not_charged_at_completion(session_maker, queued_generation, source_image):
    guest = GuestIdentity("device-sub")
    generation_id, job_id = await queued_generation(guest)
    async with session_maker() as session:
        await set_subscription_state(session, guest, is_subscribed=True, is_trial_active=False)
    worker = GenerationWorker(session_factory=session_maker, provider=FakeProvider(b"img"))

    await worker.run_once()

    generation, _, account, decrements = await _state(session_maker, generation_id, job_id, guest)
    assert generation.status == "completed"
    assert account.total_credits == 600
    assert account.reserved_credits == 0
    assert decrements == 0


@pytest.mark.asyncio
async def test_stale_claim_is_requeued_and_late_result_discarded(session_maker, queued_generation, source_image):
    guest = GuestIdentity("device-stale")
    generation_id, job_id = await queued_generation(guest)

    async with session_maker() as session:
        crashed = await claim_next(session, "crashed-worker")
        await session.execute(
            update(GenerationJob)
            .where(GenerationJob.id == job_id)
            .values(claimed_at=datetime.now(timezone.utc) - timedelta(hours=2))
        )
        await session.execute(update(Generation).where(Generation.id == generation_id).values(status="processing"))
        await session.commit()

    worker = GenerationWorker(session_factory=session_maker, provider=FakeProvider(b"img"))
    assert await worker.reclaim_stale_jobs(older_than_seconds=600) == 1

    _, job, _, _ = await _state(session_maker, generation_id, job_id, guest)
    assert job.status == "queued"
    assert job.attempts == 1

    # The crashed worker's claim token no longer completes the job.
    await worker._finalize_success(crashed, crashed.claim_token, "http://test/media/portraits/late.png")
    _, job, account, decrements = await _state(session_maker, generation_id, job_id, guest)
    assert job.status == "queued"
    assert decrements == 0
    assert account.reserved_credits == 200


@pytest.mark.asyncio
async def test_run_once_skips_while_a_job_is_in_flight(session_maker, queued_generation, source_image):
    await queued_generation(GuestIdentity("device-busy"))
    worker = GenerationWorker(session_factory=session_maker, provider=FakeProvider(b"img"))

    async with worker._in_flight:
        assert worker.is_processing is True
        assert await worker.run_once() is False

    assert await worker.run_once() is True


@pytest.mark.asyncio
async def test_trigger_wakes_registered_worker(session_maker):
    worker = GenerationWorker(session_factory=session_maker, provider=FakeProvider())
    set_worker(worker)
    try:
        assert worker._wakeup.is_set() is False
        trigger_worker()
        assert worker._wakeup.is_set() is True
        status = get_worker_status()
        assert status["running"] is False
        assert status["worker_id"] == worker.worker_id
    finally:
        set_worker(None)


@pytest.mark.asyncio
async def test_worker_maintenance_expires_lapsed_trials(session_maker):
    guest = GuestIdentity("device-trial")
    now = datetime.now(timezone.utc)
    async with session_maker() as session:
        await set_subscription_state(
            session,
            guest,
            is_subscribed=False,
            is_trial_active=True,
            trial_window=(now - timedelta(days=5), now - timedelta(days=2)),
        )

    worker = GenerationWorker(session_factory=session_maker, provider=FakeProvider())
    result = await worker.run_maintenance()

    assert result == {"reclaimed": 0, "expired_trials": 1}
    async with session_maker() as session:
        flag = (
            await session.execute(select(Account.is_trial_active).where(Account.identity_key == guest.key))
        ).scalar_one()
    assert flag is False
