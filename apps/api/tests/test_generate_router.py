import asyncio

import pytest
from sqlalchemy import update
from sqlalchemy.future import select

from models.account import Account
from models.generation_job import GenerationJob
from services import storage
from services.credits import get_or_create_account
from services.identity import GuestIdentity
from services.job_queue import claim_next

GUEST = {"X-Guest-Device-Id": "device-router"}
IMAGE = ("face.jpg", b"\xff\xd8\xff-jpeg", "image/jpeg")


async def _set_balance(session_maker, identity, total):
    async with session_maker() as session:
        account = await get_or_create_account(session, identity)
        await session.execute(update(Account).where(Account.id == account.id).values(total_credits=total))
        await session.commit()


@pytest.mark.asyncio
async def test_styles_are_listed(api_client):
    resp = await api_client.get("/generate/styles")
    assert resp.status_code == 200
    keys = [style["key"] for style in resp.json()["styles"]]
    assert "business" in keys


@pytest.mark.asyncio
async def test_generate_requires_identity(api_client):
    resp = await api_client.post("/generate", files={"image": IMAGE}, data={"style_key": "business"})
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_guest_generation_is_queued_with_hold(api_client, session_maker):
    resp = await api_client.post("/generate", headers=GUEST, files={"image": IMAGE}, data={"style_key": "business"})

    assert resp.status_code == 202
    body = resp.json()
    assert body["status"] == "pending"
    assert body["credit_cost"] == 200

    credits = (await api_client.get("/user/credits", headers=GUEST)).json()
    assert credits["balance"] == 400
    assert credits["reserved_credits"] == 200
    assert credits["total_credits"] == 600

    status = await api_client.get(f"/generate/{body['generation_id']}/status", headers=GUEST)
    assert status.status_code == 200
    assert status.json()["generation"]["status"] == "pending"
    assert status.json()["generation"]["job"]["status"] == "queued"


@pytest.mark.asyncio
async def test_edit_costs_less_and_keeps_original_style(api_client, session_maker):
    resp = await api_client.post(
        "/generate",
        headers=GUEST,
        files={"image": IMAGE},
        data={"style_key": "edit", "edit_prompt": "Make the background blue", "original_style_key": "business"},
    )

    assert resp.status_code == 202
    assert resp.json()["credit_cost"] == 50
    status = (await api_client.get(f"/generate/{resp.json()['generation_id']}/status", headers=GUEST)).json()
    assert status["generation"]["style_key"] == "business"
    assert status["generation"]["is_edited"] is True
    async with session_maker() as session:
        job = await session.get(GenerationJob, resp.json()["job_id"])
    assert job.style_key == "edit"


@pytest.mark.asyncio
async def test_concurrent_submissions_cannot_share_last_credits(api_client, session_maker):
    await _set_balance(session_maker, GuestIdentity("device-router"), 200)

    async def submit():
        return await api_client.post(
            "/generate", headers=GUEST, files={"image": IMAGE}, data={"style_key": "business"}
        )

    responses = await asyncio.gather(submit(), submit())

    codes = sorted(resp.status_code for resp in responses)
    assert codes == [202, 402]
    rejected = next(resp for resp in responses if resp.status_code == 402)
    assert rejected.json()["detail"]["required"] == 200
    assert rejected.json()["detail"]["available"] == 0


@pytest.mark.asyncio
async def test_validation_errors(api_client):
    custom = await api_client.post("/generate", headers=GUEST, files={"image": IMAGE}, data={"style_key": "custom"})
    assert custom.status_code == 400

    edit = await api_client.post("/generate", headers=GUEST, files={"image": IMAGE}, data={"style_key": "edit"})
    assert edit.status_code == 400

    not_image = await api_client.post(
        "/generate",
        headers=GUEST,
        files={"image": ("notes.txt", b"hello", "text/plain")},
        data={"style_key": "business"},
    )
    assert not_image.status_code == 400

    unknown = await api_client.post("/generate", headers=GUEST, files={"image": IMAGE}, data={"style_key": "nope"})
    assert unknown.status_code == 400


@pytest.mark.asyncio
async def test_status_is_scoped_to_owner(api_client):
    resp = await api_client.post("/generate", headers=GUEST, files={"image": IMAGE}, data={"style_key": "business"})
    generation_id = resp.json()["generation_id"]

    other = await api_client.get(f"/generate/{generation_id}/status", headers={"X-Guest-Device-Id": "someone-else"})
    assert other.status_code == 404


@pytest.mark.asyncio
async def test_deleting_queued_generation_releases_hold(api_client, session_maker):
    resp = await api_client.post("/generate", headers=GUEST, files={"image": IMAGE}, data={"style_key": "business"})
    generation_id = resp.json()["generation_id"]

    deleted = await api_client.delete(f"/generate/{generation_id}", headers=GUEST)

    assert deleted.status_code == 200
    assert deleted.json()["credits_released"] == 200
    credits = (await api_client.get("/user/credits", headers=GUEST)).json()
    assert credits["balance"] == 600
    assert (await api_client.get(f"/generate/{generation_id}/status", headers=GUEST)).status_code == 404


@pytest.mark.asyncio
async def test_deleting_generation_removes_its_source_upload(api_client):
    resp = await api_client.post("/generate", headers=GUEST, files={"image": IMAGE}, data={"style_key": "business"})
    generation_id = resp.json()["generation_id"]
    status = (await api_client.get(f"/generate/{generation_id}/status", headers=GUEST)).json()
    source = storage.local_path_for_url(status["generation"]["original_image_url"])
    assert source is not None and source.exists()

    await api_client.delete(f"/generate/{generation_id}", headers=GUEST)

    assert not source.exists()


@pytest.mark.asyncio
async def test_batch_source_survives_until_last_generation_is_deleted(api_client):
    resp = await api_client.post(
        "/generate/batch", headers=GUEST, files={"image": IMAGE}, data={"style_keys": ["business", "friendly"]}
    )
    first, second = [item["generation_id"] for item in resp.json()["generations"]]
    status = (await api_client.get(f"/generate/{first}/status", headers=GUEST)).json()
    source = storage.local_path_for_url(status["generation"]["original_image_url"])

    await api_client.delete(f"/generate/{first}", headers=GUEST)
    assert source.exists()

    await api_client.delete(f"/generate/{second}", headers=GUEST)
    assert not source.exists()


@pytest.mark.asyncio
async def test_deleting_claimed_generation_conflicts(api_client, session_maker):
    resp = await api_client.post("/generate", headers=GUEST, files={"image": IMAGE}, data={"style_key": "business"})
    async with session_maker() as session:
        assert await claim_next(session, "worker") is not None

    deleted = await api_client.delete(f"/generate/{resp.json()['generation_id']}", headers=GUEST)
    assert deleted.status_code == 409


@pytest.mark.asyncio
async def test_batch_reserves_whole_cost_and_lists(api_client, session_maker):
    resp = await api_client.post(
        "/generate/batch",
        headers=GUEST,
        files={"image": IMAGE},
        data={"style_keys": ["business", "friendly", "creative"]},
    )

    assert resp.status_code == 202
    body = resp.json()
    assert body["credits_reserved"] == 600
    assert len(body["generations"]) == 3

    batches = (await api_client.get("/user/batches", headers=GUEST)).json()["batches"]
    assert len(batches) == 1
    assert batches[0]["batch_id"] == body["batch_id"]
    assert batches[0]["total"] == 3

    out_of_credits = await api_client.post(
        "/generate/batch", headers=GUEST, files={"image": IMAGE}, data={"style_keys": ["business"]}
    )
    assert out_of_credits.status_code == 402

    removed = await api_client.delete(f"/user/batches/{body['batch_id']}", headers=GUEST)
    assert removed.status_code == 200
    assert removed.json()["count"] == 3
    async with session_maker() as session:
        jobs = (await session.execute(select(GenerationJob))).scalars().all()
    assert jobs == []
    credits = (await api_client.get("/user/credits", headers=GUEST)).json()
    assert credits["balance"] == 600


@pytest.mark.asyncio
async def test_generation_history_lists_only_own_records(api_client):
    await api_client.post("/generate", headers=GUEST, files={"image": IMAGE}, data={"style_key": "business"})
    await api_client.post(
        "/generate", headers={"X-Guest-Device-Id": "other"}, files={"image": IMAGE}, data={"style_key": "business"}
    )

    history = (await api_client.get("/user/generations", headers=GUEST)).json()["generations"]
    assert len(history) == 1
    assert history[0]["guest_device_id"] == "device-router"
