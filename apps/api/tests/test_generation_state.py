import pytest

from models.generation import Generation
from services.errors import GenerationNotFoundError, InvalidTransitionError
from services.generation_state import can_transition, mark_completed, mark_failed, mark_processing, transition


async def _generation(db, status="pending"):
    generation = Generation(
        guest_device_id="device-state",
        style_key="business",
        original_image_url="http://test/media/portraits/source.jpg",
        status=status,
    )
    db.add(generation)
    await db.commit()
    return generation.id


async def _status(db, generation_id):
    generation = await db.get(Generation, generation_id, populate_existing=True)
    return generation.status


@pytest.mark.parametrize(
    "current,target,allowed",
    [
        ("pending", "processing", True),
        ("processing", "completed", True),
        ("processing", "failed", True),
        ("failed", "processing", True),
        ("processing", "processing", True),
        ("pending", "completed", False),
        ("completed", "processing", False),
        ("failed", "pending", False),
        ("completed", "failed", False),
    ],
)
def test_transition_table(current, target, allowed):
    assert can_transition(current, target) is allowed


@pytest.mark.asyncio
async def test_happy_path_sets_result_url(db):
    generation_id = await _generation(db)

    await mark_processing(db, generation_id)
    await mark_completed(db, generation_id, "http://test/media/portraits/out.png", commit=True)

    generation = await db.get(Generation, generation_id, populate_existing=True)
    assert generation.status == "completed"
    assert generation.generated_image_url == "http://test/media/portraits/out.png"
    assert generation.completed_at is not None


@pytest.mark.asyncio
async def test_failed_record_can_be_retried(db):
    generation_id = await _generation(db, status="processing")

    await mark_failed(db, generation_id, "provider timeout", commit=True)
    assert await _status(db, generation_id) == "failed"
    await mark_processing(db, generation_id)
    assert await _status(db, generation_id) == "processing"


@pytest.mark.asyncio
async def test_completed_record_cannot_go_back(db):
    generation_id = await _generation(db, status="completed")

    with pytest.raises(InvalidTransitionError) as exc_info:
        await mark_processing(db, generation_id)
    assert exc_info.value.current == "completed"

    with pytest.raises(InvalidTransitionError):
        await transition(db, generation_id, "pending")


@pytest.mark.asyncio
async def test_missing_record_raises_not_found(db):
    with pytest.raises(GenerationNotFoundError):
        await mark_processing(db, "missing-generation")
