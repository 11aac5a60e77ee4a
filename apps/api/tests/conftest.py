from typing import Optional
from unittest.mock import patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base, get_db
from main import app
from models.generation import Generation
from routers import rate_limit
from services.credits import get_or_create_account, reserve_credits
from services.identity import Identity
from services.job_queue import enqueue_job
from services.session_token import create_session_token


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest.fixture(autouse=True)
def isolated_storage(tmp_path):
    """Local object storage under the test's tmp dir, no Redis wake-ups."""
    storage_root = tmp_path / "storage"
    storage_root.mkdir()
    with patch("config.settings.STORAGE_ROOT", str(storage_root)), patch(
        "config.settings.PUBLIC_MEDIA_BASE_URL", "http://test/media"
    ), patch("config.settings.WORKER_TRIGGER_VIA_REDIS", False):
        yield storage_root


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "portrait.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker
    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest_asyncio.fixture
async def api_client(session_maker):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.pop(get_db, None)


@pytest.fixture
def queued_generation(session_maker):
    """Factory creating a generation with a queued job and its credit hold."""

    async def _create(identity: Identity, style_key: str = "business", hold: int = 200, custom_prompt: Optional[str] = None):
        async with session_maker() as session:
            account = await get_or_create_account(session, identity)
            await reserve_credits(session, account, hold)
            generation = Generation(
                **identity.owner_values(),
                style_key=style_key,
                custom_prompt=custom_prompt,
                original_image_url="http://test/media/portraits/source.jpg",
                status="pending",
                credit_cost=hold,
            )
            session.add(generation)
            await session.flush()
            job = await enqueue_job(session, generation, account, hold)
            await session.commit()
            return generation.id, job.id

    return _create


@pytest.fixture
def bearer_headers():
    def _headers(user_id: str, email_verified: bool = False, device_id: Optional[str] = None) -> dict:
        token = create_session_token(user_id, email=f"{user_id}@example.com", email_verified=email_verified)["token"]
        headers = {"Authorization": f"Bearer {token}"}
        if device_id:
            headers["X-Guest-Device-Id"] = device_id
        return headers

    return _headers
