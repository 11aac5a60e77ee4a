from unittest.mock import patch

import pytest

from services.identity import GuestIdentity


@pytest.mark.asyncio
async def test_liveness(api_client):
    resp = await api_client.get("/health/live")
    assert resp.status_code == 200
    assert resp.json() == {"alive": True}


@pytest.mark.asyncio
async def test_readiness_requires_provider_key(api_client):
    with patch("config.settings.OPENAI_API_KEY", ""):
        missing = await api_client.get("/health/ready")
    assert missing.status_code == 503
    assert missing.json()["missing"] == ["OPENAI_API_KEY"]

    with patch("config.settings.OPENAI_API_KEY", "sk-test"):
        ready = await api_client.get("/health/ready")
    assert ready.status_code == 200


@pytest.mark.asyncio
async def test_detailed_health_reports_queue_depth(api_client, queued_generation):
    await queued_generation(GuestIdentity("device-health"))

    body = (await api_client.get("/health/detailed")).json()

    assert body["queue"] == {"queued": 1, "claimed": 0, "completed": 0, "failed": 0}
    assert body["worker"]["processed"] == 0
