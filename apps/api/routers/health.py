"""
Health check endpoints.
"""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
import redis.asyncio as redis
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from services.job_queue import get_queue_stats
from services.worker_loop import get_worker_status

router = APIRouter()


async def _check_database() -> str:
    from database import engine
    from sqlalchemy import text

    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))
    return "up"


async def _check_redis() -> str:
    r = redis.from_url(settings.REDIS_URL)
    try:
        await r.ping()
    finally:
        await r.aclose()
    return "up"


@router.get("/health")
async def health_check():
    """
    Health check endpoint.
    Returns overall system health status.
    """
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": "unknown",
        "redis": "unknown",
        "image_provider": "configured" if settings.OPENAI_API_KEY else "missing",
    }

    try:
        health_status["database"] = await _check_database()
    except Exception as e:
        health_status["database"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    # Redis only carries rate limits and worker wake-ups; polling still works without it.
    try:
        health_status["redis"] = await _check_redis()
    except Exception as e:
        health_status["redis"] = f"down: {str(e)}"

    return health_status


@router.get("/health/ready")
async def readiness_check():
    """Kubernetes-style readiness check."""
    missing = []
    if not settings.OPENAI_API_KEY:
        missing.append("OPENAI_API_KEY")

    if missing:
        return JSONResponse(
            status_code=503,
            content={"ready": False, "missing": missing},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness check."""
    return {"alive": True}


@router.get("/health/detailed")
async def detailed_health(db: AsyncSession = Depends(get_db)):
    """Queue depth and worker counters."""
    details = {"worker": get_worker_status(), "queue": None}
    try:
        details["queue"] = await get_queue_stats(db)
    except Exception as e:
        details["queue"] = f"unavailable: {str(e)}"
    return details
