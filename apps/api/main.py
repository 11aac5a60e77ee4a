"""
Portrait Studio - FastAPI Backend
Main application entry point with health check and API routing.
"""

from contextlib import asynccontextmanager
import logging
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import health, generate, user, webhooks
from services.worker_loop import get_worker

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Portrait Studio API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")

    worker = None
    if settings.RUN_WORKER_IN_PROCESS:
        worker = get_worker()
        try:
            maintenance = await worker.run_maintenance()
            if maintenance["reclaimed"]:
                print(f"♻️ Reclaimed {maintenance['reclaimed']} stale generation jobs after startup.")
        except Exception as exc:
            print(f"⚠️ Stale job recovery skipped: {exc}")
        worker.start()
        print(f"⚙️ Generation worker running in-process (poll every {settings.WORKER_POLL_INTERVAL_SECONDS}s).")
    yield
    # Shutdown
    if worker is not None:
        await worker.stop()
    print("👋 Shutting down API...")


app = FastAPI(
    title="Portrait Studio API",
    description="Queue AI portrait generations against a per-account credit balance",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(generate.router, prefix="/generate", tags=["Generate"])
app.include_router(user.router, prefix="/user", tags=["User"])
app.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])

Path(settings.STORAGE_ROOT).mkdir(parents=True, exist_ok=True)
app.mount("/media", StaticFiles(directory=settings.STORAGE_ROOT), name="media")


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Portrait Studio API",
        "version": "0.1.0",
        "status": "running"
    }
