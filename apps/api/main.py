"""
Fashion Muse - FastAPI Backend
Credit-billed fashion photo generation: job submission, polling and billing.
"""

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from config import settings, validate_security_settings
from database import async_session_maker, engine, Base
import models  # noqa: F401
from routers import billing, catalog, generations, health
from services.generation import recover_stalled_generation_jobs
from services.generation_queue import drain_inline_tasks
from services.plans import seed_subscription_plans


async def _periodic_stalled_job_sweep() -> None:
    interval_minutes = max(int(settings.STALLED_JOB_SWEEP_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            recovered = await recover_stalled_generation_jobs()
            if recovered:
                print(f"♻️ Stalled job sweep: failed and refunded {recovered} job(s).")
        except Exception as exc:
            print(f"⚠️ Stalled job sweep tick failed: {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Fashion Muse API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    try:
        async with async_session_maker() as db:
            seeded = await seed_subscription_plans(db)
        if seeded:
            print(f"💳 Seeded {seeded} subscription plan(s).")
    except Exception as exc:
        print(f"⚠️ Subscription plan seeding skipped: {exc}")
    try:
        recovered = await recover_stalled_generation_jobs()
        if recovered:
            print(f"♻️ Failed and refunded {recovered} stalled generation job(s) after startup.")
    except Exception as exc:
        print(f"⚠️ Stalled generation recovery skipped: {exc}")
    sweep_task = None
    if int(settings.STALLED_JOB_SWEEP_INTERVAL_MINUTES) > 0:
        sweep_task = asyncio.create_task(_periodic_stalled_job_sweep())
        print(
            "📅 Stalled job sweep enabled "
            f"(every {int(settings.STALLED_JOB_SWEEP_INTERVAL_MINUTES)} min)."
        )
    yield
    # Shutdown
    if sweep_task is not None:
        sweep_task.cancel()
        try:
            await sweep_task
        except asyncio.CancelledError:
            pass
    await drain_inline_tasks()
    print("👋 Shutting down API...")


app = FastAPI(
    title="Fashion Muse API",
    description="Turn a photo into AI fashion photographs, billed per image",
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
app.include_router(catalog.router, prefix="/catalog", tags=["Catalog"])
app.include_router(generations.router, prefix="/generations", tags=["Generations"])
app.include_router(billing.router, prefix="/billing", tags=["Billing"])

if settings.BLOB_STORAGE_BACKEND == "local":
    Path(settings.BLOB_LOCAL_DIR).mkdir(parents=True, exist_ok=True)
    app.mount("/blobs", StaticFiles(directory=settings.BLOB_LOCAL_DIR), name="blobs")


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Fashion Muse API",
        "version": "0.1.0",
        "status": "running"
    }
