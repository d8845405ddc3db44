"""
FastAPI Application — entry point.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

import billing.models  # noqa: F401  (register tables before create_all)
from billing.config import settings
from billing.database import init_db, close_db
from billing.routes import router, VERSION
from billing.routes.automation import automation_router
from billing.routes.recurring import router as recurring_router
from billing.services.scheduler import periodic_recurrence_run

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown hook."""
    logger.info("🚀 Starting Qontax Recurrence API v%s", VERSION)
    await init_db()
    logger.info("✅ Database ready")

    scheduler_task = None
    if settings.scheduler_enabled:
        scheduler_task = asyncio.create_task(periodic_recurrence_run())
        logger.info("⏰ Daily recurring run scheduled at %02d:00 UTC", settings.scheduler_hour_utc)
    else:
        logger.info("ℹ️ In-process scheduler disabled (external trigger expected)")

    yield

    # Shutdown
    if scheduler_task:
        scheduler_task.cancel()
        try:
            await scheduler_task
        except asyncio.CancelledError:
            pass
    await close_db()
    logger.info("👋 Shutdown complete")


app = FastAPI(
    title="Qontax Recurrence API",
    description=(
        "Recurring invoice automation — creates each contract's monthly draft "
        "invoice once, logs every run per tenant, and alerts on failures."
    ),
    version=VERSION,
    lifespan=lifespan,
)

# CORS: dashboards on any origin invoke the engine
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router, prefix="/api/v1")
app.include_router(recurring_router, prefix="/api/v1")
app.include_router(automation_router, prefix="/api/v1")


@app.get("/", include_in_schema=False)
async def root():
    return {
        "service": "Qontax Recurrence API",
        "version": VERSION,
        "docs": "/docs",
    }
