"""
StockLedger API — FastAPI Application Entry Point

The lifespan owns the replenishment scheduler: it is created and started
on startup and shut down (waiting for an in-flight run) when the server
receives its termination signal.
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from core.config import get_settings
from core.logging import configure_logging

settings = get_settings()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    from alerts.notify import build_notifier
    from db.session import AsyncSessionLocal
    from replenishment.audit import recover_interrupted_runs
    from replenishment.scheduler import ReplenishmentScheduler

    configure_logging(settings.log_level, settings.log_json)
    logger.info("StockLedger API starting up", version=settings.app_version)

    async with AsyncSessionLocal() as db:
        await recover_interrupted_runs(db)

    scheduler = ReplenishmentScheduler(AsyncSessionLocal, settings, notifier=build_notifier())
    app.state.scheduler = scheduler
    scheduler.start()

    yield

    logger.info("StockLedger API shutting down")
    await scheduler.shutdown()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Stock ledger and automated replenishment engine",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Import and register routers
from api.v1.routers import replenishment

app.include_router(replenishment.router)
app.include_router(replenishment.queue_router)


@app.get("/health")
async def health_check():
    """Health check endpoint for load balancers."""
    return {"status": "healthy", "version": settings.app_version}
