"""
FastAPI Application Entry Point.

This is the main application file for the Local Guide Backend.
"""

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from backend.app.core.config import settings
from backend.app.api.v1.router import router as api_v1_router
from backend.app.core.observability import ObservabilityMiddleware
from backend.app.core.redis_client import ping_redis, close_redis
from backend.app.core.scheduler import get_scheduler, start_scheduler, stop_scheduler
from backend.app.db.session import engine, Base, AsyncSessionLocal
from backend.app.core.exceptions import (
    AppException,
    app_exception_handler,
    http_exception_handler,
    validation_exception_handler,
    generic_exception_handler
)
from backend.app.services.wiring import call_timers, drain_outbox

# Import models to ensure they are registered with Base
from backend.app.models.user import User  # noqa: F401
from backend.app.models.catalog import Province, Place  # noqa: F401
from backend.app.models.guide import Guide  # noqa: F401
from backend.app.models.trip import Trip  # noqa: F401
from backend.app.models.trip_stop import TripStop  # noqa: F401
from backend.app.models.call_session import CallSession  # noqa: F401
from backend.app.models.trip_call_record import TripCallRecord  # noqa: F401
from backend.app.models.audit_log import AuditLog  # noqa: F401
from backend.app.models.notification import Notification  # noqa: F401
from backend.app.models.outbox import OutboxEvent  # noqa: F401
from backend.app.models.dlq import DeadLetterQueue  # noqa: F401

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

OUTBOX_DRAIN_JOB_ID = "outbox-drain"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for application startup/shutdown.

    1. Creates database tables on startup.
    2. Starts the scheduler, restores call timers and the outbox drain job.
    3. Stops the scheduler and closes Redis on shutdown.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    if settings.scheduler_enabled:
        scheduler = get_scheduler()
        scheduler.add_job(
            drain_outbox,
            trigger="interval",
            seconds=settings.outbox_drain_interval_seconds,
            id=OUTBOX_DRAIN_JOB_ID,
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        start_scheduler()
        await call_timers.recover(AsyncSessionLocal)

    yield

    if settings.scheduler_enabled:
        stop_scheduler()
    await close_redis()


# Initialize FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.api_version,
    debug=settings.debug,
    description="Trip negotiation backend for the tourist/guide marketplace",
    lifespan=lifespan,
)

app.add_middleware(ObservabilityMiddleware)

# Register global exception handlers
app.add_exception_handler(AppException, app_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)


@app.get("/health", tags=["Health"])
async def health_check():
    """
    Health check endpoint.

    Returns:
        dict: Status, application information and real-time transport state
    """
    return {
        "status": "healthy",
        "app_name": settings.app_name,
        "version": settings.api_version,
        "realtime": "up" if await ping_redis() else "down",
    }


# Include API v1 router
app.include_router(api_v1_router, prefix=f"/{settings.api_version}")


@app.get("/", tags=["Root"])
async def root():
    return {
        "message": "Welcome to Local Guide Backend API",
        "docs": "/docs",
        "health": "/health",
    }
