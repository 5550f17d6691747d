"""
Service wiring.

Builds the trip orchestrator and its collaborators for a request (or a
timer firing), and owns the process-wide call timer registry. Module
attributes are read at call time so tests can swap the session factory
and the Redis client.
"""

import logging

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core import redis_client as redis_client_module
from backend.app.db import session as session_module
from backend.app.db.session import get_db
from backend.app.domain.trips.orchestrator import TripOrchestrator
from backend.app.services.call_sessions import CallSessionService
from backend.app.services.call_timers import CallTimeoutScheduler
from backend.app.services.directory import Directory
from backend.app.services.outbox import OutboxDispatcher
from backend.app.services.realtime import RealtimeEmitter

logger = logging.getLogger(__name__)


def build_dispatcher() -> OutboxDispatcher:
    emitter = RealtimeEmitter(redis_client_module.redis_client)
    return OutboxDispatcher(session_module.AsyncSessionLocal, emitter)


def build_trip_orchestrator(db: AsyncSession, dispatcher: OutboxDispatcher = None) -> TripOrchestrator:
    return TripOrchestrator(
        db,
        calls=CallSessionService(db, call_timers),
        directory=Directory(db),
        dispatcher=dispatcher or build_dispatcher(),
    )


async def run_call_timeout(call_id: int) -> None:
    """Timer callback: auto-end a call that reached its deadline."""
    try:
        async with session_module.AsyncSessionLocal() as db:
            await build_trip_orchestrator(db).handle_call_timeout(call_id)
    except Exception:
        logger.exception("Auto-end of call %s failed", call_id)


async def drain_outbox() -> None:
    """Interval job retrying undelivered side effects."""
    await build_dispatcher().drain()


call_timers = CallTimeoutScheduler(on_timeout=run_call_timeout)


# FastAPI dependencies

def get_dispatcher() -> OutboxDispatcher:
    return build_dispatcher()


def get_trip_orchestrator(
    db: AsyncSession = Depends(get_db),
    dispatcher: OutboxDispatcher = Depends(get_dispatcher)
) -> TripOrchestrator:
    return build_trip_orchestrator(db, dispatcher)
