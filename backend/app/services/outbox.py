"""
Transactional outbox for trip side effects.

Trip operations stage notification, audit and real-time events as
``OutboxEvent`` rows inside the same transaction as their status write.
After commit the ``OutboxDispatcher`` delivers them, each in its own
transaction, so one failing side effect never touches the trip or the
other events. Undelivered rows are retried by ``drain`` and moved to the
dead letter queue once they run out of attempts.
"""

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional, Set

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.core.clock import utcnow
from backend.app.core.config import settings
from backend.app.models.dlq import DeadLetterQueue, DLQStatus
from backend.app.models.outbox import OutboxEvent, OutboxKind, OutboxStatus
from backend.app.models.trip import Trip
from backend.app.services.audit import record_audit
from backend.app.services.notification_service import NotificationService
from backend.app.services.realtime import RealtimeEmitter

logger = logging.getLogger(__name__)


def status_payload(trip: Trip) -> Dict[str, Any]:
    """Real-time payload for the trip's current state."""
    return {
        "status": trip.status.value,
        "paymentStatus": trip.payment_status.value if trip.payment_status else None,
        "confirmedAt": trip.confirmed_at.isoformat() if trip.confirmed_at else None,
        "cancelledAt": trip.cancelled_at.isoformat() if trip.cancelled_at else None,
        "cancelledBy": trip.cancelled_by.value if trip.cancelled_by else None,
    }


class SideEffects:
    """
    Collects the side effects of one trip operation.

    Usage:
        effects = SideEffects(db)
        effects.notify(guide.user_id, "guide_selected", trip.id)
        effects.emit(trip)
        event_ids = await effects.stage()   # before commit
        await db.commit()
        await dispatcher.dispatch(event_ids)
    """

    def __init__(self, db: AsyncSession):
        self.db = db
        self._events: List[OutboxEvent] = []

    def notify(self, user_id: Optional[int], event: str, trip_id: Optional[int], payload: Optional[Dict[str, Any]] = None):
        if user_id is None:
            return
        self._events.append(OutboxEvent(
            kind=OutboxKind.NOTIFY,
            trip_id=trip_id,
            payload={"user_id": user_id, "event": event, "data": payload or {}},
        ))

    def audit(
        self,
        action: str,
        actor_id: Optional[int],
        resource_id: Optional[int],
        resource_type: str = "trip",
        details: Optional[Dict[str, Any]] = None
    ):
        self._events.append(OutboxEvent(
            kind=OutboxKind.AUDIT,
            trip_id=resource_id if resource_type == "trip" else None,
            payload={
                "action": action,
                "actor_id": actor_id,
                "resource_type": resource_type,
                "resource_id": resource_id,
                "details": details or {},
            },
        ))

    def emit(self, trip: Trip):
        payload = status_payload(trip)
        self._events.append(OutboxEvent(
            kind=OutboxKind.EMIT,
            trip_id=trip.id,
            payload={"trip_id": trip.id, "status": payload.pop("status"), "extra": payload},
        ))

    async def stage(self) -> List[int]:
        """Add the collected rows to the current transaction and return their ids."""
        if not self._events:
            return []
        self.db.add_all(self._events)
        await self.db.flush()
        ids = [event.id for event in self._events]
        self._events = []
        return ids


class OutboxDispatcher:

    def __init__(
        self,
        session_factory: async_sessionmaker,
        emitter: RealtimeEmitter,
        max_attempts: Optional[int] = None
    ):
        self.session_factory = session_factory
        self.emitter = emitter
        self.max_attempts = max_attempts or settings.outbox_max_attempts
        self._background: Set[asyncio.Task] = set()

    async def dispatch(self, event_ids: Iterable[int]) -> int:
        """
        Deliver freshly committed events. Never raises.

        Returns:
            Number of events delivered (0 when dispatch was deferred)
        """
        ids = list(event_ids)
        if not ids:
            return 0

        if not settings.outbox_dispatch_inline:
            task = asyncio.create_task(self._deliver_ids(ids))
            self._background.add(task)
            task.add_done_callback(self._background.discard)
            return 0

        return await self._deliver_ids(ids)

    async def drain(self, limit: int = 100) -> int:
        """Retry pending events, oldest first. Used by the periodic job."""
        try:
            async with self.session_factory() as db:
                result = await db.execute(
                    select(OutboxEvent.id)
                    .where(OutboxEvent.status == OutboxStatus.PENDING)
                    .order_by(OutboxEvent.id)
                    .limit(limit)
                )
                ids = list(result.scalars().all())
        except Exception:
            logger.exception("Could not read pending outbox events")
            return 0

        delivered = await self._deliver_ids(ids)
        if ids:
            logger.info("Outbox drain delivered %d/%d event(s)", delivered, len(ids))
        return delivered

    async def _deliver_ids(self, ids: List[int]) -> int:
        delivered = 0
        for event_id in ids:
            try:
                if await self._deliver_one(event_id):
                    delivered += 1
            except Exception:
                # Bookkeeping itself failed (database down); drain will retry
                logger.exception("Outbox event %s could not be processed", event_id)
        return delivered

    async def _deliver_one(self, event_id: int) -> bool:
        async with self.session_factory() as db:
            event = await db.get(OutboxEvent, event_id)
            if event is None or event.status != OutboxStatus.PENDING:
                return False
            kind, trip_id = event.kind, event.trip_id

            try:
                await self._apply(db, event)
                event.status = OutboxStatus.DELIVERED
                event.delivered_at = utcnow()
                event.attempts += 1
                await db.commit()
                return True
            except Exception as exc:
                await db.rollback()
                logger.warning(
                    "Outbox event %s (%s) failed: %s", event_id, kind.value, exc,
                    extra={"outbox_event_id": event_id, "trip_id": trip_id}
                )
                await self._record_failure(event_id, exc)
                return False

    async def _apply(self, db: AsyncSession, event: OutboxEvent) -> None:
        payload = event.payload or {}

        if event.kind == OutboxKind.NOTIFY:
            await NotificationService.create_notification(
                db,
                user_id=payload["user_id"],
                event=payload["event"],
                metadata={"trip_id": event.trip_id, **(payload.get("data") or {})},
            )
        elif event.kind == OutboxKind.AUDIT:
            await record_audit(
                db,
                action=payload["action"],
                actor_id=payload.get("actor_id"),
                resource_type=payload.get("resource_type"),
                resource_id=payload.get("resource_id"),
                details=payload.get("details"),
            )
        elif event.kind == OutboxKind.EMIT:
            sent = await self.emitter.emit_status_change(
                payload["trip_id"], payload["status"], payload.get("extra")
            )
            if not sent:
                raise RuntimeError("real-time transport unavailable")
        else:
            raise ValueError(f"Unknown outbox kind {event.kind}")

    async def _record_failure(self, event_id: int, exc: Exception) -> None:
        async with self.session_factory() as db:
            event = await db.get(OutboxEvent, event_id)
            if event is None:
                return

            event.attempts += 1
            event.last_error = str(exc)[:1000]

            if event.attempts >= self.max_attempts:
                event.status = OutboxStatus.FAILED
                db.add(DeadLetterQueue(
                    task_name=f"outbox.{event.kind.value}",
                    outbox_event_id=event.id,
                    error_message=event.last_error or type(exc).__name__,
                    payload=event.payload,
                    status=DLQStatus.FAILED,
                    retry_count=event.attempts,
                ))
                logger.error("Outbox event %s moved to dead letter queue after %d attempts", event.id, event.attempts)

            await db.commit()


async def requeue_failed_event(db: AsyncSession, event_id: int) -> Optional[OutboxEvent]:
    """Put a failed event back in the pending queue (admin operation)."""
    event = await db.get(OutboxEvent, event_id)
    if event is None or event.status != OutboxStatus.FAILED:
        return None

    event.status = OutboxStatus.PENDING
    event.attempts = 0
    event.last_error = None

    result = await db.execute(
        select(DeadLetterQueue).where(
            DeadLetterQueue.outbox_event_id == event_id,
            DeadLetterQueue.status == DLQStatus.FAILED,
        )
    )
    for item in result.scalars().all():
        item.status = DLQStatus.RETRYING
        item.retry_count += 1
        item.last_retry_at = utcnow()

    await db.flush()
    return event
