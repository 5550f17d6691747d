"""
Failure Injection Tests.

Validates that trip state changes survive broken side effects: the
real-time transport going away, audit writes failing and the payment
provider timing out.
"""

import pytest
from sqlalchemy import select

from backend.app.core.reliability import CircuitBreaker, CircuitOpenError
from backend.app.models.dlq import DeadLetterQueue, DLQStatus
from backend.app.models.outbox import OutboxEvent, OutboxKind, OutboxStatus
from backend.app.models.trip_enums import TripStatus
from backend.app.services.outbox import OutboxDispatcher, SideEffects, requeue_failed_event
from backend.app.services.payments import PaymentConfirmationHandler
from backend.app.services.realtime import RealtimeEmitter


async def _pending_events(db, kind=None):
    query = select(OutboxEvent).where(OutboxEvent.status == OutboxStatus.PENDING)
    if kind is not None:
        query = query.where(OutboxEvent.kind == kind)
    result = await db.execute(query.execution_options(populate_existing=True))
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Real-time transport
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_emitter_swallows_transport_errors(redis_mock):
    redis_mock.fail_publish = True

    assert await RealtimeEmitter(redis_mock).emit_status_change(1, "awaiting_call") is False
    assert await RealtimeEmitter(None).emit_status_change(1, "awaiting_call") is False
    assert redis_mock.published == []


@pytest.mark.asyncio
async def test_trip_update_survives_redis_outage(orchestrator, seed, new_trip, db_session, redis_mock, dispatcher):
    trip = await new_trip()
    redis_mock.fail_publish = True

    trip = await orchestrator.select_guide(trip.id, seed.tourist.id, seed.guide.id)

    assert trip.status == TripStatus.AWAITING_CALL
    stuck = await _pending_events(db_session, OutboxKind.EMIT)
    assert len(stuck) == 1
    assert stuck[0].attempts == 1
    assert stuck[0].last_error == "real-time transport unavailable"

    # Notification and audit rows were delivered independently
    assert await _pending_events(db_session, OutboxKind.NOTIFY) == []
    assert await _pending_events(db_session, OutboxKind.AUDIT) == []

    redis_mock.fail_publish = False
    assert await dispatcher.drain() == 1
    assert [m["status"] for m in redis_mock.messages_for(trip.id)] == ["awaiting_call"]
    assert await _pending_events(db_session) == []


@pytest.mark.asyncio
async def test_failed_audit_write_does_not_block_trip(orchestrator, seed, new_trip, db_session, mocker):
    trip = await new_trip()
    mocker.patch("backend.app.services.outbox.record_audit", side_effect=RuntimeError("audit table locked"))

    trip = await orchestrator.select_guide(trip.id, seed.tourist.id, seed.guide.id)

    assert trip.status == TripStatus.AWAITING_CALL
    stuck = await _pending_events(db_session, OutboxKind.AUDIT)
    assert len(stuck) == 1
    assert stuck[0].payload["action"] == "select_guide_for_trip"
    assert "audit table locked" in stuck[0].last_error


# ---------------------------------------------------------------------------
# Dead letter queue
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_exhausted_event_moves_to_dead_letter_queue(new_trip, db_session, redis_mock, dispatcher):
    trip = await new_trip()
    strict = OutboxDispatcher(dispatcher.session_factory, RealtimeEmitter(redis_mock), max_attempts=2)
    redis_mock.fail_publish = True

    effects = SideEffects(db_session)
    effects.emit(trip)
    [event_id] = await effects.stage()
    await db_session.commit()

    assert await strict.dispatch([event_id]) == 0
    assert await strict.drain() == 0

    event = await db_session.get(OutboxEvent, event_id, populate_existing=True)
    assert event.status == OutboxStatus.FAILED
    assert event.attempts == 2

    result = await db_session.execute(select(DeadLetterQueue).where(DeadLetterQueue.outbox_event_id == event_id))
    dead = result.scalar_one()
    assert dead.task_name == "outbox.emit"
    assert dead.status == DLQStatus.FAILED
    assert dead.retry_count == 2
    assert dead.payload["trip_id"] == trip.id

    # Failed events are no longer picked up by the drain
    redis_mock.fail_publish = False
    assert await strict.drain() == 0
    assert redis_mock.published == []


@pytest.mark.asyncio
async def test_requeue_failed_event(new_trip, db_session, redis_mock, dispatcher):
    trip = await new_trip()
    strict = OutboxDispatcher(dispatcher.session_factory, RealtimeEmitter(redis_mock), max_attempts=1)
    redis_mock.fail_publish = True

    effects = SideEffects(db_session)
    effects.emit(trip)
    [event_id] = await effects.stage()
    await db_session.commit()
    await strict.dispatch([event_id])
    # The staged row in this session still reads as pending
    db_session.expunge_all()

    redis_mock.fail_publish = False
    event = await requeue_failed_event(db_session, event_id)
    assert event.status == OutboxStatus.PENDING
    assert event.attempts == 0
    await db_session.commit()

    result = await db_session.execute(select(DeadLetterQueue).where(DeadLetterQueue.outbox_event_id == event_id))
    dead = result.scalar_one()
    assert dead.status == DLQStatus.RETRYING
    assert dead.retry_count == 2
    assert dead.last_retry_at is not None

    assert await strict.dispatch([event_id]) == 1
    event = await db_session.get(OutboxEvent, event_id, populate_existing=True)
    assert event.status == OutboxStatus.DELIVERED
    assert len(redis_mock.messages_for(trip.id)) == 1

    # Only failed events can be requeued
    assert await requeue_failed_event(db_session, event_id) is None
    assert await requeue_failed_event(db_session, 9999) is None


@pytest.mark.asyncio
async def test_dispatcher_never_raises_without_database(redis_mock):
    def broken_factory():
        raise ConnectionError("database unreachable")

    dispatcher = OutboxDispatcher(broken_factory, RealtimeEmitter(redis_mock))

    assert await dispatcher.dispatch([1, 2]) == 0
    assert await dispatcher.drain() == 0
    assert await dispatcher.dispatch([]) == 0


# ---------------------------------------------------------------------------
# Payment webhook
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_webhook_reports_internal_errors(orchestrator, seed, negotiated_trip, db_session, dispatcher, checkout_event, mocker):
    trip = await negotiated_trip()
    trip = await orchestrator.guide_accept(trip.id, seed.guide_user.id)
    mocker.patch.object(PaymentConfirmationHandler, "_confirm", side_effect=RuntimeError("deadlock"))

    ack = await PaymentConfirmationHandler(db_session, dispatcher).handle_event(checkout_event(trip.id))

    assert ack == {"received": True, "processed": False, "reason": "internal_error"}
    trip = await orchestrator.store.get(trip.id)
    assert trip.status == TripStatus.AWAITING_PAYMENT


# ---------------------------------------------------------------------------
# Circuit breaker
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_circuit_breaker_opens_after_threshold():
    breaker = CircuitBreaker("test", failure_threshold=2, reset_timeout=60)
    calls = []

    async def failing():
        calls.append(1)
        raise TimeoutError("provider timeout")

    for _ in range(2):
        with pytest.raises(TimeoutError):
            await breaker.call(failing)

    assert breaker.state == "OPEN"
    with pytest.raises(CircuitOpenError):
        await breaker.call(failing)
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_circuit_breaker_half_open_trial():
    breaker = CircuitBreaker("test", failure_threshold=1, reset_timeout=60)

    async def failing():
        raise TimeoutError("provider timeout")

    async def healthy():
        return "ok"

    with pytest.raises(TimeoutError):
        await breaker.call(failing)
    assert breaker.state == "OPEN"

    # Pretend the reset timeout elapsed
    breaker.last_failure_time -= 61
    with pytest.raises(TimeoutError):
        await breaker.call(failing)
    assert breaker.state == "OPEN"

    breaker.last_failure_time -= 61
    assert await breaker.call(healthy) == "ok"
    assert breaker.state == "CLOSED"
    assert breaker.failures == 0
