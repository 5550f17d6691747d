"""
Concurrency Tests.

Validates that racing writers on the same trip resolve to exactly one
winner, and that the loser gets a conflict instead of overwriting.
"""

import asyncio
from datetime import timedelta
from types import SimpleNamespace

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import NullPool

import backend.app.db.session as session_module
from backend.app.core.clock import utcnow
from backend.app.core.exceptions import ConcurrencyConflictError
from backend.app.db.session import Base
from backend.app.domain.trips.orchestrator import TripOrchestrator
from backend.app.domain.trips.trip_store import TripStore
from backend.app.models.audit_log import AuditLog
from backend.app.models.catalog import Province, Place
from backend.app.models.enums import UserRole
from backend.app.models.guide import Guide
from backend.app.models.trip import Trip
from backend.app.models.trip_enums import TripStatus
from backend.app.models.user import User
from backend.app.services.call_sessions import CallSessionService
from backend.app.services.directory import Directory
from backend.app.services.outbox import OutboxDispatcher
from backend.app.services.realtime import RealtimeEmitter


@pytest.fixture
async def file_db(tmp_path):
    """A file-backed database so each session gets its own connection."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'race.db'}",
        poolclass=NullPool,
        connect_args={"timeout": 15},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)

    await engine.dispose()


async def _seed_trip(factory, status, selected=True):
    """One tourist, two guides and a trip in ``status``."""
    async with factory() as db:
        province = Province(name="Giza")
        db.add(province)
        await db.flush()
        db.add(Place(name="Pyramids", province_id=province.id, ticket_price=10.0, lat=29.9792, lng=31.1342))

        tourist = User(username="race_tourist", email="rt@example.com", role=UserRole.TOURIST)
        guide_user = User(username="race_guide", email="rg@example.com", role=UserRole.GUIDE)
        rival_user = User(username="race_rival", email="rr@example.com", role=UserRole.GUIDE)
        db.add_all([tourist, guide_user, rival_user])
        await db.flush()

        guide = Guide(user_id=guide_user.id, province_id=province.id, languages=["english"], price_per_hour=30.0, rating=4.0)
        rival = Guide(user_id=rival_user.id, province_id=province.id, languages=["english"], price_per_hour=25.0, rating=4.2)
        db.add_all([guide, rival])
        await db.flush()

        start_at = utcnow() + timedelta(days=3)
        trip = Trip(
            tourist_id=tourist.id,
            province_id=province.id,
            selected_guide_id=guide.id if selected else None,
            start_at=start_at,
            total_duration_minutes=120,
            end_at=start_at + timedelta(minutes=120),
            negotiated_price=100.0 if selected else None,
            status=status,
        )
        db.add(trip)
        await db.commit()
        return SimpleNamespace(
            trip_id=trip.id, tourist_id=tourist.id, guide_user_id=guide_user.id,
            guide_id=guide.id, rival_id=rival.id,
        )


def _gate_first_loads(monkeypatch, parties=2):
    """Make the first ``parties`` trip loads wait for each other."""
    barrier = asyncio.Barrier(parties)
    original_get = TripStore.get
    loads = {"count": 0}

    async def gated_get(self, requested_id):
        trip = await original_get(self, requested_id)
        loads["count"] += 1
        if loads["count"] <= parties:
            # Every writer has read the same pre-image before anyone writes
            await barrier.wait()
        return trip

    monkeypatch.setattr(TripStore, "get", gated_get)
    return original_get


def _orchestrator(db, factory, timers, redis):
    return TripOrchestrator(
        db,
        calls=CallSessionService(db, timers),
        directory=Directory(db),
        dispatcher=OutboxDispatcher(factory, RealtimeEmitter(redis)),
    )


@pytest.mark.asyncio
async def test_select_guide_race_has_one_winner(file_db, timers, redis_mock, monkeypatch):
    """Two selections of different guides; the loser must not overwrite the winner."""
    seeded = await _seed_trip(file_db, TripStatus.SELECTING_GUIDE, selected=False)
    original_get = _gate_first_loads(monkeypatch)

    async def select_as(guide_id):
        async with file_db() as db:
            return await _orchestrator(db, file_db, timers, redis_mock).select_guide(
                seeded.trip_id, seeded.tourist_id, guide_id
            )

    results = await asyncio.gather(
        select_as(seeded.guide_id), select_as(seeded.rival_id), return_exceptions=True
    )

    conflicts = [result for result in results if isinstance(result, ConcurrencyConflictError)]
    winners = [result for result in results if isinstance(result, Trip)]
    assert len(conflicts) == 1, results
    assert len(winners) == 1, results
    assert conflicts[0].details == {
        "trip_id": seeded.trip_id,
        "expected_status": "selecting_guide",
        "current_status": "awaiting_call",
    }

    monkeypatch.setattr(TripStore, "get", original_get)
    async with file_db() as db:
        final = await TripStore(db).get(seeded.trip_id)
        assert final.status == TripStatus.AWAITING_CALL
        assert final.selected_guide_id == winners[0].selected_guide_id

        audit = await db.execute(select(AuditLog.action).where(AuditLog.resource_id == seeded.trip_id))
        assert list(audit.scalars().all()) == ["select_guide_for_trip"]

    assert [m["status"] for m in redis_mock.messages_for(seeded.trip_id)] == ["awaiting_call"]


@pytest.mark.asyncio
async def test_accept_and_cancel_race_has_one_winner(file_db, timers, redis_mock, monkeypatch):
    """Both writers validate against pending_confirmation; only one CAS lands."""
    seeded = await _seed_trip(file_db, TripStatus.PENDING_CONFIRMATION)
    original_get = _gate_first_loads(monkeypatch)

    async def accept():
        async with file_db() as db:
            return await _orchestrator(db, file_db, timers, redis_mock).guide_accept(
                seeded.trip_id, seeded.guide_user_id
            )

    async def cancel():
        async with file_db() as db:
            return await _orchestrator(db, file_db, timers, redis_mock).cancel_trip(
                seeded.tourist_id, seeded.trip_id, "Changed my mind", UserRole.TOURIST
            )

    results = await asyncio.gather(accept(), cancel(), return_exceptions=True)

    conflicts = [result for result in results if isinstance(result, ConcurrencyConflictError)]
    winners = [result for result in results if isinstance(result, Trip)]
    assert len(conflicts) == 1, results
    assert len(winners) == 1, results
    assert conflicts[0].details["expected_status"] == "pending_confirmation"

    monkeypatch.setattr(TripStore, "get", original_get)
    async with file_db() as db:
        final = await TripStore(db).get(seeded.trip_id)
        assert final.status == winners[0].status
        assert final.status in (TripStatus.AWAITING_PAYMENT, TripStatus.CANCELLED)

        audit = await db.execute(select(AuditLog.action).where(AuditLog.resource_id == seeded.trip_id))
        actions = list(audit.scalars().all())
    assert len([a for a in actions if a in ("accept_trip", "cancel_trip")]) == 1


@pytest.mark.asyncio
async def test_stale_writer_gets_conflict(orchestrator, seed, negotiated_trip, timers, dispatcher, monkeypatch, db_session):
    """A cancellation lands between the guide's read and write."""
    trip = await negotiated_trip()
    trip_id = trip.id

    async with session_module.AsyncSessionLocal() as other_db:
        competitor = TripOrchestrator(
            other_db,
            calls=CallSessionService(other_db, timers),
            directory=Directory(other_db),
            dispatcher=dispatcher,
        )
        original_lookup = Directory.find_guide_by_user
        state = {"interleaved": False}

        async def lookup_then_cancel(self, user_id):
            guide = await original_lookup(self, user_id)
            if not state["interleaved"]:
                state["interleaved"] = True
                await competitor.cancel_trip(seed.tourist.id, trip_id, "Plans changed", UserRole.TOURIST)
            return guide

        monkeypatch.setattr(Directory, "find_guide_by_user", lookup_then_cancel)

        with pytest.raises(ConcurrencyConflictError) as exc_info:
            await orchestrator.guide_accept(trip_id, seed.guide_user.id)

    assert exc_info.value.status_code == 409
    assert exc_info.value.details == {
        "trip_id": trip_id,
        "expected_status": "pending_confirmation",
        "current_status": "cancelled",
    }

    trip = await orchestrator.store.get(trip_id)
    assert trip.status == TripStatus.CANCELLED
    assert trip.price_breakdown is None

    audit = await db_session.execute(select(AuditLog.action).where(AuditLog.resource_id == trip_id))
    actions = list(audit.scalars().all())
    assert "cancel_trip" in actions
    assert "accept_trip" not in actions
