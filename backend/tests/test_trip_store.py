"""
Trip store tests: the compare-and-swap primitive and the overlap query.
"""

from datetime import timedelta

import pytest

from backend.app.core.clock import utcnow
from backend.app.core.exceptions import InputValidationError
from backend.app.domain.trips.trip_store import TripStore
from backend.app.models.trip import Trip
from backend.app.models.trip_enums import TripStatus


async def _insert_trip(db, seed, status, start_in_hours=48, duration=120, guide_id=None):
    start_at = utcnow() + timedelta(hours=start_in_hours)
    trip = Trip(
        tourist_id=seed.tourist.id,
        province_id=seed.province.id,
        selected_guide_id=guide_id,
        start_at=start_at,
        total_duration_minutes=duration,
        end_at=start_at + timedelta(minutes=duration),
        status=status,
    )
    db.add(trip)
    await db.commit()
    return trip.id


@pytest.mark.asyncio
async def test_update_if_status_applies_patch(db_session, seed):
    trip_id = await _insert_trip(db_session, seed, TripStatus.SELECTING_GUIDE)
    store = TripStore(db_session)

    updated, trip = await store.update_if_status(trip_id, TripStatus.SELECTING_GUIDE, {
        "status": TripStatus.AWAITING_CALL,
        "selected_guide_id": seed.guide.id,
    })

    assert updated is True
    assert trip.status == TripStatus.AWAITING_CALL
    assert trip.selected_guide_id == seed.guide.id


@pytest.mark.asyncio
async def test_update_if_status_with_stale_expectation_writes_nothing(db_session, seed):
    trip_id = await _insert_trip(db_session, seed, TripStatus.AWAITING_CALL, guide_id=seed.guide.id)
    store = TripStore(db_session)

    updated, trip = await store.update_if_status(trip_id, TripStatus.SELECTING_GUIDE, {
        "status": TripStatus.CANCELLED,
    })

    assert updated is False
    assert trip.status == TripStatus.AWAITING_CALL


@pytest.mark.asyncio
async def test_update_if_status_unknown_trip(db_session, seed):
    updated, trip = await TripStore(db_session).update_if_status(9999, TripStatus.DRAFT, {"status": TripStatus.CANCELLED})

    assert updated is False
    assert trip is None


@pytest.mark.asyncio
async def test_negative_price_patch_rejected(db_session, seed):
    trip_id = await _insert_trip(db_session, seed, TripStatus.PENDING_CONFIRMATION)

    with pytest.raises(InputValidationError):
        await TripStore(db_session).update_if_status(
            trip_id, TripStatus.PENDING_CONFIRMATION, {"negotiated_price": -1}
        )


@pytest.mark.asyncio
async def test_find_overlapping_only_counts_booked_trips(db_session, seed):
    confirmed_id = await _insert_trip(db_session, seed, TripStatus.CONFIRMED, 48, 120, seed.guide.id)
    await _insert_trip(db_session, seed, TripStatus.AWAITING_PAYMENT, 48, 120, seed.guide.id)
    await _insert_trip(db_session, seed, TripStatus.CONFIRMED, 48, 120, seed.second_guide.id)
    store = TripStore(db_session)

    start = utcnow() + timedelta(hours=49)
    overlapping = await store.find_overlapping(seed.guide.id, start, start + timedelta(hours=2))
    assert [trip.id for trip in overlapping] == [confirmed_id]

    # A slot starting after the confirmed trip ends is free
    later = utcnow() + timedelta(hours=50, minutes=1)
    assert await store.find_overlapping(seed.guide.id, later, later + timedelta(hours=1)) == []

    excluded = await store.find_overlapping(
        seed.guide.id, start, start + timedelta(hours=2), exclude_trip_id=confirmed_id
    )
    assert excluded == []


@pytest.mark.asyncio
async def test_replace_itinerary_renumbers_stops(db_session, seed):
    trip_id = await _insert_trip(db_session, seed, TripStatus.CONFIRMED)
    store = TripStore(db_session)

    await store.replace_itinerary(trip_id, [
        {"place_id": seed.museum.id, "visit_duration_minutes": 60},
        {"place_id": seed.bazaar.id, "visit_duration_minutes": 30},
    ])
    await store.replace_itinerary(trip_id, [
        {"place_id": seed.citadel.id, "visit_duration_minutes": 45, "ticket_required": True},
    ])
    await db_session.commit()

    trip = await store.get(trip_id)
    assert [(stop.place_id, stop.sequence_number) for stop in trip.stops] == [(seed.citadel.id, 1)]
    assert trip.stops[0].ticket_required is True
