"""
Trip Store.

Persistence for trip records. Status changes go through a single
compare-and-swap primitive, ``update_if_status``; the store never commits,
the calling operation owns the transaction.
"""

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import select, update, delete
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.exceptions import ResourceNotFoundError, InputValidationError
from backend.app.models.trip import Trip
from backend.app.models.trip_stop import TripStop
from backend.app.models.trip_call_record import TripCallRecord
from backend.app.models.trip_enums import TripStatus

# Statuses in which a guide is considered booked for the trip's time slot
BOOKED_STATUSES = (TripStatus.CONFIRMED, TripStatus.IN_PROGRESS)


class TripStore:

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, trip_id: int) -> Optional[Trip]:
        """Fetch the current row, overwriting any stale identity-map copy."""
        result = await self.db.execute(
            select(Trip).where(Trip.id == trip_id).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_or_404(self, trip_id: int) -> Trip:
        trip = await self.get(trip_id)
        if not trip:
            raise ResourceNotFoundError("Trip", trip_id)
        return trip

    async def reload(self, trip_id: int) -> Optional[Trip]:
        return await self.get(trip_id)

    async def find_by_call_id(self, call_id: int) -> Optional[Trip]:
        result = await self.db.execute(
            select(Trip)
            .join(TripCallRecord, TripCallRecord.trip_id == Trip.id)
            .where(TripCallRecord.call_session_id == call_id)
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def add(self, trip: Trip) -> Trip:
        self.db.add(trip)
        await self.db.flush()
        return trip

    async def update_if_status(
        self,
        trip_id: int,
        expected_status: TripStatus,
        patch: Dict[str, Any]
    ) -> Tuple[bool, Optional[Trip]]:
        """
        Apply ``patch`` only if the trip's status is still ``expected_status``.

        Args:
            trip_id: Trip to update
            expected_status: Status the caller validated against
            patch: Column values to write (may include a new ``status``)

        Returns:
            (updated, trip) where ``trip`` is the freshly reloaded row. When
            ``updated`` is False nothing was written and the caller decides
            between conflict, retry or no-op.

        Raises:
            InputValidationError: patch violates a column constraint
        """
        self._validate_patch(patch)

        stmt = (
            update(Trip)
            .where(Trip.id == trip_id, Trip.status == expected_status)
            .values(**patch)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        updated = result.rowcount == 1

        trip = await self.reload(trip_id)
        return updated, trip

    async def find_overlapping(
        self,
        guide_id: int,
        start_at: datetime,
        end_at: datetime,
        statuses: Iterable[TripStatus] = BOOKED_STATUSES,
        exclude_trip_id: Optional[int] = None
    ) -> List[Trip]:
        """
        Trips of ``guide_id`` in one of ``statuses`` intersecting [start_at, end_at).
        """
        query = select(Trip).where(
            Trip.selected_guide_id == guide_id,
            Trip.status.in_(list(statuses)),
            Trip.start_at < end_at,
            Trip.end_at > start_at,
        )
        if exclude_trip_id is not None:
            query = query.where(Trip.id != exclude_trip_id)

        result = await self.db.execute(query.order_by(Trip.start_at))
        return list(result.scalars().all())

    # Child rows. Only called after a successful CAS in the same transaction.

    async def replace_itinerary(self, trip_id: int, stops: List[Dict[str, Any]]) -> None:
        await self.db.execute(delete(TripStop).where(TripStop.trip_id == trip_id))
        for index, stop in enumerate(stops, start=1):
            self.db.add(TripStop(
                trip_id=trip_id,
                place_id=stop["place_id"],
                sequence_number=index,
                visit_duration_minutes=stop["visit_duration_minutes"],
                notes=stop.get("notes"),
                ticket_required=bool(stop.get("ticket_required", False)),
            ))
        await self.db.flush()

    async def append_call_record(
        self,
        trip_id: int,
        call_session_id: int,
        guide_id: Optional[int],
        started_at: datetime
    ) -> TripCallRecord:
        record = TripCallRecord(
            trip_id=trip_id,
            call_session_id=call_session_id,
            guide_id=guide_id,
            started_at=started_at,
        )
        self.db.add(record)
        await self.db.flush()
        return record

    async def close_call_record(self, trip_id: int, call_session_id: int, values: Dict[str, Any]) -> bool:
        result = await self.db.execute(
            update(TripCallRecord)
            .where(
                TripCallRecord.trip_id == trip_id,
                TripCallRecord.call_session_id == call_session_id,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    @staticmethod
    def _validate_patch(patch: Dict[str, Any]) -> None:
        price = patch.get("negotiated_price")
        if price is not None and price < 0:
            raise InputValidationError("Negotiated price cannot be negative", {"negotiated_price": price})

        duration = patch.get("total_duration_minutes")
        if duration is not None and duration < 1:
            raise InputValidationError("Trip duration must be at least one minute", {"total_duration_minutes": duration})
