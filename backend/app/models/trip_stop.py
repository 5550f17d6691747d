"""
Trip Stop database model.

Stops form the ordered itinerary of a trip.
"""

from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Boolean
from sqlalchemy.sql import func
from backend.app.db.session import Base


class TripStop(Base):
    """
    Trip Stop model.

    One visit to a place, in itinerary order.
    """
    __tablename__ = "trip_stops"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    trip_id = Column(Integer, ForeignKey('trips.id', ondelete="CASCADE"), nullable=False, index=True)
    place_id = Column(Integer, ForeignKey('places.id'), nullable=False, index=True)

    sequence_number = Column(Integer, nullable=False)  # Order in trip (1, 2, 3, ...)
    visit_duration_minutes = Column(Integer, nullable=False)
    notes = Column(String(500), nullable=True)
    ticket_required = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<TripStop(id={self.id}, trip_id={self.trip_id}, place_id={self.place_id}, seq={self.sequence_number})>"
