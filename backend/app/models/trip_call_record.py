"""
Trip call history model.

Denormalized copy of each negotiation call, owned by the trip. The live
record is the CallSession row.
"""

from sqlalchemy import Column, Integer, Float, String, ForeignKey, DateTime
from sqlalchemy.sql import func
from backend.app.db.session import Base


class TripCallRecord(Base):
    """One negotiation call in a trip's history."""
    __tablename__ = "trip_call_records"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    trip_id = Column(Integer, ForeignKey('trips.id', ondelete="CASCADE"), nullable=False, index=True)
    call_session_id = Column(Integer, ForeignKey('call_sessions.id'), nullable=False, index=True)
    guide_id = Column(Integer, ForeignKey('guides.id'), nullable=True)

    started_at = Column(DateTime(timezone=True), nullable=False)
    ended_at = Column(DateTime(timezone=True), nullable=True)
    duration_seconds = Column(Integer, nullable=True)
    summary = Column(String(2000), nullable=True)
    negotiated_price = Column(Float, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<TripCallRecord(trip_id={self.trip_id}, call_session_id={self.call_session_id})>"
