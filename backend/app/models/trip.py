"""
Trip database model.

The trip is the booking aggregate: it tracks a tourist/guide engagement from
request through negotiation, payment and completion.
"""

from sqlalchemy import Column, Integer, String, Text, Float, ForeignKey, DateTime, Enum, JSON
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from backend.app.db.session import Base
from backend.app.models.trip_enums import TripStatus, PaymentStatus, CancellationActor


class Trip(Base):
    """
    Trip model.

    ``status`` is only ever written through a compare-and-swap on its
    previous value (see ``TripStore.update_if_status``).
    """
    __tablename__ = "trips"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Parties
    tourist_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    selected_guide_id = Column(Integer, ForeignKey('guides.id'), nullable=True, index=True)
    candidate_guide_ids = Column(JSON, nullable=True)  # Snapshot offered to the tourist

    # Origin
    province_id = Column(Integer, ForeignKey('provinces.id'), nullable=False, index=True)
    created_from_place_id = Column(Integer, ForeignKey('places.id'), nullable=True)
    agreement_source = Column(String(50), nullable=True)
    agreement_note = Column(Text, nullable=True)

    # Schedule
    start_at = Column(DateTime(timezone=True), nullable=False, index=True)
    total_duration_minutes = Column(Integer, nullable=False, default=240)
    end_at = Column(DateTime(timezone=True), nullable=False, index=True)

    # Meeting point
    meeting_lat = Column(Float, nullable=True)
    meeting_lng = Column(Float, nullable=True)
    meeting_address = Column(String(500), nullable=True)

    # Commercial
    negotiated_price = Column(Float, nullable=True)
    price_breakdown = Column(JSON, nullable=True)  # guide_fee, tickets, service_fee, total
    currency = Column(String(10), nullable=False, default="usd")
    payment_status = Column(Enum(PaymentStatus), default=PaymentStatus.UNPAID, nullable=False, index=True)
    stripe_session_id = Column(String(255), nullable=True, index=True)
    stripe_payment_intent_id = Column(String(255), nullable=True)

    # Status
    status = Column(Enum(TripStatus), default=TripStatus.SELECTING_GUIDE, nullable=False, index=True)

    # Cancellation / rejection
    cancellation_reason = Column(Text, nullable=True)
    cancelled_by = Column(Enum(CancellationActor), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    # Post-confirmation change proposals
    proposal = Column(JSON, nullable=True)
    proposal_history = Column(JSON, nullable=True)

    # Review
    review_rating = Column(Integer, nullable=True)
    review_comment = Column(String(500), nullable=True)
    reviewed_at = Column(DateTime(timezone=True), nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    stops = relationship(
        "TripStop",
        order_by="TripStop.sequence_number",
        lazy="selectin",
        viewonly=True,
    )
    call_records = relationship(
        "TripCallRecord",
        order_by="TripCallRecord.id",
        lazy="selectin",
        viewonly=True,
    )

    @property
    def guide_id(self):
        """Read-only alias kept for older clients."""
        return self.selected_guide_id

    @property
    def has_meeting_point(self) -> bool:
        return self.meeting_lat is not None and self.meeting_lng is not None

    def __repr__(self):
        return f"<Trip(id={self.id}, tourist_id={self.tourist_id}, status='{self.status.value}')>"
