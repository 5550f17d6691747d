"""
Call Session database model.

Authoritative record of one live negotiation call. Once ended it is never
modified again.
"""

from sqlalchemy import Column, Integer, String, Float, ForeignKey, DateTime, Enum
from sqlalchemy.sql import func
from backend.app.db.session import Base
import enum


class CallStatus(str, enum.Enum):
    RINGING = "ringing"
    ONGOING = "ongoing"
    ENDED = "ended"
    CANCELLED = "cancelled"


class CallEndReason(str, enum.Enum):
    COMPLETED = "completed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    NO_ANSWER = "no_answer"
    TECHNICAL_ISSUE = "technical_issue"


LIVE_CALL_STATUSES = (CallStatus.RINGING, CallStatus.ONGOING)


class CallSession(Base):
    """
    Call session.

    ``auto_end_at`` is persisted so pending timeouts can be rescheduled
    after a restart.
    """
    __tablename__ = "call_sessions"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    channel_name = Column(String(100), unique=True, nullable=False, index=True)
    trip_id = Column(Integer, ForeignKey('trips.id'), nullable=True, index=True)

    # Parties
    tourist_user_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    guide_user_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    tourist_uid = Column(Integer, nullable=False)  # Numeric ids used by the call transport
    guide_uid = Column(Integer, nullable=False)

    status = Column(Enum(CallStatus), default=CallStatus.RINGING, nullable=False, index=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    ended_at = Column(DateTime(timezone=True), nullable=True)

    max_duration_seconds = Column(Integer, nullable=False, default=300)
    auto_end_at = Column(DateTime(timezone=True), nullable=True, index=True)

    # Outcome
    end_reason = Column(Enum(CallEndReason), nullable=True)
    summary = Column(String(1000), nullable=True)
    negotiated_price = Column(Float, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_CALL_STATUSES

    def __repr__(self):
        return f"<CallSession(id={self.id}, channel='{self.channel_name}', status='{self.status.value}')>"
