"""
Outbox Event Model.

Side effects (notifications, audit records, real-time emits) are appended
here in the same transaction as the trip write and delivered after commit.
"""

from sqlalchemy import Column, Integer, String, Text, DateTime, JSON, Enum
from sqlalchemy.sql import func
from backend.app.db.session import Base
import enum


class OutboxKind(str, enum.Enum):
    NOTIFY = "notify"
    AUDIT = "audit"
    EMIT = "emit"


class OutboxStatus(str, enum.Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"  # Moved to the dead letter queue


class OutboxEvent(Base):
    """Pending side effect."""
    __tablename__ = "outbox_events"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    kind = Column(Enum(OutboxKind), nullable=False, index=True)
    trip_id = Column(Integer, nullable=True, index=True)
    payload = Column(JSON, nullable=False)

    status = Column(Enum(OutboxStatus), default=OutboxStatus.PENDING, nullable=False, index=True)
    attempts = Column(Integer, default=0, nullable=False)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    delivered_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<OutboxEvent(id={self.id}, kind='{self.kind.value}', status='{self.status.value}')>"
