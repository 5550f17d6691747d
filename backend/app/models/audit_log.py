"""
Audit Log Database Model.

Tracks trip lifecycle actions for compliance and dispute handling.
"""

from sqlalchemy import Column, Integer, String, DateTime, JSON
from sqlalchemy.sql import func
from backend.app.db.session import Base


class AuditLog(Base):
    """
    Audit log model.

    Events logged include create_trip, select_guide_for_trip,
    initiate_trip_call, end_trip_call, accept_trip, reject_trip,
    cancel_trip, complete_trip, review_trip and confirm_trip_payment.
    """
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Who performed the action (None for system actions: webhooks, timers)
    actor_id = Column(Integer, index=True, nullable=True)

    # What action was performed
    action = Column(String(100), nullable=False, index=True)

    # What it was performed on
    resource_type = Column(String(50), nullable=True, index=True)
    resource_id = Column(Integer, index=True, nullable=True)

    # Additional context (JSON for flexibility)
    meta_data = Column(JSON, nullable=True)

    ip_address = Column(String(50), nullable=True)

    timestamp = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)

    def __repr__(self):
        return f"<AuditLog(id={self.id}, action='{self.action}', resource={self.resource_type}:{self.resource_id})>"
