"""
Admin API Schema Definitions.

Pydantic schemas for admin trip and operations endpoints.
"""

from pydantic import BaseModel
from datetime import datetime
from typing import Optional, List, Dict, Any

from backend.app.models.outbox import OutboxKind, OutboxStatus


class OutboxEventResponse(BaseModel):
    """Schema for a side-effect outbox row."""
    id: int
    kind: OutboxKind
    trip_id: Optional[int]
    payload: Dict[str, Any]
    status: OutboxStatus
    attempts: int
    last_error: Optional[str]
    created_at: datetime
    delivered_at: Optional[datetime]

    class Config:
        from_attributes = True


class OutboxEventList(BaseModel):
    events: List[OutboxEventResponse]
    total: int


class AuditLogResponse(BaseModel):
    """Schema for audit log entry."""
    id: int
    actor_id: Optional[int]
    action: str
    resource_type: Optional[str]
    resource_id: Optional[int]
    meta_data: Optional[dict]
    ip_address: Optional[str]
    timestamp: datetime

    class Config:
        from_attributes = True


class AuditTrailResponse(BaseModel):
    """Schema for audit trail list."""
    logs: List[AuditLogResponse]
    total: int
