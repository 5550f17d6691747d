"""
Call session schemas.
"""

from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime

from backend.app.models.call_session import CallStatus, CallEndReason
from backend.app.schemas.trip import TripResponse


class CallSessionResponse(BaseModel):
    id: int
    channel_name: str
    trip_id: Optional[int]
    tourist_user_id: int
    guide_user_id: int
    status: CallStatus
    started_at: Optional[datetime]
    ended_at: Optional[datetime]
    max_duration_seconds: int
    auto_end_at: Optional[datetime]
    end_reason: Optional[CallEndReason]
    summary: Optional[str]
    negotiated_price: Optional[float]

    class Config:
        from_attributes = True


class JoinInfo(BaseModel):
    """What a participant needs to connect to the call transport."""
    call_id: int
    channel: str
    uid: int
    role: str
    token: str
    expires_at: datetime
    status: str
    max_duration_seconds: int


class InitiateCallResponse(BaseModel):
    trip: TripResponse
    call: CallSessionResponse
    join: JoinInfo


class EndCallRequest(BaseModel):
    end_reason: CallEndReason = CallEndReason.COMPLETED
    summary: Optional[str] = Field(None, max_length=1000)
    negotiated_price: Optional[float] = Field(None, ge=0)
