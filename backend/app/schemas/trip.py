"""
Trip schemas.

Request bodies for trip operations and the trip/candidate responses.
"""

from pydantic import BaseModel, Field, model_validator
from typing import Any, Dict, List, Optional
from datetime import datetime

from backend.app.models.trip_enums import TripStatus, PaymentStatus, CancellationActor


class ItineraryItem(BaseModel):
    """One stop of a requested itinerary."""
    place_id: int
    visit_duration_minutes: int = Field(..., ge=1, le=24 * 60)
    notes: Optional[str] = Field(None, max_length=500)
    ticket_required: bool = False


class MeetingPoint(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class TripCreate(BaseModel):
    """Schema for creating a trip. Either province_id or created_from_place_id is required."""
    start_at: datetime
    total_duration_minutes: Optional[int] = Field(None, ge=1)
    province_id: Optional[int] = None
    created_from_place_id: Optional[int] = None
    itinerary: List[ItineraryItem] = []
    meeting_point: Optional[MeetingPoint] = None
    meeting_address: Optional[str] = Field(None, max_length=500)
    agreement_note: Optional[str] = Field(None, max_length=2000)


class EstimateRequest(BaseModel):
    start_at: datetime
    itinerary: List[ItineraryItem] = Field(..., min_length=1)


class EstimateResponse(BaseModel):
    total_visit_minutes: int
    travel_estimate_minutes: int
    total_minutes: int
    end_at: datetime
    tickets: float


class SelectGuideRequest(BaseModel):
    guide_id: int


class RejectTripRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=1000)


class CancelTripRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=1000)


class ReviewRequest(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=500)


class ProposalRequest(BaseModel):
    """Guide proposal for a confirmed trip; at least one field must be set."""
    proposed_itinerary: Optional[List[ItineraryItem]] = None
    proposed_start_at: Optional[datetime] = None
    note: Optional[str] = Field(None, max_length=1000)

    @model_validator(mode="after")
    def check_not_empty(self):
        if not self.proposed_itinerary and self.proposed_start_at is None:
            raise ValueError("Must propose changes to itinerary or start time")
        return self


class ProposalRejectRequest(BaseModel):
    note: Optional[str] = Field(None, max_length=1000)


class TripStopResponse(BaseModel):
    id: int
    place_id: int
    sequence_number: int
    visit_duration_minutes: int
    notes: Optional[str]
    ticket_required: bool

    class Config:
        from_attributes = True


class TripCallRecordResponse(BaseModel):
    id: int
    call_session_id: int
    guide_id: Optional[int]
    started_at: datetime
    ended_at: Optional[datetime]
    duration_seconds: Optional[int]
    summary: Optional[str]
    negotiated_price: Optional[float]

    class Config:
        from_attributes = True


class TripResponse(BaseModel):
    """Schema for trip response."""
    id: int
    tourist_id: int
    selected_guide_id: Optional[int]
    candidate_guide_ids: Optional[List[int]]
    province_id: int
    created_from_place_id: Optional[int]
    status: TripStatus
    start_at: datetime
    end_at: datetime
    total_duration_minutes: int
    meeting_lat: Optional[float]
    meeting_lng: Optional[float]
    meeting_address: Optional[str]
    negotiated_price: Optional[float]
    price_breakdown: Optional[Dict[str, float]]
    currency: str
    payment_status: PaymentStatus
    cancellation_reason: Optional[str]
    cancelled_by: Optional[CancellationActor]
    cancelled_at: Optional[datetime]
    proposal: Optional[Dict[str, Any]]
    review_rating: Optional[int]
    review_comment: Optional[str]
    created_at: datetime
    updated_at: datetime
    confirmed_at: Optional[datetime]
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    stops: List[TripStopResponse] = []
    call_records: List[TripCallRecordResponse] = []

    class Config:
        from_attributes = True


class GuideSummary(BaseModel):
    id: int
    user_id: int
    province_id: int
    languages: List[str] = []
    price_per_hour: Optional[float]
    rating: float
    total_trips: int
    lat: Optional[float]
    lng: Optional[float]


class CandidatePage(BaseModel):
    """Schema for paginated candidate guides."""
    items: List[GuideSummary]
    total: int
    page: int
    pages: int


class TripCreateResponse(BaseModel):
    """Response after trip creation."""
    trip: TripResponse
    guides: CandidatePage
