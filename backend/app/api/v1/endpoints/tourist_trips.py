"""
Tourist Trip API Endpoints.

Tourists create trips, pick a guide, call them, pay and review.
"""

from typing import Optional

from fastapi import APIRouter, Depends, status, Path, Body, Query
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.guards import require_tourist
from backend.app.db.session import get_db
from backend.app.domain.trips.orchestrator import TripOrchestrator
from backend.app.schemas.call import InitiateCallResponse
from backend.app.schemas.payment import CheckoutSessionResponse
from backend.app.schemas.trip import (
    TripCreate, TripCreateResponse, TripResponse, CandidatePage,
    EstimateRequest, EstimateResponse, SelectGuideRequest,
    ReviewRequest, ProposalRejectRequest
)
from backend.app.services.outbox import OutboxDispatcher
from backend.app.services.payments import PaymentService
from backend.app.services.wiring import get_trip_orchestrator, get_dispatcher

router = APIRouter(prefix="/tourist/trips", tags=["Tourist - Trips"])


@router.post("", response_model=TripCreateResponse, status_code=status.HTTP_201_CREATED)
async def create_trip(
    trip_data: TripCreate,
    current_user: dict = Depends(require_tourist),
    orchestrator: TripOrchestrator = Depends(get_trip_orchestrator)
):
    """
    Create a trip (Tourist only).

    The trip starts in guide selection; the response carries the first
    page of candidate guides for the trip's province.
    """
    result = await orchestrator.create_trip(current_user["user_id"], trip_data)
    return TripCreateResponse(
        trip=TripResponse.model_validate(result["trip"]),
        guides=CandidatePage(**result["guides"]),
    )


@router.post("/estimate", response_model=EstimateResponse)
async def estimate_trip(
    request: EstimateRequest,
    current_user: dict = Depends(require_tourist),
    orchestrator: TripOrchestrator = Depends(get_trip_orchestrator)
):
    """Preview duration, end time and ticket costs for an itinerary."""
    return await orchestrator.estimate_preview(
        [item.model_dump() for item in request.itinerary], request.start_at
    )


@router.get("/{trip_id}/guides", response_model=CandidatePage)
async def list_candidate_guides(
    trip_id: int = Path(..., description="Trip ID"),
    language: Optional[str] = Query(None),
    max_distance_km: Optional[float] = Query(None, gt=0),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    current_user: dict = Depends(require_tourist),
    orchestrator: TripOrchestrator = Depends(get_trip_orchestrator)
):
    """Candidate guides, best rated first. Empty once guide selection is over."""
    return await orchestrator.list_candidate_guides(
        trip_id, current_user["user_id"],
        language=language, max_distance_km=max_distance_km, page=page, limit=limit
    )


@router.post("/{trip_id}/select-guide", response_model=TripResponse)
async def select_guide(
    trip_id: int = Path(..., description="Trip ID"),
    request: SelectGuideRequest = Body(...),
    current_user: dict = Depends(require_tourist),
    orchestrator: TripOrchestrator = Depends(get_trip_orchestrator)
):
    return await orchestrator.select_guide(trip_id, current_user["user_id"], request.guide_id)


@router.post("/{trip_id}/reopen-selection", response_model=TripResponse)
async def reopen_guide_selection(
    trip_id: int = Path(..., description="Trip ID"),
    current_user: dict = Depends(require_tourist),
    orchestrator: TripOrchestrator = Depends(get_trip_orchestrator)
):
    """Go back to choosing a guide (after a rejection, or to switch guide before the call)."""
    return await orchestrator.reopen_guide_selection(trip_id, current_user["user_id"])


@router.post("/{trip_id}/calls", response_model=InitiateCallResponse, status_code=status.HTTP_201_CREATED)
async def initiate_call(
    trip_id: int = Path(..., description="Trip ID"),
    current_user: dict = Depends(require_tourist),
    orchestrator: TripOrchestrator = Depends(get_trip_orchestrator)
):
    """Start the negotiation call with the selected guide; returns the tourist's join token."""
    return await orchestrator.initiate_call(trip_id, current_user["user_id"])


@router.post("/{trip_id}/checkout", response_model=CheckoutSessionResponse)
async def create_checkout_session(
    trip_id: int = Path(..., description="Trip ID"),
    current_user: dict = Depends(require_tourist),
    db: AsyncSession = Depends(get_db),
    dispatcher: OutboxDispatcher = Depends(get_dispatcher)
):
    """Create a Stripe Checkout Session for a trip awaiting payment."""
    return await PaymentService(db, dispatcher).create_checkout_session(trip_id, current_user["user_id"])


@router.post("/{trip_id}/review", response_model=TripResponse)
async def review_trip(
    trip_id: int = Path(..., description="Trip ID"),
    request: ReviewRequest = Body(...),
    current_user: dict = Depends(require_tourist),
    orchestrator: TripOrchestrator = Depends(get_trip_orchestrator)
):
    return await orchestrator.review_trip(current_user["user_id"], trip_id, request.rating, request.comment)


@router.post("/{trip_id}/proposal/accept", response_model=TripResponse)
async def accept_proposal(
    trip_id: int = Path(..., description="Trip ID"),
    current_user: dict = Depends(require_tourist),
    orchestrator: TripOrchestrator = Depends(get_trip_orchestrator)
):
    return await orchestrator.accept_proposal(current_user["user_id"], trip_id)


@router.post("/{trip_id}/proposal/reject", response_model=TripResponse)
async def reject_proposal(
    trip_id: int = Path(..., description="Trip ID"),
    request: Optional[ProposalRejectRequest] = Body(None),
    current_user: dict = Depends(require_tourist),
    orchestrator: TripOrchestrator = Depends(get_trip_orchestrator)
):
    return await orchestrator.reject_proposal(current_user["user_id"], trip_id, request.note if request else None)
