"""
Guide Trip API Endpoints.

The selected guide accepts or rejects after the call, runs the trip and
may propose changes once it is confirmed.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Path, Body

from backend.app.core.guards import require_guide
from backend.app.domain.trips.orchestrator import TripOrchestrator
from backend.app.schemas.trip import TripResponse, RejectTripRequest, ProposalRequest
from backend.app.services.wiring import get_trip_orchestrator

router = APIRouter(prefix="/guide/trips", tags=["Guide - Trips"])


@router.post("/{trip_id}/accept", response_model=TripResponse)
async def accept_trip(
    trip_id: int = Path(..., description="Trip ID"),
    current_user: dict = Depends(require_guide),
    orchestrator: TripOrchestrator = Depends(get_trip_orchestrator)
):
    """
    Accept a negotiated trip (selected guide only).

    Validates:
    - Trip is pending confirmation (or still in the call)
    - A price was negotiated, or can be derived from the hourly rate
    - Guide has no confirmed trip overlapping this one

    Idempotent once the trip awaits payment or is confirmed.
    """
    return await orchestrator.guide_accept(trip_id, current_user["user_id"])


@router.post("/{trip_id}/reject", response_model=TripResponse)
async def reject_trip(
    trip_id: int = Path(..., description="Trip ID"),
    request: Optional[RejectTripRequest] = Body(None),
    current_user: dict = Depends(require_guide),
    orchestrator: TripOrchestrator = Depends(get_trip_orchestrator)
):
    return await orchestrator.guide_reject(trip_id, current_user["user_id"], request.reason if request else None)


@router.post("/{trip_id}/start", response_model=TripResponse)
async def start_trip(
    trip_id: int = Path(..., description="Trip ID"),
    current_user: dict = Depends(require_guide),
    orchestrator: TripOrchestrator = Depends(get_trip_orchestrator)
):
    return await orchestrator.start_trip(trip_id, current_user["user_id"])


@router.post("/{trip_id}/complete", response_model=TripResponse)
async def complete_trip(
    trip_id: int = Path(..., description="Trip ID"),
    current_user: dict = Depends(require_guide),
    orchestrator: TripOrchestrator = Depends(get_trip_orchestrator)
):
    return await orchestrator.complete_trip(current_user["user_id"], trip_id)


@router.post("/{trip_id}/proposals", response_model=TripResponse)
async def propose_change(
    trip_id: int = Path(..., description="Trip ID"),
    request: ProposalRequest = Body(...),
    current_user: dict = Depends(require_guide),
    orchestrator: TripOrchestrator = Depends(get_trip_orchestrator)
):
    """Propose a new itinerary and/or start time for a confirmed trip."""
    itinerary = [item.model_dump() for item in request.proposed_itinerary] if request.proposed_itinerary else None
    return await orchestrator.propose_change(
        current_user["user_id"], trip_id,
        proposed_itinerary=itinerary,
        proposed_start_at=request.proposed_start_at,
        note=request.note,
    )
