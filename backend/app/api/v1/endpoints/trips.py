"""
Shared Trip API Endpoints.

Reading and cancelling a trip, for any of its parties.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Path, Body

from backend.app.core.dependencies import get_current_user
from backend.app.domain.trips.orchestrator import TripOrchestrator
from backend.app.schemas.trip import TripResponse, CancelTripRequest
from backend.app.services.wiring import get_trip_orchestrator

router = APIRouter(prefix="/trips", tags=["Trips"])


@router.get("/{trip_id}", response_model=TripResponse)
async def get_trip(
    trip_id: int = Path(..., description="Trip ID"),
    current_user: dict = Depends(get_current_user),
    orchestrator: TripOrchestrator = Depends(get_trip_orchestrator)
):
    """Trip details for its tourist, its selected guide or an admin."""
    return await orchestrator.get_trip(trip_id, current_user["user_id"], current_user["role"])


@router.post("/{trip_id}/cancel", response_model=TripResponse)
async def cancel_trip(
    trip_id: int = Path(..., description="Trip ID"),
    request: Optional[CancelTripRequest] = Body(None),
    current_user: dict = Depends(get_current_user),
    orchestrator: TripOrchestrator = Depends(get_trip_orchestrator)
):
    """
    Cancel a trip.

    Tourists and guides must cancel at least 24 hours before the start;
    admins may cancel at any time. A live negotiation call is ended.
    """
    return await orchestrator.cancel_trip(
        current_user["user_id"], trip_id, request.reason if request else None, current_user["role"]
    )
