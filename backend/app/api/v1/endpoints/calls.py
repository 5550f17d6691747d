"""
Call Session API Endpoints.

Participants join a negotiation call and end it.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Path, Body

from backend.app.core.dependencies import get_current_user
from backend.app.domain.trips.orchestrator import TripOrchestrator
from backend.app.schemas.call import JoinInfo, EndCallRequest
from backend.app.schemas.trip import TripResponse
from backend.app.services.wiring import get_trip_orchestrator

router = APIRouter(prefix="/calls", tags=["Calls"])


@router.post("/{call_id}/join", response_model=JoinInfo)
async def join_call(
    call_id: int = Path(..., description="Call session ID"),
    current_user: dict = Depends(get_current_user),
    orchestrator: TripOrchestrator = Depends(get_trip_orchestrator)
):
    """Issue a join token; the caller's role in the call is inferred from the session."""
    return await orchestrator.join_call(call_id, current_user["user_id"])


@router.post("/{call_id}/end", response_model=TripResponse)
async def end_call(
    call_id: int = Path(..., description="Call session ID"),
    request: Optional[EndCallRequest] = Body(None),
    current_user: dict = Depends(get_current_user),
    orchestrator: TripOrchestrator = Depends(get_trip_orchestrator)
):
    """
    End the call, optionally recording the negotiated price and a summary.

    The trip moves to pending confirmation; ending twice is harmless.
    """
    request = request or EndCallRequest()
    return await orchestrator.end_call(
        call_id, current_user["user_id"],
        end_reason=request.end_reason,
        summary=request.summary,
        negotiated_price=request.negotiated_price,
    )
