"""
Admin Trip API Endpoints.

Archiving finished trips and reading a trip's audit trail.
"""

from fastapi import APIRouter, Depends, Path, Query
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.guards import require_admin
from backend.app.db.session import get_db
from backend.app.domain.trips.orchestrator import TripOrchestrator
from backend.app.schemas.admin import AuditTrailResponse, AuditLogResponse
from backend.app.schemas.trip import TripResponse
from backend.app.services.audit import get_audit_trail
from backend.app.services.wiring import get_trip_orchestrator

router = APIRouter(prefix="/admin/trips", tags=["Admin - Trips"])


@router.post("/{trip_id}/archive", response_model=TripResponse)
async def archive_trip(
    trip_id: int = Path(..., description="Trip ID"),
    current_user: dict = Depends(require_admin),
    orchestrator: TripOrchestrator = Depends(get_trip_orchestrator)
):
    """Archive a completed, cancelled or rejected trip."""
    return await orchestrator.archive_trip(trip_id, current_user["user_id"], current_user["role"])


@router.get("/{trip_id}/audit", response_model=AuditTrailResponse)
async def get_trip_audit_trail(
    trip_id: int = Path(..., description="Trip ID"),
    limit: int = Query(100, ge=1, le=500),
    current_user: dict = Depends(require_admin),
    db: AsyncSession = Depends(get_db)
):
    """Audit trail for one trip, most recent first."""
    logs = await get_audit_trail(db, resource_type="trip", resource_id=trip_id, limit=limit)
    return AuditTrailResponse(
        logs=[AuditLogResponse.model_validate(log) for log in logs],
        total=len(logs),
    )
