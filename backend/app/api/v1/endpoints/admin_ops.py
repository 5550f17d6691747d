"""
Admin Operations API Endpoints.

Inspecting and requeueing side effects that exhausted their retries.
"""

from fastapi import APIRouter, Depends, HTTPException, status, Path, Query
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func

from backend.app.core.guards import require_admin
from backend.app.db.session import get_db
from backend.app.models.outbox import OutboxEvent, OutboxStatus
from backend.app.schemas.admin import OutboxEventList, OutboxEventResponse
from backend.app.services.outbox import OutboxDispatcher, requeue_failed_event
from backend.app.services.wiring import get_dispatcher

router = APIRouter(prefix="/admin/ops", tags=["Admin - Ops"])


@router.get("/outbox/failed", response_model=OutboxEventList)
async def list_failed_events(
    limit: int = Query(50, ge=1, le=500),
    current_user: dict = Depends(require_admin),
    db: AsyncSession = Depends(get_db)
):
    """Side effects that were moved to the dead letter queue, newest first."""
    total = await db.scalar(
        select(func.count()).select_from(OutboxEvent).where(OutboxEvent.status == OutboxStatus.FAILED)
    )
    result = await db.execute(
        select(OutboxEvent)
        .where(OutboxEvent.status == OutboxStatus.FAILED)
        .order_by(OutboxEvent.id.desc())
        .limit(limit)
    )
    events = result.scalars().all()
    return OutboxEventList(
        events=[OutboxEventResponse.model_validate(event) for event in events],
        total=total or 0,
    )


@router.post("/outbox/{event_id}/requeue")
async def requeue_event(
    event_id: int = Path(..., description="Outbox event ID"),
    current_user: dict = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    dispatcher: OutboxDispatcher = Depends(get_dispatcher)
):
    """Put a failed side effect back in the queue and try it once right away."""
    event = await requeue_failed_event(db, event_id)
    if event is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Failed outbox event not found"
        )
    await db.commit()

    delivered = await dispatcher.dispatch([event_id])
    return {"message": f"Outbox event {event_id} requeued", "delivered": bool(delivered)}
