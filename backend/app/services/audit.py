"""
Audit logging service for trip lifecycle actions.

Audit rows are written by the outbox dispatcher; a failing audit write
never affects the trip operation that produced it.
"""

from typing import Optional, Dict, Any
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, desc
from backend.app.models.audit_log import AuditLog


class AuditAction:
    """Standardized audit action constants."""
    CREATE_TRIP = "create_trip"
    SELECT_GUIDE = "select_guide_for_trip"
    REOPEN_SELECTION = "reopen_guide_selection"
    INITIATE_CALL = "initiate_trip_call"
    END_CALL = "end_trip_call"
    CALL_TIMEOUT = "call_timeout"
    ACCEPT_TRIP = "accept_trip"
    REJECT_TRIP = "reject_trip"
    CANCEL_TRIP = "cancel_trip"
    START_TRIP = "start_trip"
    COMPLETE_TRIP = "complete_trip"
    ARCHIVE_TRIP = "archive_trip"
    REVIEW_TRIP = "review_trip"
    PROPOSE_CHANGE = "propose_trip_change"
    ACCEPT_PROPOSAL = "accept_trip_proposal"
    REJECT_PROPOSAL = "reject_trip_proposal"
    CONFIRM_PAYMENT = "confirm_trip_payment"
    CHECKOUT_CREATED = "create_checkout_session"


async def record_audit(
    db: AsyncSession,
    action: str,
    actor_id: Optional[int] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[int] = None,
    details: Optional[Dict[str, Any]] = None,
    ip_address: Optional[str] = None
) -> AuditLog:
    """
    Write an audit record.

    Args:
        db: Database session (caller commits)
        action: Action performed (use AuditAction constants)
        actor_id: User performing the action, None for system actors
        resource_type: e.g. "trip", "call_session"
        resource_id: Id of the resource
        details: Additional context as JSON
        ip_address: Request IP, when known

    Returns:
        Created AuditLog instance
    """
    audit_log = AuditLog(
        actor_id=actor_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        meta_data=details,
        ip_address=ip_address
    )

    db.add(audit_log)
    await db.flush()

    return audit_log


async def get_audit_trail(
    db: AsyncSession,
    resource_type: Optional[str] = None,
    resource_id: Optional[int] = None,
    action: Optional[str] = None,
    limit: int = 100
) -> list[AuditLog]:
    """
    Retrieve audit trail with optional filtering, most recent first.
    """
    query = select(AuditLog).order_by(desc(AuditLog.timestamp), desc(AuditLog.id))

    if resource_type:
        query = query.where(AuditLog.resource_type == resource_type)

    if resource_id is not None:
        query = query.where(AuditLog.resource_id == resource_id)

    if action:
        query = query.where(AuditLog.action == action)

    query = query.limit(limit)

    result = await db.execute(query)
    return list(result.scalars().all())
