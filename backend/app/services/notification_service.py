"""
Notification Service.

In-app notification sink for trip events. Rows are written by the outbox
dispatcher after the triggering trip write has committed.
"""

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import update
from typing import Optional, Dict, Any

from backend.app.core.clock import utcnow
from backend.app.models.notification import Notification, NotificationType


# event -> (type, title)
EVENT_TITLES: Dict[str, tuple] = {
    "guide_selected": (NotificationType.TRIP_UPDATE, "You were selected for a trip"),
    "incoming_call": (NotificationType.CALL, "Incoming negotiation call"),
    "call_ended": (NotificationType.CALL, "Negotiation call ended"),
    "payment_required": (NotificationType.PAYMENT, "Your guide accepted, payment required"),
    "trip_rejected": (NotificationType.TRIP_UPDATE, "Your guide declined the trip"),
    "trip_cancelled": (NotificationType.TRIP_UPDATE, "Trip cancelled"),
    "payment_confirmed": (NotificationType.PAYMENT, "Payment received, your trip is confirmed"),
    "trip_confirmed": (NotificationType.PAYMENT, "Tourist paid, trip confirmed"),
    "trip_started": (NotificationType.TRIP_UPDATE, "Your trip has started"),
    "trip_completed": (NotificationType.TRIP_UPDATE, "Trip completed"),
    "proposal_received": (NotificationType.PROPOSAL, "Your guide proposed a change"),
    "proposal_accepted": (NotificationType.PROPOSAL, "Proposal accepted"),
    "proposal_rejected": (NotificationType.PROPOSAL, "Proposal rejected"),
}


class NotificationService:

    @staticmethod
    async def create_notification(
        db: AsyncSession,
        user_id: int,
        event: str,
        title: Optional[str] = None,
        message: Optional[str] = None,
        type: Optional[NotificationType] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Notification:
        """Create a single notification."""
        default_type, default_title = EVENT_TITLES.get(event, (NotificationType.INFO, event.replace("_", " ").capitalize()))
        notif = Notification(
            user_id=user_id,
            event=event,
            type=type or default_type,
            title=title or default_title,
            message=message or default_title,
            metadata_payload=metadata
        )
        db.add(notif)
        await db.flush()  # Caller commits
        return notif

    @staticmethod
    async def mark_read(db: AsyncSession, notification_id: int, user_id: int) -> bool:
        """Mark a notification as read."""
        stmt = update(Notification).where(
            Notification.id == notification_id,
            Notification.user_id == user_id
        ).values(
            is_read=True,
            read_at=utcnow()
        )
        result = await db.execute(stmt)
        return result.rowcount > 0

    @staticmethod
    async def mark_all_read(db: AsyncSession, user_id: int) -> int:
        """Mark all notifications for user as read."""
        stmt = update(Notification).where(
            Notification.user_id == user_id,
            Notification.is_read == False  # noqa: E712
        ).values(
            is_read=True,
            read_at=utcnow()
        )
        result = await db.execute(stmt)
        return result.rowcount
