"""
Call Session service.

Creates negotiation call sessions, issues join tokens and ends sessions.
Ending is idempotent: the first writer (manual end or auto-end timer) wins
through a conditional update and every later attempt is a no-op.
"""

import logging
import random
import uuid
from datetime import timedelta
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.call_tokens import CallTokenIssuer
from backend.app.core.clock import utcnow
from backend.app.core.config import settings
from backend.app.core.exceptions import (
    ResourceNotFoundError,
    InsufficientPermissionsError,
    BusinessRuleViolationError,
)
from backend.app.models.call_session import CallSession, CallStatus, CallEndReason, LIVE_CALL_STATUSES
from backend.app.services.call_timers import CallTimeoutScheduler

logger = logging.getLogger(__name__)

# Tourist and guide uids live in disjoint ranges so they can never collide
UID_RANGE = 1_000_000
GUIDE_UID_OFFSET = 1_000_000


class CallSessionService:

    def __init__(
        self,
        db: AsyncSession,
        timers: CallTimeoutScheduler,
        token_issuer: Optional[CallTokenIssuer] = None
    ):
        self.db = db
        self.timers = timers
        self.token_issuer = token_issuer or CallTokenIssuer()

    async def get(self, call_id: int) -> Optional[CallSession]:
        result = await self.db.execute(
            select(CallSession).where(CallSession.id == call_id).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_or_404(self, call_id: int) -> CallSession:
        session = await self.get(call_id)
        if not session:
            raise ResourceNotFoundError("Call session", call_id)
        return session

    async def create_session(
        self,
        tourist_user_id: int,
        guide_user_id: int,
        trip_id: Optional[int] = None,
        max_duration_seconds: Optional[int] = None
    ) -> CallSession:
        """
        Create a ringing session and arm its auto-end timer.

        Args:
            tourist_user_id: Calling tourist
            guide_user_id: Called guide
            trip_id: Owning trip, if any
            max_duration_seconds: Override of the configured call length

        Returns:
            The flushed CallSession
        """
        max_duration = max_duration_seconds or settings.call_max_duration_seconds
        now = utcnow()

        session = CallSession(
            channel_name=f"call_{uuid.uuid4().hex}",
            trip_id=trip_id,
            tourist_user_id=tourist_user_id,
            guide_user_id=guide_user_id,
            tourist_uid=random.randint(1, UID_RANGE),
            guide_uid=random.randint(1, UID_RANGE) + GUIDE_UID_OFFSET,
            status=CallStatus.RINGING,
            max_duration_seconds=max_duration,
            auto_end_at=now + timedelta(seconds=max_duration),
        )
        self.db.add(session)
        await self.db.flush()

        self.timers.schedule(session.id, session.auto_end_at)
        logger.info("Call %s created for trip %s (channel %s)", session.id, trip_id, session.channel_name)
        return session

    async def join(self, call_id: int, user_id: int) -> Dict[str, Any]:
        """
        Issue a join token for ``user_id``.

        The role is inferred from the session's parties, never taken from
        the caller. The first join moves the session from ringing to ongoing.

        Raises:
            ResourceNotFoundError: unknown call
            InsufficientPermissionsError: caller is not a party
            BusinessRuleViolationError: call already ended
        """
        session = await self.get_or_404(call_id)
        self._party_role(session, user_id)

        if not session.is_live:
            raise BusinessRuleViolationError(
                "Call has already ended",
                {"call_id": call_id, "status": session.status.value}
            )

        if session.status == CallStatus.RINGING:
            await self.db.execute(
                update(CallSession)
                .where(CallSession.id == call_id, CallSession.status == CallStatus.RINGING)
                .values(status=CallStatus.ONGOING, started_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            session = await self.get(call_id)

        return self.join_payload(session, user_id)

    def join_payload(self, session: CallSession, user_id: int) -> Dict[str, Any]:
        """Token and channel details for one party, without touching the session."""
        role, uid = self._party_role(session, user_id)
        issued = self.token_issuer.issue(
            channel=session.channel_name,
            uid=uid,
            role=role,
            expires_in_seconds=session.max_duration_seconds + settings.call_token_expiry_margin_seconds,
        )
        return {
            "call_id": session.id,
            "channel": session.channel_name,
            "uid": uid,
            "role": role,
            "token": issued["token"],
            "expires_at": issued["expires_at"],
            "status": session.status.value,
            "max_duration_seconds": session.max_duration_seconds,
        }

    @staticmethod
    def _party_role(session: CallSession, user_id: int) -> Tuple[str, int]:
        if user_id == session.tourist_user_id:
            return "tourist", session.tourist_uid
        if user_id == session.guide_user_id:
            return "guide", session.guide_uid
        raise InsufficientPermissionsError("You are not a participant of this call")

    async def end(
        self,
        call_id: int,
        reason: CallEndReason = CallEndReason.COMPLETED,
        summary: Optional[str] = None,
        negotiated_price: Optional[float] = None
    ) -> Tuple[CallSession, bool]:
        """
        End a live session.

        Returns:
            (session, ended_now). ``ended_now`` is False when the session was
            already terminal; the stored record is returned unchanged.

        Raises:
            ResourceNotFoundError: unknown call
        """
        final_status = CallStatus.CANCELLED if reason == CallEndReason.CANCELLED else CallStatus.ENDED

        result = await self.db.execute(
            update(CallSession)
            .where(CallSession.id == call_id, CallSession.status.in_(LIVE_CALL_STATUSES))
            .values(
                status=final_status,
                ended_at=utcnow(),
                end_reason=reason,
                summary=summary,
                negotiated_price=negotiated_price,
            )
            .execution_options(synchronize_session=False)
        )
        ended_now = result.rowcount == 1

        self.timers.cancel(call_id)

        session = await self.get_or_404(call_id)
        if not ended_now:
            logger.info("Call %s already %s, end request ignored", call_id, session.status.value)
        return session, ended_now
