"""
Trip Orchestrator (Domain Logic).

One method per trip operation. Every status-changing operation follows the
same flow:

1. Load the trip (404 if absent)
2. Authorize the actor against the trip (403)
3. Validate the move against the state graph
4. Compare-and-swap the status on the pre-image it validated against
5. Stage side effects (notification, audit, real-time emit) in the outbox
6. Commit, then dispatch the outbox best effort

A lost compare-and-swap rolls back and raises ``ConcurrencyConflictError``;
the caller must reload before retrying.
"""

import logging
import math
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.clock import utcnow, as_utc_naive
from backend.app.core.config import settings
from backend.app.core.exceptions import (
    BusinessRuleViolationError,
    ConcurrencyConflictError,
    InputValidationError,
    InsufficientPermissionsError,
    InvalidTransitionError,
    ResourceNotFoundError,
)
from backend.app.domain.trips import candidates as candidate_filters
from backend.app.domain.trips import pricing
from backend.app.domain.trips.state_graph import validate_transition
from backend.app.domain.trips.trip_store import TripStore, BOOKED_STATUSES
from backend.app.models.call_session import CallSession, CallEndReason
from backend.app.models.enums import UserRole
from backend.app.models.guide import Guide
from backend.app.models.trip import Trip
from backend.app.models.trip_enums import TripStatus, PaymentStatus, CancellationActor
from backend.app.services.audit import AuditAction
from backend.app.services.call_sessions import CallSessionService
from backend.app.services.directory import Directory
from backend.app.services.outbox import OutboxDispatcher, SideEffects

logger = logging.getLogger(__name__)

# Candidate listing only makes sense before negotiation starts
CANDIDATE_STATUSES = (TripStatus.SELECTING_GUIDE, TripStatus.AWAITING_CALL)
DEFAULT_CALL_SUMMARY = "Call completed"


def guide_summary(guide: Guide) -> Dict[str, Any]:
    return {
        "id": guide.id,
        "user_id": guide.user_id,
        "province_id": guide.province_id,
        "languages": list(guide.languages or []),
        "price_per_hour": guide.price_per_hour,
        "rating": guide.rating,
        "total_trips": guide.total_trips,
        "lat": guide.lat,
        "lng": guide.lng,
    }


def stop_dicts(trip: Trip) -> List[Dict[str, Any]]:
    return [
        {
            "place_id": stop.place_id,
            "visit_duration_minutes": stop.visit_duration_minutes,
            "notes": stop.notes,
            "ticket_required": stop.ticket_required,
        }
        for stop in trip.stops
    ]


class TripOrchestrator:

    def __init__(
        self,
        db: AsyncSession,
        calls: CallSessionService,
        directory: Directory,
        dispatcher: OutboxDispatcher
    ):
        self.db = db
        self.store = TripStore(db)
        self.calls = calls
        self.directory = directory
        self.dispatcher = dispatcher

    # ------------------------------------------------------------------
    # Creation and guide selection
    # ------------------------------------------------------------------

    async def create_trip(self, tourist_id: int, data) -> Dict[str, Any]:
        """
        Create a trip in ``selecting_guide`` and return it with the first
        page of candidate guides.

        Args:
            tourist_id: Creating tourist
            data: ``TripCreate`` payload

        Raises:
            ResourceNotFoundError: unknown tourist
            InsufficientPermissionsError: caller is not a tourist
            InputValidationError: start time not in the future, no resolvable
                province, unknown itinerary place
        """
        tourist = await self.directory.find_user(tourist_id)
        if not tourist:
            raise ResourceNotFoundError("User", tourist_id)
        if tourist.role != UserRole.TOURIST:
            raise InsufficientPermissionsError("Only tourists can create trips")

        start_at = as_utc_naive(data.start_at)
        if start_at <= utcnow():
            raise InputValidationError("Trip start time must be in the future", {"start_at": str(data.start_at)})

        province_id = await self._resolve_province(data.province_id, data.created_from_place_id)

        stops = [item.model_dump() for item in (data.itinerary or [])]
        places = await self._load_places(stops)
        duration = data.total_duration_minutes or self._estimate_duration(stops, places, start_at)

        meeting = data.meeting_point
        meeting_lat = meeting.lat if meeting else None
        meeting_lng = meeting.lng if meeting else None

        cached_ids: List[int] = []
        visible: List[Dict[str, Any]] = []
        try:
            cached_ids, guides = await self._find_candidates(province_id, meeting_lat, meeting_lng)
            visible = [guide_summary(guide) for guide in guides]
        except Exception:
            logger.exception("Candidate lookup failed while creating trip for tourist %s", tourist_id)

        trip = Trip(
            tourist_id=tourist_id,
            province_id=province_id,
            created_from_place_id=data.created_from_place_id,
            agreement_source="new_flow",
            agreement_note=data.agreement_note,
            start_at=start_at,
            total_duration_minutes=duration,
            end_at=start_at + timedelta(minutes=duration),
            meeting_lat=meeting_lat,
            meeting_lng=meeting_lng,
            meeting_address=data.meeting_address,
            currency=settings.payment_currency,
            payment_status=PaymentStatus.UNPAID,
            status=TripStatus.SELECTING_GUIDE,
            candidate_guide_ids=cached_ids,
        )
        await self.store.add(trip)
        if stops:
            await self.store.replace_itinerary(trip.id, stops)

        trip = await self.store.reload(trip.id)

        effects = SideEffects(self.db)
        effects.audit(AuditAction.CREATE_TRIP, tourist_id, trip.id, details={
            "province_id": province_id,
            "start_at": start_at.isoformat(),
            "candidates": len(cached_ids),
        })
        await self._finish(effects)

        logger.info("Trip %s created by tourist %s with %d candidate(s)", trip.id, tourist_id, len(cached_ids))
        page = candidate_filters.paginate(visible, 1, settings.candidate_page_size)
        return {"trip": trip, "guides": page}

    async def list_candidate_guides(
        self,
        trip_id: int,
        user_id: int,
        language: Optional[str] = None,
        max_distance_km: Optional[float] = None,
        page: int = 1,
        limit: Optional[int] = None
    ) -> Dict[str, Any]:
        """
        Candidate guides for a trip, best rated first.

        Returns an empty page (never an error) once the trip has left
        guide selection. The full list of ids before the distance filter is
        cached on the trip.
        """
        trip = await self.store.get_or_404(trip_id)
        self._require_tourist(trip, user_id)

        limit = limit or settings.candidate_page_size
        if trip.status not in CANDIDATE_STATUSES:
            return candidate_filters.empty_page(page)

        try:
            cached_ids, guides = await self._find_candidates(
                trip.province_id, trip.meeting_lat, trip.meeting_lng, language, max_distance_km
            )
        except Exception:
            logger.exception("Candidate lookup failed for trip %s", trip_id)
            return candidate_filters.empty_page(page)

        result = candidate_filters.paginate([guide_summary(guide) for guide in guides], page, limit)

        if cached_ids != list(trip.candidate_guide_ids or []):
            await self._cache_candidates(trip, cached_ids)

        return result

    async def select_guide(self, trip_id: int, tourist_id: int, guide_id: int) -> Trip:
        """
        Pick the guide to negotiate with; moves the trip to ``awaiting_call``.

        Switching guide mid-negotiation drops whatever the previous guide
        agreed to, and a live call with them is cancelled.

        Raises:
            ConcurrencyConflictError: another writer changed the trip first
        """
        trip = await self.store.get_or_404(trip_id)
        self._require_tourist(trip, tourist_id)
        validate_transition(trip.status, TripStatus.AWAITING_CALL)

        guide = await self.directory.find_guide(guide_id)
        if not guide:
            raise ResourceNotFoundError("Guide", guide_id)
        if not guide.is_active:
            raise BusinessRuleViolationError("Guide is not available", {"guide_id": guide_id})
        guide_user_id = guide.user_id
        previous = trip.status
        live = await self._live_session(trip) if previous == TripStatus.IN_CALL else None

        trip = await self._transition(trip, TripStatus.AWAITING_CALL, {
            "selected_guide_id": guide_id,
            "negotiated_price": None,
            "price_breakdown": None,
            "payment_status": PaymentStatus.UNPAID,
        })
        if live is not None:
            session, ended_now = await self.calls.end(live.id, CallEndReason.CANCELLED)
            if ended_now:
                await self._close_call_record(trip, session, "Guide changed during call", None)
            trip = await self.store.reload(trip.id)

        effects = SideEffects(self.db)
        effects.notify(guide_user_id, "guide_selected", trip.id, {"tourist_id": tourist_id})
        effects.audit(AuditAction.SELECT_GUIDE, tourist_id, trip.id, details={
            "guide_id": guide_id,
            "from": previous.value,
        })
        effects.emit(trip)
        await self._finish(effects)
        return trip

    async def reopen_guide_selection(self, trip_id: int, tourist_id: int) -> Trip:
        """
        Send the trip back to ``selecting_guide``.

        The only way out of ``rejected`` towards a new guide, and how a
        tourist changes guide before the call.
        """
        trip = await self.store.get_or_404(trip_id)
        self._require_tourist(trip, tourist_id)
        validate_transition(trip.status, TripStatus.SELECTING_GUIDE)
        previous = trip.status

        trip = await self._transition(trip, TripStatus.SELECTING_GUIDE, {
            "selected_guide_id": None,
            "negotiated_price": None,
            "price_breakdown": None,
            "payment_status": PaymentStatus.UNPAID,
        })

        effects = SideEffects(self.db)
        effects.audit(AuditAction.REOPEN_SELECTION, tourist_id, trip.id, details={"from": previous.value})
        effects.emit(trip)
        await self._finish(effects)
        return trip

    # ------------------------------------------------------------------
    # Negotiation call
    # ------------------------------------------------------------------

    async def initiate_call(self, trip_id: int, tourist_id: int) -> Dict[str, Any]:
        """
        Start (or rejoin) the negotiation call with the selected guide.

        Re-entrant while ``in_call``: a live session is reused so a tourist
        can reconnect.

        Returns:
            dict with ``trip``, ``call`` and the tourist's ``join`` payload
        """
        trip = await self.store.get_or_404(trip_id)
        self._require_tourist(trip, tourist_id)

        if not trip.selected_guide_id:
            raise BusinessRuleViolationError("Select a guide before starting a call")
        if trip.status != TripStatus.IN_CALL:
            validate_transition(trip.status, TripStatus.IN_CALL)

        if trip.status == TripStatus.IN_CALL:
            live = await self._live_session(trip)
            if live is not None:
                return {"trip": trip, "call": live, "join": self.calls.join_payload(live, tourist_id)}

        guide = await self.directory.find_guide(trip.selected_guide_id)
        if not guide:
            raise ResourceNotFoundError("Guide", trip.selected_guide_id)
        guide_id, guide_user_id = guide.id, guide.user_id
        expected = trip.status

        call = await self.calls.create_session(
            tourist_user_id=trip.tourist_id,
            guide_user_id=guide_user_id,
            trip_id=trip.id,
        )
        call_id = call.id

        try:
            trip = await self._transition(trip, TripStatus.IN_CALL, {}, expected=expected)
        except ConcurrencyConflictError:
            self.calls.timers.cancel(call_id)
            raise

        await self.store.append_call_record(trip.id, call_id, guide_id, started_at=utcnow())
        trip = await self.store.reload(trip.id)
        call = await self.calls.get(call_id)
        join = self.calls.join_payload(call, tourist_id)

        effects = SideEffects(self.db)
        effects.notify(guide_user_id, "incoming_call", trip.id, {"call_id": call_id, "channel": call.channel_name})
        effects.audit(AuditAction.INITIATE_CALL, tourist_id, trip.id, details={"call_id": call_id})
        effects.emit(trip)
        await self._finish(effects)
        return {"trip": trip, "call": call, "join": join}

    async def join_call(self, call_id: int, user_id: int) -> Dict[str, Any]:
        join = await self.calls.join(call_id, user_id)
        await self.db.commit()
        return join

    async def end_call(
        self,
        call_id: int,
        user_id: int,
        end_reason: CallEndReason = CallEndReason.COMPLETED,
        summary: Optional[str] = None,
        negotiated_price: Optional[float] = None
    ) -> Trip:
        """
        End a negotiation call on behalf of one of its parties.

        Ending always advances an ``in_call`` trip to
        ``pending_confirmation``, with or without a price, so the guide has
        to explicitly accept or reject. Ending an already ended call is not
        an error; the trip is returned as it is.
        """
        if negotiated_price is not None and negotiated_price < 0:
            raise InputValidationError("Negotiated price cannot be negative", {"negotiated_price": negotiated_price})

        session = await self.calls.get_or_404(call_id)
        trip = await self._trip_for_call(session)

        if user_id not in (session.tourist_user_id, session.guide_user_id, trip.tourist_id):
            raise InsufficientPermissionsError("You are not a participant of this call")

        session, _ = await self.calls.end(call_id, end_reason, summary, negotiated_price)
        await self.db.commit()

        return await self._advance_after_call(
            trip, session,
            actor_id=user_id,
            summary=summary,
            negotiated_price=negotiated_price,
            strict=True,
        )

    async def handle_call_timeout(self, call_id: int) -> Optional[Trip]:
        """
        Auto-end path fired by the call timer.

        A call that was already ended by any other path is left untouched:
        no trip change, no notification, no emit.
        """
        session = await self.calls.get(call_id)
        if session is None:
            logger.warning("Timeout fired for unknown call %s", call_id)
            return None
        if not session.is_live:
            logger.info("Timeout for call %s ignored, already %s", call_id, session.status.value)
            return None

        trip = await self.store.find_by_call_id(call_id)
        if trip is None and session.trip_id:
            trip = await self.store.get(session.trip_id)

        session, ended_now = await self.calls.end(call_id, CallEndReason.TIMEOUT)
        await self.db.commit()

        if not ended_now or trip is None:
            return None

        logger.info("Call %s timed out, advancing trip %s", call_id, trip.id)
        return await self._advance_after_call(trip, session, actor_id=None, summary=None, negotiated_price=None, strict=False)

    # ------------------------------------------------------------------
    # Guide decision
    # ------------------------------------------------------------------

    async def guide_accept(self, trip_id: int, guide_user_id: int) -> Trip:
        """
        Selected guide accepts; the trip waits for payment.

        Idempotent once the trip is ``awaiting_payment`` or ``confirmed``.
        Accepting straight from ``in_call`` without a negotiated price
        prices the trip from its duration and the guide's hourly rate.
        """
        trip = await self.store.get_or_404(trip_id)
        guide = await self._require_selected_guide(trip, guide_user_id)

        if trip.status in (TripStatus.AWAITING_PAYMENT, TripStatus.CONFIRMED):
            return trip
        if trip.status not in (TripStatus.PENDING_CONFIRMATION, TripStatus.IN_CALL):
            raise InvalidTransitionError(trip.status, TripStatus.AWAITING_PAYMENT)
        validate_transition(trip.status, TripStatus.AWAITING_PAYMENT)

        price = trip.negotiated_price
        if price is None:
            if trip.status != TripStatus.IN_CALL:
                raise BusinessRuleViolationError("A negotiated price is required before accepting")
            price = pricing.auto_price(trip.total_duration_minutes, guide.price_per_hour)

        conflicts = await self.store.find_overlapping(
            guide.id, trip.start_at, trip.end_at, BOOKED_STATUSES, exclude_trip_id=trip.id
        )
        if conflicts:
            raise BusinessRuleViolationError(
                "Guide is already booked for this time slot",
                {"conflicting_trip_ids": [other.id for other in conflicts]}
            )

        stops = stop_dicts(trip)
        places = await self.directory.find_places(stop["place_id"] for stop in stops)
        breakdown = pricing.build_price_breakdown(price, pricing.ticket_total(stops, places))
        previous = trip.status
        live = await self._live_session(trip) if previous == TripStatus.IN_CALL else None

        trip = await self._transition(trip, TripStatus.AWAITING_PAYMENT, {
            "negotiated_price": price,
            "price_breakdown": breakdown,
            "payment_status": PaymentStatus.PENDING,
        })
        if live is not None:
            session, ended_now = await self.calls.end(live.id, CallEndReason.COMPLETED, negotiated_price=price)
            if ended_now:
                await self._close_call_record(trip, session, DEFAULT_CALL_SUMMARY, price)
            trip = await self.store.reload(trip.id)

        effects = SideEffects(self.db)
        effects.notify(trip.tourist_id, "payment_required", trip.id, {"amount": breakdown["total"], "currency": trip.currency})
        effects.audit(AuditAction.ACCEPT_TRIP, guide_user_id, trip.id, details={
            "from": previous.value,
            "negotiated_price": price,
        })
        effects.emit(trip)
        await self._finish(effects)
        return trip

    async def guide_reject(self, trip_id: int, guide_user_id: int, reason: Optional[str] = None) -> Trip:
        """Selected guide declines; the guide is cleared so the tourist can choose again."""
        trip = await self.store.get_or_404(trip_id)
        await self._require_selected_guide(trip, guide_user_id)
        validate_transition(trip.status, TripStatus.REJECTED)

        trip = await self._transition(trip, TripStatus.REJECTED, {
            "selected_guide_id": None,
            "cancellation_reason": reason,
            "cancelled_by": CancellationActor.GUIDE,
            "cancelled_at": utcnow(),
        })

        effects = SideEffects(self.db)
        effects.notify(trip.tourist_id, "trip_rejected", trip.id, {"reason": reason})
        effects.audit(AuditAction.REJECT_TRIP, guide_user_id, trip.id, details={"reason": reason})
        effects.emit(trip)
        await self._finish(effects)
        return trip

    # ------------------------------------------------------------------
    # Cancellation and execution
    # ------------------------------------------------------------------

    async def cancel_trip(self, actor_id: int, trip_id: int, reason: Optional[str], actor_role) -> Trip:
        """
        Cancel a trip.

        Tourists and guides must cancel at least
        ``trip_cancellation_window_hours`` before the start; admins are
        exempt from the window.

        Raises:
            InsufficientPermissionsError: actor is not a party of the trip
            InvalidTransitionError: trip already completed or cancelled
            BusinessRuleViolationError: inside the cancellation window
        """
        role = UserRole(actor_role)
        trip = await self.store.get_or_404(trip_id)

        guide_user_id = None
        if trip.selected_guide_id:
            guide = await self.directory.find_guide(trip.selected_guide_id)
            guide_user_id = guide.user_id if guide else None

        if role == UserRole.TOURIST:
            self._require_tourist(trip, actor_id)
            cancelled_by = CancellationActor.TOURIST
        elif role == UserRole.GUIDE:
            if guide_user_id is None or guide_user_id != actor_id:
                raise InsufficientPermissionsError("This trip is not assigned to you")
            cancelled_by = CancellationActor.GUIDE
        elif role == UserRole.ADMIN:
            cancelled_by = CancellationActor.ADMIN
        else:
            raise InsufficientPermissionsError()

        validate_transition(trip.status, TripStatus.CANCELLED)

        if role != UserRole.ADMIN:
            window = timedelta(hours=settings.trip_cancellation_window_hours)
            lead = as_utc_naive(trip.start_at) - utcnow()
            if lead < window:
                raise BusinessRuleViolationError(
                    f"Trips can only be cancelled at least {settings.trip_cancellation_window_hours} hours before the start",
                    {"hours_until_start": round(lead.total_seconds() / 3600, 2)}
                )

        previous = trip.status
        live = await self._live_session(trip) if previous == TripStatus.IN_CALL else None

        trip = await self._transition(trip, TripStatus.CANCELLED, {
            "cancellation_reason": reason,
            "cancelled_by": cancelled_by,
            "cancelled_at": utcnow(),
        })
        if live is not None:
            await self.calls.end(live.id, CallEndReason.CANCELLED)

        effects = SideEffects(self.db)
        if cancelled_by != CancellationActor.TOURIST:
            effects.notify(trip.tourist_id, "trip_cancelled", trip.id, {"reason": reason, "by": cancelled_by.value})
        if cancelled_by != CancellationActor.GUIDE:
            effects.notify(guide_user_id, "trip_cancelled", trip.id, {"reason": reason, "by": cancelled_by.value})
        effects.audit(AuditAction.CANCEL_TRIP, actor_id, trip.id, details={
            "from": previous.value,
            "reason": reason,
            "cancelled_by": cancelled_by.value,
        })
        effects.emit(trip)
        await self._finish(effects)
        return trip

    async def start_trip(self, trip_id: int, guide_user_id: int) -> Trip:
        trip = await self.store.get_or_404(trip_id)
        await self._require_selected_guide(trip, guide_user_id)
        validate_transition(trip.status, TripStatus.IN_PROGRESS)

        trip = await self._transition(trip, TripStatus.IN_PROGRESS, {"started_at": utcnow()})

        effects = SideEffects(self.db)
        effects.notify(trip.tourist_id, "trip_started", trip.id)
        effects.audit(AuditAction.START_TRIP, guide_user_id, trip.id)
        effects.emit(trip)
        await self._finish(effects)
        return trip

    async def complete_trip(self, guide_user_id: int, trip_id: int) -> Trip:
        """Assigned guide completes the trip; the guide's trip counter is bumped afterwards."""
        trip = await self.store.get_or_404(trip_id)
        guide = await self._require_selected_guide(trip, guide_user_id)
        guide_id = guide.id
        validate_transition(trip.status, TripStatus.COMPLETED)
        previous = trip.status

        trip = await self._transition(trip, TripStatus.COMPLETED, {"completed_at": utcnow()})

        effects = SideEffects(self.db)
        effects.notify(trip.tourist_id, "trip_completed", trip.id)
        effects.audit(AuditAction.COMPLETE_TRIP, guide_user_id, trip.id, details={"from": previous.value})
        effects.emit(trip)
        await self._finish(effects)

        try:
            await self.directory.increment_guide_trip_count(guide_id)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            logger.exception("Could not increment trip count for guide %s", guide_id)
            trip = await self.store.get_or_404(trip_id)
        return trip

    async def archive_trip(self, trip_id: int, actor_id: int, actor_role) -> Trip:
        if UserRole(actor_role) != UserRole.ADMIN:
            raise InsufficientPermissionsError("Admin access required")

        trip = await self.store.get_or_404(trip_id)
        validate_transition(trip.status, TripStatus.ARCHIVED)
        previous = trip.status

        trip = await self._transition(trip, TripStatus.ARCHIVED, {})

        effects = SideEffects(self.db)
        effects.audit(AuditAction.ARCHIVE_TRIP, actor_id, trip.id, details={"from": previous.value})
        await self._finish(effects)
        return trip

    # ------------------------------------------------------------------
    # Review and post-confirmation proposals
    # ------------------------------------------------------------------

    async def review_trip(self, tourist_id: int, trip_id: int, rating: int, comment: Optional[str] = None) -> Trip:
        if rating is None or not 1 <= rating <= 5:
            raise InputValidationError("Rating must be between 1 and 5", {"rating": rating})
        if comment and len(comment) > 500:
            raise InputValidationError("Review comment cannot exceed 500 characters")

        trip = await self.store.get_or_404(trip_id)
        self._require_tourist(trip, tourist_id)
        if trip.status != TripStatus.COMPLETED:
            raise BusinessRuleViolationError("Only completed trips can be reviewed", {"status": trip.status.value})
        if trip.reviewed_at is not None:
            raise BusinessRuleViolationError("Trip has already been reviewed")

        trip = await self._write_if_status(trip, {
            "review_rating": rating,
            "review_comment": comment,
            "reviewed_at": utcnow(),
        })

        effects = SideEffects(self.db)
        effects.audit(AuditAction.REVIEW_TRIP, tourist_id, trip.id, details={
            "rating": rating,
            "guide_id": trip.selected_guide_id,
        })
        await self._finish(effects)
        return trip

    async def propose_change(
        self,
        guide_user_id: int,
        trip_id: int,
        proposed_itinerary: Optional[List[Dict[str, Any]]] = None,
        proposed_start_at: Optional[datetime] = None,
        note: Optional[str] = None
    ) -> Trip:
        """Guide proposes a new itinerary and/or start time for a confirmed trip."""
        if not proposed_itinerary and proposed_start_at is None:
            raise InputValidationError("Must propose changes to itinerary or start time")

        trip = await self.store.get_or_404(trip_id)
        await self._require_selected_guide(trip, guide_user_id)
        if trip.status != TripStatus.CONFIRMED:
            raise BusinessRuleViolationError("Changes can only be proposed for confirmed trips", {"status": trip.status.value})

        start_at = as_utc_naive(proposed_start_at) if proposed_start_at else as_utc_naive(trip.start_at)
        if proposed_start_at and start_at <= utcnow():
            raise InputValidationError("Proposed start time must be in the future")

        itinerary = list(proposed_itinerary) if proposed_itinerary else stop_dicts(trip)
        await self._load_places(itinerary)

        now = utcnow()
        history = list(trip.proposal_history or [])
        if trip.proposal:
            history.append({**trip.proposal, "action": "superseded", "action_by": "guide", "actioned_at": now.isoformat()})

        proposal = {
            "proposer": "guide",
            "proposed_itinerary": itinerary,
            "proposed_start_at": start_at.isoformat(),
            "note": note or "",
            "created_at": now.isoformat(),
        }
        trip = await self._write_if_status(trip, {"proposal": proposal, "proposal_history": history})

        effects = SideEffects(self.db)
        effects.notify(trip.tourist_id, "proposal_received", trip.id, {"note": note or ""})
        effects.audit(AuditAction.PROPOSE_CHANGE, guide_user_id, trip.id, details={"proposed_start_at": proposal["proposed_start_at"]})
        await self._finish(effects)
        return trip

    async def accept_proposal(self, tourist_id: int, trip_id: int) -> Trip:
        """
        Tourist accepts the pending proposal.

        Duration and end time are re-estimated, the guide's availability is
        re-checked for the new slot and the price breakdown recomputed. The
        amount already paid is left untouched.
        """
        trip = await self.store.get_or_404(trip_id)
        self._require_tourist(trip, tourist_id)
        if trip.status != TripStatus.CONFIRMED or not trip.proposal:
            raise BusinessRuleViolationError("No active proposal to accept")

        proposal = dict(trip.proposal)
        stops = list(proposal["proposed_itinerary"])
        start_at = as_utc_naive(datetime.fromisoformat(proposal["proposed_start_at"]))

        places = await self._load_places(stops)
        estimate = pricing.estimate_itinerary(stops, places, start_at)

        guide = await self.directory.find_guide(trip.selected_guide_id)
        if not guide:
            raise ResourceNotFoundError("Guide", trip.selected_guide_id)
        guide_user_id = guide.user_id

        conflicts = await self.store.find_overlapping(
            guide.id, start_at, estimate["end_at"], BOOKED_STATUSES, exclude_trip_id=trip.id
        )
        if conflicts:
            raise BusinessRuleViolationError(
                "Guide is not available for the proposed time slot",
                {"conflicting_trip_ids": [other.id for other in conflicts]}
            )

        breakdown = pricing.build_price_breakdown(
            pricing.hourly_guide_fee(estimate["total_minutes"], guide.price_per_hour),
            pricing.ticket_total(stops, places),
        )
        now = utcnow()
        history = list(trip.proposal_history or [])
        history.append({**proposal, "action": "accepted", "action_by": "tourist", "actioned_at": now.isoformat()})

        trip = await self._write_if_status(trip, {
            "start_at": start_at,
            "total_duration_minutes": estimate["total_minutes"],
            "end_at": estimate["end_at"],
            "price_breakdown": breakdown,
            "proposal": None,
            "proposal_history": history,
        })
        await self.store.replace_itinerary(trip.id, stops)
        trip = await self.store.reload(trip.id)

        effects = SideEffects(self.db)
        effects.notify(guide_user_id, "proposal_accepted", trip.id)
        effects.audit(AuditAction.ACCEPT_PROPOSAL, tourist_id, trip.id, details={
            "total_minutes": estimate["total_minutes"],
            "price_total": breakdown["total"],
        })
        effects.emit(trip)
        await self._finish(effects)
        return trip

    async def reject_proposal(self, tourist_id: int, trip_id: int, note: Optional[str] = None) -> Trip:
        """Tourist rejects the pending proposal; the trip keeps its current plan."""
        trip = await self.store.get_or_404(trip_id)
        self._require_tourist(trip, tourist_id)
        if trip.status != TripStatus.CONFIRMED or not trip.proposal:
            raise BusinessRuleViolationError("No active proposal to reject")

        guide = await self.directory.find_guide(trip.selected_guide_id) if trip.selected_guide_id else None
        history = list(trip.proposal_history or [])
        history.append({
            **trip.proposal,
            "action": "rejected",
            "action_by": "tourist",
            "rejection_note": note or "",
            "actioned_at": utcnow().isoformat(),
        })

        trip = await self._write_if_status(trip, {"proposal": None, "proposal_history": history})

        effects = SideEffects(self.db)
        effects.notify(guide.user_id if guide else None, "proposal_rejected", trip.id, {"note": note or ""})
        effects.audit(AuditAction.REJECT_PROPOSAL, tourist_id, trip.id)
        await self._finish(effects)
        return trip

    async def estimate_preview(self, itinerary: List[Dict[str, Any]], start_at: datetime) -> Dict[str, Any]:
        """Duration and ticket estimate for an itinerary, without creating anything."""
        stops = list(itinerary)
        places = await self._load_places(stops)
        estimate = pricing.estimate_itinerary(stops, places, as_utc_naive(start_at))
        estimate["tickets"] = pricing.round_half_up(pricing.ticket_total(stops, places), 2)
        return estimate

    async def get_trip(self, trip_id: int, user_id: int, actor_role) -> Trip:
        trip = await self.store.get_or_404(trip_id)
        role = UserRole(actor_role)
        if role == UserRole.ADMIN or trip.tourist_id == user_id:
            return trip
        if role == UserRole.GUIDE:
            await self._require_selected_guide(trip, user_id)
            return trip
        raise InsufficientPermissionsError("You do not have access to this trip")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_tourist(self, trip: Trip, user_id: int) -> None:
        if trip.tourist_id != user_id:
            raise InsufficientPermissionsError("This trip does not belong to you")

    async def _require_selected_guide(self, trip: Trip, guide_user_id: int) -> Guide:
        guide = await self.directory.find_guide_by_user(guide_user_id)
        if not guide or trip.selected_guide_id is None or trip.selected_guide_id != guide.id:
            raise InsufficientPermissionsError("This trip is not assigned to you")
        return guide

    async def _transition(
        self,
        trip: Trip,
        target: TripStatus,
        patch: Dict[str, Any],
        expected: Optional[TripStatus] = None
    ) -> Trip:
        """CAS the status from ``expected`` (default: the loaded status) to ``target``."""
        expected = expected or trip.status
        values = dict(patch)
        values["status"] = target
        return await self._write_if_status(trip, values, expected)

    async def _write_if_status(
        self,
        trip: Trip,
        patch: Dict[str, Any],
        expected: Optional[TripStatus] = None
    ) -> Trip:
        expected = expected or trip.status
        trip_id = trip.id

        updated, fresh = await self.store.update_if_status(trip_id, expected, patch)
        if not updated:
            current = fresh.status.value if fresh is not None else None
            await self.db.rollback()
            logger.warning(
                "Conditional write lost on trip %s: expected %s, found %s", trip_id, expected.value, current
            )
            raise ConcurrencyConflictError(details={
                "trip_id": trip_id,
                "expected_status": expected.value,
                "current_status": current,
            })
        return fresh

    async def _finish(self, effects: SideEffects) -> None:
        event_ids = await effects.stage()
        await self.db.commit()
        await self.dispatcher.dispatch(event_ids)

    async def _cache_candidates(self, trip: Trip, cached_ids: List[int]) -> None:
        trip_id, observed = trip.id, trip.status
        try:
            updated, _ = await self.store.update_if_status(trip_id, observed, {"candidate_guide_ids": cached_ids})
            if updated:
                await self.db.commit()
            else:
                await self.db.rollback()
                logger.info("Trip %s changed while caching candidates, cache skipped", trip_id)
        except Exception:
            await self.db.rollback()
            logger.exception("Could not cache candidates on trip %s", trip_id)

    async def _find_candidates(
        self,
        province_id: int,
        meeting_lat: Optional[float],
        meeting_lng: Optional[float],
        language: Optional[str] = None,
        max_distance_km: Optional[float] = None
    ):
        """Returns (ids cached on the trip, guides visible after the distance filter)."""
        guides = await self.directory.list_active_guides(province_id)
        ranked = candidate_filters.sort_by_rating(candidate_filters.filter_by_language(guides, language))
        cached_ids = [guide.id for guide in ranked]

        if meeting_lat is not None and meeting_lng is not None:
            ranked = candidate_filters.filter_by_distance(
                ranked, meeting_lat, meeting_lng, max_distance_km or settings.candidate_max_distance_km
            )
        return cached_ids, ranked

    async def _resolve_province(self, province_id: Optional[int], place_id: Optional[int]) -> int:
        if province_id:
            if not await self.directory.find_province(province_id):
                raise InputValidationError("Unknown province", {"province_id": province_id})
            return province_id

        if place_id:
            place = await self.directory.find_place(place_id)
            if place and place.province_id:
                return place.province_id

        raise InputValidationError("A province or a place belonging to a province is required")

    async def _load_places(self, stops: List[Dict[str, Any]]) -> Dict[int, Any]:
        places = await self.directory.find_places(stop["place_id"] for stop in stops)
        missing = sorted({stop["place_id"] for stop in stops} - set(places))
        if missing:
            raise InputValidationError("Unknown place in itinerary", {"place_ids": missing})
        return places

    def _estimate_duration(self, stops, places, start_at: datetime) -> int:
        if not stops:
            return settings.default_trip_duration_minutes
        try:
            return pricing.estimate_itinerary(stops, places, start_at)["total_minutes"]
        except InputValidationError as exc:
            logger.warning("Itinerary estimate unavailable (%s), using default duration", exc.message)
            return settings.default_trip_duration_minutes

    async def _trip_for_call(self, session: CallSession) -> Trip:
        trip = await self.store.find_by_call_id(session.id)
        if trip is None and session.trip_id:
            trip = await self.store.get(session.trip_id)
        if trip is None:
            raise ResourceNotFoundError("Trip for call", session.id)
        return trip

    async def _live_session(self, trip: Trip) -> Optional[CallSession]:
        for record in reversed(trip.call_records):
            session = await self.calls.get(record.call_session_id)
            if session is not None and session.is_live:
                return session
        return None

    async def _close_call_record(
        self,
        trip: Trip,
        session: CallSession,
        summary: Optional[str],
        negotiated_price: Optional[float]
    ) -> int:
        """Mirror an ended session into the trip's call history; returns whole seconds."""
        ended_at = as_utc_naive(session.ended_at) or utcnow()
        record = next((r for r in trip.call_records if r.call_session_id == session.id), None)
        started_at = as_utc_naive(record.started_at if record else (session.started_at or ended_at))
        duration = max(0, math.floor((ended_at - started_at).total_seconds()))

        await self.store.close_call_record(trip.id, session.id, {
            "ended_at": ended_at,
            "duration_seconds": duration,
            "summary": summary,
            "negotiated_price": negotiated_price,
        })
        return duration

    async def _advance_after_call(
        self,
        trip: Trip,
        session: CallSession,
        actor_id: Optional[int],
        summary: Optional[str],
        negotiated_price: Optional[float],
        strict: bool
    ) -> Trip:
        """
        Close the call record and move ``in_call`` -> ``pending_confirmation``.

        ``strict`` callers (a party ending the call) get a conflict when
        another writer moved the trip elsewhere; the timer path only logs.
        Only the trip's latest call can advance it: a superseded call is
        a no-op.
        """
        trip_id = trip.id
        if trip.status != TripStatus.IN_CALL:
            return trip
        latest = trip.call_records[-1] if trip.call_records else None
        if latest is None or latest.call_session_id != session.id:
            logger.info("Call %s is not the latest call of trip %s, trip left as is", session.id, trip_id)
            return trip
        validate_transition(TripStatus.IN_CALL, TripStatus.PENDING_CONFIRMATION)

        patch: Dict[str, Any] = {"status": TripStatus.PENDING_CONFIRMATION}
        if negotiated_price is not None:
            patch["negotiated_price"] = negotiated_price

        updated, fresh = await self.store.update_if_status(trip_id, TripStatus.IN_CALL, patch)
        if not updated:
            current = fresh.status if fresh is not None else None
            await self.db.rollback()
            if current == TripStatus.PENDING_CONFIRMATION or not strict:
                logger.info("Trip %s already moved on (%s) when call %s closed", trip_id, current, session.id)
                return await self.store.get_or_404(trip_id)
            raise ConcurrencyConflictError(details={
                "trip_id": trip_id,
                "expected_status": TripStatus.IN_CALL.value,
                "current_status": current.value if current else None,
            })

        duration = await self._close_call_record(fresh, session, summary or DEFAULT_CALL_SUMMARY, negotiated_price)
        trip = await self.store.reload(trip_id)

        guide = await self.directory.find_guide(trip.selected_guide_id) if trip.selected_guide_id else None
        effects = SideEffects(self.db)
        effects.notify(guide.user_id if guide else session.guide_user_id, "call_ended", trip_id, {
            "call_id": session.id,
            "negotiated_price": negotiated_price,
        })
        effects.audit(
            AuditAction.END_CALL if actor_id is not None else AuditAction.CALL_TIMEOUT,
            actor_id, trip_id,
            details={
                "call_id": session.id,
                "end_reason": session.end_reason.value if session.end_reason else None,
                "duration_seconds": duration,
                "negotiated_price": negotiated_price,
            },
        )
        effects.emit(trip)
        await self._finish(effects)
        return trip
