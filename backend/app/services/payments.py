"""
Payments: Stripe Checkout for trips and the payment confirmation webhook.

The webhook may deliver the same event several times, late, or after the
trip moved on. Confirmation is therefore idempotent and gated by the state
graph, and every outcome except an unverifiable request is acknowledged so
the provider does not keep retrying conditions a retry cannot fix.
"""

import json
import logging
from typing import Any, Dict, Optional

import stripe
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.clock import utcnow
from backend.app.core.config import settings
from backend.app.core.exceptions import (
    BusinessRuleViolationError,
    ConcurrencyConflictError,
    InsufficientPermissionsError,
    PaymentProviderError,
    WebhookSignatureError,
)
from backend.app.core.reliability import CircuitBreaker, CircuitOpenError, payment_circuit_breaker
from backend.app.domain.trips.pricing import amount_in_minor_units
from backend.app.domain.trips.state_graph import can_transition
from backend.app.domain.trips.trip_store import TripStore
from backend.app.models.trip_enums import TripStatus, PaymentStatus
from backend.app.services.audit import AuditAction
from backend.app.services.directory import Directory
from backend.app.services.outbox import OutboxDispatcher, SideEffects

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
CHECKOUT_ASYNC_SUCCEEDED = "checkout.session.async_payment_succeeded"
# Delayed payment methods settle after the checkout completes
CONFIRMING_EVENTS = (CHECKOUT_COMPLETED, CHECKOUT_ASYNC_SUCCEEDED)
SETTLED_PAYMENT_STATUSES = ("paid", "no_payment_required")


class PaymentService:

    def __init__(
        self,
        db: AsyncSession,
        dispatcher: OutboxDispatcher,
        breaker: Optional[CircuitBreaker] = None
    ):
        self.db = db
        self.store = TripStore(db)
        self.directory = Directory(db)
        self.dispatcher = dispatcher
        self.breaker = breaker or payment_circuit_breaker

    async def create_checkout_session(self, trip_id: int, tourist_id: int) -> Dict[str, Any]:
        """
        Create a fresh Stripe Checkout Session for a trip awaiting payment.

        The amount is always computed server side from the trip's price
        breakdown. The session id is stored on the trip for correlation;
        the trip itself only changes when the webhook confirms payment.

        Returns:
            dict with checkout_url, session_id, amount and currency

        Raises:
            InsufficientPermissionsError: caller does not own the trip
            BusinessRuleViolationError: trip not payable
            PaymentProviderError: Stripe unreachable, misconfigured or circuit open
        """
        trip = await self.store.get_or_404(trip_id)
        if trip.tourist_id != tourist_id:
            raise InsufficientPermissionsError("You can only pay for your own trips")

        if trip.status != TripStatus.AWAITING_PAYMENT:
            raise BusinessRuleViolationError(
                f"Cannot create payment session. Trip status is {trip.status.value}, expected awaiting_payment",
                {"status": trip.status.value}
            )
        if trip.payment_status == PaymentStatus.PAID:
            raise BusinessRuleViolationError("Trip is already paid")
        if trip.payment_status not in (PaymentStatus.PENDING, PaymentStatus.UNPAID):
            raise BusinessRuleViolationError(
                f"Cannot create payment session. Payment status is {trip.payment_status.value}"
            )

        amount = (trip.price_breakdown or {}).get("total") or trip.negotiated_price
        if not amount or amount <= 0:
            raise BusinessRuleViolationError("Trip does not have a valid price")

        if not settings.stripe_api_key:
            raise PaymentProviderError("Payment provider is not configured")

        currency = (trip.currency or settings.payment_currency).lower()
        tourist = await self.directory.find_user(trip.tourist_id)
        guide = await self.directory.find_guide(trip.selected_guide_id) if trip.selected_guide_id else None

        params = {
            "payment_method_types": ["card"],
            "mode": "payment",
            "line_items": [{
                "price_data": {
                    "currency": currency,
                    "product_data": {
                        "name": f"Guided trip #{trip.id}",
                        "description": f"Guided tour starting {trip.start_at:%Y-%m-%d %H:%M} UTC",
                    },
                    "unit_amount": amount_in_minor_units(amount),
                },
                "quantity": 1,
            }],
            "metadata": {
                "trip_id": str(trip.id),
                "tourist_id": str(trip.tourist_id),
                "guide_id": str(guide.id) if guide else "",
            },
            "success_url": settings.stripe_success_url.replace("{trip_id}", str(trip.id)),
            "cancel_url": settings.stripe_cancel_url.replace("{trip_id}", str(trip.id)),
        }
        if tourist and tourist.email:
            params["customer_email"] = tourist.email

        try:
            session = await self.breaker.call(run_in_threadpool, self._create_stripe_session, params)
        except CircuitOpenError:
            logger.warning("Stripe circuit open, checkout for trip %s refused", trip_id)
            raise PaymentProviderError("Payment provider temporarily unavailable")
        except stripe.StripeError as exc:
            logger.error("Stripe checkout creation failed for trip %s: %s", trip_id, exc)
            raise PaymentProviderError(details={"provider_error": getattr(exc, "user_message", None) or str(exc)})

        updated, _ = await self.store.update_if_status(
            trip.id, TripStatus.AWAITING_PAYMENT, {"stripe_session_id": session.id}
        )
        if not updated:
            await self.db.rollback()
            raise ConcurrencyConflictError(details={"trip_id": trip_id, "expected_status": TripStatus.AWAITING_PAYMENT.value})

        effects = SideEffects(self.db)
        effects.audit(AuditAction.CHECKOUT_CREATED, tourist_id, trip_id, details={
            "session_id": session.id,
            "amount": amount,
            "currency": currency,
        })
        event_ids = await effects.stage()
        await self.db.commit()
        await self.dispatcher.dispatch(event_ids)

        logger.info("Checkout session %s created for trip %s (%s %s)", session.id, trip_id, amount, currency)
        return {
            "checkout_url": session.url,
            "session_id": session.id,
            "amount": amount,
            "currency": currency,
        }

    @staticmethod
    def _create_stripe_session(params: Dict[str, Any]):
        return stripe.checkout.Session.create(api_key=settings.stripe_api_key, **params)


class PaymentConfirmationHandler:
    """
    Applies Stripe webhook events to trips.

    Usage:
        handler = PaymentConfirmationHandler(db, dispatcher)
        event = handler.verify(raw_body, request.headers.get("stripe-signature"))
        result = await handler.handle_event(event)
    """

    def __init__(self, db: AsyncSession, dispatcher: OutboxDispatcher):
        self.db = db
        self.store = TripStore(db)
        self.directory = Directory(db)
        self.dispatcher = dispatcher

    def verify(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Authenticate a webhook delivery and return the event as a plain dict.

        Raises:
            WebhookSignatureError: missing/invalid signature or unreadable payload
        """
        if not settings.stripe_webhook_secret:
            logger.error("Stripe webhook secret is not configured")
            raise WebhookSignatureError("Webhook secret not configured")
        if not signature:
            raise WebhookSignatureError("Missing Stripe-Signature header")

        try:
            stripe.Webhook.construct_event(payload, signature, settings.stripe_webhook_secret)
        except stripe.SignatureVerificationError as exc:
            logger.warning("Webhook signature verification failed: %s", exc)
            raise WebhookSignatureError()
        except ValueError:
            raise WebhookSignatureError("Invalid webhook payload")

        return json.loads(payload)

    async def handle_event(self, event: Dict[str, Any]) -> Dict[str, Any]:
        """Process one verified event. Never raises; always acknowledges."""
        event_type = event.get("type")
        if event_type not in CONFIRMING_EVENTS:
            logger.info("Ignoring webhook event %s (%s)", event.get("id"), event_type)
            return self._ack(False, "ignored_event_type")

        session = (event.get("data") or {}).get("object") or {}
        raw_trip_id = (session.get("metadata") or {}).get("trip_id")
        if not raw_trip_id:
            logger.warning("Checkout session %s has no trip_id in metadata", session.get("id"))
            return self._ack(False, "missing_trip_id")

        try:
            trip_id = int(raw_trip_id)
        except (TypeError, ValueError):
            logger.warning("Checkout session %s has invalid trip_id %r", session.get("id"), raw_trip_id)
            return self._ack(False, "invalid_trip_id")

        try:
            return await self._confirm(trip_id, session)
        except Exception:
            logger.exception("Payment confirmation failed for trip %s", trip_id)
            await self.db.rollback()
            return self._ack(False, "internal_error")

    async def _confirm(self, trip_id: int, session: Dict[str, Any]) -> Dict[str, Any]:
        trip = await self.store.get(trip_id)
        if trip is None:
            logger.warning("Payment received for unknown trip %s", trip_id)
            return self._ack(False, "trip_not_found")

        if trip.payment_status == PaymentStatus.PAID:
            logger.info("Duplicate payment event for trip %s ignored", trip_id)
            return self._ack(False, "already_paid")

        payment_state = session.get("payment_status")
        if payment_state is not None and payment_state not in SETTLED_PAYMENT_STATUSES:
            logger.info("Checkout for trip %s completed with payment_status=%s, waiting", trip_id, payment_state)
            return self._ack(False, "payment_not_settled")

        observed = trip.status
        if not can_transition(observed, TripStatus.CONFIRMED):
            logger.warning("Payment for trip %s ignored, status is %s", trip_id, observed.value)
            return self._ack(False, "invalid_transition")

        updated, fresh = await self.store.update_if_status(trip_id, observed, {
            "status": TripStatus.CONFIRMED,
            "payment_status": PaymentStatus.PAID,
            "stripe_session_id": session.get("id") or trip.stripe_session_id,
            "stripe_payment_intent_id": session.get("payment_intent"),
            "confirmed_at": utcnow(),
        })
        if not updated:
            current = fresh.status.value if fresh is not None else None
            await self.db.rollback()
            logger.warning("Payment for trip %s lost a race (now %s), provider will redeliver", trip_id, current)
            return self._ack(False, "concurrent_update")

        trip = fresh
        guide = await self.directory.find_guide(trip.selected_guide_id) if trip.selected_guide_id else None

        effects = SideEffects(self.db)
        effects.notify(trip.tourist_id, "payment_confirmed", trip.id)
        effects.notify(guide.user_id if guide else None, "trip_confirmed", trip.id)
        effects.audit(AuditAction.CONFIRM_PAYMENT, None, trip.id, details={
            "session_id": session.get("id"),
            "payment_intent": session.get("payment_intent"),
            "amount_total": session.get("amount_total"),
        })
        effects.emit(trip)
        event_ids = await effects.stage()
        await self.db.commit()
        await self.dispatcher.dispatch(event_ids)

        logger.info("Trip %s confirmed by payment %s", trip_id, session.get("payment_intent"))
        return self._ack(True, "confirmed")

    @staticmethod
    def _ack(processed: bool, reason: str) -> Dict[str, Any]:
        return {"received": True, "processed": processed, "reason": reason}
