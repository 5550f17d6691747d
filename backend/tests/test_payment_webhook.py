"""
Payment tests: Stripe Checkout creation and the confirmation webhook.

Stripe itself is never called; checkout creation is patched at the
service boundary and webhook signatures are produced with the configured
secret the same way Stripe signs deliveries.
"""

import hashlib
import hmac
import json
import time
from types import SimpleNamespace

import pytest
import stripe

from backend.app.core.config import settings
from backend.app.core.exceptions import (
    BusinessRuleViolationError,
    InsufficientPermissionsError,
    PaymentProviderError,
)
from backend.app.core.reliability import CircuitBreaker
from backend.app.models.enums import UserRole
from backend.app.models.trip_enums import TripStatus, PaymentStatus
from backend.app.services.payments import PaymentService, PaymentConfirmationHandler


def _signature_header(payload: bytes, secret: str, timestamp: int = None) -> str:
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode()}".encode()
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


@pytest.fixture
def payable_trip(orchestrator, seed, negotiated_trip):
    """Factory: a trip accepted by its guide and awaiting payment."""
    async def _create(**overrides):
        trip = await negotiated_trip(**overrides)
        return await orchestrator.guide_accept(trip.id, seed.guide_user.id)
    return _create


@pytest.fixture
def stripe_configured(monkeypatch):
    monkeypatch.setattr(settings, "stripe_api_key", "sk_test_local")


# ---------------------------------------------------------------------------
# Webhook handling
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_duplicate_event_confirms_once(orchestrator, payable_trip, confirm_payment, redis_mock):
    trip = await payable_trip()

    first = await confirm_payment(trip.id)
    second = await confirm_payment(trip.id)

    assert first["reason"] == "confirmed"
    assert second == {"received": True, "processed": False, "reason": "already_paid"}

    trip = await orchestrator.store.get(trip.id)
    assert trip.status == TripStatus.CONFIRMED
    assert trip.payment_status == PaymentStatus.PAID
    assert trip.stripe_session_id == "cs_test_1"
    assert trip.stripe_payment_intent_id == "pi_test_1"

    statuses = [message["status"] for message in redis_mock.messages_for(trip.id)]
    assert statuses.count("confirmed") == 1
    confirmed = [message for message in redis_mock.messages_for(trip.id) if message["status"] == "confirmed"][0]
    assert confirmed["paymentStatus"] == "paid"
    assert confirmed["confirmedAt"] is not None


@pytest.mark.asyncio
async def test_event_without_trip_reference_is_acknowledged(confirm_payment, db_session, dispatcher, checkout_event):
    ack = await confirm_payment(None)
    assert ack == {"received": True, "processed": False, "reason": "missing_trip_id"}

    event = checkout_event(1)
    event["data"]["object"]["metadata"]["trip_id"] = "not-a-number"
    ack = await PaymentConfirmationHandler(db_session, dispatcher).handle_event(event)
    assert ack["reason"] == "invalid_trip_id"


@pytest.mark.asyncio
async def test_event_for_unknown_trip(seed, confirm_payment):
    ack = await confirm_payment(9999)

    assert ack == {"received": True, "processed": False, "reason": "trip_not_found"}


@pytest.mark.asyncio
async def test_payment_after_cancellation_is_ignored(orchestrator, seed, payable_trip, confirm_payment):
    trip = await payable_trip()
    await orchestrator.cancel_trip(seed.tourist.id, trip.id, "Found another guide", UserRole.TOURIST)

    ack = await confirm_payment(trip.id)

    assert ack["processed"] is False
    assert ack["reason"] == "invalid_transition"
    trip = await orchestrator.store.get(trip.id)
    assert trip.status == TripStatus.CANCELLED
    assert trip.payment_status == PaymentStatus.PENDING


@pytest.mark.asyncio
async def test_unsettled_payment_waits(orchestrator, payable_trip, confirm_payment):
    trip = await payable_trip()

    ack = await confirm_payment(trip.id, payment_status="unpaid")

    assert ack["reason"] == "payment_not_settled"
    trip = await orchestrator.store.get(trip.id)
    assert trip.status == TripStatus.AWAITING_PAYMENT


@pytest.mark.asyncio
async def test_delayed_payment_confirms_when_it_settles(orchestrator, payable_trip, confirm_payment):
    trip = await payable_trip()
    await confirm_payment(trip.id, payment_status="unpaid")

    ack = await confirm_payment(
        trip.id, event_id="evt_test_2", event_type="checkout.session.async_payment_succeeded"
    )

    assert ack["processed"] is True
    trip = await orchestrator.store.get(trip.id)
    assert trip.status == TripStatus.CONFIRMED
    assert trip.payment_status == PaymentStatus.PAID


@pytest.mark.asyncio
async def test_other_event_types_are_ignored(db_session, dispatcher):
    handler = PaymentConfirmationHandler(db_session, dispatcher)

    ack = await handler.handle_event({"id": "evt_2", "type": "payment_intent.created", "data": {"object": {}}})

    assert ack == {"received": True, "processed": False, "reason": "ignored_event_type"}


# ---------------------------------------------------------------------------
# Webhook endpoint
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_webhook_rejects_bad_signature(client, payable_trip, checkout_event):
    trip = await payable_trip()
    payload = json.dumps(checkout_event(trip.id)).encode()

    response = await client.post(
        "/v1/payments/webhook",
        content=payload,
        headers={"stripe-signature": _signature_header(payload, "whsec_wrong")},
    )

    assert response.status_code == 400
    assert response.json()["error_code"] == "ERR_WEBHOOK_001"


@pytest.mark.asyncio
async def test_webhook_requires_signature(client, seed):
    response = await client.post("/v1/payments/webhook", content=b"{}")

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_webhook_confirms_signed_event(client, orchestrator, payable_trip, checkout_event):
    trip = await payable_trip()
    payload = json.dumps(checkout_event(trip.id)).encode()

    response = await client.post(
        "/v1/payments/webhook",
        content=payload,
        headers={"stripe-signature": _signature_header(payload, settings.stripe_webhook_secret)},
    )

    assert response.status_code == 200
    assert response.json() == {"received": True, "processed": True, "reason": "confirmed"}
    trip = await orchestrator.store.get(trip.id)
    assert trip.status == TripStatus.CONFIRMED


# ---------------------------------------------------------------------------
# Checkout
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_checkout_charges_price_breakdown_total(
    orchestrator, seed, payable_trip, db_session, dispatcher, stripe_configured, mocker
):
    trip = await payable_trip()
    create = mocker.patch.object(
        PaymentService, "_create_stripe_session",
        return_value=SimpleNamespace(id="cs_test_42", url="https://checkout.stripe.com/c/pay/cs_test_42"),
    )
    service = PaymentService(db_session, dispatcher, breaker=CircuitBreaker("test-stripe", 3, 30))

    result = await service.create_checkout_session(trip.id, seed.tourist.id)

    assert result == {
        "checkout_url": "https://checkout.stripe.com/c/pay/cs_test_42",
        "session_id": "cs_test_42",
        "amount": 120.0,
        "currency": "usd",
    }
    params = create.call_args.args[0]
    assert params["line_items"][0]["price_data"]["unit_amount"] == 12000
    assert params["metadata"]["trip_id"] == str(trip.id)
    assert params["metadata"]["guide_id"] == str(seed.guide.id)
    assert params["customer_email"] == "sara@example.com"

    trip = await orchestrator.store.get(trip.id)
    assert trip.stripe_session_id == "cs_test_42"
    assert trip.status == TripStatus.AWAITING_PAYMENT


@pytest.mark.asyncio
async def test_checkout_rules(orchestrator, seed, negotiated_trip, payable_trip, db_session, dispatcher, stripe_configured):
    service = PaymentService(db_session, dispatcher, breaker=CircuitBreaker("test-stripe", 3, 30))
    pending = await negotiated_trip()
    payable = await payable_trip()

    with pytest.raises(BusinessRuleViolationError):
        await service.create_checkout_session(pending.id, seed.tourist.id)
    with pytest.raises(InsufficientPermissionsError):
        await service.create_checkout_session(payable.id, seed.other_tourist.id)


@pytest.mark.asyncio
async def test_checkout_without_provider_key(seed, payable_trip, db_session, dispatcher, monkeypatch):
    monkeypatch.setattr(settings, "stripe_api_key", None)
    trip = await payable_trip()

    with pytest.raises(PaymentProviderError):
        await PaymentService(db_session, dispatcher).create_checkout_session(trip.id, seed.tourist.id)


@pytest.mark.asyncio
async def test_provider_failures_open_the_circuit(seed, payable_trip, db_session, dispatcher, stripe_configured, mocker):
    trip = await payable_trip()
    create = mocker.patch.object(
        PaymentService, "_create_stripe_session",
        side_effect=stripe.APIConnectionError("Network unreachable"),
    )
    service = PaymentService(db_session, dispatcher, breaker=CircuitBreaker("test-stripe", 1, 60))

    with pytest.raises(PaymentProviderError):
        await service.create_checkout_session(trip.id, seed.tourist.id)

    with pytest.raises(PaymentProviderError) as exc_info:
        await service.create_checkout_session(trip.id, seed.tourist.id)

    assert exc_info.value.message == "Payment provider temporarily unavailable"
    assert create.call_count == 1
