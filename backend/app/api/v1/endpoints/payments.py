"""
Payment webhook endpoint.

Stripe posts checkout events here. Only a request that cannot be
authenticated is refused; everything else is acknowledged with 200 so the
provider stops redelivering.
"""

from fastapi import APIRouter, Depends, Request, Header
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.db.session import get_db
from backend.app.schemas.payment import WebhookAck
from backend.app.services.outbox import OutboxDispatcher
from backend.app.services.payments import PaymentConfirmationHandler
from backend.app.services.wiring import get_dispatcher

router = APIRouter(prefix="/payments", tags=["Payments"])


@router.post("/webhook", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None),
    db: AsyncSession = Depends(get_db),
    dispatcher: OutboxDispatcher = Depends(get_dispatcher)
):
    payload = await request.body()
    handler = PaymentConfirmationHandler(db, dispatcher)
    event = handler.verify(payload, stripe_signature)
    return await handler.handle_event(event)
