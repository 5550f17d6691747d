"""
Payment schemas.
"""

from pydantic import BaseModel


class CheckoutSessionResponse(BaseModel):
    checkout_url: str
    session_id: str
    amount: float
    currency: str


class WebhookAck(BaseModel):
    """Returned for every authenticated webhook delivery, processed or not."""
    received: bool
    processed: bool
    reason: str
