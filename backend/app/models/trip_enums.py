"""
Trip-related enumerations.
"""

import enum


class TripStatus(str, enum.Enum):
    """Trip status enumeration. Legal moves live in the trip state graph."""
    DRAFT = "draft"  # Not yet submitted
    SELECTING_GUIDE = "selecting_guide"  # Tourist is browsing candidate guides
    AWAITING_CALL = "awaiting_call"  # Guide chosen, negotiation call not started
    IN_CALL = "in_call"  # Negotiation call in progress
    PENDING_CONFIRMATION = "pending_confirmation"  # Call ended, waiting on guide decision
    AWAITING_PAYMENT = "awaiting_payment"  # Guide accepted, tourist must pay
    CONFIRMED = "confirmed"  # Paid
    IN_PROGRESS = "in_progress"  # Guide has started the trip
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REJECTED = "rejected"  # Guide declined
    ARCHIVED = "archived"


class PaymentStatus(str, enum.Enum):
    """Payment status enumeration."""
    UNPAID = "unpaid"
    PENDING = "pending"  # Checkout expected
    PAID = "paid"  # Only set by the payment confirmation handler
    DEPOSIT_PAID = "deposit_paid"
    REFUNDED = "refunded"


class CancellationActor(str, enum.Enum):
    """Who cancelled or rejected a trip."""
    TOURIST = "tourist"
    GUIDE = "guide"
    ADMIN = "admin"
