"""
API v1 Router.

Aggregates all v1 API endpoints.
"""

from fastapi import APIRouter
from backend.app.api.v1.endpoints import (
    tourist_trips, guide_trips, trips, calls, payments,
    admin, admin_ops, notifications
)

router = APIRouter()

# Trip lifecycle, per actor
router.include_router(tourist_trips.router)
router.include_router(guide_trips.router)
router.include_router(trips.router)

# Negotiation calls
router.include_router(calls.router)

# Payment provider webhook
router.include_router(payments.router)

# Admin
router.include_router(admin.router)
router.include_router(admin_ops.router)

router.include_router(notifications.router)
