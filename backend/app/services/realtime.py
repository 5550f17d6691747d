"""
Real-time trip status emitter.

Publishes status changes on the Redis channel ``trip:{id}``; socket
gateways subscribed to that channel fan them out to clients. Delivery is
best effort: every failure is logged and swallowed.
"""

import json
import logging
from typing import Any, Dict, Optional

from backend.app.core.clock import utcnow

logger = logging.getLogger(__name__)

STATUS_EVENT = "trip_status_updated"


def trip_channel(trip_id: int) -> str:
    return f"trip:{trip_id}"


class RealtimeEmitter:

    def __init__(self, redis=None):
        self.redis = redis

    async def emit_status_change(self, trip_id: int, status: str, extra: Optional[Dict[str, Any]] = None) -> bool:
        """
        Broadcast a status change. Never raises.

        Returns:
            True if the message was handed to the transport
        """
        try:
            if self.redis is None:
                logger.warning("Realtime transport not initialized, dropping %s for trip %s", status, trip_id)
                return False

            message = {
                "event": STATUS_EVENT,
                "tripId": trip_id,
                "status": status,
                "timestamp": utcnow().isoformat(),
            }
            for key, value in (extra or {}).items():
                if value is not None:
                    message[key] = value

            receivers = await self.redis.publish(trip_channel(trip_id), json.dumps(message, default=str))
            if not receivers:
                logger.debug("No subscribers on %s", trip_channel(trip_id))
            return True
        except Exception:
            logger.exception("Failed to emit status %s for trip %s", status, trip_id)
            return False
