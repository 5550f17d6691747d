"""
Redis connection used for real-time trip updates.

Trip status changes are published on per-trip pub/sub channels; the socket
gateway subscribes to them. The client connects lazily on first publish.
"""

import logging

import redis.asyncio as redis
from backend.app.core.config import settings

logger = logging.getLogger(__name__)


def create_redis_client() -> redis.Redis:
    return redis.from_url(
        settings.redis_url,
        decode_responses=settings.redis_decode_responses,
    )


# Shared client; tests replace it with an in-memory double
redis_client = create_redis_client()


async def get_redis():
    """FastAPI dependency returning the shared client."""
    return redis_client


async def ping_redis() -> bool:
    """Health probe; never raises."""
    try:
        return bool(await redis_client.ping())
    except Exception:
        logger.warning("Redis ping failed", exc_info=True)
        return False


async def close_redis() -> None:
    try:
        await redis_client.aclose()
    except Exception:
        logger.warning("Error while closing Redis connection", exc_info=True)
