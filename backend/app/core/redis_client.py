"""
Redis connection used for notification fan-out.

Other processes (bot workers, other API replicas) subscribe to
settings.redis_notification_channel. Nothing here is created unless
redis_fanout_enabled is set.
"""

import logging
from typing import Optional

import redis.asyncio as redis
from backend.app.core.config import settings

logger = logging.getLogger(__name__)

_client: Optional[redis.Redis] = None


def get_fanout_client() -> Optional[redis.Redis]:
    """Shared client when fan-out is enabled, else None. Connects lazily."""
    global _client
    if not settings.redis_fanout_enabled:
        return None
    if _client is None:
        _client = redis.from_url(
            settings.redis_url,
            decode_responses=settings.redis_decode_responses,
        )
    return _client


async def ping_redis() -> str:
    """Fan-out status for /health: "disabled", "ok" or "unavailable"."""
    client = get_fanout_client()
    if client is None:
        return "disabled"
    try:
        return "ok" if await client.ping() else "unavailable"
    except Exception as e:
        logger.warning("Redis ping failed: %s", e)
        return "unavailable"


async def close_redis() -> None:
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None
