"""Optional Redis connection backing the deposit bridge's processed-transfer keys.

Without Redis the window lives in memory only, and transfers inside the
lookback range may be credited again after a restart. ``init_redis`` never
fails the startup: an unreachable server is logged and Redis stays disabled.
"""

from __future__ import annotations

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from deal_escrow.config import get_settings
from deal_escrow.logging_config import get_logger

logger = get_logger(__name__)

_redis_client: aioredis.Redis | None = None


async def init_redis() -> aioredis.Redis | None:
    """Connect to REDIS_URL. Returns None (and logs) if the server is unreachable."""
    global _redis_client
    settings = get_settings()
    if not settings.redis_url:
        logger.info("redis.disabled")
        return None

    client = aioredis.from_url(settings.redis_url, decode_responses=True)
    try:
        await client.ping()
    except (RedisError, OSError) as exc:
        logger.warning("redis.unavailable", url=settings.redis_url, error=str(exc))
        await client.aclose()
        return None
    _redis_client = client
    logger.info("redis.connected", url=settings.redis_url)
    return client


def get_redis() -> aioredis.Redis:
    if _redis_client is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis_client


def redis_available() -> bool:
    return _redis_client is not None


async def ping_redis() -> str:
    """``"disabled"``, ``"healthy"`` or ``"unhealthy: <reason>"``."""
    if _redis_client is None:
        return "disabled"
    try:
        await _redis_client.ping()
    except (RedisError, OSError) as exc:
        logger.error("redis.ping_failed", error=str(exc))
        return f"unhealthy: {exc}"
    return "healthy"


async def close_redis() -> None:
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        logger.info("redis.disconnected")
        _redis_client = None
