# geosocial/services/redis_client.py
"""Builds the shared redis.asyncio client used by the geo index and the entity cache.

A missing URL or a disabled flag yields no client at all; every consumer then
treats the cache as unavailable and reads the relational store instead.
"""
from typing import Optional

import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError

from geosocial.core.config import settings

logger = structlog.get_logger(__name__)


def create_redis(url: Optional[str] = None, enabled: Optional[bool] = None) -> Optional[Redis]:
    url = url if url is not None else settings.REDIS_URL
    enabled = settings.ENABLE_REDIS if enabled is None else enabled
    if not enabled:
        logger.warning("redis_disabled")
        return None
    if not url:
        logger.warning("redis_url_missing")
        return None
    return Redis.from_url(url, decode_responses=True)


async def ping(redis_client: Optional[Redis]) -> bool:
    if redis_client is None:
        return False
    try:
        return bool(await redis_client.ping())
    except RedisError as e:
        logger.error("redis_ping_error", error=str(e))
        return False


async def close(redis_client: Optional[Redis]) -> None:
    if redis_client is None:
        return
    try:
        await redis_client.aclose()
    except RedisError as e:
        logger.warning("redis_close_error", error=str(e))
