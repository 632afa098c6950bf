from typing import Optional

import redis.asyncio as redis
from loguru import logger

from hangjegyzet.core.config import Settings, settings as default_settings


async def create_redis_client(config: Optional[Settings] = None) -> Optional[redis.Redis]:
    """
    Create and verify a Redis client

    Returns:
        Redis client or None if Redis is disabled or unreachable
    """
    config = config or default_settings
    if not config.REDIS_ENABLED:
        return None

    client = redis.from_url(config.REDIS_URL, encoding="utf-8", decode_responses=True)
    try:
        # Test connection
        await client.ping()
        logger.info("Redis connection established")
    except Exception as e:
        logger.error(f"Failed to connect to Redis: {e}")
        await client.aclose()
        return None
    return client


async def close_redis_connection(client: Optional[redis.Redis]) -> None:
    """Close Redis connection if open"""
    if client is not None:
        await client.aclose()
        logger.info("Redis connection closed")
