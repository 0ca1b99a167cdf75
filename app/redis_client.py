"""
Redis connection setup using redis-py async client.

Used for the cross-instance poll lock only; never as a system of record.
``REDIS_SSL`` upgrades a plain ``redis://`` URL to ``rediss://`` (Upstash).
"""

import redis.asyncio as aioredis

from app.config import settings


def redis_url() -> str:
    url = settings.REDIS_URL
    if settings.REDIS_SSL and url.startswith("redis://"):
        return "rediss://" + url[len("redis://"):]
    return url


redis = aioredis.from_url(redis_url(), decode_responses=True)


async def get_redis() -> aioredis.Redis:
    """FastAPI dependency that provides the Redis client."""
    return redis
