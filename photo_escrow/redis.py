import redis.asyncio as aioredis

from photo_escrow.config import settings

redis_pool = aioredis.ConnectionPool.from_url(settings.redis_url)


def redis_client() -> aioredis.Redis:
    """Client bound to the shared pool, for background services outside a request."""
    return aioredis.Redis(connection_pool=redis_pool)
