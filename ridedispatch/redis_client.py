"""Redis async client; set in lifespan, used by the dispatch services and the sweeper."""
import redis.asyncio as aioredis

from ridedispatch.config import settings

_redis: aioredis.Redis | None = None


def create_redis() -> aioredis.Redis:
    return aioredis.from_url(settings.REDIS_URL, decode_responses=True)


def set_redis(client: aioredis.Redis | None) -> None:
    global _redis
    _redis = client


async def get_redis() -> aioredis.Redis:
    if _redis is None:
        raise RuntimeError("Redis not initialized")
    return _redis
