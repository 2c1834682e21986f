import redis.asyncio as redis

from orderflow.config import settings

_redis: redis.Redis | None = None


async def get_redis(url: str | None = None) -> redis.Redis:
    global _redis
    if _redis is None:
        _redis = redis.from_url(url or settings.redis_url, decode_responses=True)
    return _redis


async def close_redis() -> None:
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None
