"""Per-ride candidate queue (Redis LIST), nearest driver first, expiring as a whole."""
from typing import Any

from ridedispatch.config import settings


def queue_key(ride_id: str) -> str:
    return f"dispatch:queue:{ride_id}"


class DispatchQueue:
    def __init__(self, redis: Any, ttl_seconds: int | None = None):
        self._redis = redis
        self._ttl = settings.DISPATCH_QUEUE_TTL_SECONDS if ttl_seconds is None else ttl_seconds

    async def push(self, ride_id: str, driver_ids: list[str]) -> None:
        """Replace the queue for ride_id with driver_ids (in order) and start its expiry."""
        key = queue_key(ride_id)
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.delete(key)
            if driver_ids:
                pipe.rpush(key, *driver_ids)
                pipe.expire(key, self._ttl)
            await pipe.execute()

    async def pop_next(self, ride_id: str) -> str | None:
        # Popping does not refresh the expiry
        return await self._redis.lpop(queue_key(ride_id))

    async def remaining(self, ride_id: str) -> int:
        return await self._redis.llen(queue_key(ride_id))

    async def clear(self, ride_id: str) -> None:
        await self._redis.delete(queue_key(ride_id))
