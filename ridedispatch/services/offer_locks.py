"""Exclusive offer claims: one pending offer per ride, one lock per driver. Both are SET NX with TTL."""
from typing import Any

from redis.exceptions import WatchError

from ridedispatch.config import settings


def offer_key(ride_id: str) -> str:
    return f"dispatch:offer:{ride_id}"


def driver_lock_key(driver_id: str) -> str:
    return f"driver:lock:{driver_id}"


class OfferLockManager:
    def __init__(self, redis: Any):
        self._redis = redis

    async def try_offer(self, ride_id: str, driver_id: str, ttl_seconds: int | None = None) -> bool:
        """Create the pending offer for ride_id unless one is already in flight."""
        ttl = settings.OFFER_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        return bool(await self._redis.set(offer_key(ride_id), driver_id, nx=True, ex=ttl))

    async def try_lock_driver(self, driver_id: str, ride_id: str, ttl_seconds: int | None = None) -> bool:
        """Claim driver_id for ride_id. False if another ride holds the driver."""
        ttl = settings.DRIVER_LOCK_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        return bool(await self._redis.set(driver_lock_key(driver_id), ride_id, nx=True, ex=ttl))

    async def get_offer(self, ride_id: str) -> str | None:
        return await self._redis.get(offer_key(ride_id))

    async def get_driver_lock(self, driver_id: str) -> str | None:
        """Ride id currently holding the driver, if any."""
        return await self._redis.get(driver_lock_key(driver_id))

    async def clear_offer(self, ride_id: str) -> None:
        await self._redis.delete(offer_key(ride_id))

    async def unlock_driver(self, driver_id: str, ride_id: str | None = None) -> bool:
        """
        Release the driver lock. Idempotent.

        With ride_id, the lock is only released while that ride still owns it: once our
        lock expired and another ride claimed the driver, the claim must survive.
        Returns True if a lock was removed.
        """
        key = driver_lock_key(driver_id)
        if ride_id is None:
            return bool(await self._redis.delete(key))
        async with self._redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(key)
                if await pipe.get(key) != ride_id:
                    await pipe.unwatch()
                    return False
                pipe.multi()
                pipe.delete(key)
                deleted, = await pipe.execute()
            except WatchError:
                # Someone else changed the lock between read and delete; it is not ours any more
                return False
        return bool(deleted)
