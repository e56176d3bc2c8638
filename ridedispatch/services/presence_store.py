"""Driver presence in Redis: GEO index for positions, TTL key for heartbeat, SET for availability."""
import logging
from dataclasses import dataclass
from typing import Any

from ridedispatch.config import settings
from ridedispatch.exceptions import InvalidCoordinatesError

logger = logging.getLogger(__name__)

GEO_KEY = "drivers:geo"
AVAILABLE_KEY = "drivers:available"

# Redis GEOADD rejects latitudes outside the Web Mercator range
MAX_LATITUDE = 85.05112878
MAX_LONGITUDE = 180.0


def _heartbeat_key(driver_id: str) -> str:
    return f"driver:hb:{driver_id}"


def validate_coordinates(lng: float, lat: float) -> None:
    if not -MAX_LONGITUDE <= lng <= MAX_LONGITUDE or not -MAX_LATITUDE <= lat <= MAX_LATITUDE:
        raise InvalidCoordinatesError(lng, lat)


@dataclass
class NearbyDriver:
    driver_id: str
    lng: float
    lat: float
    distance_km: float


class PresenceStore:
    """
    Tracks where drivers are, whether they are alive and whether they take rides.

    Liveness is the heartbeat key's TTL; nothing is deleted when a driver goes quiet.
    Availability is a plain set membership, independent of liveness.
    Redis errors propagate to the caller.
    """

    def __init__(self, redis: Any, heartbeat_ttl: int | None = None):
        self._redis = redis
        self._heartbeat_ttl = settings.HEARTBEAT_TTL_SECONDS if heartbeat_ttl is None else heartbeat_ttl

    async def update_location(self, driver_id: str, lng: float, lat: float) -> None:
        """Upsert position and refresh the heartbeat TTL."""
        validate_coordinates(lng, lat)
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.geoadd(GEO_KEY, (lng, lat, driver_id))
            pipe.set(_heartbeat_key(driver_id), "1", ex=self._heartbeat_ttl)
            await pipe.execute()

    async def set_availability(self, driver_id: str, available: bool) -> None:
        if available:
            await self._redis.sadd(AVAILABLE_KEY, driver_id)
        else:
            await self._redis.srem(AVAILABLE_KEY, driver_id)

    async def is_alive(self, driver_id: str) -> bool:
        return bool(await self._redis.exists(_heartbeat_key(driver_id)))

    async def is_available(self, driver_id: str) -> bool:
        return bool(await self._redis.sismember(AVAILABLE_KEY, driver_id))

    async def is_dispatchable(self, driver_id: str) -> bool:
        async with self._redis.pipeline(transaction=False) as pipe:
            pipe.sismember(AVAILABLE_KEY, driver_id)
            pipe.exists(_heartbeat_key(driver_id))
            available, alive = await pipe.execute()
        return bool(available) and bool(alive)

    async def get_position(self, driver_id: str) -> tuple[float, float] | None:
        """Last known (lng, lat), or None if the driver never reported one."""
        pos = await self._redis.geopos(GEO_KEY, driver_id)
        if not pos or pos[0] is None:
            return None
        lng, lat = pos[0]
        return float(lng), float(lat)

    async def remove_driver(self, driver_id: str) -> None:
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.zrem(GEO_KEY, driver_id)
            pipe.delete(_heartbeat_key(driver_id))
            pipe.srem(AVAILABLE_KEY, driver_id)
            await pipe.execute()

    async def query_nearby(
        self,
        lng: float,
        lat: float,
        radius_km: float | None = None,
        limit: int | None = None,
    ) -> list[NearbyDriver]:
        """
        Dispatchable drivers within radius_km of (lng, lat), nearest first.

        Over-fetches from the geo index (limit * NEARBY_OVERFETCH_FACTOR) since many
        nearby drivers are unavailable or stale. Stale drivers still flagged available
        are evicted from the availability set on the way.
        """
        radius_km = radius_km if radius_km is not None else settings.NEARBY_RADIUS_KM
        limit = limit if limit is not None else settings.NEARBY_LIMIT
        if limit <= 0:
            return []
        raw = await self._redis.geosearch(
            GEO_KEY,
            longitude=lng,
            latitude=lat,
            radius=radius_km,
            unit="km",
            sort="ASC",
            count=limit * settings.NEARBY_OVERFETCH_FACTOR,
            withdist=True,
            withcoord=True,
        )
        if not raw:
            return []

        # One round trip for the availability and heartbeat flags of every candidate
        async with self._redis.pipeline(transaction=False) as pipe:
            for member, _dist, _coord in raw:
                pipe.sismember(AVAILABLE_KEY, member)
                pipe.exists(_heartbeat_key(member))
            flags = await pipe.execute()

        results: list[NearbyDriver] = []
        stale: list[str] = []
        for i, (member, dist, coord) in enumerate(raw):
            available, alive = flags[2 * i], flags[2 * i + 1]
            if not available:
                continue
            if not alive:
                stale.append(member)
                continue
            if len(results) < limit:
                results.append(
                    NearbyDriver(
                        driver_id=member,
                        lng=float(coord[0]),
                        lat=float(coord[1]),
                        distance_km=float(dist),
                    )
                )
        if stale:
            logger.debug("Evicting stale drivers from availability: %s", stale)
            await self._redis.srem(AVAILABLE_KEY, *stale)
        return results
