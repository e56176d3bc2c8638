"""
Driver dispatch: match one ride to one accepting driver.

The flow for a ride:
1. Find dispatchable drivers near the pickup, nearest first, and queue them.
2. Offer the ride to the next queued driver holding both the ride's offer and the driver's lock.
3. Wait (outside this call) for the driver to accept or reject, or for the offer to time out.
4. On reject/timeout go back to 2; stop when a driver accepts or the queue runs out.

Offers are strictly sequential per ride. Every state change goes through
dispatch_state.transition, so a late or duplicate response cannot double-assign.
"""
import enum
import json
import logging
import time
from dataclasses import dataclass
from typing import Any

from redis.exceptions import RedisError

from ridedispatch.config import settings
from ridedispatch.services.dispatch_queue import DispatchQueue, queue_key
from ridedispatch.services.dispatch_state import (
    ACTIVE_KEY,
    TERMINAL,
    DispatchState,
    create_record,
    get_record,
    record_key,
    transition,
)
from ridedispatch.services.offer_locks import OfferLockManager, offer_key
from ridedispatch.services.presence_store import PresenceStore
from ridedispatch.services.ws_updates import (
    DISPATCH_FAILED,
    RIDE_CANCELLED,
    RIDE_OFFER,
    RIDE_OFFER_EXPIRED,
    RIDE_STATUS,
    driver_topic,
    ride_topic,
    updates_manager,
)

logger = logging.getLogger(__name__)


class DispatchOutcome(str, enum.Enum):
    OFFERED = "OFFERED"
    ASSIGNED = "ASSIGNED"
    EXHAUSTED = "EXHAUSTED"
    ABORTED = "ABORTED"
    DUPLICATE = "DUPLICATE"
    INVALID_OFFER = "INVALID_OFFER"


@dataclass
class GeoPoint:
    lng: float
    lat: float


@dataclass
class DispatchResult:
    ride_id: str
    outcome: DispatchOutcome
    driver_id: str | None = None
    message: str | None = None

    @property
    def success(self) -> bool:
        return self.outcome in (DispatchOutcome.OFFERED, DispatchOutcome.ASSIGNED)


@dataclass
class DispatchStatus:
    ride_id: str
    state: DispatchState | None
    active: bool
    pending_driver_id: str | None
    assigned_driver_id: str | None
    remaining_candidates: int
    total_candidates: int
    attempts: int
    started_at: float | None
    offer_expires_at: float | None


@dataclass
class DispatchStats:
    active_dispatches: int
    pending_offers: int
    queued_candidates: int


class Dispatcher:
    """Dispatch orchestrator over the presence store, offer locks and candidate queue."""

    def __init__(
        self,
        redis: Any,
        publisher: Any = None,
        presence: PresenceStore | None = None,
        locks: OfferLockManager | None = None,
        queue: DispatchQueue | None = None,
    ):
        self.redis = redis
        self.presence = presence or PresenceStore(redis)
        self.locks = locks or OfferLockManager(redis)
        self.queue = queue or DispatchQueue(redis)
        self._publisher = publisher or updates_manager

    # ---------------------- Inbound commands ----------------------

    async def start_dispatch(
        self,
        ride_id: str,
        pickup: GeoPoint,
        radius_km: float | None = None,
        limit: int | None = None,
        context: dict[str, Any] | None = None,
    ) -> DispatchResult:
        """
        Search for drivers around pickup and extend the first offer.

        Returns OFFERED once an offer is out, EXHAUSTED when nobody could be offered
        the ride, DUPLICATE (no-op) if the ride is already being dispatched.
        """
        # Membership in the active set is the per-ride guard; SADD is the atomic claim
        if not await self.redis.sadd(ACTIVE_KEY, ride_id):
            logger.info("Ride %s already being dispatched, ignoring duplicate start", ride_id)
            return DispatchResult(ride_id, DispatchOutcome.DUPLICATE, message="Dispatch already in progress")

        radius_km = radius_km if radius_km is not None else settings.NEARBY_RADIUS_KM
        try:
            return await self._search(ride_id, pickup, radius_km, limit, context)
        except Exception:
            # Leave the ride free for the caller's retry instead of half-claimed
            await self._release_failed_start(ride_id)
            raise

    async def _search(
        self,
        ride_id: str,
        pickup: GeoPoint,
        radius_km: float,
        limit: int | None,
        context: dict[str, Any] | None,
    ) -> DispatchResult:
        await create_record(self.redis, ride_id, pickup.lng, pickup.lat, radius_km, context=context)

        nearby = await self.presence.query_nearby(pickup.lng, pickup.lat, radius_km, limit)
        if not nearby:
            return await self._finish_exhausted(ride_id, "No drivers available")

        driver_ids = [d.driver_id for d in nearby]
        await self.queue.push(ride_id, driver_ids)
        record = await transition(
            self.redis, ride_id, DispatchState.OFFERING, fields={"candidates": str(len(driver_ids))}
        )
        if record is None:
            return await self._current_result(ride_id)
        logger.info("Ride %s: %d candidates within %.1f km", ride_id, len(driver_ids), radius_km)
        return await self._offer_next(ride_id)

    async def respond_to_offer(self, ride_id: str, driver_id: str, accept: bool) -> DispatchResult:
        """
        Resolve the pending offer for ride_id with the driver's answer.

        Only the driver currently holding the offer may answer, and only once; anything
        else (expired offer, never offered, second answer) is INVALID_OFFER and changes
        nothing. A rejection moves straight on to the next candidate.
        """

        def holds_offer(record: dict[str, str], offer: str | None) -> bool:
            return offer == driver_id and record.get("driver_id") == driver_id

        if accept:
            record = await transition(
                self.redis,
                ride_id,
                DispatchState.ACCEPTED,
                fields={"assigned_driver_id": driver_id},
                guard=holds_offer,
            )
        else:
            record = await transition(self.redis, ride_id, DispatchState.ADVANCING, guard=holds_offer)

        if record is None:
            logger.info("Ride %s: stale or invalid response from driver %s", ride_id, driver_id)
            return DispatchResult(
                ride_id, DispatchOutcome.INVALID_OFFER, driver_id, message="No pending offer for this driver"
            )

        await self.locks.unlock_driver(driver_id, ride_id)
        if accept:
            await self._publisher.publish_many(
                [ride_topic(ride_id), driver_topic(driver_id)],
                RIDE_STATUS,
                {"rideId": ride_id, "status": "assigned", "driverId": driver_id},
            )
            return DispatchResult(ride_id, DispatchOutcome.ASSIGNED, driver_id)

        logger.info("Ride %s: driver %s declined", ride_id, driver_id)
        return await self._advance(ride_id)

    async def advance_expired(self, ride_id: str) -> DispatchResult | None:
        """
        Treat a silently expired offer as a rejection and move to the next candidate.

        Returns None when the ride is not waiting on an expired offer.
        """
        record = await transition(
            self.redis, ride_id, DispatchState.ADVANCING, guard=lambda record, offer: offer is None
        )
        if record is None:
            return None
        driver_id = record.get("driver_id")
        if driver_id:
            logger.info("Ride %s: offer to driver %s timed out", ride_id, driver_id)
            await self.locks.unlock_driver(driver_id, ride_id)
            await self._publisher.publish(
                driver_topic(driver_id), RIDE_OFFER_EXPIRED, {"rideId": ride_id}
            )
        return await self._advance(ride_id)

    async def abort_stalled(self, ride_id: str, updated_at: str) -> DispatchResult | None:
        """
        Fail a dispatch whose worker stopped mid-step (no progress since updated_at).

        Returns None if the dispatch moved on in the meantime.
        """
        record = await transition(
            self.redis,
            ride_id,
            DispatchState.EXHAUSTED,
            guard=lambda record, offer: record.get("updated_at") == updated_at,
        )
        if record is None:
            return None
        logger.warning("Ride %s: dispatch stalled in %s, giving up", ride_id, record["previous_state"])
        await self._release_drivers(ride_id, record)
        await self._publisher.publish(
            ride_topic(ride_id), DISPATCH_FAILED, {"rideId": ride_id, "reason": "Dispatch stalled"}
        )
        return DispatchResult(ride_id, DispatchOutcome.EXHAUSTED, message="Dispatch stalled")

    async def cancel_dispatch(self, ride_id: str) -> DispatchResult:
        """Abort a running dispatch (rider cancelled): release the offered driver and stop."""
        record = await transition(self.redis, ride_id, DispatchState.ABORTED)
        if record is None:
            result = await self._current_result(ride_id)
            result.message = "Dispatch not active"
            return result

        await self._release_drivers(ride_id, record)
        if record["previous_state"] == DispatchState.AWAITING_RESPONSE.value:
            await self._publisher.publish(
                driver_topic(record["driver_id"]),
                RIDE_CANCELLED,
                {"rideId": ride_id, "message": "Ride was cancelled by customer"},
            )
        await self._publisher.publish(ride_topic(ride_id), RIDE_STATUS, {"rideId": ride_id, "status": "cancelled"})
        logger.info("Ride %s: dispatch cancelled", ride_id)
        return DispatchResult(ride_id, DispatchOutcome.ABORTED, message="Dispatch cancelled")

    # ---------------------- Queries ----------------------

    async def active_rides(self) -> set[str]:
        return await self.redis.smembers(ACTIVE_KEY)

    async def get_dispatch_status(self, ride_id: str) -> DispatchStatus:
        record = await get_record(self.redis, ride_id)
        async with self.redis.pipeline(transaction=False) as pipe:
            pipe.get(offer_key(ride_id))
            pipe.llen(queue_key(ride_id))
            pipe.sismember(ACTIVE_KEY, ride_id)
            pending, remaining, active = await pipe.execute()
        return DispatchStatus(
            ride_id=ride_id,
            state=DispatchState(record["state"]) if record else None,
            active=bool(active),
            pending_driver_id=pending,
            assigned_driver_id=record.get("assigned_driver_id"),
            remaining_candidates=remaining,
            total_candidates=int(record.get("candidates", 0)),
            attempts=int(record.get("attempts", 0)),
            started_at=float(record["started_at"]) if "started_at" in record else None,
            offer_expires_at=float(record["offer_expires_at"]) if "offer_expires_at" in record else None,
        )

    async def get_dispatch_stats(self) -> DispatchStats:
        ride_ids = list(await self.active_rides())
        if not ride_ids:
            return DispatchStats(active_dispatches=0, pending_offers=0, queued_candidates=0)
        async with self.redis.pipeline(transaction=False) as pipe:
            for ride_id in ride_ids:
                pipe.exists(offer_key(ride_id))
                pipe.llen(queue_key(ride_id))
            counts = await pipe.execute()
        return DispatchStats(
            active_dispatches=len(ride_ids),
            pending_offers=sum(counts[0::2]),
            queued_candidates=sum(counts[1::2]),
        )

    # ---------------------- Offering ----------------------

    async def _advance(self, ride_id: str) -> DispatchResult:
        record = await transition(self.redis, ride_id, DispatchState.OFFERING)
        if record is None:
            return await self._current_result(ride_id)
        return await self._offer_next(ride_id)

    async def _offer_next(self, ride_id: str) -> DispatchResult:
        """Pop candidates until one can be offered the ride, or the queue is gone."""
        while True:
            driver_id = await self.queue.pop_next(ride_id)
            if driver_id is None:
                return await self._finish_exhausted(ride_id, "No driver accepted")

            # Drivers go offline or stale between the search and their turn
            if not await self.presence.is_dispatchable(driver_id):
                logger.debug("Ride %s: driver %s no longer dispatchable, skipping", ride_id, driver_id)
                continue
            if not await self.locks.try_lock_driver(driver_id, ride_id):
                logger.debug("Ride %s: driver %s claimed by another ride, skipping", ride_id, driver_id)
                continue
            await self.redis.hset(record_key(ride_id), "claiming_driver_id", driver_id)
            if not await self.locks.try_offer(ride_id, driver_id):
                await self.locks.unlock_driver(driver_id, ride_id)
                logger.debug("Ride %s: offer already in flight, skipping driver %s", ride_id, driver_id)
                continue

            expires_at = time.time() + settings.OFFER_TTL_SECONDS
            record = await transition(
                self.redis,
                ride_id,
                DispatchState.AWAITING_RESPONSE,
                fields={"driver_id": driver_id, "offer_expires_at": str(expires_at)},
            )
            if record is None:
                # Cancelled while we were claiming the driver
                await self.locks.clear_offer(ride_id)
                await self.locks.unlock_driver(driver_id, ride_id)
                return await self._current_result(ride_id)

            await self.redis.hincrby(record_key(ride_id), "attempts", 1)
            await self._publisher.publish(
                driver_topic(driver_id), RIDE_OFFER, self._offer_payload(ride_id, record, expires_at)
            )
            logger.info("Ride %s offered to driver %s", ride_id, driver_id)
            return DispatchResult(ride_id, DispatchOutcome.OFFERED, driver_id)

    async def _finish_exhausted(self, ride_id: str, reason: str) -> DispatchResult:
        record = await transition(self.redis, ride_id, DispatchState.EXHAUSTED)
        if record is None:
            return await self._current_result(ride_id)
        await self._publisher.publish(ride_topic(ride_id), DISPATCH_FAILED, {"rideId": ride_id, "reason": reason})
        logger.info("Ride %s: %s", ride_id, reason)
        return DispatchResult(ride_id, DispatchOutcome.EXHAUSTED, message=reason)

    async def _release_drivers(self, ride_id: str, record: dict[str, str]) -> None:
        # The offered driver, plus one claimed but not yet offered when a step was cut short
        for driver_id in {record.get("driver_id"), record.get("claiming_driver_id")} - {None}:
            await self.locks.unlock_driver(driver_id, ride_id)

    async def _release_failed_start(self, ride_id: str) -> None:
        try:
            record = await transition(self.redis, ride_id, DispatchState.ABORTED)
            if record is not None:
                await self._release_drivers(ride_id, record)
            await self.redis.srem(ACTIVE_KEY, ride_id)
        except RedisError as exc:
            logger.error("Ride %s: could not release failed dispatch: %s", ride_id, exc)

    async def _current_result(self, ride_id: str) -> DispatchResult:
        """Outcome as the record stands now; used after losing a race to another writer."""
        record = await get_record(self.redis, ride_id)
        if not record:
            return DispatchResult(ride_id, DispatchOutcome.ABORTED, message="Dispatch not found")
        state = DispatchState(record["state"])
        if state == DispatchState.ACCEPTED:
            return DispatchResult(ride_id, DispatchOutcome.ASSIGNED, record.get("assigned_driver_id"))
        if state == DispatchState.AWAITING_RESPONSE:
            return DispatchResult(ride_id, DispatchOutcome.OFFERED, record.get("driver_id"))
        if state == DispatchState.EXHAUSTED:
            return DispatchResult(ride_id, DispatchOutcome.EXHAUSTED)
        if state in TERMINAL:
            return DispatchResult(ride_id, DispatchOutcome.ABORTED)
        # Another worker is mid-step on this ride
        return DispatchResult(ride_id, DispatchOutcome.DUPLICATE, message=f"Dispatch is {state.value}")

    @staticmethod
    def _offer_payload(ride_id: str, record: dict[str, str], expires_at: float) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if record.get("context"):
            payload.update(json.loads(record["context"]))
        payload.update(
            {
                "rideId": ride_id,
                "pickup": {"lng": float(record["pickup_lng"]), "lat": float(record["pickup_lat"])},
                "radiusKm": float(record["radius_km"]),
                "expiresAt": int(expires_at * 1000),
            }
        )
        return payload
