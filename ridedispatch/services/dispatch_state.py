"""Dispatch state machine: one record per ride in Redis, changed only through allowed transitions."""
import enum
import json
import logging
import time
from typing import Any, Callable

from redis.exceptions import WatchError

from ridedispatch.config import settings
from ridedispatch.services.dispatch_queue import queue_key
from ridedispatch.services.offer_locks import offer_key

logger = logging.getLogger(__name__)

ACTIVE_KEY = "dispatch:active"


class DispatchState(str, enum.Enum):
    SEARCHING = "SEARCHING"
    OFFERING = "OFFERING"
    AWAITING_RESPONSE = "AWAITING_RESPONSE"
    ADVANCING = "ADVANCING"
    ACCEPTED = "ACCEPTED"
    EXHAUSTED = "EXHAUSTED"
    ABORTED = "ABORTED"


# Allowed transitions: from_state -> {to_state, ...}
ALLOWED: dict[DispatchState, set[DispatchState]] = {
    DispatchState.SEARCHING: {DispatchState.OFFERING, DispatchState.EXHAUSTED, DispatchState.ABORTED},
    DispatchState.OFFERING: {DispatchState.AWAITING_RESPONSE, DispatchState.EXHAUSTED, DispatchState.ABORTED},
    DispatchState.AWAITING_RESPONSE: {DispatchState.ACCEPTED, DispatchState.ADVANCING, DispatchState.ABORTED},
    DispatchState.ADVANCING: {DispatchState.OFFERING, DispatchState.EXHAUSTED, DispatchState.ABORTED},
    DispatchState.ACCEPTED: set(),
    DispatchState.EXHAUSTED: set(),
    DispatchState.ABORTED: set(),
}

TERMINAL = frozenset({DispatchState.ACCEPTED, DispatchState.EXHAUSTED, DispatchState.ABORTED})

# Guard over (record, pending offer driver id); the transition only happens if it returns True
Guard = Callable[[dict[str, str], str | None], bool]


def record_key(ride_id: str) -> str:
    return f"dispatch:info:{ride_id}"


def is_allowed(from_state: DispatchState, to_state: DispatchState) -> bool:
    return to_state in ALLOWED.get(from_state, set())


async def create_record(
    redis: Any,
    ride_id: str,
    pickup_lng: float,
    pickup_lat: float,
    radius_km: float,
    context: dict[str, Any] | None = None,
) -> dict[str, str]:
    """Start a fresh record in SEARCHING, replacing whatever a previous dispatch of this ride left."""
    now = str(time.time())
    record = {
        "ride_id": ride_id,
        "state": DispatchState.SEARCHING.value,
        "pickup_lng": str(pickup_lng),
        "pickup_lat": str(pickup_lat),
        "radius_km": str(radius_km),
        "candidates": "0",
        "attempts": "0",
        "started_at": now,
        "updated_at": now,
    }
    if context:
        record["context"] = json.dumps(context)
    key = record_key(ride_id)
    async with redis.pipeline(transaction=True) as pipe:
        pipe.delete(key)
        pipe.hset(key, mapping=record)
        await pipe.execute()
    return record


async def get_record(redis: Any, ride_id: str) -> dict[str, str]:
    return await redis.hgetall(record_key(ride_id))


async def transition(
    redis: Any,
    ride_id: str,
    to_state: DispatchState,
    fields: dict[str, str] | None = None,
    guard: Guard | None = None,
) -> dict[str, str] | None:
    """
    Move the ride's record to to_state inside a WATCH/MULTI transaction on the record and
    the pending-offer key, so concurrent responders and sweepers cannot both succeed.

    Leaving AWAITING_RESPONSE resolves the pending offer (it is deleted in the same
    transaction). Entering a terminal state also drops the queue, removes the ride from
    the active set and starts the record's retention TTL.

    Returns the updated record, with the state it left under "previous_state" (not stored).
    Returns None if there is no record, the transition is not allowed from the current
    state, or the guard rejects it.
    """
    rkey = record_key(ride_id)
    okey = offer_key(ride_id)
    async with redis.pipeline(transaction=True) as pipe:
        while True:
            try:
                await pipe.watch(rkey, okey)
                record = await pipe.hgetall(rkey)
                if not record:
                    await pipe.unwatch()
                    return None
                current = DispatchState(record["state"])
                if not is_allowed(current, to_state):
                    logger.debug("Ride %s: %s -> %s not allowed", ride_id, current.value, to_state.value)
                    await pipe.unwatch()
                    return None
                offer = await pipe.get(okey)
                if guard is not None and not guard(record, offer):
                    await pipe.unwatch()
                    return None

                updates = {"state": to_state.value, "updated_at": str(time.time())}
                if fields:
                    updates.update(fields)
                pipe.multi()
                pipe.hset(rkey, mapping=updates)
                if current == DispatchState.AWAITING_RESPONSE or to_state in TERMINAL:
                    pipe.delete(okey)
                if to_state in TERMINAL:
                    pipe.delete(queue_key(ride_id))
                    pipe.srem(ACTIVE_KEY, ride_id)
                    pipe.expire(rkey, settings.DISPATCH_RECORD_TTL_SECONDS)
                await pipe.execute()
            except WatchError:
                continue
            record.update(updates)
            record["previous_state"] = current.value
            logger.info("Ride %s: %s -> %s", ride_id, current.value, to_state.value)
            return record
