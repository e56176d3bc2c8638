"""Advance dispatches whose offer expired without an answer; fail dispatches stuck mid-step."""
import asyncio
import logging
import time

from ridedispatch.config import settings
from ridedispatch.redis_client import get_redis
from ridedispatch.services.dispatch_state import TERMINAL, ACTIVE_KEY, DispatchState, get_record
from ridedispatch.services.dispatcher import Dispatcher

logger = logging.getLogger(__name__)


async def run_sweep_once(dispatcher: Dispatcher) -> int:
    """One pass over the active dispatch set. Returns how many dispatches were moved on."""
    now = time.time()
    advanced = 0
    for ride_id in await dispatcher.active_rides():
        record = await get_record(dispatcher.redis, ride_id)
        if not record or DispatchState(record["state"]) in TERMINAL:
            await dispatcher.redis.srem(ACTIVE_KEY, ride_id)
            continue
        state = DispatchState(record["state"])
        if state == DispatchState.AWAITING_RESPONSE:
            if await dispatcher.advance_expired(ride_id) is not None:
                advanced += 1
        elif now - float(record["updated_at"]) > settings.OFFER_TTL_SECONDS:
            if await dispatcher.abort_stalled(ride_id, record["updated_at"]) is not None:
                advanced += 1
    return advanced


async def run_sweep_loop() -> None:
    dispatcher = Dispatcher(await get_redis())
    while True:
        try:
            advanced = await run_sweep_once(dispatcher)
            if advanced:
                logger.info("Offer sweep moved %d dispatches on", advanced)
        except Exception:
            logger.exception("Offer sweep failed")
        await asyncio.sleep(settings.SWEEP_INTERVAL_SECONDS)
