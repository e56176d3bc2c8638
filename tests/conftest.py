from unittest.mock import AsyncMock

import fakeredis
import pytest
import pytest_asyncio

from ridedispatch.services.dispatch_queue import DispatchQueue
from ridedispatch.services.dispatcher import Dispatcher
from ridedispatch.services.offer_locks import OfferLockManager
from ridedispatch.services.presence_store import PresenceStore


@pytest_asyncio.fixture
async def redis():
    client = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
def presence(redis):
    return PresenceStore(redis)


@pytest.fixture
def locks(redis):
    return OfferLockManager(redis)


@pytest.fixture
def queue(redis):
    return DispatchQueue(redis)


@pytest.fixture
def publisher():
    return AsyncMock()


@pytest.fixture
def dispatcher(redis, publisher):
    return Dispatcher(redis, publisher=publisher)


@pytest.fixture
def put_driver(presence):
    async def _put(driver_id: str, lng: float, lat: float, available: bool = True) -> None:
        await presence.update_location(driver_id, lng, lat)
        await presence.set_availability(driver_id, available)

    return _put


def published(publisher, event: str) -> list[tuple[str, dict]]:
    """(topic, payload) for every publish() of the given event."""
    return [(c.args[0], c.args[2]) for c in publisher.publish.await_args_list if c.args[1] == event]
