import pytest

from ridedispatch.exceptions import InvalidCoordinatesError
from ridedispatch.services.presence_store import AVAILABLE_KEY

PICKUP = (77.1734, 31.1048)


@pytest.mark.asyncio
async def test_update_location_stores_position_and_heartbeat(presence, redis):
    await presence.update_location("d1", 77.17, 31.10)

    lng, lat = await presence.get_position("d1")
    assert lng == pytest.approx(77.17, abs=1e-4)
    assert lat == pytest.approx(31.10, abs=1e-4)
    assert await presence.is_alive("d1")
    assert 0 < await redis.ttl("driver:hb:d1") <= 30


@pytest.mark.asyncio
@pytest.mark.parametrize("lng,lat", [(181.0, 10.0), (-180.5, 10.0), (10.0, 86.0), (10.0, -90.0)])
async def test_update_location_rejects_out_of_range(presence, lng, lat):
    with pytest.raises(InvalidCoordinatesError):
        await presence.update_location("d1", lng, lat)
    assert await presence.get_position("d1") is None


@pytest.mark.asyncio
async def test_availability_is_independent_of_liveness(presence):
    await presence.set_availability("d1", True)
    assert await presence.is_available("d1")
    assert not await presence.is_alive("d1")
    assert not await presence.is_dispatchable("d1")

    await presence.update_location("d1", 77.17, 31.10)
    assert await presence.is_dispatchable("d1")


@pytest.mark.asyncio
async def test_availability_round_trip_through_nearby_query(presence, put_driver):
    await put_driver("d1", 77.17, 31.10)
    nearby = await presence.query_nearby(*PICKUP, radius_km=10, limit=5)
    assert [d.driver_id for d in nearby] == ["d1"]

    await presence.set_availability("d1", False)
    assert await presence.query_nearby(*PICKUP, radius_km=10, limit=5) == []


@pytest.mark.asyncio
async def test_nearby_sorted_by_distance_and_limited(presence, put_driver):
    await put_driver("far", 77.25, 31.15)
    await put_driver("near", 77.174, 31.105)
    await put_driver("mid", 77.19, 31.11)

    nearby = await presence.query_nearby(*PICKUP, radius_km=20, limit=2)

    assert [d.driver_id for d in nearby] == ["near", "mid"]
    assert nearby[0].distance_km < nearby[1].distance_km


@pytest.mark.asyncio
async def test_nearby_excludes_drivers_outside_radius(presence, put_driver):
    await put_driver("d1", 77.17, 31.10)
    await put_driver("shimla_far", 78.5, 31.10)
    nearby = await presence.query_nearby(*PICKUP, radius_km=10, limit=10)
    assert [d.driver_id for d in nearby] == ["d1"]


@pytest.mark.asyncio
async def test_nearby_overfetches_past_unavailable_drivers(presence, put_driver):
    # The two nearest are offline; the over-fetch still reaches the available one
    await put_driver("busy1", 77.1735, 31.1049, available=False)
    await put_driver("busy2", 77.1736, 31.1050, available=False)
    await put_driver("free", 77.18, 31.11)

    nearby = await presence.query_nearby(*PICKUP, radius_km=10, limit=1)

    assert [d.driver_id for d in nearby] == ["free"]


@pytest.mark.asyncio
async def test_stale_driver_skipped_and_evicted(presence, put_driver, redis):
    await put_driver("d1", 77.17, 31.10)
    await put_driver("d2", 77.18, 31.11)
    # Heartbeat lapsed
    await redis.delete("driver:hb:d1")

    nearby = await presence.query_nearby(*PICKUP, radius_km=10, limit=5)

    assert [d.driver_id for d in nearby] == ["d2"]
    assert not await redis.sismember(AVAILABLE_KEY, "d1")
    assert not await presence.is_available("d1")


@pytest.mark.asyncio
async def test_remove_driver(presence, put_driver):
    await put_driver("d1", 77.17, 31.10)
    await presence.remove_driver("d1")

    assert await presence.get_position("d1") is None
    assert not await presence.is_alive("d1")
    assert not await presence.is_available("d1")


@pytest.mark.asyncio
async def test_zero_limit_returns_nothing(presence, put_driver):
    await put_driver("d1", 77.17, 31.10)
    assert await presence.query_nearby(*PICKUP, radius_km=10, limit=0) == []
