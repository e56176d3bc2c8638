import fakeredis
import pytest
from fastapi.testclient import TestClient

from ridedispatch.config import settings
from ridedispatch.main import app
from ridedispatch.redis_client import get_redis


@pytest.fixture
def server():
    return fakeredis.FakeServer()


@pytest.fixture
def client(server):
    # A fresh client per request so it lives on the request's event loop; state is in the server
    async def override_get_redis():
        return fakeredis.FakeAsyncRedis(server=server, decode_responses=True)

    app.dependency_overrides[get_redis] = override_get_redis
    yield TestClient(app)
    app.dependency_overrides.clear()


def _driver_online(client, driver_id, lng, lat):
    assert client.post(f"/api/drivers/{driver_id}/heartbeat", json={"lng": lng, "lat": lat}).status_code == 200
    assert client.post(f"/api/drivers/{driver_id}/availability", json={"available": True}).status_code == 200


def test_health(client):
    assert client.get("/api/health").json() == {"status": "ok"}


def test_presence_endpoints(client):
    _driver_online(client, "d1", 77.17, 31.10)

    body = client.get("/api/drivers/d1/presence").json()
    assert body["alive"] is True
    assert body["available"] is True
    assert body["lng"] == pytest.approx(77.17, abs=1e-4)

    assert client.delete("/api/drivers/d1").status_code == 204
    body = client.get("/api/drivers/d1/presence").json()
    assert body == {"driver_id": "d1", "alive": False, "available": False, "lng": None, "lat": None}


def test_heartbeat_validation(client):
    # Outside the schema bounds
    assert client.post("/api/drivers/d1/heartbeat", json={"lng": 200, "lat": 10}).status_code == 422
    assert client.post("/api/drivers/d1/heartbeat", json={"lat": 10}).status_code == 422
    # Valid WGS84 but beyond what the geo index stores
    resp = client.post("/api/drivers/d1/heartbeat", json={"lng": 10, "lat": 89})
    assert resp.status_code == 400


def test_nearby(client):
    _driver_online(client, "d1", 77.17, 31.10)
    resp = client.get("/api/dispatch/nearby", params={"lng": 77.1734, "lat": 31.1048, "radius_km": 10})
    assert resp.status_code == 200
    [driver] = resp.json()
    assert driver["driver_id"] == "d1"
    assert driver["distance_km"] < 1


def test_dispatch_flow(client):
    _driver_online(client, "d1", 77.17, 31.10)

    resp = client.post("/api/dispatch/rides/ride1", json={"pickup": {"lng": 77.1734, "lat": 31.1048}, "radius_km": 10})
    assert resp.status_code == 200
    assert resp.json()["outcome"] == "OFFERED"
    assert resp.json()["driver_id"] == "d1"

    dup = client.post("/api/dispatch/rides/ride1", json={"pickup": {"lng": 77.1734, "lat": 31.1048}})
    assert dup.status_code == 409

    status = client.get("/api/dispatch/rides/ride1").json()
    assert status["state"] == "AWAITING_RESPONSE"
    assert status["pending_driver_id"] == "d1"

    wrong = client.post("/api/dispatch/rides/ride1/respond", json={"driver_id": "d2", "accept": True})
    assert wrong.status_code == 409

    ok = client.post("/api/dispatch/rides/ride1/respond", json={"driver_id": "d1", "accept": True})
    assert ok.status_code == 200
    assert ok.json() == {
        "ride_id": "ride1",
        "outcome": "ASSIGNED",
        "success": True,
        "driver_id": "d1",
        "message": None,
    }

    again = client.post("/api/dispatch/rides/ride1/respond", json={"driver_id": "d1", "accept": True})
    assert again.status_code == 409

    stats = client.get("/api/dispatch/stats").json()
    assert stats == {"active_dispatches": 0, "pending_offers": 0, "queued_candidates": 0}


def test_dispatch_without_drivers(client):
    resp = client.post("/api/dispatch/rides/ride1", json={"pickup": {"lng": 77.1734, "lat": 31.1048}})
    assert resp.status_code == 200
    assert resp.json()["outcome"] == "EXHAUSTED"
    assert resp.json()["success"] is False


def test_cancel(client):
    _driver_online(client, "d1", 77.17, 31.10)
    client.post("/api/dispatch/rides/ride1", json={"pickup": {"lng": 77.1734, "lat": 31.1048}})

    resp = client.post("/api/dispatch/rides/ride1/cancel")

    assert resp.json()["outcome"] == "ABORTED"
    assert client.get("/api/dispatch/rides/ride1").json()["state"] == "ABORTED"


def test_unknown_dispatch_status(client):
    assert client.get("/api/dispatch/rides/nope").status_code == 404


def test_store_down_is_503(server, client):
    server.connected = False
    resp = client.post("/api/drivers/d1/heartbeat", json={"lng": 77.17, "lat": 31.10})
    assert resp.status_code == 503


def test_module_entry_point_serves_app(monkeypatch):
    from ridedispatch import __main__ as entry

    calls = []
    monkeypatch.setattr(entry.uvicorn, "run", lambda app, **kwargs: calls.append((app, kwargs)))

    entry.main()

    assert calls == [("ridedispatch.main:app", {"host": settings.HOST, "port": settings.PORT})]
