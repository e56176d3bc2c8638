"""WebSocket: real-time dispatch events for a driver (offers) or a ride (status, failure)."""
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from ridedispatch.services.ws_updates import driver_topic, ride_topic, updates_manager

router = APIRouter(tags=["ws"])


async def _subscribe(websocket: WebSocket, topic: str) -> None:
    await websocket.accept()
    updates_manager.connect(topic, websocket)
    try:
        while True:
            # Clients only listen; inbound frames are keepalives
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        updates_manager.disconnect(topic, websocket)


@router.websocket("/ws/drivers/{driver_id}")
async def driver_updates_ws(websocket: WebSocket, driver_id: str):
    """Server pushes ride:offer, ride:offer_expired, ride:cancelled and ride:status to the driver."""
    await _subscribe(websocket, driver_topic(driver_id))


@router.websocket("/ws/rides/{ride_id}")
async def ride_updates_ws(websocket: WebSocket, ride_id: str):
    """Server pushes ride:status and dispatch:failed for the ride."""
    await _subscribe(websocket, ride_topic(ride_id))
