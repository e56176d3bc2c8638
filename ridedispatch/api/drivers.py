"""Driver presence routes: heartbeat (location), availability toggle, presence lookup."""
from fastapi import APIRouter, Depends, HTTPException, status

from ridedispatch.deps import get_presence_store
from ridedispatch.exceptions import InvalidCoordinatesError
from ridedispatch.schemas.presence import AvailabilityRequest, HeartbeatRequest, PresenceResponse
from ridedispatch.services.presence_store import PresenceStore

router = APIRouter(prefix="/drivers", tags=["drivers"])


@router.post("/{driver_id}/heartbeat")
async def driver_heartbeat(
    driver_id: str,
    body: HeartbeatRequest,
    presence: PresenceStore = Depends(get_presence_store),
):
    """Store the driver's position and keep them alive for another heartbeat TTL."""
    try:
        await presence.update_location(driver_id, body.lng, body.lat)
    except InvalidCoordinatesError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return {"success": True}


@router.post("/{driver_id}/availability")
async def driver_set_availability(
    driver_id: str,
    body: AvailabilityRequest,
    presence: PresenceStore = Depends(get_presence_store),
):
    await presence.set_availability(driver_id, body.available)
    return {"success": True}


@router.get("/{driver_id}/presence", response_model=PresenceResponse)
async def driver_presence(driver_id: str, presence: PresenceStore = Depends(get_presence_store)):
    position = await presence.get_position(driver_id)
    return PresenceResponse(
        driver_id=driver_id,
        alive=await presence.is_alive(driver_id),
        available=await presence.is_available(driver_id),
        lng=position[0] if position else None,
        lat=position[1] if position else None,
    )


@router.delete("/{driver_id}", status_code=status.HTTP_204_NO_CONTENT)
async def driver_go_offline(driver_id: str, presence: PresenceStore = Depends(get_presence_store)):
    """Forget the driver's position, heartbeat and availability (logout)."""
    await presence.remove_driver(driver_id)
    return None
