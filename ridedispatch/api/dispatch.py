"""Dispatch routes: nearby search, start, driver response, cancel, status, stats."""
from fastapi import APIRouter, Depends, HTTPException, Query, status

from ridedispatch.deps import get_dispatcher, get_presence_store
from ridedispatch.schemas.dispatch import (
    DispatchResultResponse,
    DispatchStartRequest,
    DispatchStatsResponse,
    DispatchStatusResponse,
    OfferResponseRequest,
)
from ridedispatch.schemas.presence import NearbyDriverResponse
from ridedispatch.services.dispatcher import DispatchOutcome, DispatchResult, Dispatcher, GeoPoint
from ridedispatch.services.presence_store import PresenceStore

router = APIRouter(prefix="/dispatch", tags=["dispatch"])


def _result_to_response(result: DispatchResult) -> DispatchResultResponse:
    return DispatchResultResponse(
        ride_id=result.ride_id,
        outcome=result.outcome,
        success=result.success,
        driver_id=result.driver_id,
        message=result.message,
    )


@router.get("/nearby", response_model=list[NearbyDriverResponse])
async def nearby_drivers(
    lng: float = Query(..., ge=-180, le=180),
    lat: float = Query(..., ge=-90, le=90),
    radius_km: float | None = Query(default=None, gt=0, le=100),
    limit: int | None = Query(default=None, ge=1, le=50),
    presence: PresenceStore = Depends(get_presence_store),
):
    """Dispatchable drivers around a point, nearest first."""
    nearby = await presence.query_nearby(lng, lat, radius_km, limit)
    return [NearbyDriverResponse.model_validate(d) for d in nearby]


@router.post("/rides/{ride_id}", response_model=DispatchResultResponse)
async def start_dispatch(
    ride_id: str,
    body: DispatchStartRequest,
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    """Start matching a ride. Returns once the first offer is out or no driver could be offered it."""
    result = await dispatcher.start_dispatch(
        ride_id,
        GeoPoint(lng=body.pickup.lng, lat=body.pickup.lat),
        radius_km=body.radius_km,
        limit=body.limit,
        context=body.context,
    )
    if result.outcome == DispatchOutcome.DUPLICATE:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=result.message)
    return _result_to_response(result)


@router.post("/rides/{ride_id}/respond", response_model=DispatchResultResponse)
async def respond_to_offer(
    ride_id: str,
    body: OfferResponseRequest,
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    """Driver accepts or rejects the ride offered to them."""
    result = await dispatcher.respond_to_offer(ride_id, body.driver_id, body.accept)
    if result.outcome == DispatchOutcome.INVALID_OFFER:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=result.message)
    return _result_to_response(result)


@router.post("/rides/{ride_id}/cancel", response_model=DispatchResultResponse)
async def cancel_dispatch(ride_id: str, dispatcher: Dispatcher = Depends(get_dispatcher)):
    result = await dispatcher.cancel_dispatch(ride_id)
    return _result_to_response(result)


@router.get("/rides/{ride_id}", response_model=DispatchStatusResponse)
async def dispatch_status(ride_id: str, dispatcher: Dispatcher = Depends(get_dispatcher)):
    current = await dispatcher.get_dispatch_status(ride_id)
    if current.state is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Dispatch not found")
    return DispatchStatusResponse.model_validate(current)


@router.get("/stats", response_model=DispatchStatsResponse)
async def dispatch_stats(dispatcher: Dispatcher = Depends(get_dispatcher)):
    return DispatchStatsResponse.model_validate(await dispatcher.get_dispatch_stats())
