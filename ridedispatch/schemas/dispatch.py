"""Pydantic schemas for dispatch: start, driver response, outcome and status."""
from typing import Any

from pydantic import BaseModel, Field

from ridedispatch.services.dispatch_state import DispatchState
from ridedispatch.services.dispatcher import DispatchOutcome


class PickupPoint(BaseModel):
    lng: float = Field(..., ge=-180, le=180)
    lat: float = Field(..., ge=-90, le=90)


class DispatchStartRequest(BaseModel):
    """Request body for POST /dispatch/rides/{ride_id}. Context (destination, fare...) is forwarded in the offer."""
    pickup: PickupPoint
    radius_km: float | None = Field(default=None, gt=0, le=100)
    limit: int | None = Field(default=None, ge=1, le=50)
    context: dict[str, Any] | None = None


class OfferResponseRequest(BaseModel):
    driver_id: str
    accept: bool


class DispatchResultResponse(BaseModel):
    ride_id: str
    outcome: DispatchOutcome
    success: bool
    driver_id: str | None = None
    message: str | None = None


class DispatchStatusResponse(BaseModel):
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

    class Config:
        from_attributes = True


class DispatchStatsResponse(BaseModel):
    active_dispatches: int
    pending_offers: int
    queued_candidates: int

    class Config:
        from_attributes = True
