"""Pydantic schemas for driver presence: heartbeat, availability, nearby search."""
from pydantic import BaseModel, Field


class HeartbeatRequest(BaseModel):
    """Request body for POST /drivers/{driver_id}/heartbeat."""
    lng: float = Field(..., ge=-180, le=180)
    lat: float = Field(..., ge=-90, le=90)


class AvailabilityRequest(BaseModel):
    available: bool


class PresenceResponse(BaseModel):
    driver_id: str
    alive: bool
    available: bool
    lng: float | None = None
    lat: float | None = None


class NearbyDriverResponse(BaseModel):
    """One dispatchable driver, nearest first."""
    driver_id: str
    lng: float
    lat: float
    distance_km: float

    class Config:
        from_attributes = True
