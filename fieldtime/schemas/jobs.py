import uuid
from datetime import date, datetime, time
from typing import Optional

from pydantic import BaseModel, Field

from ..services.location import LocationFailure, Position, ReportedLocationProvider


class GpsReading(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    accuracy_m: Optional[float] = Field(default=None, ge=0)


class StartJobRequest(BaseModel):
    """Device-reported check-in fix, or the reason none could be taken."""
    gps: Optional[GpsReading] = None
    gps_error: Optional[LocationFailure] = None

    class Config:
        extra = "forbid"

    def location_provider(self) -> ReportedLocationProvider:
        position = None
        if self.gps is not None and self.gps_error is None:
            position = Position(lat=self.gps.lat, lng=self.gps.lng, accuracy_m=self.gps.accuracy_m)
        return ReportedLocationProvider(position=position, failure=self.gps_error)


class CompleteJobRequest(StartJobRequest):
    staff_notes: Optional[str] = Field(default=None, max_length=2000)
    issue_reported: Optional[str] = Field(default=None, max_length=2000)


class JobResponse(BaseModel):
    id: uuid.UUID
    property_id: Optional[uuid.UUID] = None
    location: Optional[str] = None
    scheduled_date: date
    scheduled_time: Optional[time] = None
    status: str
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    checkin_lat: Optional[float] = None
    checkin_lng: Optional[float] = None
    checkout_lat: Optional[float] = None
    checkout_lng: Optional[float] = None
    assigned_staff_id: Optional[uuid.UUID] = None
    notes: Optional[str] = None
    issue_reported: Optional[str] = None
    actual_duration_minutes: Optional[int] = None

    class Config:
        from_attributes = True
