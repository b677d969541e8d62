import uuid
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class TimeEntryUpdate(BaseModel):
    """Admin correction of a time entry. Only the fields listed here can change."""
    clock_in: Optional[datetime] = None
    clock_out: Optional[datetime] = None
    break_minutes: Optional[int] = Field(default=None, ge=0)
    total_minutes: Optional[int] = Field(default=None, ge=0)
    admin_notes: Optional[str] = Field(default=None, max_length=2000)
    staff_notes: Optional[str] = Field(default=None, max_length=2000)

    class Config:
        extra = "forbid"


class ForceClockOutRequest(BaseModel):
    clock_out_time: Optional[datetime] = None

    class Config:
        extra = "forbid"


class DisputeRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=2000)

    class Config:
        extra = "forbid"


class TimeEntryResponse(BaseModel):
    id: uuid.UUID
    job_id: uuid.UUID
    staff_id: uuid.UUID
    clock_in: datetime
    clock_out: Optional[datetime] = None
    total_minutes: Optional[int] = None
    break_minutes: int
    billable_minutes: Optional[int] = None
    clock_in_lat: Optional[float] = None
    clock_in_lng: Optional[float] = None
    clock_out_lat: Optional[float] = None
    clock_out_lng: Optional[float] = None
    status: str
    staff_notes: Optional[str] = None
    admin_notes: Optional[str] = None
    edited_by: Optional[uuid.UUID] = None
    edited_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class LedgerTotalsResponse(BaseModel):
    total_minutes: int
    total_hours: float
    entry_count: int


class TimeEntryListResponse(BaseModel):
    entries: List[TimeEntryResponse]
    totals: LedgerTotalsResponse
