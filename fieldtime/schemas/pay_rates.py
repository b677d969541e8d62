import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field


class SetRateRequest(BaseModel):
    hourly_rate: Decimal = Field(gt=0, max_digits=10, decimal_places=2)
    overtime_rate: Optional[Decimal] = Field(default=None, ge=0, max_digits=10, decimal_places=2)
    effective_date: Optional[date] = None

    class Config:
        extra = "forbid"


class StaffPayRateResponse(BaseModel):
    id: uuid.UUID
    staff_id: uuid.UUID
    hourly_rate: Decimal
    overtime_rate: Optional[Decimal] = None
    overtime_threshold_hours: Decimal
    effective_from: date
    effective_to: Optional[date] = None
    created_by: Optional[uuid.UUID] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ResolvedRateResponse(BaseModel):
    staff_id: uuid.UUID
    as_of: date
    hourly_rate: Decimal
    overtime_rate: Optional[Decimal] = None
    overtime_threshold_hours: Decimal
    is_default: bool
    rate_id: Optional[uuid.UUID] = None


class PaySummaryResponse(BaseModel):
    staff_id: uuid.UUID
    regular_hours: Decimal
    overtime_hours: Decimal
    regular_pay: Decimal
    overtime_pay: Decimal
    total_pay: Decimal
    entry_count: int


class RateHistoryResponse(BaseModel):
    staff_id: uuid.UUID
    rates: List[StaffPayRateResponse]
