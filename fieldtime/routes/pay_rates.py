import uuid
from dataclasses import asdict
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..auth.security import get_caller
from ..db import get_db
from ..errors import FieldTimeError, InvalidTimeRange
from ..schemas.pay_rates import (
    PaySummaryResponse,
    RateHistoryResponse,
    ResolvedRateResponse,
    SetRateRequest,
    StaffPayRateResponse,
)
from ..services import pay_rates
from ..services.notifications import notify_outcome
from ..services.permissions import CallerContext, require_self_or_admin
from ..services.time_entries import list_entries

router = APIRouter(prefix="/pay-rates", tags=["pay-rates"])


@router.get("/{staff_id}/current", response_model=ResolvedRateResponse)
def get_current_rate(
    staff_id: uuid.UUID,
    db: Session = Depends(get_db),
    caller: CallerContext = Depends(get_caller),
):
    require_self_or_admin(caller, staff_id, "view pay rates")
    return ResolvedRateResponse(**asdict(pay_rates.get_staff_rate(db, staff_id)))


@router.get("/{staff_id}/resolve", response_model=ResolvedRateResponse)
def resolve_rate(
    staff_id: uuid.UUID,
    as_of: date = Query(...),
    db: Session = Depends(get_db),
    caller: CallerContext = Depends(get_caller),
):
    """Rate in force on a worked date."""
    require_self_or_admin(caller, staff_id, "view pay rates")
    return ResolvedRateResponse(**asdict(pay_rates.resolve_rate(db, staff_id, as_of)))


@router.get("/{staff_id}/history", response_model=RateHistoryResponse)
def get_rate_history(
    staff_id: uuid.UUID,
    db: Session = Depends(get_db),
    caller: CallerContext = Depends(get_caller),
):
    require_self_or_admin(caller, staff_id, "view pay rates")
    rates = pay_rates.rate_history(db, staff_id)
    return RateHistoryResponse(staff_id=staff_id, rates=[StaffPayRateResponse.model_validate(r) for r in rates])


@router.post("/{staff_id}", response_model=StaffPayRateResponse)
def set_rate(
    staff_id: uuid.UUID,
    payload: SetRateRequest,
    db: Session = Depends(get_db),
    caller: CallerContext = Depends(get_caller),
):
    """
    Start a new rate for a staff member.
    The current open rate is closed on effective_date (default: today in the business timezone).
    """
    try:
        record = pay_rates.set_rate(
            db,
            staff_id,
            payload.hourly_rate,
            caller,
            overtime_rate=payload.overtime_rate,
            effective_date=payload.effective_date,
        )
    except FieldTimeError as e:
        notify_outcome(db, caller.user_id, "pay_rate_set", False, {"staff_id": str(staff_id), "code": e.code, "message": e.message})
        raise

    body = StaffPayRateResponse.model_validate(record)
    notify_outcome(
        db,
        caller.user_id,
        "pay_rate_set",
        True,
        {"staff_id": str(staff_id), "hourly_rate": str(body.hourly_rate), "effective_from": body.effective_from.isoformat()},
    )
    return body


@router.get("/{staff_id}/pay", response_model=PaySummaryResponse)
def get_pay_summary(
    staff_id: uuid.UUID,
    date_from: Optional[date] = Query(default=None),
    date_to: Optional[date] = Query(default=None),
    db: Session = Depends(get_db),
    caller: CallerContext = Depends(get_caller),
):
    """Price completed time entries in a local date range at their historical rates."""
    require_self_or_admin(caller, staff_id, "view pay")
    if date_from and date_to and date_to < date_from:
        raise InvalidTimeRange("date_to cannot be before date_from")
    entries = list_entries(db, caller, staff_id=staff_id, date_from=date_from, date_to=date_to)
    summary = pay_rates.calculate_pay(db, staff_id, entries)
    return PaySummaryResponse(**asdict(summary))
