import uuid
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Body, Depends, Query
from sqlalchemy.orm import Session

from ..auth.security import get_caller
from ..db import get_db
from ..errors import FieldTimeError
from ..schemas.time_entries import (
    DisputeRequest,
    ForceClockOutRequest,
    LedgerTotalsResponse,
    TimeEntryListResponse,
    TimeEntryResponse,
    TimeEntryUpdate,
)
from ..services import time_entries as ledger
from ..services.audit import get_audit_logs
from ..services.notifications import notify_outcome
from ..services.permissions import CallerContext, require_admin, require_self_or_admin

router = APIRouter(prefix="/time-entries", tags=["time-entries"])


def _notify(db: Session, caller: CallerContext, operation: str, entry_id, error: Optional[FieldTimeError] = None) -> None:
    payload = {"time_entry_id": str(entry_id)}
    if error is not None:
        payload.update({"code": error.code, "message": error.message})
    notify_outcome(db, caller.user_id, operation, error is None, payload)


@router.get("", response_model=TimeEntryListResponse)
def list_time_entries(
    staff_id: Optional[uuid.UUID] = Query(default=None),
    job_id: Optional[uuid.UUID] = Query(default=None),
    date_from: Optional[date] = Query(default=None),
    date_to: Optional[date] = Query(default=None),
    db: Session = Depends(get_db),
    caller: CallerContext = Depends(get_caller),
):
    """
    List time entries with totals.
    Staff only see their own entries; totals count completed entries only.
    """
    entries = ledger.list_entries(db, caller, staff_id=staff_id, job_id=job_id, date_from=date_from, date_to=date_to)
    totals = ledger.compute_totals(entries)
    return TimeEntryListResponse(
        entries=[TimeEntryResponse.model_validate(e) for e in entries],
        totals=LedgerTotalsResponse(
            total_minutes=totals.total_minutes,
            total_hours=totals.total_hours,
            entry_count=totals.entry_count,
        ),
    )


@router.get("/stale", response_model=List[TimeEntryResponse])
def list_stale_entries(
    hours: Optional[int] = Query(default=None, ge=1),
    db: Session = Depends(get_db),
    caller: CallerContext = Depends(get_caller),
):
    return ledger.find_stale_entries(db, caller, stale_after_hours=hours)


@router.get("/{entry_id}", response_model=TimeEntryResponse)
def get_time_entry(
    entry_id: uuid.UUID,
    db: Session = Depends(get_db),
    caller: CallerContext = Depends(get_caller),
):
    entry = ledger.get_entry(db, entry_id)
    require_self_or_admin(caller, entry.staff_id, "view time entries")
    return entry


@router.patch("/{entry_id}", response_model=TimeEntryResponse)
def edit_time_entry(
    entry_id: uuid.UUID,
    payload: TimeEntryUpdate,
    db: Session = Depends(get_db),
    caller: CallerContext = Depends(get_caller),
):
    try:
        entry = ledger.edit_entry(db, entry_id, payload, caller)
    except FieldTimeError as e:
        _notify(db, caller, "time_entry_edit", entry_id, e)
        raise
    body = TimeEntryResponse.model_validate(entry)
    _notify(db, caller, "time_entry_edit", entry_id)
    return body


@router.post("/{entry_id}/force-clock-out", response_model=TimeEntryResponse)
def force_clock_out(
    entry_id: uuid.UUID,
    payload: Optional[ForceClockOutRequest] = Body(default=None),
    db: Session = Depends(get_db),
    caller: CallerContext = Depends(get_caller),
):
    """Close an entry the worker forgot to clock out of."""
    clock_out_time = payload.clock_out_time if payload else None
    try:
        entry = ledger.force_clock_out(db, entry_id, caller, clock_out_time=clock_out_time)
    except FieldTimeError as e:
        _notify(db, caller, "time_entry_force_clock_out", entry_id, e)
        raise
    body = TimeEntryResponse.model_validate(entry)
    _notify(db, caller, "time_entry_force_clock_out", entry_id)
    return body


@router.post("/{entry_id}/dispute", response_model=TimeEntryResponse)
def dispute_time_entry(
    entry_id: uuid.UUID,
    payload: DisputeRequest,
    db: Session = Depends(get_db),
    caller: CallerContext = Depends(get_caller),
):
    try:
        entry = ledger.dispute_entry(db, entry_id, caller, payload.reason)
    except FieldTimeError as e:
        _notify(db, caller, "time_entry_dispute", entry_id, e)
        raise
    body = TimeEntryResponse.model_validate(entry)
    _notify(db, caller, "time_entry_dispute", entry_id)
    return body


@router.get("/{entry_id}/audit")
def get_time_entry_audit(
    entry_id: uuid.UUID,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    caller: CallerContext = Depends(get_caller),
):
    require_admin(caller, "view audit history")
    ledger.get_entry(db, entry_id)
    logs = get_audit_logs(db, entity_type="time_entry", entity_id=entry_id, limit=limit, offset=offset)
    return [
        {
            "id": str(log.id),
            "action": log.action,
            "actor_id": str(log.actor_id) if log.actor_id else None,
            "actor_role": log.actor_role,
            "changes": log.changes_json,
            "context": log.context,
            "timestamp_utc": log.timestamp_utc.isoformat() if log.timestamp_utc else None,
        }
        for log in logs
    ]
