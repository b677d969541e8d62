"""
Time entry ledger.

Entries record worked intervals per job and staff member. They are never
deleted; admin corrections are stamped with who made them and audit-logged.
"""
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Iterable, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import InvalidTimeRange, InvalidTransition, NotFound, PersistenceError, ValidationError
from ..models.models import TimeEntry, TimeEntryStatus
from ..schemas.time_entries import TimeEntryUpdate
from .audit import compute_diff, create_audit_log
from .permissions import CallerContext, is_admin, require_admin, require_self_or_admin
from .time_rules import billable_minutes, ensure_utc, local_to_utc, minutes_between, utcnow

logger = structlog.get_logger(__name__)

FORCE_CLOSE_NOTE = "Force closed by admin - staff forgot to clock out"


@dataclass(frozen=True)
class LedgerTotals:
    total_minutes: int
    total_hours: float
    entry_count: int


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return ensure_utc(dt).isoformat() if dt else None


def _snapshot(entry: TimeEntry) -> dict:
    """JSON-safe view of the editable fields, for audit diffs."""
    return {
        "clock_in": _iso(entry.clock_in),
        "clock_out": _iso(entry.clock_out),
        "total_minutes": entry.total_minutes,
        "break_minutes": entry.break_minutes,
        "billable_minutes": entry.billable_minutes,
        "status": entry.status,
        "staff_notes": entry.staff_notes,
        "admin_notes": entry.admin_notes,
    }


def _commit(db: Session, event: str, **log_context) -> None:
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(event, error=str(e), **log_context)
        raise PersistenceError("Could not save time entry") from e


def get_entry(db: Session, entry_id) -> TimeEntry:
    entry = db.query(TimeEntry).filter(TimeEntry.id == entry_id).first()
    if not entry:
        raise NotFound("Time entry not found")
    return entry


def get_active_entry_for_job(db: Session, job_id) -> Optional[TimeEntry]:
    return (
        db.query(TimeEntry)
        .filter(TimeEntry.job_id == job_id, TimeEntry.status == TimeEntryStatus.ACTIVE.value)
        .order_by(TimeEntry.clock_in.desc())
        .first()
    )


# Workflow-facing operations. These stage changes in the caller's transaction.

def open_entry(db: Session, job_id, staff_id, clock_in: datetime, position=None) -> TimeEntry:
    """
    Stage a new active entry for a job. The caller commits.

    Raises:
        InvalidTransition: if the job already has an open entry
    """
    if get_active_entry_for_job(db, job_id) is not None:
        raise InvalidTransition("Job already has an open time entry")

    entry = TimeEntry(
        job_id=job_id,
        staff_id=staff_id,
        clock_in=clock_in,
        clock_in_lat=position.lat if position else None,
        clock_in_lng=position.lng if position else None,
        break_minutes=0,
        status=TimeEntryStatus.ACTIVE.value,
    )
    db.add(entry)
    db.flush()
    return entry


def close_entry(
    db: Session,
    entry: TimeEntry,
    clock_out: datetime,
    total_minutes: int,
    position=None,
    staff_notes: Optional[str] = None,
) -> TimeEntry:
    """
    Stage the closing of an active entry. The caller commits.

    Raises:
        InvalidTransition: if the entry is no longer active
    """
    values = {
        TimeEntry.clock_out: clock_out,
        TimeEntry.total_minutes: total_minutes,
        TimeEntry.billable_minutes: billable_minutes(total_minutes, entry.break_minutes),
        TimeEntry.status: TimeEntryStatus.COMPLETED.value,
        TimeEntry.updated_at: utcnow(),
    }
    if position is not None:
        values[TimeEntry.clock_out_lat] = position.lat
        values[TimeEntry.clock_out_lng] = position.lng
    if staff_notes:
        values[TimeEntry.staff_notes] = staff_notes

    updated = (
        db.query(TimeEntry)
        .filter(TimeEntry.id == entry.id, TimeEntry.status == TimeEntryStatus.ACTIVE.value)
        .update(values, synchronize_session="fetch")
    )
    if updated == 0:
        raise InvalidTransition("Time entry is no longer active")
    return entry


# Admin operations

def edit_entry(
    db: Session,
    entry_id,
    updates: TimeEntryUpdate,
    caller: CallerContext,
    now: Optional[datetime] = None,
) -> TimeEntry:
    """
    Apply an admin correction to an entry.

    Changing clock times without an explicit total recomputes total_minutes;
    billable minutes are always recomputed. A closed entry becomes 'edited';
    an entry that is still open stays 'active'.
    """
    require_admin(caller, "edit time entries")
    entry = get_entry(db, entry_id)
    now = now or utcnow()
    fields = updates.model_dump(exclude_unset=True)

    if "clock_in" in fields and fields["clock_in"] is None:
        raise ValidationError("clock_in cannot be cleared")
    if "clock_out" in fields and fields["clock_out"] is None and entry.clock_out is not None:
        raise ValidationError("clock_out cannot be cleared on a closed entry")

    clock_in = ensure_utc(fields.get("clock_in") or entry.clock_in)
    clock_out = ensure_utc(fields.get("clock_out") or entry.clock_out)
    if clock_out is not None and clock_out < clock_in:
        raise InvalidTimeRange("clock_out cannot be before clock_in")

    total = entry.total_minutes
    if fields.get("total_minutes") is not None:
        if clock_out is None:
            raise ValidationError("total_minutes requires a clock_out")
        total = fields["total_minutes"]
    elif clock_out is not None and ("clock_in" in fields or "clock_out" in fields or total is None):
        total = minutes_between(clock_in, clock_out)

    break_min = fields["break_minutes"] if fields.get("break_minutes") is not None else entry.break_minutes

    before = _snapshot(entry)

    entry.clock_in = clock_in
    entry.clock_out = clock_out
    entry.total_minutes = total
    entry.break_minutes = break_min
    entry.billable_minutes = billable_minutes(total, break_min)
    if "admin_notes" in fields:
        entry.admin_notes = fields["admin_notes"]
    if "staff_notes" in fields:
        entry.staff_notes = fields["staff_notes"]
    entry.status = TimeEntryStatus.EDITED.value if clock_out is not None else TimeEntryStatus.ACTIVE.value
    entry.edited_by = caller.user_id
    entry.edited_at = now
    entry.updated_at = now

    create_audit_log(
        db=db,
        entity_type="time_entry",
        entity_id=entry.id,
        action="EDIT",
        actor_id=caller.user_id,
        actor_role=caller.role.value,
        source="api",
        changes_json=compute_diff(before, _snapshot(entry)),
        context={"job_id": str(entry.job_id), "staff_id": str(entry.staff_id)},
    )
    _commit(db, "time_entry_edit_failed", entry_id=str(entry_id))
    db.refresh(entry)

    logger.info("time_entry_edited", entry_id=str(entry.id), edited_by=str(caller.user_id), fields=sorted(fields))
    return entry


def force_clock_out(
    db: Session,
    entry_id,
    caller: CallerContext,
    clock_out_time: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> TimeEntry:
    """
    Close a stale active entry on the worker's behalf.

    Args:
        clock_out_time: When the worker actually left (default now)

    Raises:
        Forbidden: caller is not an admin
        InvalidTransition: entry is not active
        InvalidTimeRange: clock_out_time precedes the stored clock_in
    """
    require_admin(caller, "force clock-out")
    entry = get_entry(db, entry_id)
    now = now or utcnow()

    if entry.status != TimeEntryStatus.ACTIVE.value or entry.clock_out is not None:
        raise InvalidTransition("Only active entries can be force closed")

    clock_out = ensure_utc(clock_out_time) if clock_out_time else now
    clock_in = ensure_utc(entry.clock_in)
    if clock_out < clock_in:
        raise InvalidTimeRange("clock_out cannot be before clock_in")

    before = _snapshot(entry)
    total = minutes_between(clock_in, clock_out)

    updated = (
        db.query(TimeEntry)
        .filter(TimeEntry.id == entry.id, TimeEntry.status == TimeEntryStatus.ACTIVE.value)
        .update(
            {
                TimeEntry.clock_out: clock_out,
                TimeEntry.total_minutes: total,
                TimeEntry.billable_minutes: billable_minutes(total, entry.break_minutes),
                TimeEntry.status: TimeEntryStatus.EDITED.value,
                TimeEntry.admin_notes: FORCE_CLOSE_NOTE,
                TimeEntry.edited_by: caller.user_id,
                TimeEntry.edited_at: now,
                TimeEntry.updated_at: now,
            },
            synchronize_session="fetch",
        )
    )
    if updated == 0:
        db.rollback()
        raise InvalidTransition("Only active entries can be force closed")

    create_audit_log(
        db=db,
        entity_type="time_entry",
        entity_id=entry.id,
        action="FORCE_CLOCK_OUT",
        actor_id=caller.user_id,
        actor_role=caller.role.value,
        source="api",
        changes_json=compute_diff(before, _snapshot(entry)),
        context={"job_id": str(entry.job_id), "staff_id": str(entry.staff_id)},
    )
    _commit(db, "time_entry_force_close_failed", entry_id=str(entry_id))
    db.refresh(entry)

    logger.info("time_entry_force_closed", entry_id=str(entry.id), total_minutes=total)
    return entry


def dispute_entry(
    db: Session,
    entry_id,
    caller: CallerContext,
    reason: str,
    now: Optional[datetime] = None,
) -> TimeEntry:
    """Flag a closed entry as disputed. Staff may dispute their own entries."""
    entry = get_entry(db, entry_id)
    require_self_or_admin(caller, entry.staff_id, "dispute time entries")
    if not reason or not reason.strip():
        raise ValidationError("A reason is required to dispute an entry")
    if entry.status not in (TimeEntryStatus.COMPLETED.value, TimeEntryStatus.EDITED.value):
        raise InvalidTransition(f"Cannot dispute an entry with status '{entry.status}'")

    now = now or utcnow()
    before = _snapshot(entry)
    entry.status = TimeEntryStatus.DISPUTED.value
    entry.staff_notes = f"{entry.staff_notes}\n{reason.strip()}" if entry.staff_notes else reason.strip()
    entry.updated_at = now

    create_audit_log(
        db=db,
        entity_type="time_entry",
        entity_id=entry.id,
        action="DISPUTE",
        actor_id=caller.user_id,
        actor_role=caller.role.value,
        source="api",
        changes_json=compute_diff(before, _snapshot(entry)),
        context={"job_id": str(entry.job_id), "staff_id": str(entry.staff_id)},
    )
    _commit(db, "time_entry_dispute_failed", entry_id=str(entry_id))
    db.refresh(entry)
    return entry


# Queries

def compute_totals(entries: Iterable[TimeEntry]) -> LedgerTotals:
    """
    Sum worked minutes over completed entries only.

    Billable minutes are used when present, otherwise total minutes.
    Active, edited and disputed entries are left out. That includes entries
    closed by force_clock_out or corrected through edit_entry (both end up
    edited), so that time is not counted.
    """
    total = 0
    count = 0
    for e in entries:
        if e.status != TimeEntryStatus.COMPLETED.value:
            continue
        minutes = e.billable_minutes if e.billable_minutes is not None else e.total_minutes
        total += minutes or 0
        count += 1
    return LedgerTotals(total_minutes=total, total_hours=round(total / 60, 2), entry_count=count)


def list_entries(
    db: Session,
    caller: CallerContext,
    staff_id=None,
    job_id=None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
) -> list:
    """
    List entries newest first. Staff only ever see their own entries.

    date_from/date_to are inclusive local dates in the business timezone.
    """
    if not is_admin(caller):
        staff_id = caller.user_id

    query = db.query(TimeEntry)
    if staff_id is not None:
        query = query.filter(TimeEntry.staff_id == staff_id)
    if job_id is not None:
        query = query.filter(TimeEntry.job_id == job_id)
    if date_from is not None:
        query = query.filter(TimeEntry.clock_in >= local_to_utc(datetime.combine(date_from, time.min), settings.tz_default))
    if date_to is not None:
        query = query.filter(TimeEntry.clock_in < local_to_utc(datetime.combine(date_to + timedelta(days=1), time.min), settings.tz_default))
    return query.order_by(TimeEntry.clock_in.desc()).all()


def find_stale_entries(
    db: Session,
    caller: CallerContext,
    now: Optional[datetime] = None,
    stale_after_hours: Optional[int] = None,
) -> list:
    """Active entries clocked in longer ago than the stale threshold."""
    require_admin(caller, "review stale entries")
    now = now or utcnow()
    hours = stale_after_hours if stale_after_hours is not None else settings.stale_entry_hours
    cutoff = now - timedelta(hours=hours)
    return (
        db.query(TimeEntry)
        .filter(TimeEntry.status == TimeEntryStatus.ACTIVE.value, TimeEntry.clock_in < cutoff)
        .order_by(TimeEntry.clock_in.asc())
        .all()
    )
