"""
Pay rate resolution.

Each staff member has an effective-dated rate history. A record is valid over
[effective_from, effective_to); the open record has effective_to = NULL.
Setting a new rate closes the open record and inserts its successor in one
transaction, so history is never rewritten and past work keeps its rate.
"""
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Optional

import structlog
from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import InvalidTimeRange, PersistenceError, ValidationError
from ..models.models import StaffPayRate, TimeEntryStatus
from .audit import create_audit_log
from .permissions import CallerContext, require_admin
from .time_rules import local_today, utc_to_local, utcnow

logger = structlog.get_logger(__name__)

CENT = Decimal("0.01")
MINUTES_PER_HOUR = Decimal(60)


@dataclass(frozen=True)
class ResolvedRate:
    staff_id: object
    as_of: date
    hourly_rate: Decimal
    overtime_rate: Optional[Decimal]
    overtime_threshold_hours: Decimal
    is_default: bool
    rate_id: Optional[object] = None


@dataclass(frozen=True)
class PaySummary:
    staff_id: object
    regular_hours: Decimal
    overtime_hours: Decimal
    regular_pay: Decimal
    overtime_pay: Decimal
    total_pay: Decimal
    entry_count: int


def _decimal(value) -> Optional[Decimal]:
    if value is None:
        return None
    return Decimal(str(value))


def _money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def default_rate(staff_id, as_of: date) -> ResolvedRate:
    """The documented fallback used whenever no record covers a date."""
    return ResolvedRate(
        staff_id=staff_id,
        as_of=as_of,
        hourly_rate=_money(Decimal(str(settings.default_hourly_rate))),
        overtime_rate=None,
        overtime_threshold_hours=Decimal(str(settings.default_overtime_threshold_hours)),
        is_default=True,
    )


def _to_resolved(record: StaffPayRate, as_of: date) -> ResolvedRate:
    return ResolvedRate(
        staff_id=record.staff_id,
        as_of=as_of,
        hourly_rate=_decimal(record.hourly_rate),
        overtime_rate=_decimal(record.overtime_rate),
        overtime_threshold_hours=_decimal(record.overtime_threshold_hours),
        is_default=False,
        rate_id=record.id,
    )


def get_open_rate(db: Session, staff_id) -> Optional[StaffPayRate]:
    return (
        db.query(StaffPayRate)
        .filter(StaffPayRate.staff_id == staff_id, StaffPayRate.effective_to.is_(None))
        .order_by(StaffPayRate.effective_from.desc())
        .first()
    )


def resolve_rate(db: Session, staff_id, as_of: date) -> ResolvedRate:
    """
    Find the rate valid on a date.

    Args:
        db: Database session
        staff_id: Staff member
        as_of: Worked date

    Returns:
        ResolvedRate for the record whose interval contains as_of. If
        overlapping records exist the latest effective_from wins. When no
        record matches the default rate is returned (is_default=True).
    """
    record = (
        db.query(StaffPayRate)
        .filter(
            StaffPayRate.staff_id == staff_id,
            StaffPayRate.effective_from <= as_of,
            or_(StaffPayRate.effective_to.is_(None), StaffPayRate.effective_to > as_of),
        )
        .order_by(StaffPayRate.effective_from.desc(), StaffPayRate.created_at.desc())
        .first()
    )
    if record is None:
        logger.info("pay_rate_default_used", staff_id=str(staff_id), as_of=as_of.isoformat())
        return default_rate(staff_id, as_of)
    return _to_resolved(record, as_of)


def get_staff_rate(db: Session, staff_id, today: Optional[date] = None) -> ResolvedRate:
    """Rate in force today (business timezone), falling back to the default."""
    return resolve_rate(db, staff_id, today or local_today())


def rate_history(db: Session, staff_id) -> list:
    return (
        db.query(StaffPayRate)
        .filter(StaffPayRate.staff_id == staff_id)
        .order_by(StaffPayRate.effective_from.desc(), StaffPayRate.created_at.desc())
        .all()
    )


def set_rate(
    db: Session,
    staff_id,
    hourly_rate,
    caller: CallerContext,
    overtime_rate=None,
    effective_date: Optional[date] = None,
    overtime_threshold_hours=None,
    now: Optional[datetime] = None,
) -> StaffPayRate:
    """
    Start a new rate for a staff member.

    Closes the open record at effective_date and inserts a new open record
    starting on that date, both in one transaction.

    Raises:
        Forbidden: caller is not an admin
        ValidationError: non-positive hourly rate or negative overtime rate
        InvalidTimeRange: effective_date falls inside already-closed history
        PersistenceError: the store rejected the change (nothing is applied)
    """
    require_admin(caller, "set pay rates")

    hourly = _decimal(hourly_rate)
    if hourly is None or hourly <= 0:
        raise ValidationError("hourly_rate must be greater than zero")
    overtime = _decimal(overtime_rate)
    if overtime is not None and overtime < 0:
        raise ValidationError("overtime_rate cannot be negative")

    effective_date = effective_date or local_today()
    now = now or utcnow()

    open_record = get_open_rate(db, staff_id)
    if open_record is not None and open_record.effective_from > effective_date:
        raise InvalidTimeRange(
            f"Current rate starts {open_record.effective_from.isoformat()}; new rate cannot start earlier"
        )
    overlapping = (
        db.query(StaffPayRate)
        .filter(
            StaffPayRate.staff_id == staff_id,
            StaffPayRate.effective_to.isnot(None),
            StaffPayRate.effective_to > effective_date,
        )
        .first()
    )
    if overlapping is not None:
        raise InvalidTimeRange("New rate would overlap closed rate history")

    if overtime_threshold_hours is not None:
        threshold = _decimal(overtime_threshold_hours)
    elif open_record is not None:
        threshold = _decimal(open_record.overtime_threshold_hours)
    else:
        threshold = Decimal(str(settings.default_overtime_threshold_hours))

    try:
        closed_id = None
        if open_record is not None:
            db.query(StaffPayRate).filter(
                StaffPayRate.id == open_record.id,
                StaffPayRate.effective_to.is_(None),
            ).update(
                {StaffPayRate.effective_to: effective_date, StaffPayRate.updated_at: now},
                synchronize_session="fetch",
            )
            closed_id = open_record.id

        new_record = StaffPayRate(
            staff_id=staff_id,
            hourly_rate=hourly,
            overtime_rate=overtime,
            overtime_threshold_hours=threshold,
            effective_from=effective_date,
            effective_to=None,
            created_by=caller.user_id,
        )
        db.add(new_record)
        db.flush()

        create_audit_log(
            db=db,
            entity_type="pay_rate",
            entity_id=new_record.id,
            action="SET_RATE",
            actor_id=caller.user_id,
            actor_role=caller.role.value,
            source="api",
            changes_json={
                "hourly_rate": {
                    "before": str(open_record.hourly_rate) if open_record is not None else None,
                    "after": str(hourly),
                },
                "overtime_rate": {"after": str(overtime) if overtime is not None else None},
            },
            context={
                "staff_id": str(staff_id),
                "effective_from": effective_date.isoformat(),
                "closed_rate_id": str(closed_id) if closed_id else None,
            },
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("pay_rate_set_failed", staff_id=str(staff_id), error=str(e))
        raise PersistenceError("Could not update pay rate") from e

    db.refresh(new_record)
    logger.info(
        "pay_rate_set",
        staff_id=str(staff_id),
        hourly_rate=str(hourly),
        effective_from=effective_date.isoformat(),
    )
    return new_record


def calculate_pay(db: Session, staff_id, entries: Iterable) -> PaySummary:
    """
    Price a staff member's completed time entries.

    Each entry is paid at the rate in force on its local clock-in date.
    Hours past the rate's overtime threshold (counted cumulatively over the
    given entries, in clock-in order) are paid at the overtime rate, or at
    OVERTIME_MULTIPLIER times the hourly rate when none is set.

    Only entries with status completed are paid. Force-closed and
    admin-edited entries carry status edited and are excluded, the same as
    compute_totals.
    """
    multiplier = Decimal(str(settings.overtime_multiplier))
    completed = sorted(
        (
            e for e in entries
            if e.status == TimeEntryStatus.COMPLETED.value and str(e.staff_id) == str(staff_id)
        ),
        key=lambda e: utc_to_local(e.clock_in, settings.tz_default),
    )

    rates = {}
    cumulative = Decimal(0)
    regular_hours = overtime_hours = Decimal(0)
    regular_pay = overtime_pay = Decimal(0)

    for e in completed:
        minutes = e.billable_minutes if e.billable_minutes is not None else (e.total_minutes or 0)
        hours = Decimal(minutes) / MINUTES_PER_HOUR
        worked_on = utc_to_local(e.clock_in, settings.tz_default).date()
        if worked_on not in rates:
            rates[worked_on] = resolve_rate(db, staff_id, worked_on)
        rate = rates[worked_on]

        regular_part = max(Decimal(0), min(hours, rate.overtime_threshold_hours - cumulative))
        overtime_part = hours - regular_part
        cumulative += hours

        ot_rate = rate.overtime_rate if rate.overtime_rate is not None else rate.hourly_rate * multiplier
        regular_hours += regular_part
        overtime_hours += overtime_part
        regular_pay += regular_part * rate.hourly_rate
        overtime_pay += overtime_part * ot_rate

    regular_pay = _money(regular_pay)
    overtime_pay = _money(overtime_pay)
    return PaySummary(
        staff_id=staff_id,
        regular_hours=_money(regular_hours),
        overtime_hours=_money(overtime_hours),
        regular_pay=regular_pay,
        overtime_pay=overtime_pay,
        total_pay=regular_pay + overtime_pay,
        entry_count=len(completed),
    )
