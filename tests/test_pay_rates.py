import uuid
from datetime import date, timedelta
from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError

from conftest import utc
from fieldtime.errors import Forbidden, InvalidTimeRange, PersistenceError, ValidationError
from fieldtime.models.models import AuditLog, StaffPayRate, TimeEntry, TimeEntryStatus
from fieldtime.services import pay_rates


def _rate(db, staff_id, hourly, effective_from, effective_to=None, overtime=None):
    record = StaffPayRate(
        staff_id=staff_id,
        hourly_rate=Decimal(hourly),
        overtime_rate=Decimal(overtime) if overtime else None,
        effective_from=effective_from,
        effective_to=effective_to,
    )
    db.add(record)
    db.commit()
    return record


def _entry(staff_id, clock_in, minutes, status=TimeEntryStatus.COMPLETED):
    return TimeEntry(
        staff_id=staff_id,
        clock_in=clock_in,
        clock_out=clock_in + timedelta(minutes=minutes),
        total_minutes=minutes,
        break_minutes=0,
        billable_minutes=minutes,
        status=status.value,
    )


def test_rate_change_keeps_history(db, admin):
    staff_id = uuid.uuid4()
    first = pay_rates.set_rate(db, staff_id, Decimal("30"), admin, effective_date=date(2024, 1, 1))

    second = pay_rates.set_rate(db, staff_id, Decimal("35"), admin, effective_date=date(2024, 6, 1))

    assert pay_rates.resolve_rate(db, staff_id, date(2024, 5, 31)).hourly_rate == Decimal("30")
    assert pay_rates.resolve_rate(db, staff_id, date(2024, 6, 1)).hourly_rate == Decimal("35")
    db.refresh(first)
    assert first.effective_to == date(2024, 6, 1)
    assert second.effective_to is None
    assert second.created_by == admin.user_id
    open_records = db.query(StaffPayRate).filter(StaffPayRate.staff_id == staff_id, StaffPayRate.effective_to.is_(None)).all()
    assert [r.id for r in open_records] == [second.id]


def test_resolved_rate_identifies_record(db, admin):
    staff_id = uuid.uuid4()
    record = pay_rates.set_rate(db, staff_id, Decimal("31.50"), admin, overtime_rate=Decimal("47.25"), effective_date=date(2024, 1, 1))

    resolved = pay_rates.resolve_rate(db, staff_id, date(2024, 3, 1))

    assert resolved.rate_id == record.id
    assert resolved.is_default is False
    assert resolved.overtime_rate == Decimal("47.25")
    assert resolved.overtime_threshold_hours == Decimal("38")


def test_no_rate_falls_back_to_default(db):
    resolved = pay_rates.resolve_rate(db, uuid.uuid4(), date(2024, 6, 1))
    assert resolved.is_default is True
    assert resolved.hourly_rate == Decimal("30.00")
    assert resolved.rate_id is None


def test_gap_after_closed_history_falls_back_to_default(db):
    staff_id = uuid.uuid4()
    _rate(db, staff_id, "28", date(2024, 1, 1), effective_to=date(2024, 2, 1))

    assert pay_rates.resolve_rate(db, staff_id, date(2024, 1, 31)).hourly_rate == Decimal("28")
    assert pay_rates.resolve_rate(db, staff_id, date(2024, 2, 1)).is_default is True
    assert pay_rates.resolve_rate(db, staff_id, date(2023, 12, 31)).is_default is True


def test_overlap_resolves_to_latest_effective_from(db):
    staff_id = uuid.uuid4()
    _rate(db, staff_id, "30", date(2024, 1, 1), effective_to=date(2024, 12, 31))
    _rate(db, staff_id, "40", date(2024, 3, 1))

    assert pay_rates.resolve_rate(db, staff_id, date(2024, 2, 1)).hourly_rate == Decimal("30")
    assert pay_rates.resolve_rate(db, staff_id, date(2024, 4, 1)).hourly_rate == Decimal("40")


def test_get_staff_rate_uses_today(db, admin):
    staff_id = uuid.uuid4()
    pay_rates.set_rate(db, staff_id, Decimal("33"), admin, effective_date=date(2024, 1, 1))
    assert pay_rates.get_staff_rate(db, staff_id, today=date(2024, 2, 1)).hourly_rate == Decimal("33")
    assert pay_rates.get_staff_rate(db, staff_id, today=date(2023, 2, 1)).is_default is True


def test_set_rate_is_admin_only(db, staff):
    with pytest.raises(Forbidden):
        pay_rates.set_rate(db, staff.user_id, Decimal("50"), staff)


@pytest.mark.parametrize("hourly,overtime", [(Decimal("0"), None), (Decimal("-1"), None), (Decimal("30"), Decimal("-5"))])
def test_set_rate_rejects_bad_amounts(db, admin, hourly, overtime):
    with pytest.raises(ValidationError):
        pay_rates.set_rate(db, uuid.uuid4(), hourly, admin, overtime_rate=overtime)


def test_set_rate_cannot_backdate_before_open_record(db, admin):
    staff_id = uuid.uuid4()
    pay_rates.set_rate(db, staff_id, Decimal("30"), admin, effective_date=date(2024, 6, 1))

    with pytest.raises(InvalidTimeRange):
        pay_rates.set_rate(db, staff_id, Decimal("32"), admin, effective_date=date(2024, 5, 1))

    assert len(pay_rates.rate_history(db, staff_id)) == 1


def test_set_rate_cannot_backdate_into_closed_history(db, admin):
    staff_id = uuid.uuid4()
    _rate(db, staff_id, "25", date(2024, 1, 1), effective_to=date(2024, 6, 1))

    with pytest.raises(InvalidTimeRange):
        pay_rates.set_rate(db, staff_id, Decimal("32"), admin, effective_date=date(2024, 3, 1))


def test_set_rate_is_audited(db, admin):
    staff_id = uuid.uuid4()
    record = pay_rates.set_rate(db, staff_id, Decimal("30"), admin, effective_date=date(2024, 1, 1))
    log = db.query(AuditLog).filter(AuditLog.entity_id == record.id).one()
    assert log.action == "SET_RATE"
    assert log.context["staff_id"] == str(staff_id)
    assert log.integrity_hash


def test_set_rate_store_failure_keeps_previous_rate(db, admin, monkeypatch):
    staff_id = uuid.uuid4()
    first = pay_rates.set_rate(db, staff_id, Decimal("30"), admin, effective_date=date(2024, 1, 1))

    def failing_audit(*args, **kwargs):
        raise IntegrityError("INSERT INTO audit_logs", {}, Exception("constraint failed"))

    monkeypatch.setattr(pay_rates, "create_audit_log", failing_audit)

    with pytest.raises(PersistenceError):
        pay_rates.set_rate(db, staff_id, Decimal("35"), admin, effective_date=date(2024, 6, 1))

    db.refresh(first)
    assert first.effective_to is None
    assert pay_rates.resolve_rate(db, staff_id, date(2024, 7, 1)).hourly_rate == Decimal("30")
    assert len(pay_rates.rate_history(db, staff_id)) == 1


def test_rate_history_newest_first(db, admin):
    staff_id = uuid.uuid4()
    pay_rates.set_rate(db, staff_id, Decimal("30"), admin, effective_date=date(2024, 1, 1))
    pay_rates.set_rate(db, staff_id, Decimal("35"), admin, effective_date=date(2024, 6, 1))

    history = pay_rates.rate_history(db, staff_id)
    assert [r.effective_from for r in history] == [date(2024, 6, 1), date(2024, 1, 1)]


def test_calculate_pay_splits_overtime(db, admin):
    staff_id = uuid.uuid4()
    pay_rates.set_rate(db, staff_id, Decimal("30"), admin, effective_date=date(2024, 1, 1))
    # Five 8 hour days starting Monday 3 June (10:00 Sydney)
    entries = [_entry(staff_id, utc(2024, 6, 3 + day, 0, 0), 480) for day in range(5)]

    summary = pay_rates.calculate_pay(db, staff_id, entries)

    assert summary.regular_hours == Decimal("38.00")
    assert summary.overtime_hours == Decimal("2.00")
    assert summary.regular_pay == Decimal("1140.00")
    assert summary.overtime_pay == Decimal("90.00")
    assert summary.total_pay == Decimal("1230.00")
    assert summary.entry_count == 5


def test_calculate_pay_uses_rate_in_force_on_each_day(db, admin):
    staff_id = uuid.uuid4()
    pay_rates.set_rate(db, staff_id, Decimal("30"), admin, effective_date=date(2024, 1, 1))
    pay_rates.set_rate(db, staff_id, Decimal("35"), admin, effective_date=date(2024, 6, 5))
    entries = [
        _entry(staff_id, utc(2024, 6, 3, 0, 0), 480),
        _entry(staff_id, utc(2024, 6, 5, 0, 0), 480),
    ]

    summary = pay_rates.calculate_pay(db, staff_id, entries)

    assert summary.total_pay == Decimal("520.00")
    assert summary.overtime_hours == Decimal("0.00")


def test_calculate_pay_ignores_non_completed_entries(db):
    staff_id = uuid.uuid4()
    entries = [
        _entry(staff_id, utc(2024, 6, 3, 0, 0), 60),
        _entry(staff_id, utc(2024, 6, 4, 0, 0), 60, status=TimeEntryStatus.EDITED),
        _entry(staff_id, utc(2024, 6, 5, 0, 0), 60, status=TimeEntryStatus.DISPUTED),
        _entry(uuid.uuid4(), utc(2024, 6, 5, 0, 0), 60),
    ]

    summary = pay_rates.calculate_pay(db, staff_id, entries)

    assert summary.entry_count == 1
    assert summary.total_pay == Decimal("30.00")


def test_calculate_pay_uses_explicit_overtime_rate(db, admin):
    staff_id = uuid.uuid4()
    pay_rates.set_rate(db, staff_id, Decimal("30"), admin, overtime_rate=Decimal("50"), effective_date=date(2024, 1, 1))
    entries = [_entry(staff_id, utc(2024, 6, 3 + day, 0, 0), 600) for day in range(4)]

    summary = pay_rates.calculate_pay(db, staff_id, entries)

    assert summary.overtime_hours == Decimal("2.00")
    assert summary.overtime_pay == Decimal("100.00")
