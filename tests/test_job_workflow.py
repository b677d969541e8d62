import asyncio
import math
from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from conftest import SYDNEY, utc
from fieldtime.errors import Forbidden, InvalidTransition, MissingStartTime, NotFound, PersistenceError
from fieldtime.models.models import AlertType, AuditLog, Job, JobAlert, JobStatus, TimeEntry, TimeEntryStatus
from fieldtime.services import job_workflow
from fieldtime.services.geofence import EARTH_RADIUS_M
from fieldtime.services.location import LocationFailure, Position, ReportedLocationProvider
from fieldtime.services.time_entries import force_clock_out
from fieldtime.services.time_rules import ensure_utc

T0 = utc(2024, 6, 3, 0, 0)


def _at(meters_north: float) -> ReportedLocationProvider:
    lat = SYDNEY[0] + math.degrees(meters_north / EARTH_RADIUS_M)
    return ReportedLocationProvider(position=Position(lat=lat, lng=SYDNEY[1], accuracy_m=10))


def _start(db, job, caller, location=None, now=T0):
    return asyncio.run(job_workflow.start_job(db, job.id, caller, location=location, now=now))


def _complete(db, job, caller, location=None, now=T0, **kwargs):
    return asyncio.run(job_workflow.complete_job(db, job.id, caller, location=location, now=now, **kwargs))


def test_start_opens_active_entry(db, staff, make_site, make_job):
    job = make_job(staff.user_id, site=make_site())

    result = _start(db, job, staff, location=_at(20))

    assert result.job.status == JobStatus.IN_PROGRESS.value
    assert ensure_utc(result.job.start_time) == T0
    assert float(result.job.checkin_lat) == pytest.approx(result.position.lat)
    entry = result.time_entry
    assert entry.status == TimeEntryStatus.ACTIVE.value
    assert entry.staff_id == staff.user_id
    assert ensure_utc(entry.clock_in) == T0
    assert entry.clock_out is None
    assert entry.total_minutes is None
    assert result.geofence.within_fence is True
    assert result.location_failure is None


def test_start_from_non_scheduled_fails(db, staff, make_job):
    for status in (JobStatus.IN_PROGRESS, JobStatus.COMPLETED, JobStatus.CANCELLED):
        job = make_job(staff.user_id, status=status, start_time=T0 if status != JobStatus.CANCELLED else None)
        with pytest.raises(InvalidTransition):
            _start(db, job, staff)
        assert db.query(TimeEntry).filter(TimeEntry.job_id == job.id).count() == 0


def test_second_start_fails_and_keeps_single_entry(db, staff, make_job):
    job = make_job(staff.user_id)
    _start(db, job, staff)

    with pytest.raises(InvalidTransition):
        _start(db, job, staff, now=T0 + timedelta(minutes=5))

    entries = db.query(TimeEntry).filter(TimeEntry.job_id == job.id).all()
    assert len(entries) == 1
    assert ensure_utc(entries[0].clock_in) == T0


def test_start_by_unassigned_staff_is_forbidden(db, staff, other_staff, make_job):
    job = make_job(staff.user_id)
    with pytest.raises(Forbidden):
        _start(db, job, other_staff)
    db.refresh(job)
    assert job.status == JobStatus.SCHEDULED.value


def test_admin_can_start_on_behalf_of_staff(db, admin, staff, make_job):
    job = make_job(staff.user_id)
    result = _start(db, job, admin)
    assert result.time_entry.staff_id == staff.user_id


def test_start_unknown_job_is_not_found(db, staff):
    import uuid

    with pytest.raises(NotFound):
        asyncio.run(job_workflow.start_job(db, uuid.uuid4(), staff, now=T0))


def test_start_without_gps_still_succeeds(db, staff, make_site, make_job):
    job = make_job(staff.user_id, site=make_site())

    result = _start(db, job, staff, location=ReportedLocationProvider(failure=LocationFailure.PERMISSION_DENIED))

    assert result.job.status == JobStatus.IN_PROGRESS.value
    assert result.job.checkin_lat is None
    assert result.location_failure == LocationFailure.PERMISSION_DENIED
    assert result.geofence is None


def test_start_with_no_location_provider_reports_unsupported(db, staff, make_job):
    result = _start(db, make_job(staff.user_id), staff, location=None)
    assert result.location_failure == LocationFailure.UNSUPPORTED


def test_outside_fence_records_alert_but_does_not_block(db, staff, make_site, make_job):
    job = make_job(staff.user_id, site=make_site(radius=100))

    result = _start(db, job, staff, location=_at(1000))

    assert result.job.status == JobStatus.IN_PROGRESS.value
    assert result.geofence.within_fence is False
    alerts = db.query(JobAlert).filter(JobAlert.job_id == job.id).all()
    assert [a.alert_type for a in alerts] == [AlertType.GEOFENCE_VIOLATION.value]


def test_inside_fence_records_no_alert(db, staff, make_site, make_job):
    job = make_job(staff.user_id, site=make_site(radius=100))
    _start(db, job, staff, location=_at(40))
    assert db.query(JobAlert).count() == 0


def test_site_without_coordinates_is_unverified(db, staff, make_site, make_job):
    job = make_job(staff.user_id, site=make_site(lat=None, lng=None))
    result = _start(db, job, staff, location=_at(5000))
    assert result.geofence.within_fence is True
    assert result.geofence.verified is False
    assert db.query(JobAlert).count() == 0


def test_complete_after_90_minutes(db, staff, make_job):
    job = make_job(staff.user_id)
    started = _start(db, job, staff)

    result = _complete(db, job, staff, location=_at(10), now=T0 + timedelta(minutes=90), staff_notes="All done")

    assert result.job.status == JobStatus.COMPLETED.value
    assert result.job.actual_duration_minutes == 90
    assert ensure_utc(result.job.end_time) == T0 + timedelta(minutes=90)
    assert result.job.notes == "All done"
    entry = result.time_entry
    assert entry.id == started.time_entry.id
    assert entry.status == TimeEntryStatus.COMPLETED.value
    assert entry.total_minutes == 90
    assert entry.billable_minutes == 90
    assert ensure_utc(entry.clock_out) == T0 + timedelta(minutes=90)
    assert entry.clock_out_lat is not None


def test_duration_rounds_half_up(db, staff, make_job):
    job = make_job(staff.user_id)
    _start(db, job, staff)
    result = _complete(db, job, staff, now=T0 + timedelta(minutes=44, seconds=30))
    assert result.job.actual_duration_minutes == 45


def test_complete_without_start_time_fails(db, staff, make_job):
    job = make_job(staff.user_id, status=JobStatus.IN_PROGRESS, start_time=None)
    with pytest.raises(MissingStartTime):
        _complete(db, job, staff)
    db.refresh(job)
    assert job.status == JobStatus.IN_PROGRESS.value


def test_complete_scheduled_job_fails(db, staff, make_job):
    job = make_job(staff.user_id)
    with pytest.raises(InvalidTransition):
        _complete(db, job, staff)


def test_second_complete_fails(db, staff, make_job):
    job = make_job(staff.user_id)
    _start(db, job, staff)
    _complete(db, job, staff, now=T0 + timedelta(minutes=30))

    with pytest.raises(InvalidTransition):
        _complete(db, job, staff, now=T0 + timedelta(minutes=60))

    db.refresh(job)
    assert job.actual_duration_minutes == 30


def test_complete_survives_missing_gps(db, staff, make_job):
    job = make_job(staff.user_id)
    _start(db, job, staff)
    result = _complete(
        db, job, staff,
        location=ReportedLocationProvider(failure=LocationFailure.TIMEOUT),
        now=T0 + timedelta(minutes=15),
    )
    assert result.job.status == JobStatus.COMPLETED.value
    assert result.job.checkout_lat is None
    assert result.location_failure == LocationFailure.TIMEOUT


def test_complete_after_force_close_keeps_admin_entry(db, admin, staff, make_job):
    job = make_job(staff.user_id)
    started = _start(db, job, staff)
    force_clock_out(db, started.time_entry.id, admin, clock_out_time=T0 + timedelta(hours=2), now=T0 + timedelta(hours=14))

    result = _complete(db, job, staff, now=T0 + timedelta(hours=15))

    assert result.job.status == JobStatus.COMPLETED.value
    assert result.time_entry is None
    entry = db.get(TimeEntry, started.time_entry.id)
    assert entry.status == TimeEntryStatus.EDITED.value
    assert entry.total_minutes == 120


def test_transitions_are_audited(db, staff, make_job):
    job = make_job(staff.user_id)
    _start(db, job, staff, location=_at(0))
    _complete(db, job, staff, now=T0 + timedelta(minutes=5))

    actions = [a.action for a in db.query(AuditLog).filter(AuditLog.entity_id == job.id).order_by(AuditLog.timestamp_utc)]
    assert actions == ["START", "COMPLETE"]


def _failing_audit(*args, **kwargs):
    raise IntegrityError("INSERT INTO audit_logs", {}, Exception("constraint failed"))


def _moves_job_to(db, job, status):
    """Location stub that lets another writer change the job mid-request."""

    async def _capture(location, **kwargs):
        db.query(Job).filter(Job.id == job.id).update({Job.status: status.value}, synchronize_session="fetch")
        db.commit()
        return None, LocationFailure.UNSUPPORTED

    return _capture


def test_start_store_failure_rolls_back_job_and_entry(db, staff, make_job, monkeypatch):
    job = make_job(staff.user_id)
    monkeypatch.setattr(job_workflow, "create_audit_log", _failing_audit)

    with pytest.raises(PersistenceError):
        _start(db, job, staff)

    db.refresh(job)
    assert job.status == JobStatus.SCHEDULED.value
    assert job.start_time is None
    assert db.query(TimeEntry).filter(TimeEntry.job_id == job.id).count() == 0


def test_complete_store_failure_rolls_back_job_and_entry(db, staff, make_job, monkeypatch):
    job = make_job(staff.user_id)
    started = _start(db, job, staff)
    monkeypatch.setattr(job_workflow, "create_audit_log", _failing_audit)

    with pytest.raises(PersistenceError):
        _complete(db, job, staff, now=T0 + timedelta(minutes=30))

    db.refresh(job)
    assert job.status == JobStatus.IN_PROGRESS.value
    assert job.end_time is None
    entry = db.get(TimeEntry, started.time_entry.id)
    db.refresh(entry)
    assert entry.status == TimeEntryStatus.ACTIVE.value
    assert entry.clock_out is None


def test_start_loses_race_after_status_check(db, staff, make_job, monkeypatch):
    job = make_job(staff.user_id)
    monkeypatch.setattr(job_workflow, "capture_position", _moves_job_to(db, job, JobStatus.IN_PROGRESS))

    with pytest.raises(InvalidTransition):
        _start(db, job, staff)

    assert db.query(TimeEntry).filter(TimeEntry.job_id == job.id).count() == 0
    assert db.query(AuditLog).filter(AuditLog.entity_id == job.id).count() == 0


def test_complete_loses_race_after_status_check(db, staff, make_job, monkeypatch):
    job = make_job(staff.user_id)
    started = _start(db, job, staff)
    monkeypatch.setattr(job_workflow, "capture_position", _moves_job_to(db, job, JobStatus.COMPLETED))

    with pytest.raises(InvalidTransition):
        _complete(db, job, staff, now=T0 + timedelta(minutes=30))

    entry = db.get(TimeEntry, started.time_entry.id)
    db.refresh(entry)
    assert entry.status == TimeEntryStatus.ACTIVE.value
    assert entry.total_minutes is None
    actions = [a.action for a in db.query(AuditLog).filter(AuditLog.entity_id == job.id)]
    assert actions == ["START"]
