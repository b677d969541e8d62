"""
Job workflow.

Drives a job scheduled -> in_progress -> completed. Each transition is a
conditional update on the expected status, written in the same transaction
as the matching time entry change, so concurrent or repeated requests cannot
both succeed. GPS is best-effort: a failed fix is reported back, never fatal.
"""
from dataclasses import dataclass
from datetime import datetime, time, timedelta
from typing import List, Optional, Tuple

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import InvalidTimeRange, InvalidTransition, MissingStartTime, NotFound, PersistenceError
from ..models.models import AlertType, Job, JobAlert, JobStatus, TimeEntry
from . import geofence as geofence_service
from .alerts import record_alert
from .audit import create_audit_log
from .location import LocationFailure, LocationProvider, Position, capture_position
from .permissions import CallerContext, require_admin, require_self_or_admin
from .time_entries import close_entry, get_active_entry_for_job, open_entry
from .time_rules import ensure_utc, local_to_utc, minutes_between, utc_to_local, utcnow

logger = structlog.get_logger(__name__)


@dataclass
class JobTransitionResult:
    job: Job
    time_entry: Optional[TimeEntry]
    position: Optional[Position] = None
    location_failure: Optional[LocationFailure] = None
    geofence: Optional[geofence_service.GeofenceResult] = None


@dataclass
class LateArrivalSummary:
    checked_at: datetime
    jobs_checked: int
    alerts: List[Tuple[str, str]]


def get_job(db: Session, job_id) -> Job:
    job = db.query(Job).filter(Job.id == job_id).first()
    if not job:
        raise NotFound("Job not found")
    return job


def _audit_transition(db: Session, job: Job, action: str, caller: CallerContext, before: dict, after: dict, context: dict) -> None:
    create_audit_log(
        db=db,
        entity_type="job",
        entity_id=job.id,
        action=action,
        actor_id=caller.user_id,
        actor_role=caller.role.value,
        source="api",
        changes_json={"before": before, "after": after},
        context=context,
    )


def _gps_context(position: Optional[Position], failure: Optional[LocationFailure]) -> dict:
    if position is not None:
        return {"gps_lat": float(position.lat), "gps_lng": float(position.lng), "gps_accuracy_m": position.accuracy_m}
    return {"gps_failure": failure.value if failure else None}


async def start_job(
    db: Session,
    job_id,
    caller: CallerContext,
    location: Optional[LocationProvider] = None,
    now: Optional[datetime] = None,
) -> JobTransitionResult:
    """
    Start a scheduled job and open its time entry.

    Args:
        db: Database session
        job_id: Job to start
        caller: Assigned staff member or an admin
        location: Position source for the check-in fix
        now: Transition instant (default current time)

    Returns:
        JobTransitionResult with the updated job, the new active entry and
        the GPS/geofence outcome

    Raises:
        NotFound, Forbidden, InvalidTransition, PersistenceError
    """
    job = get_job(db, job_id)
    require_self_or_admin(caller, job.assigned_staff_id, "start jobs assigned to you")
    if job.status != JobStatus.SCHEDULED.value:
        raise InvalidTransition(f"Cannot start a job with status '{job.status}'")

    position, failure = await capture_position(location, job_id=str(job.id), operation="start_job")
    now = now or utcnow()

    fence = None
    if position is not None and job.site is not None and settings.geofence_check_on_start:
        fence = geofence_service.validate(position, job.site)

    staff_id = job.assigned_staff_id or caller.user_id
    values = {
        Job.status: JobStatus.IN_PROGRESS.value,
        Job.start_time: now,
        Job.updated_at: now,
    }
    if position is not None:
        values[Job.checkin_lat] = position.lat
        values[Job.checkin_lng] = position.lng

    try:
        updated = (
            db.query(Job)
            .filter(Job.id == job.id, Job.status == JobStatus.SCHEDULED.value)
            .update(values, synchronize_session="fetch")
        )
        if updated == 0:
            raise InvalidTransition("Job is no longer scheduled")

        entry = open_entry(db, job.id, staff_id, now, position)

        context = {"staff_id": str(staff_id), **_gps_context(position, failure)}
        if fence is not None:
            context["geofence"] = fence.as_dict()
        _audit_transition(
            db, job, "START", caller,
            before={"status": JobStatus.SCHEDULED.value},
            after={"status": JobStatus.IN_PROGRESS.value, "start_time": now.isoformat()},
            context=context,
        )
        db.commit()
    except InvalidTransition:
        db.rollback()
        raise
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("job_start_failed", job_id=str(job_id), error=str(e))
        raise PersistenceError("Could not start job") from e

    db.refresh(job)
    db.refresh(entry)

    if fence is not None and not fence.within_fence:
        record_alert(
            db,
            job.id,
            AlertType.GEOFENCE_VIOLATION,
            f"Checked in {fence.distance_meters:.0f}m from site (allowed radius {fence.radius_meters:.0f}m)",
        )

    logger.info(
        "job_started",
        job_id=str(job.id),
        staff_id=str(staff_id),
        gps=position is not None,
        within_fence=fence.within_fence if fence else None,
    )
    return JobTransitionResult(job=job, time_entry=entry, position=position, location_failure=failure, geofence=fence)


async def complete_job(
    db: Session,
    job_id,
    caller: CallerContext,
    location: Optional[LocationProvider] = None,
    staff_notes: Optional[str] = None,
    issue_reported: Optional[str] = None,
    now: Optional[datetime] = None,
) -> JobTransitionResult:
    """
    Complete an in-progress job and close its time entry.

    Duration is whole minutes from start_time to now, rounded half up, and is
    written to both the job and the entry.

    Raises:
        NotFound, Forbidden, InvalidTransition, MissingStartTime,
        InvalidTimeRange, PersistenceError
    """
    job = get_job(db, job_id)
    require_self_or_admin(caller, job.assigned_staff_id, "complete jobs assigned to you")
    if job.status != JobStatus.IN_PROGRESS.value:
        raise InvalidTransition(f"Cannot complete a job with status '{job.status}'")
    if job.start_time is None:
        raise MissingStartTime()

    position, failure = await capture_position(location, job_id=str(job.id), operation="complete_job")
    now = now or utcnow()

    started = ensure_utc(job.start_time)
    if now < started:
        raise InvalidTimeRange("Completion time precedes the job start time")
    duration = minutes_between(started, now)

    values = {
        Job.status: JobStatus.COMPLETED.value,
        Job.end_time: now,
        Job.actual_duration_minutes: duration,
        Job.updated_at: now,
    }
    if position is not None:
        values[Job.checkout_lat] = position.lat
        values[Job.checkout_lng] = position.lng
    if staff_notes:
        values[Job.notes] = staff_notes
    if issue_reported:
        values[Job.issue_reported] = issue_reported

    try:
        updated = (
            db.query(Job)
            .filter(Job.id == job.id, Job.status == JobStatus.IN_PROGRESS.value)
            .update(values, synchronize_session="fetch")
        )
        if updated == 0:
            raise InvalidTransition("Job is no longer in progress")

        entry = get_active_entry_for_job(db, job.id)
        if entry is not None:
            close_entry(db, entry, now, duration, position, staff_notes)
        else:
            logger.warning("job_completed_without_active_entry", job_id=str(job.id))

        _audit_transition(
            db, job, "COMPLETE", caller,
            before={"status": JobStatus.IN_PROGRESS.value},
            after={
                "status": JobStatus.COMPLETED.value,
                "end_time": now.isoformat(),
                "actual_duration_minutes": duration,
            },
            context={
                "time_entry_id": str(entry.id) if entry else None,
                **_gps_context(position, failure),
            },
        )
        db.commit()
    except InvalidTransition:
        db.rollback()
        raise
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("job_complete_failed", job_id=str(job_id), error=str(e))
        raise PersistenceError("Could not complete job") from e

    db.refresh(job)
    if entry is not None:
        db.refresh(entry)

    logger.info("job_completed", job_id=str(job.id), duration_minutes=duration, gps=position is not None)
    return JobTransitionResult(job=job, time_entry=entry, position=position, location_failure=failure)


def check_late_arrivals(db: Session, caller: CallerContext, now: Optional[datetime] = None) -> LateArrivalSummary:
    """
    Raise late-arrival and no-show alerts for today's jobs that have not started.

    A job is late LATE_ARRIVAL_MIN minutes after its scheduled time and a
    no-show after NO_SHOW_MIN. Each alert type is raised at most once per job
    per local day.
    """
    require_admin(caller, "run late arrival checks")
    now = now or utcnow()
    local_now = utc_to_local(now, settings.tz_default)
    today = local_now.date()
    day_start = local_to_utc(datetime.combine(today, time.min), settings.tz_default)

    jobs = (
        db.query(Job)
        .filter(
            Job.scheduled_date == today,
            Job.status == JobStatus.SCHEDULED.value,
            Job.scheduled_time.isnot(None),
            Job.scheduled_time <= local_now.time(),
        )
        .all()
    )

    created = []
    for job in jobs:
        scheduled_at = local_to_utc(datetime.combine(today, job.scheduled_time), settings.tz_default)
        late_minutes = int((now - scheduled_at) // timedelta(minutes=1))

        existing = {
            a.alert_type
            for a in db.query(JobAlert).filter(
                JobAlert.job_id == job.id,
                JobAlert.created_at >= day_start,
                JobAlert.alert_type.in_([AlertType.LATE_ARRIVAL.value, AlertType.NO_SHOW.value]),
            )
        }
        where = job.location or "unknown location"

        if late_minutes >= settings.no_show_min:
            if AlertType.NO_SHOW.value not in existing:
                alert = record_alert(db, job.id, AlertType.NO_SHOW, f"Staff has not arrived. {late_minutes} minutes late. Location: {where}")
                if alert is not None:
                    created.append((AlertType.NO_SHOW.value, str(job.id)))
        elif late_minutes >= settings.late_arrival_min:
            if AlertType.LATE_ARRIVAL.value not in existing:
                alert = record_alert(db, job.id, AlertType.LATE_ARRIVAL, f"Staff is {late_minutes} minutes late. Location: {where}")
                if alert is not None:
                    created.append((AlertType.LATE_ARRIVAL.value, str(job.id)))

    logger.info("late_arrivals_checked", jobs_checked=len(jobs), alerts_created=len(created))
    return LateArrivalSummary(checked_at=now, jobs_checked=len(jobs), alerts=created)
