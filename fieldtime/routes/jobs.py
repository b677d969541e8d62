import uuid
from typing import Optional

from fastapi import APIRouter, Body, Depends
from sqlalchemy.orm import Session

from ..auth.security import get_caller
from ..db import get_db
from ..errors import FieldTimeError
from ..schemas.jobs import CompleteJobRequest, JobResponse, StartJobRequest
from ..schemas.time_entries import TimeEntryResponse
from ..services import job_workflow
from ..services.alerts import list_alerts
from ..services.notifications import notify_outcome
from ..services.permissions import CallerContext, require_self_or_admin

router = APIRouter(prefix="/jobs", tags=["jobs"])


def _transition_payload(result: job_workflow.JobTransitionResult) -> dict:
    return {
        "job": JobResponse.model_validate(result.job).model_dump(mode="json"),
        "time_entry": (
            TimeEntryResponse.model_validate(result.time_entry).model_dump(mode="json")
            if result.time_entry is not None else None
        ),
        "gps": {
            "captured": result.position is not None,
            "lat": float(result.position.lat) if result.position else None,
            "lng": float(result.position.lng) if result.position else None,
            "failure": result.location_failure.value if result.location_failure else None,
        },
        "geofence": result.geofence.as_dict() if result.geofence else None,
    }


def _failure_payload(job_id, e: FieldTimeError) -> dict:
    return {"job_id": str(job_id), "code": e.code, "message": e.message}


@router.post("/late-arrivals/check")
def check_late_arrivals(
    db: Session = Depends(get_db),
    caller: CallerContext = Depends(get_caller),
):
    """Sweep today's unstarted jobs and raise late-arrival / no-show alerts."""
    summary = job_workflow.check_late_arrivals(db, caller)
    return {
        "checked_at": summary.checked_at.isoformat(),
        "jobs_checked": summary.jobs_checked,
        "alerts_created": len(summary.alerts),
        "alerts": [f"{alert_type}:{job_id}" for alert_type, job_id in summary.alerts],
    }


@router.get("/{job_id}", response_model=JobResponse)
def get_job(
    job_id: uuid.UUID,
    db: Session = Depends(get_db),
    caller: CallerContext = Depends(get_caller),
):
    job = job_workflow.get_job(db, job_id)
    require_self_or_admin(caller, job.assigned_staff_id, "view jobs assigned to you")
    return job


@router.get("/{job_id}/alerts")
def get_job_alerts(
    job_id: uuid.UUID,
    db: Session = Depends(get_db),
    caller: CallerContext = Depends(get_caller),
):
    job = job_workflow.get_job(db, job_id)
    require_self_or_admin(caller, job.assigned_staff_id, "view alerts for jobs assigned to you")
    return [
        {
            "id": str(a.id),
            "alert_type": a.alert_type,
            "message": a.message,
            "created_at": a.created_at.isoformat() if a.created_at else None,
        }
        for a in list_alerts(db, job_id=job.id)
    ]


@router.post("/{job_id}/start")
async def start_job(
    job_id: uuid.UUID,
    payload: Optional[StartJobRequest] = Body(default=None),
    db: Session = Depends(get_db),
    caller: CallerContext = Depends(get_caller),
):
    """
    Start a scheduled job and open its time entry.
    The device sends its check-in fix as `gps`, or `gps_error` when none could be taken.
    """
    payload = payload or StartJobRequest()
    try:
        result = await job_workflow.start_job(db, job_id, caller, location=payload.location_provider())
    except FieldTimeError as e:
        notify_outcome(db, caller.user_id, "job_start", False, _failure_payload(job_id, e))
        raise

    body = _transition_payload(result)
    notify_outcome(db, caller.user_id, "job_start", True, {"job_id": str(job_id), "gps": body["gps"]})
    return body


@router.post("/{job_id}/complete")
async def complete_job(
    job_id: uuid.UUID,
    payload: Optional[CompleteJobRequest] = Body(default=None),
    db: Session = Depends(get_db),
    caller: CallerContext = Depends(get_caller),
):
    payload = payload or CompleteJobRequest()
    try:
        result = await job_workflow.complete_job(
            db,
            job_id,
            caller,
            location=payload.location_provider(),
            staff_notes=payload.staff_notes,
            issue_reported=payload.issue_reported,
        )
    except FieldTimeError as e:
        notify_outcome(db, caller.user_id, "job_complete", False, _failure_payload(job_id, e))
        raise

    body = _transition_payload(result)
    notify_outcome(
        db,
        caller.user_id,
        "job_complete",
        True,
        {"job_id": str(job_id), "duration_minutes": body["job"]["actual_duration_minutes"]},
    )
    return body
