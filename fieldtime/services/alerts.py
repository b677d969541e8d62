"""
Job alert sink.
Alerts are advisory: a failure to record one is logged and never escalated.
"""
from typing import Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..models.models import AlertType, JobAlert

logger = structlog.get_logger(__name__)


def record_alert(db: Session, job_id, alert_type: AlertType, message: str) -> Optional[JobAlert]:
    """
    Persist an alert in its own transaction.

    Must be called after the caller's own work has been committed or rolled back.

    Returns:
        JobAlert if stored, None if the store rejected it
    """
    alert = JobAlert(job_id=job_id, alert_type=AlertType(alert_type).value, message=message)
    try:
        db.add(alert)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("alert_record_failed", job_id=str(job_id), alert_type=str(alert_type), error=str(e))
        return None
    logger.info("alert_recorded", job_id=str(job_id), alert_type=alert.alert_type)
    return alert


def list_alerts(db: Session, job_id=None, alert_types=None, since=None) -> list:
    query = db.query(JobAlert)
    if job_id is not None:
        query = query.filter(JobAlert.job_id == job_id)
    if alert_types:
        query = query.filter(JobAlert.alert_type.in_([AlertType(t).value for t in alert_types]))
    if since is not None:
        query = query.filter(JobAlert.created_at >= since)
    return query.order_by(JobAlert.created_at.desc()).all()
