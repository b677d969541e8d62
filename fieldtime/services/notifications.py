"""
Outcome notifications.
Stores structured success/failure records for the UI; has no say in core logic.
"""
from typing import Optional, Dict

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..models.models import Notification
from ..config import settings

logger = structlog.get_logger(__name__)


def notify_outcome(
    db: Session,
    user_id,
    operation: str,
    success: bool,
    payload_json: Optional[Dict] = None,
) -> Optional[Notification]:
    """
    Create an in-app notification describing an operation outcome.

    Args:
        db: Database session (any pending work must already be committed or rolled back)
        user_id: User to inform
        operation: Operation key (e.g. job_start, time_entry_edit)
        success: Whether the operation succeeded
        payload_json: Structured result or error details

    Returns:
        Notification object if created, None if disabled or the store failed
    """
    if not settings.enable_notifications or user_id is None:
        return None

    notification = Notification(
        user_id=user_id,
        channel="in_app",
        template_key=f"{operation}_{'succeeded' if success else 'failed'}",
        payload_json=payload_json,
        status="pending",
    )
    try:
        db.add(notification)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning("notification_failed", operation=operation, user_id=str(user_id), error=str(e))
        return None

    return notification


def list_pending(db: Session, user_id) -> list:
    return (
        db.query(Notification)
        .filter(Notification.user_id == user_id, Notification.status == "pending")
        .order_by(Notification.created_at.desc())
        .all()
    )
