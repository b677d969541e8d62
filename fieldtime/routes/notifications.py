from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth.security import get_caller
from ..db import get_db
from ..services.notifications import list_pending
from ..services.permissions import CallerContext

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("")
def list_notifications(
    db: Session = Depends(get_db),
    caller: CallerContext = Depends(get_caller),
):
    """Pending outcome notifications for the current user, newest first."""
    return [
        {
            "id": str(n.id),
            "template_key": n.template_key,
            "payload": n.payload_json or {},
            "status": n.status,
            "created_at": n.created_at.isoformat() if n.created_at else None,
        }
        for n in list_pending(db, caller.user_id)
    ]
