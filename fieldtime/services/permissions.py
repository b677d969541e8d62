"""
Permission checks for admin-gated operations.
The caller is passed explicitly; nothing here reads request state.
"""
import uuid
from dataclasses import dataclass
from enum import Enum

from ..errors import Forbidden


class Role(str, Enum):
    ADMIN = "admin"
    STAFF = "staff"


@dataclass(frozen=True)
class CallerContext:
    user_id: uuid.UUID
    role: Role


def is_admin(caller: CallerContext) -> bool:
    """Check if caller has admin role."""
    return caller is not None and caller.role == Role.ADMIN


def require_admin(caller: CallerContext, action: str = "perform this action") -> None:
    if not is_admin(caller):
        raise Forbidden(f"Only admins can {action}")


def require_self_or_admin(caller: CallerContext, staff_id, action: str = "access this record") -> None:
    """Staff may act on their own records; admins on anyone's."""
    if is_admin(caller):
        return
    if caller is None or str(caller.user_id) != str(staff_id):
        raise Forbidden(f"You can only {action} for yourself")
