"""
Authorization checks shared by the admin-only endpoints.
"""

import logging

from fastapi import HTTPException

from .database import TaskDatabase
from .models import UserType

logger = logging.getLogger(__name__)

FORBIDDEN_DETAIL = "forbidden - admin access required"


def is_admin(db: TaskDatabase, user_id: int) -> bool:
    """True only when the user exists and has the admin role."""
    return db.get_user_role(user_id) == UserType.ADMIN.value


def require_admin(db: TaskDatabase, user_id: int) -> None:
    """
    Deny the request unless ``user_id`` is an admin.

    An unknown user is refused the same way as an ordinary one.

    Raises:
        HTTPException: 403 when the caller is not an admin
    """
    if not is_admin(db, user_id):
        logger.warning(f"User {user_id} denied admin-only operation")
        raise HTTPException(status_code=403, detail=FORBIDDEN_DETAIL)
