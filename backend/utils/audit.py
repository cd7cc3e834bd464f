"""Audit trail writes. Never allowed to break the operation being audited."""

import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import models

logger = logging.getLogger(__name__)


def write_audit_log(
    db: Session,
    action: str,
    user_id: Optional[int] = None,
    home_id: Optional[int] = None,
    details: Optional[dict] = None
) -> None:
    try:
        db.add(models.AuditLog(action=action, user_id=user_id, home_id=home_id, details=details))
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to write audit log {action} for user {user_id}: {e}")
