"""In-app notification fan-out. Failures are logged and never block the caller."""

import logging
from typing import Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import models

logger = logging.getLogger(__name__)


def create_notifications(db: Session, user_ids: Iterable[int], type: str, title: str, message: str,
                         home_id: Optional[int] = None, data: Optional[dict] = None) -> int:
    """Create one notification per user. Returns how many were stored."""
    type = type.strip().upper()
    title = title.strip()
    message = message.strip()
    user_ids = [user_id for user_id in user_ids if user_id]
    if not user_ids or not type or not title or not message:
        return 0

    try:
        for user_id in user_ids:
            db.add(models.Notification(
                user_id=user_id,
                home_id=home_id,
                type=type,
                title=title,
                message=message,
                data=data
            ))
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to create {type} notifications: {e}")
        return 0
    return len(user_ids)


def notify_user(db: Session, user_id: int, type: str, title: str, message: str,
                home_id: Optional[int] = None, data: Optional[dict] = None) -> int:
    return create_notifications(db, [user_id], type, title, message, home_id=home_id, data=data)


def notify_home_members(db: Session, home_id: int, type: str, title: str, message: str,
                        exclude_user_ids: Iterable[int] = (), data: Optional[dict] = None) -> int:
    excluded = set(exclude_user_ids)
    try:
        members = db.query(models.HomeMember.user_id).filter(models.HomeMember.home_id == home_id).all()
    except SQLAlchemyError as e:
        logger.error(f"Failed to load members of home {home_id} for notifications: {e}")
        return 0

    user_ids = [member.user_id for member in members if member.user_id not in excluded]
    return create_notifications(db, user_ids, type, title, message, home_id=home_id, data=data)
