"""Notifications router: the caller's inbox."""

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

import models
import schemas
from database import get_db
from dependencies import CurrentPrincipal


router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("", response_model=list[schemas.Notification])
def list_notifications(
    principal: CurrentPrincipal,
    unread_only: bool = False,
    limit: int = Query(default=50, ge=1, le=100),
    db: Session = Depends(get_db)
):
    query = db.query(models.Notification).filter(models.Notification.user_id == principal.id)
    if unread_only:
        query = query.filter(models.Notification.is_read == False)  # noqa: E712
    return query.order_by(models.Notification.created_at.desc(), models.Notification.id.desc()).limit(limit).all()


@router.post("/{notification_id}/read", response_model=schemas.Notification)
def mark_read(notification_id: int, principal: CurrentPrincipal, db: Session = Depends(get_db)):
    notification = db.query(models.Notification).filter(
        models.Notification.id == notification_id,
        models.Notification.user_id == principal.id
    ).first()
    if not notification:
        raise HTTPException(status_code=404, detail="Notification not found")

    if not notification.is_read:
        notification.is_read = True
        notification.read_at = datetime.utcnow()
        db.commit()
        db.refresh(notification)
    return notification
