from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..core.database import get_db
from ..models import Notification, User
from .deps import get_current_user

router = APIRouter(prefix="/notifications", tags=["notifications"])

NOTIFICATION_STATUSES = ("PENDING", "SENT", "FAILED")


class NotificationOut(BaseModel):
    id: str
    type: str
    payload: dict
    status: str
    attempt_count: int
    last_error: Optional[str]
    scheduled_for: Optional[datetime]
    sent_at: Optional[datetime]
    created_at: datetime

    class Config:
        from_attributes = True


@router.get("", response_model=List[NotificationOut])
def list_notifications(
    status: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    query = db.query(Notification).filter(Notification.user_id == user.id)
    if status:
        status_up = status.upper()
        if status_up not in NOTIFICATION_STATUSES:
            raise HTTPException(status_code=400, detail=f"status must be one of {NOTIFICATION_STATUSES}")
        query = query.filter(Notification.status == status_up)
    return query.order_by(Notification.created_at.desc()).limit(limit).all()


@router.get("/{notification_id}", response_model=NotificationOut)
def get_notification(
    notification_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    notification = db.get(Notification, notification_id)
    if notification is None or notification.user_id != user.id:
        raise HTTPException(status_code=404, detail="Notification not found")
    return notification
