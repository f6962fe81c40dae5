from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, field_validator
from sqlalchemy.orm import Session

from ..core.context import SchedulerContext
from ..core.database import get_db
from ..core.notification_scheduler import (
    cancel_alarm_push_notifications,
    cancel_all_pending_alarm_notifications,
    schedule_alarm_push_notification,
)
from ..core.recurrence import check_recurrence_rule
from ..models import Alarm, User
from .deps import get_context, get_current_user

router = APIRouter(prefix="/alarms", tags=["alarms"])


def _check_rule(v: Optional[str]) -> Optional[str]:
    if v is None:
        return v
    return check_recurrence_rule(v)


# ---------- Pydantic schemas ----------

class AlarmCreate(BaseModel):
    title: str
    time: datetime
    timezone: Optional[str] = None
    recurrence_rule: Optional[str] = None  # FREQ=DAILY;INTERVAL=2, FREQ=WEEKLY;BYDAY=MO,WE
    enabled: bool = True
    snooze_config: Optional[dict] = None
    smart_wake_window: Optional[int] = None

    @field_validator("recurrence_rule")
    @classmethod
    def validate_rule(cls, v: Optional[str]) -> Optional[str]:
        return _check_rule(v)


class AlarmUpdate(BaseModel):
    title: Optional[str] = None
    time: Optional[datetime] = None
    timezone: Optional[str] = None
    recurrence_rule: Optional[str] = None
    enabled: Optional[bool] = None
    snooze_config: Optional[dict] = None
    smart_wake_window: Optional[int] = None

    @field_validator("recurrence_rule")
    @classmethod
    def validate_rule(cls, v: Optional[str]) -> Optional[str]:
        return _check_rule(v)


class AlarmOut(BaseModel):
    id: str
    title: str
    time: datetime
    timezone: str
    linked_task_id: Optional[str]
    source_type: Optional[str]
    source_id: Optional[str]
    recurrence_rule: Optional[str]
    enabled: bool
    snooze_config: Optional[dict]
    smart_wake_window: Optional[int]

    class Config:
        from_attributes = True


class CancelledResponse(BaseModel):
    cancelled: int


def _get_alarm(db: Session, alarm_id: str, user: User) -> Alarm:
    alarm = db.get(Alarm, alarm_id)
    if alarm is None or alarm.user_id != user.id:
        raise HTTPException(status_code=404, detail="Alarm not found")
    return alarm


# ---------- CRUD endpoints ----------

@router.get("", response_model=List[AlarmOut])
def list_alarms(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return db.query(Alarm).filter(Alarm.user_id == user.id).order_by(Alarm.time).all()


@router.post("", response_model=AlarmOut, status_code=status.HTTP_201_CREATED)
def create_alarm(
    payload: AlarmCreate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    ctx: SchedulerContext = Depends(get_context),
):
    data = payload.model_dump()
    data["timezone"] = payload.timezone or user.timezone
    alarm = Alarm(user_id=user.id, **data)
    db.add(alarm)
    db.commit()
    db.refresh(alarm)

    schedule_alarm_push_notification(ctx, db, alarm)
    return alarm


@router.patch("/{alarm_id}", response_model=AlarmOut)
def update_alarm(
    alarm_id: str,
    payload: AlarmUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    ctx: SchedulerContext = Depends(get_context),
):
    alarm = _get_alarm(db, alarm_id, user)
    for field, value in payload.model_dump(exclude_unset=True).items():
        setattr(alarm, field, value)
    db.commit()
    db.refresh(alarm)

    # Routine alarms ring on the device only
    if alarm.source_type is None:
        schedule_alarm_push_notification(ctx, db, alarm)
    return alarm


@router.delete("/{alarm_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_alarm(
    alarm_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    ctx: SchedulerContext = Depends(get_context),
):
    alarm = _get_alarm(db, alarm_id, user)
    cancel_alarm_push_notifications(ctx, db, alarm.id, user.id)
    db.delete(alarm)
    db.commit()
    return None


@router.post("/cancel-pending", response_model=CancelledResponse)
def cancel_pending_alarm_pushes(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    ctx: SchedulerContext = Depends(get_context),
):
    return CancelledResponse(cancelled=cancel_all_pending_alarm_notifications(ctx, db, user.id))
