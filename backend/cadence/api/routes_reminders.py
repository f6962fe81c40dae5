from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, field_validator, model_validator
from sqlalchemy.orm import Session

from ..core.context import SchedulerContext
from ..core.database import get_db
from ..core.notification_scheduler import CUSTOM_CATEGORIES, custom_fire_time, schedule_custom_reminder
from ..core.preferences import user_timezone
from ..core.queue import REMINDERS
from ..core.recurrence import Schedule, ensure_utc
from ..models import Reminder, User
from .deps import get_context, get_current_user
from .routes_routines import ScheduleIn, _check_frequency, _check_schedule, _check_timezone

router = APIRouter(prefix="/reminders", tags=["reminders"])


# ---------- Pydantic schemas ----------

class ReminderScheduleIn(ScheduleIn):
    """Either a one-shot `at` instant or a recurring frequency + schedule."""

    at: Optional[datetime] = None
    frequency: Optional[str] = None
    timezone: Optional[str] = None

    @field_validator("frequency")
    @classmethod
    def validate_frequency(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        return _check_frequency(v)

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: Optional[str]) -> Optional[str]:
        return _check_timezone(v)

    @model_validator(mode="after")
    def validate_kind(self):
        if (self.at is None) == (self.frequency is None):
            raise ValueError("schedule needs exactly one of 'at' or 'frequency'")
        if self.frequency is not None:
            _check_schedule(self.frequency, self)
        return self

    def to_schedule(self, default_timezone: str) -> dict:
        if self.at is not None:
            return {"at": ensure_utc(self.at).isoformat()}
        data = Schedule.from_dict(self.model_dump(), self.frequency).to_dict()
        data["timezone"] = self.timezone or default_timezone
        return data


class ReminderCreate(BaseModel):
    title: str
    note: Optional[str] = None
    target_type: str = "CUSTOM"
    target_id: Optional[str] = None
    schedule: ReminderScheduleIn

    @field_validator("title")
    @classmethod
    def validate_title(cls, v: str) -> str:
        if not v.strip() or len(v) > 255:
            raise ValueError("title must be 1-255 characters")
        return v

    @field_validator("target_type")
    @classmethod
    def validate_target_type(cls, v: str) -> str:
        v_up = v.upper()
        if v_up not in CUSTOM_CATEGORIES:
            raise ValueError(f"target_type must be one of {set(CUSTOM_CATEGORIES)}")
        return v_up


class ReminderUpdate(BaseModel):
    title: Optional[str] = None
    note: Optional[str] = None
    schedule: Optional[ReminderScheduleIn] = None


class ReminderOut(BaseModel):
    id: str
    target_type: str
    target_id: Optional[str]
    source_type: Optional[str]
    source_id: Optional[str]
    category: str
    title: str
    note: Optional[str]
    trigger_type: str
    schedule: dict
    fire_at: Optional[datetime]
    created_at: datetime

    class Config:
        from_attributes = True


def _get_owned(db: Session, reminder_id: str, user: User) -> Reminder:
    reminder = db.get(Reminder, reminder_id)
    if reminder is None or reminder.user_id != user.id:
        raise HTTPException(status_code=404, detail="Reminder not found")
    return reminder


@router.get("", response_model=List[ReminderOut])
def list_reminders(
    source_type: Optional[str] = Query(None, max_length=16),
    source_id: Optional[str] = Query(None, max_length=36),
    upcoming: bool = Query(False),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    ctx: SchedulerContext = Depends(get_context),
):
    query = db.query(Reminder).filter(Reminder.user_id == user.id)
    if source_type:
        query = query.filter(Reminder.source_type == source_type.upper())
    if source_id:
        query = query.filter(Reminder.source_id == source_id)
    if upcoming:
        query = query.filter(Reminder.fire_at > ctx.now())
    return query.order_by(Reminder.fire_at.asc()).all()


@router.post("", response_model=ReminderOut, status_code=status.HTTP_201_CREATED)
def create_reminder(
    payload: ReminderCreate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    ctx: SchedulerContext = Depends(get_context),
):
    schedule = payload.schedule.to_schedule(user_timezone(db, user.id))
    if custom_fire_time(schedule, ctx.now()) is None:
        raise HTTPException(status_code=400, detail="schedule has no future fire time")

    reminder = Reminder(
        user_id=user.id,
        target_type=payload.target_type,
        target_id=payload.target_id,
        category=CUSTOM_CATEGORIES[payload.target_type],
        title=payload.title,
        note=payload.note,
        trigger_type="TIME",
        schedule=schedule,
        created_at=ctx.now(),
    )
    db.add(reminder)
    db.commit()
    db.refresh(reminder)

    if schedule_custom_reminder(ctx, db, reminder) is None:
        raise HTTPException(status_code=503, detail="Reminder could not be queued")
    return reminder


@router.get("/{reminder_id}", response_model=ReminderOut)
def get_reminder(
    reminder_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return _get_owned(db, reminder_id, user)


@router.patch("/{reminder_id}", response_model=ReminderOut)
def update_reminder(
    reminder_id: str,
    payload: ReminderUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    ctx: SchedulerContext = Depends(get_context),
):
    reminder = _get_owned(db, reminder_id, user)

    data = payload.model_dump(exclude_unset=True, exclude={"schedule"})
    for field, value in data.items():
        setattr(reminder, field, value)

    if payload.schedule is None:
        db.commit()
        db.refresh(reminder)
        return reminder

    # Generated rows follow their task, goal or routine
    if reminder.source_type is not None:
        raise HTTPException(status_code=400, detail="Only user-created reminders can be rescheduled")
    schedule = payload.schedule.to_schedule(user_timezone(db, user.id))
    if custom_fire_time(schedule, ctx.now()) is None:
        raise HTTPException(status_code=400, detail="schedule has no future fire time")

    reminder.schedule = schedule
    db.commit()
    if schedule_custom_reminder(ctx, db, reminder) is None:
        raise HTTPException(status_code=503, detail="Reminder could not be queued")
    return reminder


@router.delete("/{reminder_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_reminder(
    reminder_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    ctx: SchedulerContext = Depends(get_context),
):
    reminder = _get_owned(db, reminder_id, user)

    if reminder.job_id:
        ctx.queue.remove(reminder.job_id)
    else:
        for job in ctx.queue.list_jobs(REMINDERS):
            if job.payload.get("reminderId") == reminder.id:
                ctx.queue.remove(job.id)
    db.delete(reminder)
    db.commit()
    return None
