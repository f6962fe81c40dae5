from datetime import date, datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, field_validator
from sqlalchemy.orm import Session

from ..core.context import SchedulerContext
from ..core.database import get_db
from ..core.notification_scheduler import (
    cancel_task_notifications,
    schedule_task_due_date_notifications,
    send_task_assignment_notification,
    send_task_created_notification,
)
from ..core.recurrence import parse_clock
from ..models import Task, User
from .deps import get_context, get_current_user

router = APIRouter(prefix="/tasks", tags=["tasks"])

TASK_STATUSES = {"TODO", "IN_PROGRESS", "DONE"}

# Changes to these fields move the due-date reminders
SCHEDULE_FIELDS = {"due_date", "due_time", "status", "title"}


# ---------- Pydantic schemas ----------

def _check_status(v: str) -> str:
    v_up = v.upper()
    if v_up not in TASK_STATUSES:
        raise ValueError(f"status must be one of {TASK_STATUSES}")
    return v_up


def _check_due_time(v: Optional[str]) -> Optional[str]:
    if v is not None and parse_clock(v) is None:
        raise ValueError("due_time must be in HH:MM format")
    return v


class TaskBase(BaseModel):
    title: str
    description: Optional[str] = None
    status: str = "TODO"
    due_date: Optional[date] = None
    due_time: Optional[str] = None  # "HH:MM"
    assignee_id: Optional[str] = None

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: str) -> str:
        return _check_status(v)

    @field_validator("due_time")
    @classmethod
    def validate_due_time(cls, v: Optional[str]) -> Optional[str]:
        return _check_due_time(v)


class TaskCreate(TaskBase):
    pass


class TaskUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    status: Optional[str] = None
    due_date: Optional[date] = None
    due_time: Optional[str] = None
    assignee_id: Optional[str] = None

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        return _check_status(v)

    @field_validator("due_time")
    @classmethod
    def validate_due_time(cls, v: Optional[str]) -> Optional[str]:
        return _check_due_time(v)


class TaskOut(TaskBase):
    id: str
    user_id: str
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


def _get_task(db: Session, task_id: str, user: User) -> Task:
    task = db.get(Task, task_id)
    if task is None or task.user_id != user.id:
        raise HTTPException(status_code=404, detail="Task not found")
    return task


# ---------- CRUD endpoints ----------

@router.get("", response_model=List[TaskOut])
def list_tasks(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return db.query(Task).filter(Task.user_id == user.id).order_by(Task.created_at).all()


@router.post("", response_model=TaskOut, status_code=status.HTTP_201_CREATED)
def create_task(
    payload: TaskCreate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    ctx: SchedulerContext = Depends(get_context),
):
    task = Task(user_id=user.id, **payload.model_dump())
    db.add(task)
    db.commit()
    db.refresh(task)

    schedule_task_due_date_notifications(ctx, db, task)
    send_task_created_notification(ctx, db, task)
    if task.assignee_id and task.assignee_id != user.id:
        send_task_assignment_notification(ctx, db, task, assigner_name=user.name)
    return task


@router.get("/{task_id}", response_model=TaskOut)
def get_task(
    task_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return _get_task(db, task_id, user)


@router.patch("/{task_id}", response_model=TaskOut)
def update_task(
    task_id: str,
    payload: TaskUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    ctx: SchedulerContext = Depends(get_context),
):
    task = _get_task(db, task_id, user)
    changes = payload.model_dump(exclude_unset=True)
    previous_assignee = task.assignee_id

    for field, value in changes.items():
        setattr(task, field, value)
    db.commit()
    db.refresh(task)

    if SCHEDULE_FIELDS & changes.keys():
        schedule_task_due_date_notifications(ctx, db, task)
    if task.assignee_id and task.assignee_id != previous_assignee and task.assignee_id != user.id:
        send_task_assignment_notification(ctx, db, task, assigner_name=user.name)
    return task


@router.delete("/{task_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_task(
    task_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    ctx: SchedulerContext = Depends(get_context),
):
    task = _get_task(db, task_id, user)
    cancel_task_notifications(ctx, db, task.id, user.id)
    db.delete(task)
    db.commit()
    return None
