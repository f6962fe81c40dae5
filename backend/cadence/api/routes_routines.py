from datetime import datetime
from typing import List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, field_validator, model_validator
from sqlalchemy.orm import Session

from ..core.context import SchedulerContext
from ..core.database import get_db
from ..core.offsets import parse_offset
from ..core.recurrence import Frequency, is_valid_reminder_time, parse_clock
from ..core.routines import RoutineNotFound, RoutineService, RoutineTaskNotFound
from ..models import User
from .deps import get_context, get_current_user

router = APIRouter(prefix="/routines", tags=["routines"])


# ---------- Pydantic schemas ----------

class ScheduleIn(BaseModel):
    time: Optional[str] = None  # "HH:MM"
    days: Optional[List[int]] = None  # 0=Sun .. 6=Sat
    day: Optional[int] = None  # 1..31

    @field_validator("time")
    @classmethod
    def validate_time(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and parse_clock(v) is None:
            raise ValueError("time must be in HH:MM format")
        return v

    @field_validator("days")
    @classmethod
    def validate_days(cls, v: Optional[List[int]]) -> Optional[List[int]]:
        if v is None:
            return v
        for d in v:
            if d < 0 or d > 6:
                raise ValueError("days entries must be between 0 and 6")
        return sorted(set(v))

    @field_validator("day")
    @classmethod
    def validate_day(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and not (1 <= v <= 31):
            raise ValueError("day must be between 1 and 31")
        return v


def _check_frequency(v: str) -> str:
    v_up = v.upper()
    if v_up not in Frequency.__members__:
        raise ValueError(f"frequency must be one of {set(Frequency.__members__)}")
    return v_up


def _check_schedule(frequency: str, schedule: ScheduleIn) -> None:
    if frequency in ("DAILY", "YEARLY") and not schedule.time:
        raise ValueError(f"schedule.time is required for {frequency} routines")
    if frequency == "WEEKLY" and not schedule.days:
        raise ValueError("schedule.days is required for WEEKLY routines")
    if frequency == "MONTHLY" and schedule.day is None:
        raise ValueError("schedule.day is required for MONTHLY routines")


def _check_reminder_before(v: Optional[str]) -> Optional[str]:
    if v is not None and parse_offset(v) is None:
        raise ValueError("reminder_before must look like 2h, 1d or 1w")
    return v


def _check_timezone(v: Optional[str]) -> Optional[str]:
    if v is None:
        return v
    try:
        ZoneInfo(v)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValueError(f"unknown timezone {v!r}")
    return v


def _check_task_reminder_time(v: Optional[str]) -> Optional[str]:
    if v is not None and not is_valid_reminder_time(v):
        raise ValueError("reminder_time must be HH:MM or a relative offset like -15min / -1hour")
    return v


class RoutineTaskIn(BaseModel):
    title: str
    description: Optional[str] = None
    order: Optional[int] = None
    reminder_time: Optional[str] = None

    @field_validator("reminder_time")
    @classmethod
    def validate_reminder_time(cls, v: Optional[str]) -> Optional[str]:
        return _check_task_reminder_time(v)


class RoutineTaskUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    order: Optional[int] = None
    reminder_time: Optional[str] = None

    @field_validator("reminder_time")
    @classmethod
    def validate_reminder_time(cls, v: Optional[str]) -> Optional[str]:
        return _check_task_reminder_time(v)


class ToggleRequest(BaseModel):
    completed: Optional[bool] = None


class RoutineCreate(BaseModel):
    title: str
    description: Optional[str] = None
    frequency: str
    schedule: ScheduleIn
    timezone: Optional[str] = None
    enabled: bool = True
    reminder_before: Optional[str] = None
    tasks: List[RoutineTaskIn] = []

    @field_validator("frequency")
    @classmethod
    def validate_frequency(cls, v: str) -> str:
        return _check_frequency(v)

    @field_validator("reminder_before")
    @classmethod
    def validate_reminder_before(cls, v: Optional[str]) -> Optional[str]:
        return _check_reminder_before(v)

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: Optional[str]) -> Optional[str]:
        return _check_timezone(v)

    @model_validator(mode="after")
    def validate_schedule_dependencies(self):
        _check_schedule(self.frequency, self.schedule)
        return self


class RoutineUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    frequency: Optional[str] = None
    schedule: Optional[ScheduleIn] = None
    timezone: Optional[str] = None
    enabled: Optional[bool] = None
    reminder_before: Optional[str] = None

    @field_validator("frequency")
    @classmethod
    def validate_frequency(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        return _check_frequency(v)

    @field_validator("reminder_before")
    @classmethod
    def validate_reminder_before(cls, v: Optional[str]) -> Optional[str]:
        return _check_reminder_before(v)

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: Optional[str]) -> Optional[str]:
        return _check_timezone(v)

    @model_validator(mode="after")
    def validate_schedule_dependencies(self):
        if (self.frequency is None) != (self.schedule is None):
            raise ValueError("frequency and schedule must be updated together")
        if self.frequency is not None:
            _check_schedule(self.frequency, self.schedule)
        return self


class RoutineTaskOut(BaseModel):
    id: str
    routine_id: str
    title: str
    description: Optional[str]
    order: int
    completed: bool
    completed_at: Optional[datetime]
    reminder_time: Optional[str]

    class Config:
        from_attributes = True


class RoutineOut(BaseModel):
    id: str
    title: str
    description: Optional[str]
    frequency: str
    schedule: dict
    timezone: str
    enabled: bool
    reminder_before: Optional[str]
    last_reset_at: Optional[datetime]
    next_occurrence_at: Optional[datetime]
    tasks: List[RoutineTaskOut]

    class Config:
        from_attributes = True


def _schedule_dict(schedule: ScheduleIn) -> dict:
    return schedule.model_dump(exclude_none=True)


def get_routine_service(ctx: SchedulerContext = Depends(get_context)) -> RoutineService:
    return RoutineService(ctx)


# ---------- Routines ----------

@router.get("", response_model=List[RoutineOut])
def list_routines(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    service: RoutineService = Depends(get_routine_service),
):
    return service.get_user_routines(db, user.id)


@router.post("", response_model=RoutineOut, status_code=status.HTTP_201_CREATED)
def create_routine(
    payload: RoutineCreate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    service: RoutineService = Depends(get_routine_service),
):
    data = payload.model_dump(exclude={"schedule", "tasks"})
    data["schedule"] = _schedule_dict(payload.schedule)
    data["timezone"] = payload.timezone or user.timezone
    data["tasks"] = [t.model_dump() for t in payload.tasks]
    return service.create_routine(db, user.id, data)


@router.get("/{routine_id}", response_model=RoutineOut)
def get_routine(
    routine_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    service: RoutineService = Depends(get_routine_service),
):
    try:
        return service.get_routine(db, routine_id, user.id)
    except RoutineNotFound:
        raise HTTPException(status_code=404, detail="Routine not found")


@router.patch("/{routine_id}", response_model=RoutineOut)
def update_routine(
    routine_id: str,
    payload: RoutineUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    service: RoutineService = Depends(get_routine_service),
):
    data = payload.model_dump(exclude_unset=True, exclude={"schedule"})
    if payload.schedule is not None:
        data["schedule"] = _schedule_dict(payload.schedule)
    try:
        return service.update_routine(db, routine_id, user.id, data)
    except RoutineNotFound:
        raise HTTPException(status_code=404, detail="Routine not found")


@router.delete("/{routine_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_routine(
    routine_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    service: RoutineService = Depends(get_routine_service),
):
    try:
        service.delete_routine(db, routine_id, user.id)
    except RoutineNotFound:
        raise HTTPException(status_code=404, detail="Routine not found")
    return None


@router.post("/{routine_id}/reset", response_model=RoutineOut)
def reset_routine(
    routine_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    service: RoutineService = Depends(get_routine_service),
):
    try:
        routine = service.get_routine(db, routine_id, user.id)
    except RoutineNotFound:
        raise HTTPException(status_code=404, detail="Routine not found")
    return service.reset_routine_tasks(db, routine)


# ---------- Routine tasks ----------

@router.post("/{routine_id}/tasks", response_model=RoutineTaskOut, status_code=status.HTTP_201_CREATED)
def add_routine_task(
    routine_id: str,
    payload: RoutineTaskIn,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    service: RoutineService = Depends(get_routine_service),
):
    try:
        return service.add_task(db, routine_id, user.id, payload.model_dump())
    except RoutineNotFound:
        raise HTTPException(status_code=404, detail="Routine not found")


@router.patch("/tasks/{task_id}", response_model=RoutineTaskOut)
def update_routine_task(
    task_id: str,
    payload: RoutineTaskUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    service: RoutineService = Depends(get_routine_service),
):
    try:
        return service.update_task(db, task_id, user.id, payload.model_dump(exclude_unset=True))
    except RoutineTaskNotFound:
        raise HTTPException(status_code=404, detail="Routine task not found")


@router.post("/tasks/{task_id}/toggle", response_model=RoutineTaskOut)
def toggle_routine_task(
    task_id: str,
    payload: ToggleRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    service: RoutineService = Depends(get_routine_service),
):
    try:
        return service.toggle_task(db, task_id, user.id, payload.completed)
    except RoutineTaskNotFound:
        raise HTTPException(status_code=404, detail="Routine task not found")


@router.delete("/tasks/{task_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_routine_task(
    task_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    service: RoutineService = Depends(get_routine_service),
):
    try:
        service.delete_task(db, task_id, user.id)
    except RoutineTaskNotFound:
        raise HTTPException(status_code=404, detail="Routine task not found")
    return None
