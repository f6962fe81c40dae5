from datetime import date, datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, field_validator
from sqlalchemy.orm import Session

from ..core.context import SchedulerContext
from ..core.database import get_db
from ..core.notification_scheduler import (
    cancel_milestone_notifications,
    cancel_source_reminders,
    schedule_goal_target_date_notifications,
    schedule_milestone_due_date_notifications,
)
from ..models import Goal, Milestone, User
from .deps import get_context, get_current_user

router = APIRouter(tags=["goals"])

GOAL_STATUSES = {"ACTIVE", "DONE", "ARCHIVED"}
MILESTONE_STATUSES = {"TODO", "DONE"}


def _upper_in(v: Optional[str], allowed: set[str]) -> Optional[str]:
    if v is None:
        return v
    v_up = v.upper()
    if v_up not in allowed:
        raise ValueError(f"status must be one of {allowed}")
    return v_up


# ---------- Pydantic schemas ----------

class MilestoneCreate(BaseModel):
    title: str
    due_date: Optional[date] = None
    status: str = "TODO"

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: str) -> str:
        return _upper_in(v, MILESTONE_STATUSES)


class MilestoneUpdate(BaseModel):
    title: Optional[str] = None
    due_date: Optional[date] = None
    status: Optional[str] = None

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: Optional[str]) -> Optional[str]:
        return _upper_in(v, MILESTONE_STATUSES)


class MilestoneOut(BaseModel):
    id: str
    goal_id: str
    title: str
    status: str
    due_date: Optional[date]

    class Config:
        from_attributes = True


class GoalCreate(BaseModel):
    title: str
    description: Optional[str] = None
    target_date: Optional[datetime] = None
    milestones: List[MilestoneCreate] = []


class GoalUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    status: Optional[str] = None
    target_date: Optional[datetime] = None

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: Optional[str]) -> Optional[str]:
        return _upper_in(v, GOAL_STATUSES)


class GoalOut(BaseModel):
    id: str
    title: str
    description: Optional[str]
    status: str
    target_date: Optional[datetime]
    milestones: List[MilestoneOut]
    created_at: datetime

    class Config:
        from_attributes = True


def _get_goal(db: Session, goal_id: str, user: User) -> Goal:
    goal = db.get(Goal, goal_id)
    if goal is None or goal.user_id != user.id:
        raise HTTPException(status_code=404, detail="Goal not found")
    return goal


def _get_milestone(db: Session, milestone_id: str, user: User) -> Milestone:
    milestone = db.get(Milestone, milestone_id)
    if milestone is None or milestone.goal.user_id != user.id:
        raise HTTPException(status_code=404, detail="Milestone not found")
    return milestone


def _reschedule_goal(ctx: SchedulerContext, db: Session, goal: Goal) -> None:
    schedule_goal_target_date_notifications(ctx, db, goal)
    for milestone in goal.milestones:
        schedule_milestone_due_date_notifications(ctx, db, milestone)


# ---------- Goals ----------

@router.get("/goals", response_model=List[GoalOut])
def list_goals(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return db.query(Goal).filter(Goal.user_id == user.id).order_by(Goal.created_at).all()


@router.post("/goals", response_model=GoalOut, status_code=status.HTTP_201_CREATED)
def create_goal(
    payload: GoalCreate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    ctx: SchedulerContext = Depends(get_context),
):
    goal = Goal(
        user_id=user.id,
        title=payload.title,
        description=payload.description,
        target_date=payload.target_date,
    )
    for m in payload.milestones:
        goal.milestones.append(Milestone(title=m.title, due_date=m.due_date, status=m.status))
    db.add(goal)
    db.commit()
    db.refresh(goal)

    _reschedule_goal(ctx, db, goal)
    return goal


@router.get("/goals/{goal_id}", response_model=GoalOut)
def get_goal(
    goal_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return _get_goal(db, goal_id, user)


@router.patch("/goals/{goal_id}", response_model=GoalOut)
def update_goal(
    goal_id: str,
    payload: GoalUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    ctx: SchedulerContext = Depends(get_context),
):
    goal = _get_goal(db, goal_id, user)
    changes = payload.model_dump(exclude_unset=True)
    for field, value in changes.items():
        setattr(goal, field, value)
    db.commit()
    db.refresh(goal)

    # A finished goal silences its milestones too
    if "status" in changes:
        _reschedule_goal(ctx, db, goal)
    elif {"target_date", "title"} & changes.keys():
        schedule_goal_target_date_notifications(ctx, db, goal)
    return goal


@router.delete("/goals/{goal_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_goal(
    goal_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    ctx: SchedulerContext = Depends(get_context),
):
    goal = _get_goal(db, goal_id, user)
    cancel_source_reminders(ctx, db, user.id, "GOAL", goal.id)
    for milestone in goal.milestones:
        cancel_milestone_notifications(ctx, db, milestone.id, user.id)
    db.delete(goal)
    db.commit()
    return None


# ---------- Milestones ----------

@router.post("/goals/{goal_id}/milestones", response_model=MilestoneOut, status_code=status.HTTP_201_CREATED)
def create_milestone(
    goal_id: str,
    payload: MilestoneCreate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    ctx: SchedulerContext = Depends(get_context),
):
    goal = _get_goal(db, goal_id, user)
    milestone = Milestone(goal_id=goal.id, title=payload.title, due_date=payload.due_date, status=payload.status)
    db.add(milestone)
    db.commit()
    db.refresh(milestone)

    schedule_milestone_due_date_notifications(ctx, db, milestone)
    return milestone


@router.patch("/milestones/{milestone_id}", response_model=MilestoneOut)
def update_milestone(
    milestone_id: str,
    payload: MilestoneUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    ctx: SchedulerContext = Depends(get_context),
):
    milestone = _get_milestone(db, milestone_id, user)
    for field, value in payload.model_dump(exclude_unset=True).items():
        setattr(milestone, field, value)
    db.commit()
    db.refresh(milestone)

    schedule_milestone_due_date_notifications(ctx, db, milestone)
    return milestone


@router.delete("/milestones/{milestone_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_milestone(
    milestone_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    ctx: SchedulerContext = Depends(get_context),
):
    milestone = _get_milestone(db, milestone_id, user)
    cancel_milestone_notifications(ctx, db, milestone.id, user.id)
    db.delete(milestone)
    db.commit()
    return None
