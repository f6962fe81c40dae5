from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from loguru import logger
from sqlalchemy.orm import Session

from ..models import Reminder, Routine, RoutineTask
from .context import SchedulerContext
from .notification_scheduler import (
    cancel_routine_notifications,
    cancel_routine_task_notifications,
    routine_schedule,
    schedule_routine_notifications,
)
from .recurrence import Frequency, next_occurrence

ROUTINE_FIELDS = ("title", "description", "frequency", "schedule", "timezone", "enabled", "reminder_before")
TASK_FIELDS = ("title", "description", "order", "reminder_time")


class RoutineNotFound(Exception):
    pass


class RoutineTaskNotFound(Exception):
    pass


class RoutineService:
    """
    Routine CRUD plus the task checklist reset. Every mutation recomputes
    `next_occurrence_at` where it matters and reschedules the routine's
    reminders and alarm.
    """

    def __init__(self, ctx: SchedulerContext) -> None:
        self.ctx = ctx

    # ---------- helpers ----------

    def compute_next_occurrence(self, routine: Routine, after: datetime | None = None) -> Optional[datetime]:
        schedule = routine_schedule(routine)
        if schedule is None:
            return None
        return next_occurrence(schedule, after or self.ctx.now(), routine.timezone)

    def _reschedule(self, db: Session, routine: Routine) -> None:
        schedule_routine_notifications(self.ctx, db, routine.id)

    def _get_owned(self, db: Session, routine_id: str, user_id: str) -> Routine:
        routine = db.get(Routine, routine_id)
        if routine is None or routine.user_id != user_id:
            raise RoutineNotFound(routine_id)
        return routine

    def _get_owned_task(self, db: Session, task_id: str, user_id: str) -> RoutineTask:
        task = db.get(RoutineTask, task_id)
        if task is None or task.routine.user_id != user_id:
            raise RoutineTaskNotFound(task_id)
        return task

    # ---------- routines ----------

    def create_routine(self, db: Session, user_id: str, data: dict[str, Any]) -> Routine:
        tasks = data.pop("tasks", None) or []
        routine = Routine(user_id=user_id, **{k: v for k, v in data.items() if k in ROUTINE_FIELDS})
        for index, item in enumerate(tasks):
            routine.tasks.append(
                RoutineTask(
                    title=item["title"],
                    description=item.get("description"),
                    order=item.get("order", index),
                    reminder_time=item.get("reminder_time"),
                )
            )
        routine.last_reset_at = self.ctx.now()
        routine.next_occurrence_at = self.compute_next_occurrence(routine)
        db.add(routine)
        db.commit()
        db.refresh(routine)
        logger.info("routine {} created for user {}", routine.id, user_id)

        self._reschedule(db, routine)
        return routine

    def get_routine(self, db: Session, routine_id: str, user_id: str) -> Routine:
        routine = self._get_owned(db, routine_id, user_id)
        if self._is_due_for_reset(routine):
            self.reset_routine_tasks(db, routine)
        return routine

    def get_user_routines(self, db: Session, user_id: str) -> list[Routine]:
        """All of a user's routines, resetting finished cycles on the way."""
        self.check_and_reset_due_routines(db, user_id=user_id)
        routines = db.query(Routine).filter(Routine.user_id == user_id).order_by(Routine.created_at).all()

        # Routines that lost their lead reminder (e.g. after a restart gap) get it back
        for routine in routines:
            if not routine.enabled or not routine.reminder_before:
                continue
            schedule = routine_schedule(routine)
            # Yearly routines never get a lead reminder
            if schedule is None or schedule.frequency is Frequency.YEARLY:
                continue
            pending = (
                db.query(Reminder)
                .filter(Reminder.source_type == "ROUTINE", Reminder.source_id == routine.id)
                .first()
            )
            if pending is None:
                self._reschedule(db, routine)
        return routines

    def update_routine(self, db: Session, routine_id: str, user_id: str, data: dict[str, Any]) -> Routine:
        routine = self._get_owned(db, routine_id, user_id)
        for field, value in data.items():
            if field in ROUTINE_FIELDS:
                setattr(routine, field, value)

        if {"frequency", "schedule", "timezone"} & data.keys():
            routine.next_occurrence_at = self.compute_next_occurrence(routine)
        db.commit()
        db.refresh(routine)

        self._reschedule(db, routine)
        return routine

    def delete_routine(self, db: Session, routine_id: str, user_id: str) -> None:
        routine = self._get_owned(db, routine_id, user_id)
        cancel_routine_notifications(self.ctx, db, routine.id, user_id)
        db.delete(routine)
        db.commit()
        logger.info("routine {} deleted", routine_id)

    # ---------- routine tasks ----------

    def add_task(self, db: Session, routine_id: str, user_id: str, data: dict[str, Any]) -> RoutineTask:
        routine = self._get_owned(db, routine_id, user_id)
        order = data.get("order")
        if order is None:
            order = max((t.order for t in routine.tasks), default=-1) + 1
        task = RoutineTask(
            routine_id=routine.id,
            title=data["title"],
            description=data.get("description"),
            order=order,
            reminder_time=data.get("reminder_time"),
        )
        db.add(task)
        db.commit()
        db.refresh(routine)

        self._reschedule(db, routine)
        return task

    def update_task(self, db: Session, task_id: str, user_id: str, data: dict[str, Any]) -> RoutineTask:
        task = self._get_owned_task(db, task_id, user_id)
        for field, value in data.items():
            if field in TASK_FIELDS:
                setattr(task, field, value)
        db.commit()

        self._reschedule(db, task.routine)
        return task

    def delete_task(self, db: Session, task_id: str, user_id: str) -> None:
        task = self._get_owned_task(db, task_id, user_id)
        routine = task.routine
        cancel_routine_task_notifications(self.ctx, db, task.id, user_id)
        db.delete(task)
        db.commit()
        db.refresh(routine)

        self._reschedule(db, routine)

    def toggle_task(self, db: Session, task_id: str, user_id: str, completed: bool | None = None) -> RoutineTask:
        task = self._get_owned_task(db, task_id, user_id)
        task.completed = (not task.completed) if completed is None else completed
        task.completed_at = self.ctx.now() if task.completed else None
        db.commit()
        return task

    # ---------- resets ----------

    def _is_due_for_reset(self, routine: Routine) -> bool:
        return routine.next_occurrence_at is not None and routine.next_occurrence_at <= self.ctx.now()

    def reset_routine_tasks(self, db: Session, routine: Routine) -> Routine:
        """Clear the checklist and move the routine to its next cycle."""
        now = self.ctx.now()
        for task in routine.tasks:
            task.completed = False
            task.completed_at = None
        routine.last_reset_at = now
        routine.next_occurrence_at = self.compute_next_occurrence(routine, now)
        db.commit()
        logger.info(
            "routine {} reset, next occurrence {}",
            routine.id,
            routine.next_occurrence_at.isoformat() if routine.next_occurrence_at else None,
        )

        self._reschedule(db, routine)
        return routine

    def check_and_reset_due_routines(self, db: Session, user_id: str | None = None) -> list[str]:
        now = self.ctx.now()
        query = db.query(Routine).filter(
            Routine.enabled.is_(True),
            Routine.next_occurrence_at.is_not(None),
            Routine.next_occurrence_at <= now,
        )
        if user_id is not None:
            query = query.filter(Routine.user_id == user_id)

        reset = []
        for routine in query.all():
            try:
                self.reset_routine_tasks(db, routine)
                reset.append(routine.id)
            except Exception:
                logger.exception("failed to reset routine {}", routine.id)
                db.rollback()
        return reset
