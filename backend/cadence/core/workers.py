from __future__ import annotations

from functools import partial
from html import escape
from typing import Any, Dict, Optional

from loguru import logger
from sqlalchemy.orm import Session

from ..config import Settings
from ..integrations.push import PushMessage
from ..models import Alarm, Notification, Reminder, Routine, RoutineTask, User
from .context import SchedulerContext
from .notification_scheduler import (
    ALARM_TRIGGER,
    is_recurring_custom,
    schedule_alarm_push_notification,
    schedule_custom_reminder,
    schedule_routine_reminder_notification,
    schedule_routine_task_notifications,
)
from .preferences import NotificationPreferences, get_notification_preferences
from .queue import EMAIL, NOTIFICATIONS, REMINDERS, schedule_email

# Reminder categories that should ring like an alarm on the device
ALARM_SOUND_CATEGORIES = {"TASK_REMINDER", "DUE_DATE_REMINDER", "ROUTINE_REMINDER"}

ROUTINE_SOURCES = ("ROUTINE", "ROUTINE_TASK")


# ---------- Reminders ----------


def _load_routine_source(db: Session, reminder: Reminder) -> tuple[Optional[Routine], Optional[RoutineTask]]:
    schedule = reminder.schedule or {}
    routine_id = schedule.get("routineId") or (reminder.source_id if reminder.source_type == "ROUTINE" else None)
    routine = db.get(Routine, routine_id) if routine_id else None

    task = None
    if reminder.source_type == "ROUTINE_TASK":
        task = db.get(RoutineTask, reminder.source_id)
        if task is not None and routine is not None and task.routine_id != routine.id:
            task = None
    return routine, task


def _routine_source_alive(reminder: Reminder, routine: Optional[Routine], task: Optional[RoutineTask]) -> bool:
    if routine is None or not routine.enabled or routine.user_id != reminder.user_id:
        return False
    if reminder.source_type == "ROUTINE_TASK" and task is None:
        return False
    return True


async def _deliver_reminder(
    ctx: SchedulerContext,
    db: Session,
    reminder: Reminder,
    category: str,
    prefs: NotificationPreferences,
) -> None:
    if not prefs.allows(category):
        logger.info("reminder {} skipped, {} notifications are off for user {}", reminder.id, category, reminder.user_id)
        return

    message = PushMessage(
        title=reminder.title,
        body=reminder.note or "Reminder",
        data={
            "reminderId": reminder.id,
            "type": category,
            "targetType": reminder.target_type,
            "targetId": reminder.target_id,
        },
        sound="alarm" if category in ALARM_SOUND_CATEGORIES else "default",
    )
    if ctx.push.is_available():
        sent = await ctx.push.send_push(reminder.user_id, message)
        logger.info("reminder {} push {}", reminder.id, "sent" if sent else "not delivered")
    else:
        logger.debug("push transport not configured, reminder {} not pushed", reminder.id)

    if prefs.email_reminders:
        user = db.get(User, reminder.user_id)
        if user is not None and user.email:
            body = f"<p><strong>{escape(reminder.title)}</strong></p>"
            if reminder.note:
                body += f"<p>{escape(reminder.note)}</p>"
            schedule_email(ctx.queue, user.email, reminder.title, body)


def _reschedule_or_delete(
    ctx: SchedulerContext,
    db: Session,
    reminder: Reminder,
    routine: Optional[Routine],
    task: Optional[RoutineTask],
) -> None:
    if reminder.source_type == "ROUTINE" and routine is not None:
        schedule_routine_reminder_notification(ctx, db, routine)
    elif reminder.source_type == "ROUTINE_TASK" and routine is not None and task is not None:
        schedule_routine_task_notifications(ctx, db, routine, task, alarm_id=(reminder.schedule or {}).get("alarmId"))
    elif is_recurring_custom(reminder):
        schedule_custom_reminder(ctx, db, reminder)
    else:
        db.delete(reminder)
        db.commit()


async def process_reminder_job(ctx: SchedulerContext, job_type: str, payload: Dict[str, Any]) -> None:
    """
    Fire one reminder: check it still exists and still belongs to a live
    routine, push it if the user wants it, then queue the next one for
    recurring sources or drop the one-shot row.
    """
    reminder_id = payload.get("reminderId")
    logger.info("processing {} reminder {}", payload.get("type"), reminder_id)

    db = ctx.session_factory()
    try:
        reminder = db.get(Reminder, reminder_id) if reminder_id else None
        if reminder is None:
            logger.info("reminder {} not found, it was probably cancelled", reminder_id)
            return

        category = reminder.category or payload.get("type") or ""
        routine = task = None
        if reminder.source_type in ROUTINE_SOURCES:
            routine, task = _load_routine_source(db, reminder)
            if not _routine_source_alive(reminder, routine, task):
                logger.info("reminder {} belongs to a removed or disabled routine, deleting", reminder.id)
                db.delete(reminder)
                db.commit()
                return

        try:
            prefs = get_notification_preferences(db, reminder.user_id)
            await _deliver_reminder(ctx, db, reminder, category, prefs)
        except Exception:
            logger.exception("delivery failed for reminder {}", reminder.id)
            db.rollback()

        try:
            _reschedule_or_delete(ctx, db, reminder, routine, task)
        except Exception:
            logger.exception("could not reschedule reminder {}", reminder.id)
            db.rollback()
    finally:
        db.close()


# ---------- Notifications ----------


def _reschedule_recurring_alarm(ctx: SchedulerContext, db: Session, notification: Notification) -> None:
    alarm_id = (notification.payload or {}).get("alarmId")
    alarm = db.get(Alarm, alarm_id) if alarm_id else None
    if alarm is None or not alarm.enabled or not alarm.recurrence_rule:
        return
    schedule_alarm_push_notification(ctx, db, alarm)


async def process_notification_job(ctx: SchedulerContext, job_type: str, payload: Dict[str, Any]) -> None:
    notification_id = payload.get("notificationId")
    db = ctx.session_factory()
    try:
        notification = db.get(Notification, notification_id) if notification_id else None
        if notification is None:
            logger.info("notification {} not found, skipping", notification_id)
            return
        if notification.status == "SENT":
            logger.info("notification {} already sent", notification.id)
            return

        data = dict(notification.payload or {})
        ntype = payload.get("type") or data.get("notificationType")
        try:
            prefs = get_notification_preferences(db, notification.user_id)
            if not prefs.allows(ntype):
                logger.info("notification {} skipped, {} is off for user {}", notification.id, ntype, notification.user_id)
            elif ctx.push.is_available():
                await ctx.push.send_push(
                    notification.user_id,
                    PushMessage(
                        title=data.get("title") or "New Notification",
                        body=data.get("body") or "You have a new notification",
                        data={**data, "notificationId": notification.id, "type": ntype},
                        # The device rings alarms natively
                        sound=None if ntype == ALARM_TRIGGER else "default",
                    ),
                )
            notification.status = "SENT"
            notification.sent_at = ctx.now()
            notification.attempt_count = (notification.attempt_count or 0) + 1
            db.commit()
        except Exception as exc:
            db.rollback()
            notification.status = "FAILED"
            notification.attempt_count = (notification.attempt_count or 0) + 1
            notification.last_error = str(exc)
            db.commit()
            logger.error("notification {} failed: {}", notification.id, exc)
            raise

        if ntype == ALARM_TRIGGER:
            _reschedule_recurring_alarm(ctx, db, notification)
    finally:
        db.close()


# ---------- Email ----------


async def process_email_job(ctx: SchedulerContext, job_type: str, payload: Dict[str, Any]) -> None:
    to = payload.get("to")
    if not to:
        logger.warning("email job without recipient, dropping")
        return
    if not ctx.email.is_available():
        logger.debug("email transport not configured, dropping message to {}", to)
        return
    sent = await ctx.email.send_email(to, payload.get("subject") or "", payload.get("html") or "")
    logger.info("email to {} {}", to, "sent" if sent else "failed")


def register_workers(ctx: SchedulerContext, settings: Settings) -> None:
    ctx.queue.worker(REMINDERS, partial(process_reminder_job, ctx), settings.reminder_concurrency)
    ctx.queue.worker(NOTIFICATIONS, partial(process_notification_job, ctx), settings.notification_concurrency)
    ctx.queue.worker(EMAIL, partial(process_email_job, ctx), settings.email_concurrency)
