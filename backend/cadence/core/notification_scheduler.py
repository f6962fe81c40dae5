from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Iterable, Optional

from loguru import logger
from sqlalchemy.orm import Session

from ..models import Alarm, Goal, Milestone, Notification, Reminder, Routine, RoutineTask, Task
from .context import SchedulerContext
from .offsets import parse_offset, resolve_reminder_time
from .preferences import user_timezone
from .queue import NOTIFICATIONS, REMINDERS, schedule_notification, schedule_reminder
from .recurrence import (
    Frequency,
    Schedule,
    apply_reminder_time,
    build_recurrence_rule,
    ensure_utc,
    next_occurrence,
    next_rule_occurrence,
    parse_clock,
    resolve_timezone,
)

ALARM_TRIGGER = "ALARM_TRIGGER"
TASK_ASSIGNMENT = "TASK_ASSIGNMENT"
TASK_CREATED = "TASK_CREATED"

IMMEDIATE_DELAY = timedelta(seconds=1)
END_OF_DAY = time(23, 59)

ROUTINE_SNOOZE = {"duration": 5, "maxSnoozes": 3}
ROUTINE_SMART_WAKE_WINDOW = 5


# ---------- Reminder ladders ----------


@dataclass(frozen=True)
class LadderStep:
    lead: timedelta
    title: str
    note: str


@dataclass(frozen=True)
class Ladder:
    source_type: str
    target_type: str
    category: str
    steps: tuple[LadderStep, ...]


LADDERS = {
    "TASK": Ladder(
        source_type="TASK",
        target_type="TASK",
        category="DUE_DATE_REMINDER",
        steps=(
            LadderStep(timedelta(days=1), "Task Due Tomorrow: {title}", 'Your task "{title}" is due tomorrow.'),
            LadderStep(timedelta(hours=1), "Task Due in 1 Hour: {title}", 'Your task "{title}" is due in 1 hour.'),
            LadderStep(timedelta(0), "Task Due: {title}", 'Your task "{title}" is due now.'),
        ),
    ),
    "MILESTONE": Ladder(
        source_type="MILESTONE",
        target_type="GOAL",
        category="GOAL_REMINDER",
        steps=(
            LadderStep(timedelta(days=1), "Milestone Due Tomorrow: {title}", 'Your milestone "{title}" is due tomorrow.'),
            LadderStep(timedelta(hours=1), "Milestone Due in 1 Hour: {title}", 'Your milestone "{title}" is due in 1 hour.'),
            LadderStep(timedelta(0), "Milestone Due: {title}", 'Your milestone "{title}" is due today.'),
        ),
    ),
    "GOAL": Ladder(
        source_type="GOAL",
        target_type="GOAL",
        category="GOAL_REMINDER",
        steps=(
            LadderStep(timedelta(weeks=1), "Goal Due in 1 Week: {title}", 'Your goal "{title}" is due in one week.'),
            LadderStep(timedelta(days=1), "Goal Due Tomorrow: {title}", 'Your goal "{title}" is due tomorrow.'),
            LadderStep(timedelta(0), "Goal Due: {title}", 'Your goal "{title}" target date has arrived.'),
        ),
    ),
}


def ladder_fire_times(ladder: Ladder, due_at: datetime, now: datetime) -> list[tuple[LadderStep, datetime]]:
    """
    Steps of `ladder` that still make sense for a due instant.
    Lead steps need a future fire time strictly before the due instant,
    the at-due step only needs the due instant itself to be ahead.
    """
    due_at = ensure_utc(due_at)
    now = ensure_utc(now)
    if due_at <= now:
        return []

    steps = []
    for step in ladder.steps:
        fire_at = due_at - step.lead
        if step.lead and not (now < fire_at < due_at):
            continue
        steps.append((step, fire_at))
    return steps


def local_due_instant(due_date: date, due_time: str | None, tz: str | None) -> datetime:
    """Due date + "HH:MM" in `tz` as aware UTC; end of day when there is no time."""
    clock = parse_clock(due_time) or END_OF_DAY
    return ensure_utc(datetime.combine(due_date, clock, tzinfo=resolve_timezone(tz)))


# ---------- Row helpers ----------


def _remove_jobs(ctx: SchedulerContext, queue_name: str, key: str, ids: set[str]) -> None:
    if not ids:
        return
    try:
        for job in ctx.queue.list_jobs(queue_name):
            if job.payload.get(key) in ids:
                ctx.queue.remove(job.id)
    except Exception:
        logger.warning("could not remove queued {} jobs for {} rows", queue_name, len(ids))


def _delete_reminder_rows(ctx: SchedulerContext, db: Session, rows: Iterable[Reminder]) -> int:
    rows = list(rows)
    _remove_jobs(ctx, REMINDERS, "reminderId", {r.id for r in rows})
    for row in rows:
        db.delete(row)
    db.commit()
    return len(rows)


def _delete_reminders(ctx: SchedulerContext, db: Session, user_id: str, source_type: str, source_id: str) -> int:
    rows = (
        db.query(Reminder)
        .filter(
            Reminder.user_id == user_id,
            Reminder.source_type == source_type,
            Reminder.source_id == source_id,
        )
        .all()
    )
    return _delete_reminder_rows(ctx, db, rows)


def _delete_alarms(ctx: SchedulerContext, db: Session, alarms: Iterable[Alarm]) -> int:
    count = 0
    for alarm in list(alarms):
        cancel_alarm_push_notifications(ctx, db, alarm.id, alarm.user_id)
        db.delete(alarm)
        count += 1
    db.commit()
    return count


def _create_reminder(
    ctx: SchedulerContext,
    db: Session,
    *,
    user_id: str,
    target_type: str,
    target_id: str | None,
    source_type: str,
    source_id: str,
    category: str,
    title: str,
    note: str | None,
    schedule: dict,
    fire_at: datetime,
) -> Optional[Reminder]:
    """Persist a reminder and enqueue its job; the row is removed again if enqueueing fails."""
    reminder = Reminder(
        user_id=user_id,
        target_type=target_type,
        target_id=target_id,
        source_type=source_type,
        source_id=source_id,
        category=category,
        title=title,
        note=note,
        trigger_type="TIME",
        schedule=schedule,
        fire_at=fire_at,
        created_at=ctx.now(),
    )
    db.add(reminder)
    db.commit()

    try:
        reminder.job_id = schedule_reminder(ctx.queue, reminder.id, user_id, fire_at, category, ctx.now())
        db.commit()
    except Exception:
        logger.exception("enqueue failed for reminder {} ({}), rolling back", reminder.id, title)
        db.rollback()
        db.delete(reminder)
        db.commit()
        return None

    logger.info("reminder {} scheduled for {} ({})", reminder.id, fire_at.isoformat(), title)
    return reminder


def _create_notification(
    ctx: SchedulerContext,
    db: Session,
    *,
    user_id: str,
    notification_type: str,
    payload: dict,
    fire_at: datetime,
) -> Optional[Notification]:
    notification = Notification(
        user_id=user_id,
        type="IN_APP",
        payload={"notificationType": notification_type, **payload},
        status="PENDING",
        scheduled_for=fire_at,
    )
    db.add(notification)
    db.commit()

    try:
        notification.job_id = schedule_notification(
            ctx.queue, notification.id, user_id, fire_at, notification_type, ctx.now()
        )
        db.commit()
    except Exception:
        logger.exception("enqueue failed for notification {}, rolling back", notification.id)
        db.rollback()
        db.delete(notification)
        db.commit()
        return None

    return notification


def _schedule_ladder(
    ctx: SchedulerContext,
    db: Session,
    ladder: Ladder,
    *,
    user_id: str,
    source_id: str,
    target_id: str | None,
    title: str,
    due_at: datetime | None,
    extra: dict,
) -> list[Reminder]:
    removed = _delete_reminders(ctx, db, user_id, ladder.source_type, source_id)
    if removed:
        logger.info("removed {} stale {} reminders for {}", removed, ladder.source_type.lower(), source_id)

    if due_at is None:
        return []

    now = ctx.now()
    steps = ladder_fire_times(ladder, due_at, now)
    if not steps:
        logger.info("{} {} is due {} which is not ahead, nothing to schedule", ladder.source_type.lower(), source_id, due_at.isoformat())
        return []

    created = []
    for step, fire_at in steps:
        reminder = _create_reminder(
            ctx,
            db,
            user_id=user_id,
            target_type=ladder.target_type,
            target_id=target_id,
            source_type=ladder.source_type,
            source_id=source_id,
            category=ladder.category,
            title=step.title.format(title=title),
            note=step.note.format(title=title),
            schedule={"at": fire_at.isoformat(), **extra},
            fire_at=fire_at,
        )
        if reminder is not None:
            created.append(reminder)
    return created


# ---------- Task / milestone / goal ladders ----------


def schedule_task_due_date_notifications(ctx: SchedulerContext, db: Session, task: Task) -> list[Reminder]:
    """
    Replace the due-date reminders and the due-time alarm of a task.
    Finished or undated tasks only lose what they had.
    """
    try:
        tz = user_timezone(db, task.user_id)
        _delete_alarms(
            ctx,
            db,
            db.query(Alarm).filter(Alarm.user_id == task.user_id, Alarm.linked_task_id == task.id).all(),
        )

        due_at = None
        if task.due_date is not None and task.status != "DONE":
            due_at = local_due_instant(task.due_date, task.due_time, tz)

        created = _schedule_ladder(
            ctx,
            db,
            LADDERS["TASK"],
            user_id=task.user_id,
            source_id=task.id,
            target_id=task.id,
            title=task.title,
            due_at=due_at,
            extra={"taskId": task.id},
        )

        if due_at is not None and due_at > ctx.now():
            alarm = Alarm(
                user_id=task.user_id,
                title=f"Task Due: {task.title}",
                time=due_at,
                timezone=tz,
                linked_task_id=task.id,
                recurrence_rule=None,
                enabled=True,
            )
            db.add(alarm)
            db.commit()
            logger.info("alarm {} set for task {} at {}", alarm.id, task.id, due_at.isoformat())

        return created
    except Exception:
        logger.exception("failed to schedule due date notifications for task {}", task.id)
        db.rollback()
        return []


def cancel_task_notifications(ctx: SchedulerContext, db: Session, task_id: str, user_id: str) -> None:
    try:
        _delete_reminders(ctx, db, user_id, "TASK", task_id)
        _delete_alarms(
            ctx,
            db,
            db.query(Alarm).filter(Alarm.user_id == user_id, Alarm.linked_task_id == task_id).all(),
        )
    except Exception:
        logger.exception("failed to cancel notifications for task {}", task_id)
        db.rollback()


def schedule_milestone_due_date_notifications(
    ctx: SchedulerContext, db: Session, milestone: Milestone
) -> list[Reminder]:
    try:
        goal = milestone.goal or db.get(Goal, milestone.goal_id)
        if goal is None:
            logger.warning("milestone {} has no goal, skipping", milestone.id)
            return []

        due_at = None
        if milestone.due_date is not None and milestone.status != "DONE" and goal.status == "ACTIVE":
            due_at = local_due_instant(milestone.due_date, None, user_timezone(db, goal.user_id))

        return _schedule_ladder(
            ctx,
            db,
            LADDERS["MILESTONE"],
            user_id=goal.user_id,
            source_id=milestone.id,
            target_id=goal.id,
            title=milestone.title,
            due_at=due_at,
            extra={"milestoneId": milestone.id, "goalId": goal.id},
        )
    except Exception:
        logger.exception("failed to schedule notifications for milestone {}", milestone.id)
        db.rollback()
        return []


def schedule_goal_target_date_notifications(ctx: SchedulerContext, db: Session, goal: Goal) -> list[Reminder]:
    try:
        due_at = goal.target_date if goal.status == "ACTIVE" else None
        return _schedule_ladder(
            ctx,
            db,
            LADDERS["GOAL"],
            user_id=goal.user_id,
            source_id=goal.id,
            target_id=goal.id,
            title=goal.title,
            due_at=due_at,
            extra={"goalId": goal.id},
        )
    except Exception:
        logger.exception("failed to schedule notifications for goal {}", goal.id)
        db.rollback()
        return []


def cancel_source_reminders(ctx: SchedulerContext, db: Session, user_id: str, source_type: str, source_id: str) -> int:
    try:
        return _delete_reminders(ctx, db, user_id, source_type, source_id)
    except Exception:
        logger.exception("failed to cancel {} reminders for {}", source_type.lower(), source_id)
        db.rollback()
        return 0


def cancel_milestone_notifications(ctx: SchedulerContext, db: Session, milestone_id: str, user_id: str) -> int:
    """Ladder and overdue reminders of a milestone."""
    removed = cancel_source_reminders(ctx, db, user_id, "MILESTONE", milestone_id)
    removed += cancel_source_reminders(ctx, db, user_id, "MILESTONE_OVERDUE", milestone_id)
    return removed


# ---------- User-defined reminders ----------

# Job category for reminders a user creates by hand, keyed by target type
CUSTOM_CATEGORIES = {
    "TASK": "TASK_REMINDER",
    "GOAL": "GOAL_REMINDER",
    "PROJECT": "TASK_REMINDER",
    "CUSTOM": "TASK_REMINDER",
}


def is_recurring_custom(reminder: Reminder) -> bool:
    return reminder.source_type is None and bool((reminder.schedule or {}).get("frequency"))


def custom_fire_time(schedule: dict | None, now: datetime) -> Optional[datetime]:
    """
    Next fire time of a user-defined schedule, either one-shot {"at": iso}
    or recurring {"frequency", "time", "days"/"day", "timezone"}.
    """
    schedule = schedule or {}
    if schedule.get("frequency"):
        try:
            recurring = Schedule.from_dict(schedule)
        except ValueError:
            logger.warning("unknown reminder frequency {!r}", schedule.get("frequency"))
            return None
        return next_occurrence(recurring, now, schedule.get("timezone"))

    try:
        fire_at = ensure_utc(datetime.fromisoformat(schedule["at"]))
    except (KeyError, TypeError, ValueError):
        return None
    return fire_at if fire_at > ensure_utc(now) else None


def schedule_custom_reminder(ctx: SchedulerContext, db: Session, reminder: Reminder) -> Optional[Reminder]:
    """
    Queue a user-defined reminder at its next fire time, replacing any job
    it already has. A row with no future fire time is deleted.
    """
    try:
        _remove_jobs(ctx, REMINDERS, "reminderId", {reminder.id})
        now = ctx.now()
        fire_at = custom_fire_time(reminder.schedule, now)
        if fire_at is None:
            logger.info("reminder {} has no future fire time, deleting", reminder.id)
            db.delete(reminder)
            db.commit()
            return None

        reminder.fire_at = fire_at
        reminder.job_id = None
        db.commit()
        try:
            reminder.job_id = schedule_reminder(ctx.queue, reminder.id, reminder.user_id, fire_at, reminder.category, now)
            db.commit()
        except Exception:
            logger.exception("enqueue failed for reminder {} ({}), deleting", reminder.id, reminder.title)
            db.rollback()
            db.delete(reminder)
            db.commit()
            return None

        logger.info("reminder {} scheduled for {} ({})", reminder.id, fire_at.isoformat(), reminder.title)
        return reminder
    except Exception:
        logger.exception("failed to schedule reminder {}", reminder.id)
        db.rollback()
        return None


# ---------- Routines ----------


def routine_schedule(routine: Routine) -> Optional[Schedule]:
    try:
        return Schedule.from_dict(routine.schedule, routine.frequency)
    except ValueError:
        logger.warning("routine {} has unknown frequency {!r}", routine.id, routine.frequency)
        return None


def schedule_routine_notifications(ctx: SchedulerContext, db: Session, routine_id: str) -> None:
    """
    Bring every reminder and the alarm of one routine in line with its
    current state. Disabled or missing routines are cleaned up instead.
    """
    try:
        routine = db.get(Routine, routine_id)
        if routine is None:
            logger.info("routine {} no longer exists, cancelling its notifications", routine_id)
            cancel_routine_notifications(ctx, db, routine_id)
            return
        if not routine.enabled:
            logger.info("routine {} is disabled, cancelling its notifications", routine_id)
            cancel_routine_notifications(ctx, db, routine_id, routine.user_id)
            return

        schedule = routine_schedule(routine)
        occurrence = next_occurrence(schedule, ctx.now(), routine.timezone) if schedule else None
        if schedule is None or occurrence is None:
            logger.warning("routine {} has no computable next occurrence", routine_id)
            cancel_routine_notifications(ctx, db, routine_id, routine.user_id)
            return

        schedule_routine_reminder_notification(ctx, db, routine, occurrence)
        alarm = _replace_routine_alarm(ctx, db, routine, schedule, occurrence)
        for task in routine.tasks:
            schedule_routine_task_notifications(ctx, db, routine, task, alarm_id=alarm.id if alarm else None)
    except Exception:
        logger.exception("failed to schedule notifications for routine {}", routine_id)
        db.rollback()


def schedule_routine_reminder_notification(
    ctx: SchedulerContext,
    db: Session,
    routine: Routine,
    occurrence: datetime | None = None,
) -> Optional[Reminder]:
    """Lead-time reminder ("1h before") for the routine's next occurrence."""
    try:
        _delete_reminders(ctx, db, routine.user_id, "ROUTINE", routine.id)
        if not routine.enabled or not routine.reminder_before:
            return None
        if parse_offset(routine.reminder_before) is None:
            logger.warning("routine {} has invalid reminder_before {!r}", routine.id, routine.reminder_before)
            return None

        schedule = routine_schedule(routine)
        if schedule is None:
            return None
        if schedule.frequency is Frequency.YEARLY:
            logger.warning("lead-time reminders are not supported for yearly routine {}", routine.id)
            return None

        now = ctx.now()
        occurrence = occurrence or next_occurrence(schedule, now, routine.timezone)
        if occurrence is None:
            logger.warning("routine {} has no next occurrence, skipping reminder", routine.id)
            return None

        fire_at = resolve_reminder_time(occurrence, routine.reminder_before, schedule, now, routine.timezone)
        if fire_at is None:
            return None

        return _create_reminder(
            ctx,
            db,
            user_id=routine.user_id,
            target_type="CUSTOM",
            target_id=None,
            source_type="ROUTINE",
            source_id=routine.id,
            category="ROUTINE_REMINDER",
            title=f"Routine Reminder: {routine.title}",
            note=f'Your routine "{routine.title}" is coming up soon',
            schedule={
                **schedule.to_dict(),
                "timezone": routine.timezone,
                "routineId": routine.id,
                "reminderBefore": routine.reminder_before,
            },
            fire_at=fire_at,
        )
    except Exception:
        logger.exception("failed to schedule reminder for routine {}", routine.id)
        db.rollback()
        return None


def schedule_routine_task_notifications(
    ctx: SchedulerContext,
    db: Session,
    routine: Routine,
    task: RoutineTask,
    alarm_id: str | None = None,
) -> Optional[Reminder]:
    try:
        _delete_reminders(ctx, db, routine.user_id, "ROUTINE_TASK", task.id)
        if not routine.enabled:
            return None

        schedule = routine_schedule(routine)
        if schedule is None or not schedule.time:
            logger.info("routine {} has no time, no reminder for task {}", routine.id, task.id)
            return None
        if schedule.frequency is Frequency.YEARLY:
            logger.warning("task reminders are not supported for yearly routine {}", routine.id)
            return None

        task_schedule = schedule.with_time(apply_reminder_time(schedule.time, task.reminder_time))
        fire_at = next_occurrence(task_schedule, ctx.now(), routine.timezone)
        if fire_at is None:
            logger.warning("no next occurrence for task {} of routine {}", task.id, routine.id)
            return None

        payload = {
            **task_schedule.to_dict(),
            "timezone": routine.timezone,
            "routineId": routine.id,
            "taskId": task.id,
        }
        if alarm_id:
            payload["alarmId"] = alarm_id

        return _create_reminder(
            ctx,
            db,
            user_id=routine.user_id,
            target_type="CUSTOM",
            target_id=None,
            source_type="ROUTINE_TASK",
            source_id=task.id,
            category="ROUTINE_REMINDER",
            title=f"Routine: {routine.title}",
            note=f'Time to complete "{task.title}"',
            schedule=payload,
            fire_at=fire_at,
        )
    except Exception:
        logger.exception("failed to schedule reminder for routine task {}", task.id)
        db.rollback()
        return None


def cancel_routine_task_notifications(ctx: SchedulerContext, db: Session, task_id: str, user_id: str) -> int:
    try:
        return _delete_reminders(ctx, db, user_id, "ROUTINE_TASK", task_id)
    except Exception:
        logger.exception("failed to cancel reminders for routine task {}", task_id)
        db.rollback()
        return 0


def cancel_routine_notifications(
    ctx: SchedulerContext, db: Session, routine_id: str, user_id: str | None = None
) -> None:
    """Drop the routine's lead reminder, every task reminder and its alarm."""
    try:
        query = db.query(Reminder).filter(
            (
                (Reminder.source_type == "ROUTINE") & (Reminder.source_id == routine_id)
            )
            | (
                (Reminder.source_type == "ROUTINE_TASK")
                & (Reminder.schedule["routineId"].as_string() == routine_id)
            )
        )
        alarms = db.query(Alarm).filter(Alarm.source_type == "ROUTINE", Alarm.source_id == routine_id)
        if user_id is not None:
            query = query.filter(Reminder.user_id == user_id)
            alarms = alarms.filter(Alarm.user_id == user_id)

        removed = _delete_reminder_rows(ctx, db, query.all())
        removed_alarms = _delete_alarms(ctx, db, alarms.all())
        logger.info("routine {}: removed {} reminders and {} alarms", routine_id, removed, removed_alarms)
    except Exception:
        logger.exception("failed to cancel notifications for routine {}", routine_id)
        db.rollback()


def _replace_routine_alarm(
    ctx: SchedulerContext,
    db: Session,
    routine: Routine,
    schedule: Schedule,
    occurrence: datetime,
) -> Optional[Alarm]:
    _delete_alarms(
        ctx,
        db,
        db.query(Alarm)
        .filter(Alarm.user_id == routine.user_id, Alarm.source_type == "ROUTINE", Alarm.source_id == routine.id)
        .all(),
    )

    alarm_time = occurrence
    if routine.reminder_before:
        alarm_time = resolve_reminder_time(occurrence, routine.reminder_before, schedule, ctx.now(), routine.timezone)
    if alarm_time is None:
        logger.warning("no alarm time for routine {}", routine.id)
        return None

    # Routine alarms ring natively on the device, no backend push is scheduled.
    alarm = Alarm(
        user_id=routine.user_id,
        title=f"Routine: {routine.title}",
        time=alarm_time,
        timezone=routine.timezone,
        source_type="ROUTINE",
        source_id=routine.id,
        recurrence_rule=build_recurrence_rule(schedule),
        enabled=True,
        snooze_config=dict(ROUTINE_SNOOZE),
        smart_wake_window=ROUTINE_SMART_WAKE_WINDOW,
    )
    db.add(alarm)
    db.commit()
    logger.info("routine alarm {} set for {} ({})", alarm.id, alarm_time.isoformat(), alarm.recurrence_rule)
    return alarm


# ---------- Alarms ----------


def schedule_alarm_push_notification(ctx: SchedulerContext, db: Session, alarm: Alarm) -> Optional[Notification]:
    """
    Queue the push for an alarm's next ring. Recurring alarms whose time has
    passed are moved to the next occurrence of their rule first.
    """
    try:
        if not alarm.enabled or alarm.time is None:
            logger.info("alarm {} is disabled or has no time, cancelling its push", alarm.id)
            cancel_alarm_push_notifications(ctx, db, alarm.id, alarm.user_id)
            return None

        now = ctx.now()
        fire_at = ensure_utc(alarm.time)

        if alarm.recurrence_rule and fire_at <= now:
            following = next_rule_occurrence(alarm.recurrence_rule, fire_at, now, alarm.timezone)
            if following is not None:
                logger.info("recurring alarm {} moved from {} to {}", alarm.id, fire_at.isoformat(), following.isoformat())
                fire_at = following

        if fire_at < now - IMMEDIATE_DELAY:
            logger.warning("alarm {} time {} is in the past, not scheduling", alarm.id, fire_at.isoformat())
            cancel_alarm_push_notifications(ctx, db, alarm.id, alarm.user_id)
            return None
        if fire_at <= now:
            fire_at = now + IMMEDIATE_DELAY

        cancel_alarm_push_notifications(ctx, db, alarm.id, alarm.user_id)

        local = fire_at.astimezone(resolve_timezone(alarm.timezone))
        notification = _create_notification(
            ctx,
            db,
            user_id=alarm.user_id,
            notification_type=ALARM_TRIGGER,
            payload={
                "title": f"Alarm: {alarm.title}",
                "body": f'It\'s time for "{alarm.title}" at {local:%H:%M}.',
                "alarmId": alarm.id,
                "alarmTime": fire_at.isoformat(),
            },
            fire_at=fire_at,
        )
        if notification is not None:
            logger.info("alarm {} push scheduled for {}", alarm.id, fire_at.isoformat())
        return notification
    except Exception:
        logger.exception("failed to schedule push for alarm {}", alarm.id)
        db.rollback()
        return None


def cancel_alarm_push_notifications(ctx: SchedulerContext, db: Session, alarm_id: str, user_id: str) -> int:
    try:
        rows = (
            db.query(Notification)
            .filter(
                Notification.user_id == user_id,
                Notification.payload["alarmId"].as_string() == alarm_id,
            )
            .all()
        )
        _remove_jobs(ctx, NOTIFICATIONS, "notificationId", {n.id for n in rows})
        for row in rows:
            db.delete(row)
        db.commit()
        if rows:
            logger.info("cancelled {} push notifications for alarm {}", len(rows), alarm_id)
        return len(rows)
    except Exception:
        logger.exception("failed to cancel push notifications for alarm {}", alarm_id)
        db.rollback()
        return 0


def cancel_all_pending_alarm_notifications(ctx: SchedulerContext, db: Session, user_id: str) -> int:
    rows = (
        db.query(Notification)
        .filter(
            Notification.user_id == user_id,
            Notification.status == "PENDING",
            Notification.payload["notificationType"].as_string() == ALARM_TRIGGER,
        )
        .all()
    )
    _remove_jobs(ctx, NOTIFICATIONS, "notificationId", {n.id for n in rows})
    for row in rows:
        db.delete(row)
    db.commit()
    logger.info("cancelled {} pending alarm notifications for user {}", len(rows), user_id)
    return len(rows)


# ---------- One-off notifications ----------


def send_task_assignment_notification(
    ctx: SchedulerContext,
    db: Session,
    task: Task,
    assigner_name: str | None = None,
) -> Optional[Notification]:
    if not task.assignee_id:
        return None
    try:
        who = assigner_name or "Someone"
        return _create_notification(
            ctx,
            db,
            user_id=task.assignee_id,
            notification_type=TASK_ASSIGNMENT,
            payload={
                "title": "New Task Assigned",
                "body": f'{who} assigned you "{task.title}"',
                "taskId": task.id,
            },
            fire_at=ctx.now() + IMMEDIATE_DELAY,
        )
    except Exception:
        logger.exception("failed to send assignment notification for task {}", task.id)
        db.rollback()
        return None


def send_task_created_notification(ctx: SchedulerContext, db: Session, task: Task) -> Optional[Notification]:
    try:
        return _create_notification(
            ctx,
            db,
            user_id=task.user_id,
            notification_type=TASK_CREATED,
            payload={
                "title": "Task Created",
                "body": f'"{task.title}" was added to your tasks',
                "taskId": task.id,
            },
            fire_at=ctx.now() + IMMEDIATE_DELAY,
        )
    except Exception:
        logger.exception("failed to send created notification for task {}", task.id)
        db.rollback()
        return None


# ---------- Sweeps and startup ----------


def check_and_notify_overdue_milestones(ctx: SchedulerContext, db: Session) -> int:
    """Queue one "Overdue Milestone" reminder per open overdue milestone and day."""
    created = 0
    try:
        now = ctx.now()
        start_of_day = datetime.combine(now.date(), time.min, tzinfo=now.tzinfo)
        overdue = (
            db.query(Milestone)
            .join(Goal, Milestone.goal_id == Goal.id)
            .filter(
                Milestone.due_date.is_not(None),
                Milestone.due_date < now.date(),
                Milestone.status != "DONE",
                Goal.status != "DONE",
            )
            .all()
        )

        for milestone in overdue:
            goal = milestone.goal
            already = (
                db.query(Reminder)
                .filter(
                    Reminder.user_id == goal.user_id,
                    Reminder.source_type == "MILESTONE_OVERDUE",
                    Reminder.source_id == milestone.id,
                    Reminder.created_at >= start_of_day,
                )
                .first()
            )
            if already:
                continue

            days = (now.date() - milestone.due_date).days
            fire_at = now + IMMEDIATE_DELAY
            reminder = _create_reminder(
                ctx,
                db,
                user_id=goal.user_id,
                target_type="GOAL",
                target_id=goal.id,
                source_type="MILESTONE_OVERDUE",
                source_id=milestone.id,
                category="GOAL_REMINDER",
                title=f"Overdue Milestone: {milestone.title}",
                note=f'Milestone "{milestone.title}" of goal "{goal.title}" is {days} day{"s" if days != 1 else ""} overdue.',
                schedule={"at": fire_at.isoformat(), "milestoneId": milestone.id, "goalId": goal.id},
                fire_at=fire_at,
            )
            if reminder is not None:
                created += 1
    except Exception:
        logger.exception("overdue milestone sweep failed")
        db.rollback()

    if created:
        logger.info("queued {} overdue milestone reminders", created)
    return created


def restore_pending_jobs(ctx: SchedulerContext, db: Session) -> int:
    """
    Re-enqueue jobs lost with the in-memory job store on restart.
    Future rows are queued again; missed one-shot reminders are dropped,
    missed routine and recurring reminders are recomputed and missed
    notifications are marked FAILED.
    """
    restored = 0
    now = ctx.now()
    routines_to_refresh: set[str] = set()
    missed_recurring: list[Reminder] = []

    for reminder in db.query(Reminder).all():
        routine_id = (reminder.schedule or {}).get("routineId")
        if reminder.fire_at is not None and reminder.fire_at > now:
            try:
                reminder.job_id = schedule_reminder(
                    ctx.queue, reminder.id, reminder.user_id, reminder.fire_at, reminder.category, now
                )
                restored += 1
            except Exception:
                logger.exception("could not restore reminder {}", reminder.id)
        elif routine_id:
            routines_to_refresh.add(routine_id)
        elif is_recurring_custom(reminder):
            missed_recurring.append(reminder)
        else:
            logger.info("dropping missed reminder {} ({})", reminder.id, reminder.title)
            db.delete(reminder)
    db.commit()

    pending = db.query(Notification).filter(Notification.status == "PENDING").all()
    for notification in pending:
        ntype = (notification.payload or {}).get("notificationType", "")
        if notification.scheduled_for is not None and notification.scheduled_for > now:
            try:
                notification.job_id = schedule_notification(
                    ctx.queue, notification.id, notification.user_id, notification.scheduled_for, ntype, now
                )
                restored += 1
            except Exception:
                logger.exception("could not restore notification {}", notification.id)
        else:
            notification.status = "FAILED"
            notification.last_error = "expired before delivery"
    db.commit()

    for routine_id in routines_to_refresh:
        schedule_routine_notifications(ctx, db, routine_id)
    for reminder in missed_recurring:
        schedule_custom_reminder(ctx, db, reminder)

    # Recurring alarms whose push was missed get their next ring.
    recurring = db.query(Alarm).filter(
        Alarm.enabled.is_(True),
        Alarm.recurrence_rule.is_not(None),
        Alarm.source_type.is_(None),
    )
    for alarm in recurring.all():
        has_pending = (
            db.query(Notification)
            .filter(
                Notification.user_id == alarm.user_id,
                Notification.status == "PENDING",
                Notification.payload["alarmId"].as_string() == alarm.id,
            )
            .first()
        )
        if has_pending is None:
            schedule_alarm_push_notification(ctx, db, alarm)

    logger.info(
        "restored {} queued jobs, refreshed {} routines",
        restored,
        len(routines_to_refresh),
    )
    return restored
