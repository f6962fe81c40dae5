from datetime import datetime, timezone

import pytest

from cadence.core.queue import REMINDERS
from cadence.core.routines import RoutineNotFound, RoutineService, RoutineTaskNotFound
from cadence.models import Alarm, Reminder


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def _weekly_routine(service, db, user, **overrides):
    data = {
        "title": "Morning",
        "frequency": "WEEKLY",
        "schedule": {"time": "08:00", "days": [1, 3, 5]},
        "timezone": "UTC",
        "reminder_before": "1h",
        "tasks": [{"title": "Stretch", "reminder_time": "-15min"}],
    }
    data.update(overrides)
    return service.create_routine(db, user.id, data)


def _reminders(db, source_type):
    return db.query(Reminder).filter(Reminder.source_type == source_type).all()


def test_weekly_routine_lead_reminder_and_alarm(ctx, db, user, clock) -> None:
    clock.now = utc(2025, 1, 7, 10, 0)  # Tuesday
    routine = _weekly_routine(RoutineService(ctx), db, user)

    assert routine.next_occurrence_at == utc(2025, 1, 8, 8, 0)

    [lead] = _reminders(db, "ROUTINE")
    assert lead.fire_at == utc(2025, 1, 8, 7, 0)
    assert lead.title == "Routine Reminder: Morning"
    assert lead.schedule["routineId"] == routine.id
    assert lead.schedule["reminderBefore"] == "1h"

    [alarm] = db.query(Alarm).filter(Alarm.source_id == routine.id).all()
    alarm_id = alarm.id
    alarm_id = alarm.id
    assert alarm.time == utc(2025, 1, 8, 7, 0)
    assert alarm.recurrence_rule == "FREQ=WEEKLY;BYDAY=MO,WE,FR"
    assert alarm.snooze_config == {"duration": 5, "maxSnoozes": 3}
    assert alarm.smart_wake_window == 5


def test_routine_task_reminder_uses_override(ctx, db, user, clock) -> None:
    clock.now = utc(2025, 1, 7, 10, 0)
    routine = _weekly_routine(RoutineService(ctx), db, user)

    [reminder] = _reminders(db, "ROUTINE_TASK")
    assert reminder.fire_at == utc(2025, 1, 8, 7, 45)
    assert reminder.title == "Routine: Morning"
    assert reminder.note == 'Time to complete "Stretch"'
    assert reminder.schedule["taskId"] == routine.tasks[0].id
    assert reminder.schedule["time"] == "07:45"


def test_updates_do_not_duplicate_reminders(ctx, db, user, queue) -> None:
    service = RoutineService(ctx)
    routine = _weekly_routine(service, db, user)

    service.update_routine(db, routine.id, user.id, {"title": "Early"})
    service.add_task(db, routine.id, user.id, {"title": "Journal"})

    assert len(_reminders(db, "ROUTINE")) == 1
    assert len(_reminders(db, "ROUTINE_TASK")) == 2
    assert db.query(Alarm).filter(Alarm.source_id == routine.id).count() == 1
    assert len(queue.list_jobs(REMINDERS)) == 3


def test_disabling_routine_cancels_everything(ctx, db, user, queue) -> None:
    service = RoutineService(ctx)
    routine = _weekly_routine(service, db, user)

    service.update_routine(db, routine.id, user.id, {"enabled": False})

    assert _reminders(db, "ROUTINE") == []
    assert _reminders(db, "ROUTINE_TASK") == []
    assert db.query(Alarm).count() == 0
    assert queue.list_jobs(REMINDERS) == []


def test_deleting_task_drops_its_reminder(ctx, db, user) -> None:
    service = RoutineService(ctx)
    routine = _weekly_routine(service, db, user)

    service.delete_task(db, routine.tasks[0].id, user.id)

    assert _reminders(db, "ROUTINE_TASK") == []
    assert len(_reminders(db, "ROUTINE")) == 1


def test_yearly_routine_has_no_lead_reminder(ctx, db, user) -> None:
    service = RoutineService(ctx)
    _weekly_routine(service, db, user, frequency="YEARLY", schedule={"time": "06:00"}, reminder_before="1d")

    assert _reminders(db, "ROUTINE") == []
    assert _reminders(db, "ROUTINE_TASK") == []


def test_listing_leaves_yearly_routine_alone(ctx, db, user, queue) -> None:
    service = RoutineService(ctx)
    routine = _weekly_routine(service, db, user, frequency="YEARLY", schedule={"time": "06:00"}, reminder_before="1d")
    [alarm] = db.query(Alarm).filter(Alarm.source_id == routine.id).all()
    alarm_id = alarm.id
    jobs = set(queue.jobs)

    service.get_user_routines(db, user.id)
    service.get_user_routines(db, user.id)

    assert [a.id for a in db.query(Alarm).filter(Alarm.source_id == routine.id)] == [alarm_id]
    assert set(queue.jobs) == jobs


def test_read_resets_checklist_after_occurrence(ctx, db, user, clock) -> None:
    service = RoutineService(ctx)
    routine = service.create_routine(
        db,
        user.id,
        {
            "title": "Plants",
            "frequency": "DAILY",
            "schedule": {"time": "08:00"},
            "timezone": "UTC",
            "tasks": [{"title": "Water"}],
        },
    )
    service.toggle_task(db, routine.tasks[0].id, user.id, True)
    assert routine.tasks[0].completed is True

    clock.now = utc(2025, 1, 8, 8, 30)
    routine = service.get_routine(db, routine.id, user.id)

    assert routine.tasks[0].completed is False
    assert routine.tasks[0].completed_at is None
    assert routine.last_reset_at == utc(2025, 1, 8, 8, 30)
    assert routine.next_occurrence_at == utc(2025, 1, 9, 8, 0)


def test_sweep_resets_only_due_routines(ctx, db, user, clock) -> None:
    service = RoutineService(ctx)
    daily = service.create_routine(
        db, user.id, {"title": "Daily", "frequency": "DAILY", "schedule": {"time": "08:00"}, "timezone": "UTC"}
    )
    _weekly_routine(service, db, user)

    clock.now = utc(2025, 1, 8, 7, 0)
    assert service.check_and_reset_due_routines(db) == []

    clock.now = utc(2025, 1, 8, 8, 1)
    assert len(service.check_and_reset_due_routines(db)) == 2
    assert daily.next_occurrence_at == utc(2025, 1, 9, 8, 0)


def test_other_users_routine_is_not_found(ctx, db, user) -> None:
    service = RoutineService(ctx)
    routine = _weekly_routine(service, db, user)

    with pytest.raises(RoutineNotFound):
        service.get_routine(db, routine.id, "someone-else")
    with pytest.raises(RoutineTaskNotFound):
        service.toggle_task(db, routine.tasks[0].id, "someone-else")
