from datetime import datetime, timedelta, timezone

from cadence.core.notification_scheduler import (
    cancel_alarm_push_notifications,
    cancel_all_pending_alarm_notifications,
    schedule_alarm_push_notification,
)
from cadence.core.queue import NOTIFICATIONS
from cadence.models import Alarm, Notification

from conftest import NOW


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def _alarm(db, user, **kwargs) -> Alarm:
    alarm = Alarm(user_id=user.id, title=kwargs.pop("title", "Wake up"), timezone="UTC", **kwargs)
    db.add(alarm)
    db.commit()
    return alarm


def test_passed_daily_alarm_moves_to_tomorrow(ctx, db, user, queue) -> None:
    # 07:00 today already passed at 09:00
    alarm = _alarm(db, user, time=utc(2025, 1, 7, 7, 0), recurrence_rule="FREQ=DAILY")

    notification = schedule_alarm_push_notification(ctx, db, alarm)

    assert notification.scheduled_for == utc(2025, 1, 8, 7, 0)
    assert notification.status == "PENDING"
    assert notification.payload["notificationType"] == "ALARM_TRIGGER"
    assert notification.payload["alarmId"] == alarm.id
    assert notification.payload["title"] == "Alarm: Wake up"
    assert notification.payload["body"] == 'It\'s time for "Wake up" at 07:00.'

    [job] = queue.list_jobs(NOTIFICATIONS)
    assert job.payload["notificationId"] == notification.id
    assert job.run_at == utc(2025, 1, 8, 7, 0)


def test_passed_alarm_follows_rule_interval(ctx, db, user) -> None:
    # Every other day from Monday 10:00; Tuesday 10:00 is not a ring
    alarm = _alarm(db, user, time=utc(2025, 1, 6, 10, 0), recurrence_rule="FREQ=DAILY;INTERVAL=2")

    notification = schedule_alarm_push_notification(ctx, db, alarm)

    assert notification.scheduled_for == utc(2025, 1, 8, 10, 0)


def test_finished_counted_alarm_is_not_scheduled(ctx, db, user, queue) -> None:
    alarm = _alarm(db, user, time=utc(2025, 1, 5, 7, 0), recurrence_rule="FREQ=DAILY;COUNT=2")

    assert schedule_alarm_push_notification(ctx, db, alarm) is None
    assert queue.list_jobs(NOTIFICATIONS) == []


def test_body_uses_alarm_timezone(ctx, db, user) -> None:
    alarm = _alarm(db, user, time=utc(2025, 1, 7, 12, 30))
    alarm.timezone = "Europe/Berlin"
    db.commit()

    notification = schedule_alarm_push_notification(ctx, db, alarm)

    assert notification.payload["body"].endswith("at 13:30.")


def test_past_one_shot_alarm_is_not_scheduled(ctx, db, user, queue) -> None:
    alarm = _alarm(db, user, time=NOW - timedelta(minutes=5))

    assert schedule_alarm_push_notification(ctx, db, alarm) is None
    assert db.query(Notification).count() == 0
    assert queue.list_jobs(NOTIFICATIONS) == []


def test_rescheduling_keeps_a_single_push(ctx, db, user, queue) -> None:
    alarm = _alarm(db, user, time=NOW + timedelta(hours=2))

    schedule_alarm_push_notification(ctx, db, alarm)
    alarm.time = NOW + timedelta(hours=3)
    db.commit()
    schedule_alarm_push_notification(ctx, db, alarm)

    [row] = db.query(Notification).all()
    assert row.scheduled_for == NOW + timedelta(hours=3)
    assert len(queue.list_jobs(NOTIFICATIONS)) == 1


def test_disabled_alarm_cancels_pending_push(ctx, db, user, queue) -> None:
    alarm = _alarm(db, user, time=NOW + timedelta(hours=2))
    schedule_alarm_push_notification(ctx, db, alarm)

    alarm.enabled = False
    db.commit()

    assert schedule_alarm_push_notification(ctx, db, alarm) is None
    assert db.query(Notification).count() == 0
    assert queue.list_jobs(NOTIFICATIONS) == []


def test_enqueue_failure_leaves_no_notification(ctx, db, user, queue) -> None:
    alarm = _alarm(db, user, time=NOW + timedelta(hours=2))
    queue.fail = True

    assert schedule_alarm_push_notification(ctx, db, alarm) is None
    assert db.query(Notification).count() == 0


def test_cancel_by_alarm_and_cancel_all(ctx, db, user) -> None:
    first = _alarm(db, user, time=NOW + timedelta(hours=1))
    second = _alarm(db, user, title="Meds", time=NOW + timedelta(hours=2))
    schedule_alarm_push_notification(ctx, db, first)
    schedule_alarm_push_notification(ctx, db, second)

    assert cancel_alarm_push_notifications(ctx, db, first.id, user.id) == 1
    assert cancel_all_pending_alarm_notifications(ctx, db, user.id) == 1
    assert db.query(Notification).count() == 0
