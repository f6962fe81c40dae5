import pytest
from fastapi.testclient import TestClient

from cadence.api.deps import get_context
from cadence.config import settings
from cadence.core.database import get_db
from cadence.main import app


@pytest.fixture()
def client(session_factory, ctx):
    def override_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_context] = lambda: ctx
    # No context manager: startup would start the real scheduler
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture()
def headers(client) -> dict:
    res = client.post("/users", json={"email": "grace@example.com", "name": "Grace", "timezone": "UTC"})
    assert res.status_code == 201
    return {"X-User-Id": res.json()["id"]}


def test_health(client) -> None:
    assert client.get("/health").json()["status"] == "ok"


def test_unknown_user_is_rejected(client) -> None:
    assert client.get("/tasks", headers={"X-User-Id": "nobody"}).status_code == 401


def test_creating_task_schedules_due_reminders(client, headers) -> None:
    res = client.post(
        "/tasks",
        headers=headers,
        json={"title": "Send report", "due_date": "2025-01-08", "due_time": "14:00"},
    )
    assert res.status_code == 201
    task_id = res.json()["id"]

    reminders = client.get("/reminders", headers=headers, params={"source_type": "TASK", "source_id": task_id}).json()
    assert [r["title"] for r in reminders] == [
        "Task Due Tomorrow: Send report",
        "Task Due in 1 Hour: Send report",
        "Task Due: Send report",
    ]

    alarms = client.get("/alarms", headers=headers).json()
    assert len(alarms) == 1 and alarms[0]["linked_task_id"] == task_id

    # Created notification
    assert len(client.get("/notifications", headers=headers).json()) == 1


def test_deleting_task_removes_reminders(client, headers) -> None:
    task_id = client.post(
        "/tasks", headers=headers, json={"title": "Send report", "due_date": "2025-01-08", "due_time": "14:00"}
    ).json()["id"]

    assert client.delete(f"/tasks/{task_id}", headers=headers).status_code == 204
    assert client.get("/reminders", headers=headers, params={"source_type": "TASK"}).json() == []
    assert client.get("/alarms", headers=headers).json() == []


def test_bad_due_time_is_rejected(client, headers) -> None:
    res = client.post("/tasks", headers=headers, json={"title": "x", "due_date": "2025-01-08", "due_time": "25:61"})
    assert res.status_code == 422


def test_weekly_routine_requires_days(client, headers) -> None:
    res = client.post(
        "/routines",
        headers=headers,
        json={"title": "Gym", "frequency": "WEEKLY", "schedule": {"time": "18:00"}},
    )
    assert res.status_code == 422


def test_routine_lifecycle(client, headers) -> None:
    res = client.post(
        "/routines",
        headers=headers,
        json={
            "title": "Morning",
            "frequency": "weekly",
            "schedule": {"time": "08:00", "days": [5, 1, 3]},
            "reminder_before": "1h",
            "tasks": [{"title": "Stretch", "reminder_time": "-15min"}],
        },
    )
    assert res.status_code == 201
    body = res.json()
    assert body["frequency"] == "WEEKLY"
    assert body["schedule"]["days"] == [1, 3, 5]
    assert body["next_occurrence_at"].startswith("2025-01-08T08:00")
    routine_id = body["id"]
    task_id = body["tasks"][0]["id"]

    res = client.post(f"/routines/tasks/{task_id}/toggle", headers=headers, json={"completed": True})
    assert res.json()["completed"] is True

    res = client.patch(f"/routines/{routine_id}", headers=headers, json={"enabled": False})
    assert res.json()["enabled"] is False
    assert client.get("/reminders", headers=headers).json() == []

    assert client.delete(f"/routines/{routine_id}", headers=headers).status_code == 204
    assert client.get(f"/routines/{routine_id}", headers=headers).status_code == 404


def test_alarm_create_and_cancel_pending(client, headers) -> None:
    res = client.post(
        "/alarms",
        headers=headers,
        json={"title": "Wake up", "time": "2025-01-07T07:00:00Z", "recurrence_rule": "FREQ=DAILY"},
    )
    assert res.status_code == 201

    pending = client.get("/notifications", headers=headers, params={"status": "pending"}).json()
    assert len(pending) == 1
    assert pending[0]["payload"]["alarmTime"].startswith("2025-01-08T07:00")

    assert client.post("/alarms/cancel-pending", headers=headers).json() == {"cancelled": 1}


def test_unsupported_alarm_rule_is_rejected(client, headers) -> None:
    res = client.post(
        "/alarms",
        headers=headers,
        json={"title": "Birthday", "time": "2025-01-07T07:00:00Z", "recurrence_rule": "FREQ=YEARLY"},
    )
    assert res.status_code == 422


def test_alarm_rule_with_unsupported_part_is_rejected(client, headers) -> None:
    res = client.post(
        "/alarms",
        headers=headers,
        json={"title": "Wake up", "time": "2025-01-07T07:00:00Z", "recurrence_rule": "FREQ=DAILY;BYHOUR=7"},
    )
    assert res.status_code == 422


def test_preferences_round_trip(client, headers) -> None:
    assert client.get("/users/me/preferences", headers=headers).json()["routineReminders"] is True

    res = client.patch("/users/me/preferences", headers=headers, json={"routineReminders": False})
    assert res.json()["routineReminders"] is False
    assert res.json()["pushNotifications"] is True
    assert client.get("/users/me/preferences", headers=headers).json()["routineReminders"] is False


def test_push_subscription_is_upserted(client, headers) -> None:
    body = {"endpoint": "https://push.example/abc", "keys": {"p256dh": "k1", "auth": "a1"}}
    first = client.post("/users/me/push-subscriptions", headers=headers, json=body).json()
    body["keys"]["auth"] = "a2"
    second = client.post("/users/me/push-subscriptions", headers=headers, json=body).json()
    assert first["id"] == second["id"]


def test_status_reports_queues(client, headers) -> None:
    client.post("/tasks", headers=headers, json={"title": "Send report", "due_date": "2025-01-08", "due_time": "14:00"})
    body = client.get("/status").json()
    queued = {q["name"]: q["queued"] for q in body["queues"]}
    assert queued["reminders"] == 3
    assert body["upcoming_reminders"] == 3


def test_push_public_key(client, monkeypatch) -> None:
    monkeypatch.setattr(settings, "vapid_public_key", None)
    assert client.get("/users/push-public-key").status_code == 404

    monkeypatch.setattr(settings, "vapid_public_key", "pub")
    assert client.get("/users/push-public-key").json() == {"publicKey": "pub"}


def test_custom_reminder_lifecycle(client, headers) -> None:
    res = client.post(
        "/reminders",
        headers=headers,
        json={"title": "Water plants", "schedule": {"frequency": "DAILY", "time": "10:00"}},
    )
    assert res.status_code == 201
    reminder = res.json()
    assert reminder["source_type"] is None
    assert reminder["category"] == "TASK_REMINDER"
    assert reminder["schedule"] == {"frequency": "DAILY", "time": "10:00", "timezone": "UTC"}
    assert reminder["fire_at"].startswith("2025-01-07T10:00")

    res = client.patch(f"/reminders/{reminder['id']}", headers=headers, json={"title": "Water the ferns"})
    assert res.json()["title"] == "Water the ferns"

    res = client.patch(
        f"/reminders/{reminder['id']}",
        headers=headers,
        json={"schedule": {"at": "2025-01-07T15:00:00Z"}},
    )
    assert res.status_code == 200
    assert res.json()["id"] == reminder["id"]
    assert res.json()["fire_at"].startswith("2025-01-07T15:00")
    assert client.get(f"/reminders/{reminder['id']}", headers=headers).json()["schedule"]["at"].startswith("2025-01-07T15:00")

    assert client.delete(f"/reminders/{reminder['id']}", headers=headers).status_code == 204
    assert client.get(f"/reminders/{reminder['id']}", headers=headers).status_code == 404


def test_custom_reminder_needs_a_future_time(client, headers) -> None:
    res = client.post("/reminders", headers=headers, json={"title": "Too late", "schedule": {"at": "2025-01-07T08:00:00Z"}})
    assert res.status_code == 400

    res = client.post("/reminders", headers=headers, json={"title": "Nothing", "schedule": {"time": "10:00"}})
    assert res.status_code == 422


def test_generated_reminder_cannot_be_rescheduled(client, headers) -> None:
    client.post("/tasks", headers=headers, json={"title": "Send report", "due_date": "2025-01-08", "due_time": "14:00"})
    [reminder, *_] = client.get("/reminders", headers=headers, params={"source_type": "TASK"}).json()

    res = client.patch(
        f"/reminders/{reminder['id']}",
        headers=headers,
        json={"schedule": {"at": "2025-01-07T15:00:00Z"}},
    )
    assert res.status_code == 400
