import asyncio
from datetime import timedelta

import pytest

from cadence.core.queue import NOTIFICATIONS, REMINDERS, SEND_REMINDER, JobQueue


def test_enqueue_list_and_remove() -> None:
    q = JobQueue()
    job_id = q.enqueue(REMINDERS, SEND_REMINDER, {"reminderId": "r1"}, timedelta(minutes=5))

    assert job_id.startswith("reminders:")
    [job] = q.list_jobs(REMINDERS)
    assert job.id == job_id
    assert job.payload == {"reminderId": "r1"}
    assert q.list_jobs(NOTIFICATIONS) == []

    assert q.remove(job_id) is True
    assert q.remove(job_id) is False
    assert q.list_jobs(REMINDERS) == []


def test_enqueue_in_the_past_is_rejected() -> None:
    q = JobQueue()
    with pytest.raises(ValueError):
        q.enqueue(REMINDERS, SEND_REMINDER, {}, timedelta(0))


def test_failed_handler_is_retried_until_attempts_run_out() -> None:
    q = JobQueue(attempts=2, backoff_seconds=1)
    calls = []

    async def handler(job_type, payload):
        calls.append(payload)
        raise RuntimeError("boom")

    q.worker(REMINDERS, handler)

    asyncio.run(q._run(REMINDERS, SEND_REMINDER, {"reminderId": "r1"}, 1))
    [retry] = q.list_jobs(REMINDERS)
    assert retry.attempt == 2

    q.remove(retry.id)
    asyncio.run(q._run(REMINDERS, SEND_REMINDER, {"reminderId": "r1"}, 2))
    assert q.list_jobs(REMINDERS) == []
    assert len(calls) == 2


def test_successful_handler_receives_payload() -> None:
    q = JobQueue()
    seen = []

    async def handler(job_type, payload):
        seen.append((job_type, payload))

    q.worker(REMINDERS, handler, concurrency=2)
    asyncio.run(q._run(REMINDERS, SEND_REMINDER, {"reminderId": "r1"}, 1))

    assert seen == [(SEND_REMINDER, {"reminderId": "r1"})]
    assert q.list_jobs(REMINDERS) == []
