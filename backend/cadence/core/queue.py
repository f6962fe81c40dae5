from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from loguru import logger

# Queue names
REMINDERS = "reminders"
NOTIFICATIONS = "notifications"
EMAIL = "email"

# Job types
SEND_REMINDER = "send-reminder"
SEND_NOTIFICATION = "send-notification"
SEND_EMAIL = "send-email"

JobHandler = Callable[[str, Dict[str, Any]], Awaitable[None]]


@dataclass
class QueuedJob:
    id: str
    queue: str
    job_type: str
    payload: Dict[str, Any]
    run_at: Optional[datetime]
    attempt: int = 1


class JobQueue:
    """
    Delayed job queue on top of an APScheduler AsyncIOScheduler.

    Every job is a one-shot date trigger. Handlers are registered per queue
    with a concurrency limit; a handler that raises is retried with
    exponential backoff until `attempts` is exhausted.
    """

    def __init__(
        self,
        scheduler: AsyncIOScheduler | None = None,
        *,
        attempts: int = 3,
        backoff_seconds: float = 2.0,
    ) -> None:
        self.scheduler = scheduler or AsyncIOScheduler(
            timezone=timezone.utc,
            job_defaults={"misfire_grace_time": None, "coalesce": False},
        )
        self.attempts = max(1, attempts)
        self.backoff_seconds = backoff_seconds
        self._handlers: Dict[str, JobHandler] = {}
        self._limits: Dict[str, asyncio.Semaphore] = {}

    # ---------- lifecycle ----------

    def worker(self, queue_name: str, handler: JobHandler, concurrency: int = 1) -> None:
        self._handlers[queue_name] = handler
        self._limits[queue_name] = asyncio.Semaphore(max(1, concurrency))
        logger.info("worker registered queue={} concurrency={}", queue_name, concurrency)

    def start(self) -> None:
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("job queue started")

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("job queue stopped")

    @property
    def running(self) -> bool:
        return bool(self.scheduler.running)

    # ---------- jobs ----------

    def enqueue(
        self,
        queue_name: str,
        job_type: str,
        payload: Dict[str, Any],
        delay: timedelta,
    ) -> str:
        if delay <= timedelta(0):
            raise ValueError(f"cannot schedule {job_type} in the past (delay={delay})")
        run_at = datetime.now(timezone.utc) + delay
        return self._add(queue_name, job_type, payload, run_at, attempt=1)

    def list_jobs(self, queue_name: str) -> List[QueuedJob]:
        jobs: List[QueuedJob] = []
        for job in self.scheduler.get_jobs():
            kwargs = job.kwargs or {}
            if kwargs.get("queue_name") != queue_name:
                continue
            jobs.append(
                QueuedJob(
                    id=job.id,
                    queue=queue_name,
                    job_type=kwargs.get("job_type", ""),
                    payload=kwargs.get("payload") or {},
                    run_at=getattr(job, "next_run_time", None),
                    attempt=kwargs.get("attempt", 1),
                )
            )
        return jobs

    def remove(self, job_id: str) -> bool:
        try:
            self.scheduler.remove_job(job_id)
        except JobLookupError:
            return False
        return True

    def add_interval(self, func: Callable[[], Awaitable[None]], seconds: int, job_id: str) -> None:
        self.scheduler.add_job(func, "interval", seconds=seconds, id=job_id, replace_existing=True)

    def add_daily(self, func: Callable[[], Awaitable[None]], hour: int, job_id: str) -> None:
        self.scheduler.add_job(func, "cron", hour=hour, minute=0, id=job_id, replace_existing=True)

    def _add(
        self,
        queue_name: str,
        job_type: str,
        payload: Dict[str, Any],
        run_at: datetime,
        attempt: int,
    ) -> str:
        job_id = f"{queue_name}:{uuid.uuid4().hex}"
        self.scheduler.add_job(
            self._run,
            trigger="date",
            run_date=run_at,
            id=job_id,
            kwargs={
                "queue_name": queue_name,
                "job_type": job_type,
                "payload": payload,
                "attempt": attempt,
            },
        )
        return job_id

    async def _run(self, queue_name: str, job_type: str, payload: Dict[str, Any], attempt: int) -> None:
        handler = self._handlers.get(queue_name)
        if handler is None:
            logger.error("no worker for queue {}, dropping {} job", queue_name, job_type)
            return

        async with self._limits[queue_name]:
            try:
                await handler(job_type, payload)
            except Exception:
                if attempt >= self.attempts:
                    logger.exception("{} job failed after {} attempts payload={}", job_type, attempt, payload)
                    return
                backoff = timedelta(seconds=self.backoff_seconds * (2 ** (attempt - 1)))
                logger.warning("{} job failed (attempt {}), retrying in {}", job_type, attempt, backoff)
                self._add(queue_name, job_type, payload, datetime.now(timezone.utc) + backoff, attempt + 1)


# ---------- Specific job scheduling helpers ----------


def schedule_reminder(
    queue: JobQueue,
    reminder_id: str,
    user_id: str,
    fire_at: datetime,
    category: str,
    now: datetime,
) -> str:
    return queue.enqueue(
        REMINDERS,
        SEND_REMINDER,
        {"reminderId": reminder_id, "userId": user_id, "type": category},
        fire_at - now,
    )


def schedule_notification(
    queue: JobQueue,
    notification_id: str,
    user_id: str,
    fire_at: datetime,
    notification_type: str,
    now: datetime,
) -> str:
    return queue.enqueue(
        NOTIFICATIONS,
        SEND_NOTIFICATION,
        {"notificationId": notification_id, "userId": user_id, "type": notification_type},
        fire_at - now,
    )


def schedule_email(queue: JobQueue, to: str, subject: str, html: str, delay: timedelta = timedelta(seconds=1)) -> str:
    return queue.enqueue(EMAIL, SEND_EMAIL, {"to": to, "subject": subject, "html": html}, delay)
