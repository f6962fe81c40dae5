from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from sqlalchemy.orm import Session

from ..config import Settings
from ..integrations.email import SmtpEmailTransport
from ..integrations.push import WebPushTransport
from .database import utc_now
from .queue import JobQueue


@dataclass
class SchedulerContext:
    """Everything the scheduler and the job workers share, built once per process."""

    session_factory: Callable[[], Session]
    queue: JobQueue
    push: WebPushTransport
    email: SmtpEmailTransport
    clock: Callable[[], datetime] = field(default=utc_now)

    def now(self) -> datetime:
        return self.clock()


def build_context(settings: Settings, session_factory: Callable[[], Session]) -> SchedulerContext:
    return SchedulerContext(
        session_factory=session_factory,
        queue=JobQueue(attempts=settings.job_attempts, backoff_seconds=settings.job_backoff_seconds),
        push=WebPushTransport(
            session_factory,
            vapid_private_key=settings.vapid_private_key,
            vapid_subject=settings.vapid_subject,
        ),
        email=SmtpEmailTransport(
            host=settings.smtp_host,
            port=settings.smtp_port,
            user=settings.smtp_user,
            password=settings.smtp_password,
            from_addr=settings.smtp_from,
        ),
    )
