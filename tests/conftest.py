from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from cadence.core.context import SchedulerContext
from cadence.core.database import Base
from cadence.core.queue import QueuedJob
from cadence.integrations.push import PushMessage
from cadence.models import User

# Tuesday
NOW = datetime(2025, 1, 7, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class FakeQueue:
    """Records enqueued jobs instead of running them."""

    def __init__(self, clock: FakeClock) -> None:
        self.jobs: Dict[str, QueuedJob] = {}
        self.fail = False
        self.running = False
        self._clock = clock
        self._seq = 0

    def enqueue(self, queue_name: str, job_type: str, payload: Dict[str, Any], delay: timedelta) -> str:
        if self.fail:
            raise RuntimeError("queue unavailable")
        if delay <= timedelta(0):
            raise ValueError("delay must be positive")
        self._seq += 1
        job_id = f"{queue_name}:{self._seq}"
        self.jobs[job_id] = QueuedJob(job_id, queue_name, job_type, dict(payload), self._clock() + delay)
        return job_id

    def list_jobs(self, queue_name: str) -> List[QueuedJob]:
        return [job for job in self.jobs.values() if job.queue == queue_name]

    def remove(self, job_id: str) -> bool:
        return self.jobs.pop(job_id, None) is not None

    def worker(self, queue_name, handler, concurrency=1) -> None:
        pass

    def add_interval(self, func, seconds, job_id) -> None:
        pass

    def add_daily(self, func, hour, job_id) -> None:
        pass


class FakePush:
    def __init__(self) -> None:
        self.sent: List[tuple[str, PushMessage]] = []
        self.error: Exception | None = None

    def is_available(self) -> bool:
        return True

    async def send_push(self, user_id: str, message: PushMessage) -> bool:
        if self.error is not None:
            raise self.error
        self.sent.append((user_id, message))
        return True


class FakeEmail:
    def __init__(self) -> None:
        self.sent: List[tuple[str, str, str]] = []

    def is_available(self) -> bool:
        return True

    async def send_email(self, to: str, subject: str, html: str) -> bool:
        self.sent.append((to, subject, html))
        return True


@pytest.fixture()
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
    yield factory
    engine.dispose()


@pytest.fixture()
def db(session_factory) -> Session:
    session = session_factory()
    yield session
    session.close()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock(NOW)


@pytest.fixture()
def queue(clock: FakeClock) -> FakeQueue:
    return FakeQueue(clock)


@pytest.fixture()
def push() -> FakePush:
    return FakePush()


@pytest.fixture()
def email() -> FakeEmail:
    return FakeEmail()


@pytest.fixture()
def ctx(session_factory, queue, push, email, clock) -> SchedulerContext:
    return SchedulerContext(
        session_factory=session_factory,
        queue=queue,
        push=push,
        email=email,
        clock=clock,
    )


@pytest.fixture()
def user(db: Session) -> User:
    u = User(email="ada@example.com", name="Ada", timezone="UTC", settings={})
    db.add(u)
    db.commit()
    return u
