from datetime import datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import func
from sqlalchemy.orm import Session

from ..core.context import SchedulerContext
from ..core.database import get_db
from ..core.queue import EMAIL, NOTIFICATIONS, REMINDERS
from ..models import Notification, Reminder
from .deps import get_context

router = APIRouter(tags=["status"])


class QueueStatus(BaseModel):
    name: str
    queued: int


class StatusResponse(BaseModel):
    server_time: datetime
    scheduler_running: bool
    queues: list[QueueStatus]
    upcoming_reminders: int
    notifications_by_status: dict[str, int]
    push_configured: bool
    email_configured: bool


@router.get("/health")
def health():
    return {"status": "ok", "time": datetime.utcnow().isoformat() + "Z"}


@router.get("/status", response_model=StatusResponse)
def status_overview(
    db: Session = Depends(get_db),
    ctx: SchedulerContext = Depends(get_context),
):
    now = ctx.now()

    queues = [QueueStatus(name=name, queued=len(ctx.queue.list_jobs(name))) for name in (REMINDERS, NOTIFICATIONS, EMAIL)]

    upcoming = db.query(func.count(Reminder.id)).filter(Reminder.fire_at > now).scalar() or 0

    by_status = dict(
        db.query(Notification.status, func.count(Notification.id))
        .group_by(Notification.status)
        .all()
    )

    return StatusResponse(
        server_time=now,
        scheduler_running=ctx.queue.running,
        queues=queues,
        upcoming_reminders=upcoming,
        notifications_by_status=by_status,
        push_configured=ctx.push.is_available(),
        email_configured=ctx.email.is_available(),
    )
