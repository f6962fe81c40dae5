from datetime import datetime

from sqlalchemy import JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from ..core.database import Base, UTCDateTime, new_id, utc_now


class Reminder(Base):
    __tablename__ = "reminders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(36), index=True)

    target_type: Mapped[str] = mapped_column(String(16))  # TASK | GOAL | PROJECT | CUSTOM
    target_id: Mapped[str | None] = mapped_column(String(36), nullable=True)

    # What produced this row: TASK, MILESTONE, GOAL, ROUTINE, ROUTINE_TASK
    source_type: Mapped[str | None] = mapped_column(String(16), nullable=True, index=True)
    source_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)

    # Job type used when firing: DUE_DATE_REMINDER, GOAL_REMINDER, ROUTINE_REMINDER, TASK_REMINDER
    category: Mapped[str] = mapped_column(String(32))

    title: Mapped[str] = mapped_column(String(500))
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    trigger_type: Mapped[str] = mapped_column(String(16), default="TIME")

    # {"at": "..."} for one-shot rows, a recurring schedule plus routineId/taskId otherwise
    schedule: Mapped[dict] = mapped_column(JSON, default=dict)

    fire_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True, index=True)
    job_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)
