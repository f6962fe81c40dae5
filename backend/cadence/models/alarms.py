from datetime import datetime

from sqlalchemy import JSON, Boolean, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from ..core.database import Base, UTCDateTime, new_id, utc_now


class Alarm(Base):
    __tablename__ = "alarms"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(36), index=True)

    title: Mapped[str] = mapped_column(String(500))
    time: Mapped[datetime] = mapped_column(UTCDateTime)
    timezone: Mapped[str] = mapped_column(String(64), default="UTC")

    linked_task_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    source_type: Mapped[str | None] = mapped_column(String(16), nullable=True)  # ROUTINE
    source_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)

    recurrence_rule: Mapped[str | None] = mapped_column(String(128), nullable=True)  # FREQ=WEEKLY;BYDAY=MO,WE
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    snooze_config: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    smart_wake_window: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, onupdate=utc_now)
