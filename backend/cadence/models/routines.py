from datetime import datetime

from sqlalchemy import JSON, Boolean, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..core.database import Base, UTCDateTime, new_id, utc_now


class Routine(Base):
    __tablename__ = "routines"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)

    title: Mapped[str] = mapped_column(String(255))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    frequency: Mapped[str] = mapped_column(String(16))  # DAILY, WEEKLY, MONTHLY, YEARLY
    schedule: Mapped[dict] = mapped_column(JSON, default=dict)  # {"time": "05:00", "days": [1, 3], "day": 15}
    timezone: Mapped[str] = mapped_column(String(64), default="UTC")

    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    reminder_before: Mapped[str | None] = mapped_column(String(16), nullable=True)  # "2h", "1d", "1w"

    last_reset_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    next_occurrence_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True, index=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, onupdate=utc_now)

    tasks: Mapped[list["RoutineTask"]] = relationship(
        "RoutineTask",
        back_populates="routine",
        cascade="all, delete-orphan",
        order_by="RoutineTask.order",
    )


class RoutineTask(Base):
    __tablename__ = "routine_tasks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    routine_id: Mapped[str] = mapped_column(ForeignKey("routines.id", ondelete="CASCADE"), index=True)

    title: Mapped[str] = mapped_column(String(255))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    order: Mapped[int] = mapped_column(Integer, default=0)

    completed: Mapped[bool] = mapped_column(Boolean, default=False)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    # "05:00" absolute, or "-15min" / "-1hour" relative to the routine time
    reminder_time: Mapped[str | None] = mapped_column(String(16), nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)

    routine: Mapped[Routine] = relationship("Routine", back_populates="tasks")
