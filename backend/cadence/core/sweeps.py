from __future__ import annotations

from functools import partial

from loguru import logger

from ..config import Settings
from .context import SchedulerContext
from .notification_scheduler import check_and_notify_overdue_milestones
from .routines import RoutineService

ROUTINE_RESET_JOB = "sweep:routine-reset"
OVERDUE_MILESTONE_JOB = "sweep:overdue-milestones"


async def routine_reset_sweep(ctx: SchedulerContext) -> None:
    """Reset checklists of routines whose cycle has rolled over."""
    db = ctx.session_factory()
    try:
        reset = RoutineService(ctx).check_and_reset_due_routines(db)
        if reset:
            logger.info("routine sweep reset {} routines", len(reset))
    except Exception:
        logger.exception("routine reset sweep failed")
    finally:
        db.close()


async def overdue_milestone_sweep(ctx: SchedulerContext) -> None:
    db = ctx.session_factory()
    try:
        check_and_notify_overdue_milestones(ctx, db)
    finally:
        db.close()


def register_sweeps(ctx: SchedulerContext, settings: Settings) -> None:
    ctx.queue.add_interval(partial(routine_reset_sweep, ctx), settings.routine_reset_interval_sec, ROUTINE_RESET_JOB)
    ctx.queue.add_daily(partial(overdue_milestone_sweep, ctx), settings.overdue_milestone_check_hour, OVERDUE_MILESTONE_JOB)
    logger.info(
        "sweeps registered: routine reset every {}s, overdue milestones daily at {:02d}:00 UTC",
        settings.routine_reset_interval_sec,
        settings.overdue_milestone_check_hour,
    )
