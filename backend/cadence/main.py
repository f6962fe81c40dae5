from fastapi import FastAPI
from loguru import logger

from .api.routes_alarms import router as alarms_router
from .api.routes_goals import router as goals_router
from .api.routes_notifications import router as notifications_router
from .api.routes_reminders import router as reminders_router
from .api.routes_routines import router as routines_router
from .api.routes_status import router as status_router
from .api.routes_tasks import router as tasks_router
from .api.routes_users import router as users_router
from .config import settings
from .core.context import build_context
from .core.database import Base, SessionLocal, engine
from .core.notification_scheduler import restore_pending_jobs
from .core.sweeps import register_sweeps
from .core.workers import register_workers
from .logging_setup import setup_logging


app = FastAPI(
    title=settings.app_name,
    version="0.1.0",
)


@app.on_event("startup")
async def startup_event():
    setup_logging()

    # Create tables
    Base.metadata.create_all(bind=engine)

    ctx = build_context(settings, SessionLocal)
    app.state.scheduler = ctx

    register_workers(ctx, settings)
    register_sweeps(ctx, settings)
    ctx.queue.start()

    # Job store is in memory, put back whatever the database still expects
    db = SessionLocal()
    try:
        restore_pending_jobs(ctx, db)
    finally:
        db.close()

    if not ctx.push.is_available():
        logger.warning("VAPID keys not configured, push delivery is disabled")
    logger.info("{} started ({})", settings.app_name, settings.environment)


@app.on_event("shutdown")
async def shutdown_event():
    ctx = getattr(app.state, "scheduler", None)
    if ctx is not None:
        ctx.queue.shutdown()


app.include_router(status_router)
app.include_router(users_router)
app.include_router(tasks_router)
app.include_router(goals_router)
app.include_router(routines_router)
app.include_router(alarms_router)
app.include_router(reminders_router)
app.include_router(notifications_router)
