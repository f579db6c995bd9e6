import asyncio
import logging

from fastapi import FastAPI

from .api.routes_today import router as today_router
from .api.routes_medications import router as medications_router
from .api.routes_interactions import router as interactions_router
from .api.routes_notifications import router as notifications_router
from .api.routes_telegram import router as telegram_router
from .config import settings
from .core.alarms import LocalAlarmService, alarm_dispatch_loop
from .core.database import Base, engine, SessionLocal
from .core.log import configure_logging
from .core.scheduler import build_scheduler
from .models import Medication

logger = logging.getLogger(__name__)


app = FastAPI(
    title=settings.app_name,
    version="0.1.0",
)


@app.on_event("startup")
async def startup_event():
    configure_logging(settings.log_level)

    # Create tables
    Base.metadata.create_all(bind=engine)

    scheduler = build_scheduler()
    app.state.scheduler = scheduler

    granted = await scheduler.gate.ensure_granted()
    logger.info("notification permission granted: %s", granted)

    # Repair the ledger against the medications that survived the last run
    db = SessionLocal()
    try:
        medications = db.query(Medication).all()
        report = await scheduler.reconcile(medications)
    finally:
        db.close()
    if report.orphans_dropped or report.rescheduled or report.failed:
        logger.info(
            "ledger reconciled: %s orphan(s) dropped, rescheduled=%s, failed=%s",
            report.orphans_dropped,
            report.rescheduled,
            report.failed,
        )

    # Start alarm dispatcher
    if isinstance(scheduler.alarms, LocalAlarmService):
        asyncio.create_task(
            alarm_dispatch_loop(scheduler.alarms, settings.alarm_poll_interval_sec)
        )


app.include_router(today_router)
app.include_router(medications_router)
app.include_router(interactions_router)
app.include_router(notifications_router)
app.include_router(telegram_router)
