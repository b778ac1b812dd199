import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from ..config import get_settings
from ..db.session import SessionLocal
from ..services import ledger
from ..services.notification_service import dispatch_notifications
from ..services.payments import get_configured_gateway
from .sweeper import run_sweep

logger = logging.getLogger(__name__)


def run_sweep_job() -> None:
    gateway = get_configured_gateway()
    with SessionLocal() as db:
        report = run_sweep(db, gateway)
    dispatch_notifications(report.notifications)


def clear_locks_job() -> None:
    with SessionLocal() as db:
        cleared = ledger.clear_expired_locks(db)
    if cleared:
        logger.info("Cleared expired booking locks", extra={"count": cleared})


def get_scheduler() -> AsyncIOScheduler:
    settings = get_settings()
    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        run_sweep_job,
        "interval",
        minutes=settings.sweep_interval_minutes,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(clear_locks_job, "interval", minutes=1)
    return scheduler
