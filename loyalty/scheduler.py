from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.schedulers.base import BaseScheduler
import structlog

from .expiry import ExpirySweeper

logger = structlog.get_logger(__name__)

EXPIRY_SWEEP_JOB_ID = "loyalty_expiry_sweep"


def schedule_expiry_sweep(scheduler: BaseScheduler, sweeper: ExpirySweeper, interval_minutes: int = 60):
    """
    Registers the expiry sweep as an interval job.

    Only one sweep runs at a time; missed runs are coalesced into one.
    """
    job = scheduler.add_job(
        sweeper.run,
        "interval",
        minutes=interval_minutes,
        id=EXPIRY_SWEEP_JOB_ID,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    logger.info("Expiry sweep scheduled", interval_minutes=interval_minutes)
    return job


def start_expiry_scheduler(sweeper: ExpirySweeper, interval_minutes: int = 60) -> BackgroundScheduler:
    scheduler = BackgroundScheduler(timezone="UTC")
    schedule_expiry_sweep(scheduler, sweeper, interval_minutes)
    scheduler.start()
    return scheduler


def shutdown_expiry_scheduler(scheduler: BaseScheduler, sweeper: ExpirySweeper) -> None:
    sweeper.stop()
    scheduler.shutdown(wait=True)
    logger.info("Expiry scheduler stopped")
