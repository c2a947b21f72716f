# neurobridge/services/scheduler.py
import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from neurobridge.services.jobs import reconcile_undispatched
from neurobridge.settings.config import settings

scheduler: AsyncIOScheduler | None = None
logger = logging.getLogger(__name__)


def start_scheduler():
    global scheduler
    if scheduler:
        return
    scheduler = AsyncIOScheduler(timezone="UTC")

    interval = settings.DISPATCH_RECONCILE_INTERVAL
    if interval.total_seconds() <= 0:
        logger.info("Dispatch reconciler disabled (DISPATCH_RECONCILE_INTERVAL <= 0)")
    else:
        scheduler.add_job(
            job_reconcile_dispatch,
            IntervalTrigger(seconds=int(interval.total_seconds())),
            id="reconcile_dispatch",
            max_instances=1,
            coalesce=True,
        )
        logger.info(
            "Dispatch reconciler every %ss for jobs queued longer than %ss",
            int(interval.total_seconds()), int(settings.DISPATCH_RECONCILE_AFTER.total_seconds()),
        )
    scheduler.start()


def stop_scheduler():
    global scheduler
    if scheduler:
        scheduler.shutdown(wait=False)
        scheduler = None


async def job_reconcile_dispatch():
    try:
        await reconcile_undispatched()
    except Exception:
        logger.exception("Dispatch reconciler pass failed")
