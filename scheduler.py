import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from sync import SyncManager


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

RETRY_JOB_ID = "sync_retry"
SAFETY_NET_JOB_ID = "sync_safety_net"


class RetryScheduler:
    """Runs sync retries on the event loop.

    Failed flushes schedule a one-shot retry after the backoff delay; an
    interval job re-attempts pending work in case a retry was lost.
    """

    def __init__(self, scheduler: Optional[AsyncIOScheduler] = None) -> None:
        settings = get_settings()
        self.scheduler = scheduler or AsyncIOScheduler(timezone=settings.timezone)
        self.safety_net_minutes = settings.safety_net_minutes

    def schedule(self, delay: float, callback: Callable[[], Awaitable[Any]]) -> None:
        run_at = datetime.now(timezone.utc) + timedelta(seconds=delay)
        self.scheduler.add_job(
            callback,
            DateTrigger(run_date=run_at),
            id=RETRY_JOB_ID,
            replace_existing=True,
            misfire_grace_time=60,
        )
        logger.info(f"scheduler_retry: delay={delay}")

    def cancel(self) -> None:
        if self.scheduler.get_job(RETRY_JOB_ID):
            self.scheduler.remove_job(RETRY_JOB_ID)

    def start(self, sync: SyncManager) -> None:
        self.scheduler.add_job(
            sync.on_foreground,
            IntervalTrigger(minutes=self.safety_net_minutes),
            id=SAFETY_NET_JOB_ID,
            replace_existing=True,
            misfire_grace_time=300,
        )
        self.scheduler.start()
        logger.info(
            f"Scheduler started with {self.safety_net_minutes} minute sync safety net"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
