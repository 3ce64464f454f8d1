import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from connections import ConnectionManager
from database import session_scope
from provider_client import ProviderClient
from recurrence import RecurringEngine


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self) -> None:
        settings = get_settings()
        self.settings = settings
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_recurring(self, source: str = "manual") -> None:
        logger.info(f"scheduler_run: job=recurring source={source}")
        with session_scope() as session:
            result = RecurringEngine(session).process_due()
        logger.info(
            f"scheduler_run: job=recurring source={source} "
            f"processed={result.processed} total={result.total}"
        )

    def _run_sync(self, source: str = "manual") -> None:
        logger.info(f"scheduler_run: job=sync source={source}")
        with session_scope() as session:
            manager = ConnectionManager(session, ProviderClient(self.settings), self.settings)
            outcomes = manager.sync_all()
        failed = sum(1 for o in outcomes if o.status == "error")
        logger.info(
            f"scheduler_run: job=sync source={source} "
            f"synced={len(outcomes) - failed} failed={failed}"
        )

    def start(self) -> None:
        self._run_recurring("startup")

        trigger = CronTrigger(hour=3, minute=15)
        self.scheduler.add_job(
            self._run_recurring,
            trigger,
            args=["daily_03:15"],
            id="recurring_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        trigger = IntervalTrigger(hours=6)
        self.scheduler.add_job(
            self._run_sync,
            trigger,
            args=["every_6h"],
            id="open_finance_sync",
            replace_existing=True,
            misfire_grace_time=1800,
        )

        self.scheduler.start()
        logger.info("Scheduler started with daily 03:15 recurring and 6h sync")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
