import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from database import session_scope
from fx_rates import RateSyncService


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    """Keeps official rates fresh. Recurring expenses are only posted on demand."""

    def __init__(self) -> None:
        settings = get_settings()
        self.interval_hours = settings.rate_sync_interval_hours
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_job(self, source: str = "manual") -> None:
        logger.info(f"scheduler_run: source={source}")
        with session_scope() as session:
            result = RateSyncService(session).sync_official()
        logger.info(
            f"scheduler_run: source={source} synced={result.synced} "
            f"errors={len(result.errors)}"
        )

    def start(self) -> None:
        if self.interval_hours <= 0:
            logger.info("Scheduler disabled: LEDGER_RATE_SYNC_INTERVAL_HOURS is 0")
            return

        trigger = IntervalTrigger(hours=self.interval_hours)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["rate_sync_interval"],
            id="official_rate_sync",
            replace_existing=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info(f"Scheduler started with rate sync every {self.interval_hours}h")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
