import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from database import session_scope
from services import ReconciliationService


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self) -> None:
        settings = get_settings()
        self.interval_hours = settings.reconcile_interval_hours
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_job(self, source: str = "manual") -> None:
        logger.info(f"reconcile_run: source={source}")
        with session_scope() as session:
            results = ReconciliationService(session).reconcile()
            repaired = [r.circle_id for r in results if r.repaired]
            logger.info(
                f"reconcile_run: source={source} circles={len(results)} "
                f"repaired={repaired}"
            )

    def start(self) -> None:
        self._run_job("startup")

        trigger = CronTrigger(hour=3, minute=15)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["daily_03:15"],
            id="reconcile_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        trigger = IntervalTrigger(hours=self.interval_hours)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["interval_safety_net"],
            id="reconcile_interval",
            replace_existing=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info(
            f"Scheduler started with daily 03:15 and {self.interval_hours}h reconcile"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
