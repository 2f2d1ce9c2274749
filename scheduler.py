import logging
import threading
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import sessionmaker

from config import get_settings
from database import SessionLocal, session_scope
from periods import local_today
from recurrence import RecurringEngine, SweepResult
from services import complete_expired_budgets


logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self, session_factory: Optional[sessionmaker] = None) -> None:
        settings = get_settings()
        self.settings = settings
        self.session_factory = session_factory or SessionLocal
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)
        self._sweep_lock = threading.Lock()

    def _run_job(self, source: str = "manual") -> Optional[SweepResult]:
        if not self._sweep_lock.acquire(blocking=False):
            logger.info(f"scheduler_run: source={source} skipped=sweep_in_progress")
            return None
        try:
            today = local_today()
            logger.info(f"scheduler_run: source={source} as_of={today.isoformat()}")
            engine = RecurringEngine(
                self.session_factory, max_workers=self.settings.sweep_workers
            )
            result = engine.backfill(today)
            for failure in result.failures:
                logger.warning(
                    f"scheduler_run: source={source} rule_id={failure.rule_id} "
                    f"error={failure.error}"
                )
            with session_scope(self.session_factory) as session:
                completed = complete_expired_budgets(session, today)
            logger.info(
                f"scheduler_run: source={source} transactions_created="
                f"{len(result.created)} rule_failures={len(result.failures)} "
                f"budgets_completed={completed}"
            )
            return result
        finally:
            self._sweep_lock.release()

    def start(self) -> None:
        self._run_job("startup")

        trigger = CronTrigger(
            hour=self.settings.sweep_hour, minute=self.settings.sweep_minute
        )
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["daily"],
            id="recurring_daily",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=3600,
        )

        trigger = IntervalTrigger(minutes=self.settings.sweep_interval_minutes)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["safety_net"],
            id="recurring_safety_net",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info(
            f"Scheduler started with daily {self.settings.sweep_hour:02d}:"
            f"{self.settings.sweep_minute:02d} and "
            f"{self.settings.sweep_interval_minutes}-minute safety net"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
