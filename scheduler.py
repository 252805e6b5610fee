import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from balance import BalanceReconciler
from config import get_settings
from database import session_scope
from errors import LedgerError
from ledger import LedgerStore
from recurrence import RecurrenceScheduler, SweepResult


settings = get_settings()
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)


def run_sweep(source: str = "manual") -> SweepResult:
    logger.info(f"scheduler_run: source={source}")
    with session_scope() as session:
        result = RecurrenceScheduler(session).sweep()
    logger.info(
        f"scheduler_run: source={source} materialized={result.materialized} "
        f"overflowed={len(result.overflowed)}"
    )
    return result


def run_drift_check(source: str = "manual") -> int:
    with session_scope() as session:
        drifts = BalanceReconciler(LedgerStore(session)).verify_all()
    logger.info(f"drift_run: source={source} repaired={len(drifts)}")
    return len(drifts)


class SchedulerManager:
    def __init__(self) -> None:
        settings = get_settings()
        self.scheduler = BackgroundScheduler(
            timezone=settings.timezone,
            job_defaults={"max_instances": 1, "coalesce": True},
        )

    def _sweep_job(self, source: str) -> None:
        try:
            run_sweep(source)
        except LedgerError as exc:
            # Left for the next trigger; every step of a sweep is idempotent.
            logger.warning(f"scheduler_run_failed: source={source} error={exc}")

    def _drift_job(self, source: str) -> None:
        try:
            run_drift_check(source)
        except LedgerError as exc:
            logger.warning(f"drift_run_failed: source={source} error={exc}")

    def start(self) -> None:
        settings = get_settings()
        self._sweep_job("startup")

        self.scheduler.add_job(
            self._sweep_job,
            CronTrigger(hour=0, minute=5),
            args=["daily_00:05"],
            id="recurring_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )
        self.scheduler.add_job(
            self._sweep_job,
            IntervalTrigger(minutes=settings.sweep_interval_minutes),
            args=["interval_safety_net"],
            id="recurring_safety_net",
            replace_existing=True,
            misfire_grace_time=300,
        )
        self.scheduler.add_job(
            self._drift_job,
            IntervalTrigger(hours=1),
            args=["hourly"],
            id="balance_drift_check",
            replace_existing=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info(
            "Scheduler started with daily 00:05 sweep, "
            f"{settings.sweep_interval_minutes}m safety net and hourly drift check"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
