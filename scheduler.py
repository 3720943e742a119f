import logging
from datetime import datetime
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import Session

from database import session_scope
from periods import LEDGER_TZ, utcnow
from receipts import purge_expired_receipts
from recurrence import RecurringEngine
from services import run_month_start_balance_update


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def run_scheduled_tick(session: Session, now: Optional[datetime] = None) -> dict[str, int]:
    now = now or utcnow()
    created = RecurringEngine(session).generate(now)
    families = run_month_start_balance_update(session, now)
    purged = purge_expired_receipts(session, now)
    return {
        "occurrences_created": created,
        "families_recalculated": families,
        "receipts_purged": purged,
    }


class SchedulerManager:
    def __init__(self) -> None:
        self.scheduler = BackgroundScheduler(timezone=LEDGER_TZ)

    def _run_job(self, source: str = "manual") -> None:
        logger.info(f"scheduler_run: source={source}")
        with session_scope() as session:
            summary = run_scheduled_tick(session)
        logger.info(
            f"scheduler_run: source={source} "
            f"occurrences_created={summary['occurrences_created']} "
            f"families_recalculated={summary['families_recalculated']} "
            f"receipts_purged={summary['receipts_purged']}"
        )

    def start(self) -> None:
        self._run_job("startup")

        trigger = CronTrigger(hour=0, minute=5, timezone=LEDGER_TZ)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["daily_00:05"],
            id="ledger_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        trigger = IntervalTrigger(hours=1)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["hourly_safety_net"],
            id="ledger_hourly_safety",
            replace_existing=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info("Scheduler started with daily 00:05 and hourly safety net")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
