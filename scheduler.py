import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from balance_sync import BalanceSyncJob, SyncReport
from config import Settings, get_settings
from database import session_scope
from provider import AggregationProvider, build_provider


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(
        self, provider: AggregationProvider, settings: Optional[Settings] = None
    ) -> None:
        self.settings = settings or get_settings()
        self.provider = provider
        self.scheduler = BackgroundScheduler(timezone=self.settings.timezone)

    def run_job(self, source: str = "manual") -> SyncReport:
        logger.info(f"scheduler_run: source={source}")
        with session_scope() as session:
            report = BalanceSyncJob(session, self.provider).run_once()
        logger.info(
            f"scheduler_run: source={source} snapshots_written={report.snapshots_written}"
        )
        return report

    def _run_scheduled(self, source: str) -> None:
        try:
            self.run_job(source)
        except Exception:
            logger.exception(f"scheduler_run: source={source} failed")

    def start(self) -> None:
        self._run_scheduled("startup")

        trigger = CronTrigger(
            hour=self.settings.sync_hour, minute=self.settings.sync_minute
        )
        self.scheduler.add_job(
            self._run_scheduled,
            trigger,
            args=["daily"],
            id="balance_sync_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        trigger = IntervalTrigger(hours=self.settings.sync_interval_hours)
        self.scheduler.add_job(
            self._run_scheduled,
            trigger,
            args=["interval_safety_net"],
            id="balance_sync_interval",
            replace_existing=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info(
            f"Scheduler started with daily {self.settings.sync_hour:02d}:"
            f"{self.settings.sync_minute:02d} and "
            f"{self.settings.sync_interval_hours}h safety net"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")


def main() -> None:
    """Run a single sync pass, for cron or systemd timers."""
    settings = get_settings()
    SchedulerManager(build_provider(settings), settings).run_job("cli")


if __name__ == "__main__":
    main()
