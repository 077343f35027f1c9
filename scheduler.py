import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from cache import CacheFacade
from config import get_settings


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self, cache: CacheFacade) -> None:
        settings = get_settings()
        self.cache = cache
        self.interval_minutes = settings.cache_sweep_minutes
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_sweep(self, source: str = "manual") -> int:
        removed = self.cache.sweep()
        logger.info(f"cache_sweep: source={source} expired_removed={removed}")
        return removed

    def start(self) -> None:
        trigger = IntervalTrigger(minutes=self.interval_minutes)
        self.scheduler.add_job(
            self._run_sweep,
            trigger,
            args=["interval"],
            id="cache_sweep",
            replace_existing=True,
            misfire_grace_time=60,
        )
        self.scheduler.start()
        logger.info(f"Scheduler started with cache sweep every {self.interval_minutes}m")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
