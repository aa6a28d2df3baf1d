"""Scheduler for the daily reconciliation run and the stuck-run reaper."""

import logging
from typing import Awaitable, Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from lock_reconciler.errors import RunAlreadyActiveError

logger = logging.getLogger(__name__)


class ReconciliationScheduler:
    """Fires the daily run and the periodic reaper."""

    def __init__(
        self,
        on_daily_run: Callable[[], Awaitable[object]],
        on_reap: Callable[[], Awaitable[object]],
        daily_run_hour: int = 0,
        reap_interval_minutes: int = 15,
    ):
        """Initialize the scheduler.

        Args:
            on_daily_run: Callback starting a reconciliation run.
            on_reap: Callback killing stuck runs.
            daily_run_hour: Hour (UTC) of the daily run.
            reap_interval_minutes: How often to look for stuck runs.
        """
        self._on_daily_run = on_daily_run
        self._on_reap = on_reap
        self._daily_run_hour = daily_run_hour
        self._reap_interval = reap_interval_minutes
        self._scheduler = AsyncIOScheduler(timezone="UTC")

    def start(self) -> None:
        """Start the scheduler."""
        self._scheduler.add_job(
            self._handle_daily_run,
            CronTrigger(hour=self._daily_run_hour, minute=0, timezone="UTC"),
            id="daily_run",
            replace_existing=True,
        )
        self._scheduler.add_job(
            self._handle_reap,
            IntervalTrigger(minutes=self._reap_interval),
            id="reap_stuck_runs",
            replace_existing=True,
        )
        self._scheduler.start()
        logger.info(
            "Scheduler started (daily run at %02d:00 UTC, reaper every %d min)",
            self._daily_run_hour, self._reap_interval,
        )

    def stop(self) -> None:
        """Stop the scheduler."""
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")

    def next_run_time(self, job_id: str = "daily_run") -> Optional[str]:
        job = self._scheduler.get_job(job_id)
        if job is None or job.next_run_time is None:
            return None
        return job.next_run_time.isoformat()

    async def _handle_daily_run(self) -> None:
        """Handle the daily reconciliation run."""
        try:
            await self._on_daily_run()
        except RunAlreadyActiveError as e:
            logger.warning("Skipping scheduled run: %s", e)
        except Exception as e:
            logger.error("Error in scheduled reconciliation run: %s", e)

    async def _handle_reap(self) -> None:
        """Handle the periodic stuck-run check."""
        try:
            await self._on_reap()
        except Exception as e:
            logger.error("Error reaping stuck runs: %s", e)
