import logging
from datetime import timedelta

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from remindsync.scheduler.trigger import TriggerScheduler
from remindsync.services.error_log import ErrorLog
from remindsync.services.sync_engine import SyncEngine

logger = logging.getLogger(__name__)


class MaintenanceLoop:
    """The periodic loop: re-arm sweep, sync drain and error log cleanup."""

    def __init__(
        self,
        scheduler: AsyncIOScheduler,
        triggers: TriggerScheduler,
        sync_engine: SyncEngine,
        error_log: ErrorLog,
        sweep_interval_minutes: int = 30,
        sync_interval_minutes: int = 5,
        reminder_service=None,
    ):
        self.scheduler = scheduler
        self.triggers = triggers
        self.sync_engine = sync_engine
        self.error_log = error_log
        self.reminder_service = reminder_service
        self.sweep_interval = timedelta(minutes=sweep_interval_minutes)
        self.sync_interval = timedelta(minutes=sync_interval_minutes)

    def start(self):
        """Register the periodic jobs and start the scheduler if needed."""
        # Re-arm everything periodically to recover from missed or dropped triggers
        self.scheduler.add_job(
            self._sweep,
            IntervalTrigger(seconds=self.sweep_interval.total_seconds()),
            id="maintenance_sweep",
            jobstore="memory",
            replace_existing=True,
        )

        # Replay the sync queue
        self.scheduler.add_job(
            self._drain,
            IntervalTrigger(seconds=self.sync_interval.total_seconds()),
            id="maintenance_sync_drain",
            jobstore="memory",
            replace_existing=True,
        )

        # Trim the error log once a day
        self.scheduler.add_job(
            self._cleanup,
            IntervalTrigger(days=1),
            id="maintenance_error_log_cleanup",
            jobstore="memory",
            replace_existing=True,
        )

        if not self.scheduler.running:
            self.scheduler.start()
        logger.info("Maintenance loop started")

    def shutdown(self):
        for job_id in ("maintenance_sweep", "maintenance_sync_drain", "maintenance_error_log_cleanup"):
            job = self.scheduler.get_job(job_id, jobstore="memory")
            if job is not None:
                job.remove()
        logger.info("Maintenance loop stopped")

    async def _sweep(self):
        try:
            if self.reminder_service is not None:
                await self.reminder_service.refresh_overdue()
            await self.triggers.sweep()
        except Exception as e:
            logger.error(f"Error running scheduling sweep: {str(e)}")

    async def _drain(self):
        try:
            await self.sync_engine.drain()
        except Exception as e:
            logger.error(f"Error draining sync queue: {str(e)}")

    async def _cleanup(self):
        try:
            await self.error_log.cleanup()
        except Exception as e:
            logger.error(f"Error cleaning up error log: {str(e)}")
