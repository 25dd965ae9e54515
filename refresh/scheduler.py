import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from refresh.runtime import RefreshRuntime

logger = logging.getLogger(__name__)


class RefreshScheduler:
    """
    Periodic jobs:
    - due-table refresh run (tables whose next_refresh_at has passed)
    - webhook delivery drain
    - expired checkpoint reclaim
    """

    def __init__(self, runtime: RefreshRuntime):
        self.runtime = runtime
        self.settings = runtime.settings
        self.scheduler = AsyncIOScheduler()

    async def run_refresh_job(self):
        """Job to refresh due tables"""
        logger.info("Scheduler: Starting refresh run")
        try:
            summary = await self.runtime.run_due_refreshes()
            logger.info(
                f"Scheduler: refresh run finished - {summary.succeeded} succeeded, "
                f"{summary.failed} failed, {summary.skipped} skipped"
            )
        except Exception as e:
            logger.error(f"Scheduler: refresh run failed - {e}")

    async def drain_webhooks_job(self):
        try:
            await self.runtime.drain_webhooks()
        except Exception as e:
            logger.error(f"Scheduler: webhook drain failed - {e}")

    async def reclaim_checkpoints_job(self):
        try:
            await self.runtime.reclaim_checkpoints()
        except Exception as e:
            logger.error(f"Scheduler: checkpoint reclaim failed - {e}")

    def start(self):
        """Start the scheduler"""
        self.scheduler.add_job(
            self.run_refresh_job,
            trigger=IntervalTrigger(minutes=self.settings.ORCHESTRATOR_INTERVAL_MINUTES),
            id="refresh_job",
            replace_existing=True,
            max_instances=1,
            coalesce=True
        )
        self.scheduler.add_job(
            self.drain_webhooks_job,
            trigger=IntervalTrigger(seconds=self.settings.WEBHOOK_DRAIN_INTERVAL_SECONDS),
            id="webhook_drain_job",
            replace_existing=True,
            max_instances=1,
            coalesce=True
        )
        self.scheduler.add_job(
            self.reclaim_checkpoints_job,
            trigger=IntervalTrigger(minutes=self.settings.CHECKPOINT_RECLAIM_INTERVAL_MINUTES),
            id="checkpoint_reclaim_job",
            replace_existing=True,
            max_instances=1,
            coalesce=True
        )
        self.scheduler.start()
        logger.info("Refresh Scheduler started")

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("Refresh Scheduler stopped")
