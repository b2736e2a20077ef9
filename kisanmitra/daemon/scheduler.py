"""Background scheduler for Kisan Mitra."""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from kisanmitra.daemon.jobs import check_data_freshness, sweep_expired_metrics
from kisanmitra.services import Services

logger = structlog.get_logger()


async def run_job(job: Callable[[Services], Awaitable[Any]], services: Services) -> None:
    """Run a job, logging instead of raising so the scheduler keeps going."""
    try:
        await job(services)
    except Exception as e:
        logger.error("Job failed", job=job.__name__, error=str(e))


class SchedulerService:
    """Service to manage background jobs."""

    def __init__(self, services: Services) -> None:
        self.services = services
        self.scheduler = AsyncIOScheduler()
        self._setup_jobs()

    def _setup_jobs(self) -> None:
        """Configure scheduled jobs."""
        settings = self.services.settings

        # Retention sweep
        self.scheduler.add_job(
            run_job,
            trigger=IntervalTrigger(minutes=settings.sweep_interval_minutes),
            args=[sweep_expired_metrics, self.services],
            id="sweep_expired_metrics",
            name="Sweep Expired Metrics",
            replace_existing=True,
        )

        # Freshness of tracked series
        self.scheduler.add_job(
            run_job,
            trigger=IntervalTrigger(minutes=settings.freshness_interval_minutes),
            args=[check_data_freshness, self.services],
            id="check_data_freshness",
            name="Check Data Freshness",
            replace_existing=True,
        )

    def start(self) -> None:
        """Start the scheduler."""
        logger.info("Starting background scheduler")
        self.scheduler.start()

    def stop(self) -> None:
        """Stop the scheduler."""
        logger.info("Stopping background scheduler")
        self.scheduler.shutdown()

    async def run_forever(self) -> None:
        """Run scheduler until interrupted."""
        self.start()

        # Trigger once on startup without blocking it
        logger.info("Running initial jobs...")
        asyncio.create_task(run_job(sweep_expired_metrics, self.services))
        asyncio.create_task(run_job(check_data_freshness, self.services))

        try:
            while True:
                await asyncio.sleep(1)
        except (KeyboardInterrupt, asyncio.CancelledError):
            self.stop()
