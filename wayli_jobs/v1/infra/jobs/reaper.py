"""
Stale-job reaper: reclaims running jobs whose worker has presumably died.
"""

import asyncio
from datetime import timedelta

from sqlalchemy.exc import SQLAlchemyError

from wayli_jobs.config.logging import get_logger
from wayli_jobs.config.settings import Settings
from wayli_jobs.infra.database import utcnow
from wayli_jobs.v1.infra.jobs.models import Job
from wayli_jobs.v1.infra.jobs.queue import JobQueue

logger = get_logger(__name__)


def timeout_message(timeout_s: int) -> str:
    return f"Job timed out after {timeout_s}s - worker may have died"


class StaleJobReaper:
    """
    Periodically routes stale running jobs through the retry policy.

    Safe to run in several processes at once: each reclaim is pinned to the
    ``retry_count`` seen by the sweep, so overlapping sweeps and a late
    success report from the first worker resolve to exactly one winner.
    """

    def __init__(self, queue: JobQueue, settings: Settings):
        self.queue = queue
        self.settings = settings
        self.running = False
        self._stop_event = asyncio.Event()

    async def sweep(self) -> list[Job]:
        """Reclaim every job running longer than ``job_timeout_s``."""
        timeout_s = self.settings.job_timeout_s
        cutoff = utcnow() - timedelta(seconds=timeout_s)
        stale_jobs = await self.queue.store.find_stale(cutoff)

        reclaimed: list[Job] = []
        for job in stale_jobs:
            updated = await self.queue.report_failure(
                job.id,
                timeout_message(timeout_s),
                attempt=job.retry_count,
            )
            if updated is not None:
                reclaimed.append(updated)

        if reclaimed:
            logger.warning(
                "Reclaimed stale jobs",
                stale_job_count=len(stale_jobs),
                reclaimed_count=len(reclaimed),
                job_ids=[str(job.id) for job in reclaimed],
                timeout_seconds=timeout_s,
            )
        return reclaimed

    async def run(self) -> None:
        """Sweep every ``job_reaper_interval_s`` until ``stop`` is called."""
        self.running = True
        self._stop_event.clear()
        logger.info(
            "Starting stale job reaper",
            interval_s=self.settings.job_reaper_interval_s,
            timeout_s=self.settings.job_timeout_s,
        )

        try:
            while self.running:
                try:
                    await self.sweep()
                except (SQLAlchemyError, OSError):
                    logger.exception("Error in stale job sweep")

                try:
                    await asyncio.wait_for(
                        self._stop_event.wait(),
                        timeout=self.settings.job_reaper_interval_s,
                    )
                except TimeoutError:
                    pass
        finally:
            self.running = False
            logger.info("Stale job reaper stopped")

    def stop(self) -> None:
        self.running = False
        self._stop_event.set()
