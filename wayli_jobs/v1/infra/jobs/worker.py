"""
Job worker: poll, claim, execute, report, with heartbeats and graceful
shutdown.
"""

import asyncio
import os
import random
import socket
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError

from wayli_jobs.config.logging import get_logger
from wayli_jobs.config.settings import Settings
from wayli_jobs.v1.core.registries import JobRegistry, job_registry
from wayli_jobs.v1.core.security import Principal
from wayli_jobs.v1.infra.jobs.cancellation import (
    JobCancelledError,
    JobContext,
    JobInterruptedError,
)
from wayli_jobs.v1.infra.jobs.models import Job, WorkerStatus
from wayli_jobs.v1.infra.jobs.queue import JobQueue
from wayli_jobs.v1.infra.jobs.reaper import StaleJobReaper
from wayli_jobs.v1.infra.jobs.store import JobStore
from wayli_jobs.v1.infra.jobs.workers import WorkerRegistry

logger = get_logger(__name__)

SHUTDOWN_MESSAGE = "Worker shutdown during job execution"
STORE_ERRORS = (SQLAlchemyError, OSError)


def default_worker_id(index: int = 0) -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{index}"


class JobWorker:
    """
    Single-slot job worker.

    Features:
    - Conditional-update claiming; lost races are retried against the next
      candidate
    - Liveness heartbeats in the worker registry
    - Optional in-process stale-job reaper
    - Cooperative cancellation through job context checkpoints
    - Graceful shutdown that re-queues an unfinished job through the retry path
    """

    def __init__(
        self,
        settings: Settings,
        queue: JobQueue,
        workers: WorkerRegistry,
        worker_id: str | None = None,
        registry: JobRegistry = job_registry,
        reaper: StaleJobReaper | None = None,
    ):
        self.settings = settings
        self.queue = queue
        self.workers = workers
        self.registry = registry
        self.reaper = reaper
        self.worker_id = worker_id or default_worker_id(id(self))
        self.log = logger.bind(worker_id=self.worker_id)

        self.running = False
        self.current_job: Job | None = None
        self.jobs_processed = 0
        self.last_heartbeat: datetime | None = None
        self._job_task: asyncio.Task | None = None
        self._wakeup = asyncio.Event()

    @classmethod
    def from_store(
        cls, settings: Settings, store: JobStore, workers: WorkerRegistry, **kwargs: Any
    ) -> "JobWorker":
        return cls(settings, JobQueue(store, settings), workers, **kwargs)

    async def start(self) -> None:
        """Register and run the poll and heartbeat loops until stopped."""
        if self.running:
            raise RuntimeError("Worker is already running")

        self.running = True
        self._wakeup.clear()
        self.log.info(
            "Starting job worker",
            poll_interval_ms=self.settings.job_poll_interval_ms,
            handlers=self.registry.list(),
            with_reaper=self.reaper is not None,
        )

        await self.workers.register(self.worker_id)
        self.last_heartbeat = datetime.now(UTC)

        loops = [self._worker_loop(), self._heartbeat_loop()]
        if self.reaper is not None:
            loops.append(self.reaper.run())

        try:
            await asyncio.gather(*loops)
        except Exception:
            self.log.exception("Worker crashed")
            raise
        finally:
            self.running = False
            if self.reaper is not None:
                self.reaper.stop()

    async def stop(self, graceful: bool = True) -> None:
        """
        Stop claiming and release the current job.

        A graceful stop waits up to ``worker_shutdown_grace_period_s`` for the
        current job to finish. Whatever is still running after that (or
        immediately, for a forced stop) is cancelled and routed through the
        retry policy so another worker can pick it up.
        """
        self.log.info("Stopping job worker", graceful=graceful)
        self.running = False
        self._wakeup.set()
        if self.reaper is not None:
            self.reaper.stop()

        task = self._job_task
        job = self.current_job
        if task is not None and not task.done():
            if graceful:
                done, _ = await asyncio.wait(
                    {task}, timeout=self.settings.worker_shutdown_grace_period_s
                )
                if task in done:
                    task = None

            if task is not None:
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
                if job is not None:
                    self.log.warning(
                        "Releasing unfinished job", job_id=str(job.id)
                    )
                    await self.queue.report_failure(
                        job.id, SHUTDOWN_MESSAGE, worker_id=self.worker_id
                    )

        try:
            await self.workers.heartbeat(self.worker_id, WorkerStatus.IDLE)
        except STORE_ERRORS:
            self.log.exception("Error recording final heartbeat")

    async def _worker_loop(self) -> None:
        """Main loop that claims and processes jobs one at a time."""
        while self.running:
            try:
                job = await self.queue.claim_next(self.worker_id)
                if job is not None and self.running:
                    self._job_task = asyncio.create_task(self._process_job(job))
                    try:
                        await asyncio.shield(self._job_task)
                    except asyncio.CancelledError:
                        if not self._job_task.cancelled():
                            raise
                    finally:
                        self._job_task = None
                    continue
                elif job is not None:
                    # Stopped between claim and start; hand the job straight back
                    await self.queue.report_failure(
                        job.id, SHUTDOWN_MESSAGE, worker_id=self.worker_id
                    )
                    break

                await self._sleep(self._poll_delay())

            except STORE_ERRORS:
                self.log.exception("Error in worker loop")
                await self._sleep(self.settings.job_error_backoff_s)

    def _poll_delay(self) -> float:
        jitter_ms = random.uniform(0, self.settings.job_poll_jitter_ms)
        return (self.settings.job_poll_interval_ms + jitter_ms) / 1000

    async def _sleep(self, seconds: float) -> None:
        """Sleep that ends early when the worker is stopped."""
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=seconds)
        except TimeoutError:
            pass

    async def process(self, job: Job) -> None:
        """Run one claimed job to a reported outcome."""
        await self._process_job(job)

    async def _process_job(self, job: Job) -> None:
        """Process a single job with error handling and result storage."""
        job_logger = self.log.bind(job_id=str(job.id), job_type=job.type)
        self.current_job = job
        await self._safe_heartbeat(WorkerStatus.BUSY, job.id)

        try:
            job_logger.info("Processing job started", retry_count=job.retry_count)

            try:
                handler = self.registry.get(job.type)
            except KeyError as e:
                job_logger.error("No processor registered for job type")
                await self.queue.report_failure(
                    job.id, str(e.args[0]), worker_id=self.worker_id
                )
                return

            ctx = JobContext(
                job,
                self.queue,
                self.worker_id,
                Principal(user_id=str(job.created_by)),
                checkpoint_interval_s=getattr(handler, "checkpoint_interval_s", None),
            )

            try:
                await ctx.checkpoint(force=True)
                result = await handler.handle(ctx, job.payload)
            except JobCancelledError:
                job_logger.info("Job cancelled during processing")
                return
            except JobInterruptedError as e:
                job_logger.warning("Job interrupted", reason=e.message)
                return
            except asyncio.CancelledError:
                job_logger.info("Job processing cancelled by worker shutdown")
                raise
            except Exception as e:
                job_logger.exception("Job processing failed", error=str(e))
                await self.queue.report_failure(
                    job.id, str(e) or e.__class__.__name__, worker_id=self.worker_id
                )
                return

            completed = await self.queue.report_success(
                job.id, result, worker_id=self.worker_id
            )
            if completed is not None:
                job_logger.info("Processing job completed successfully")

        finally:
            self.jobs_processed += 1
            self.current_job = None
            await self._safe_heartbeat(WorkerStatus.IDLE)

    async def _safe_heartbeat(
        self, status: WorkerStatus, current_job_id: UUID | None = None
    ) -> None:
        try:
            await self.workers.heartbeat(self.worker_id, status, current_job_id)
            self.last_heartbeat = datetime.now(UTC)
        except STORE_ERRORS:
            self.log.exception("Error updating heartbeat")

    async def _heartbeat_loop(self) -> None:
        """Refresh this worker's liveness row."""
        while self.running:
            await self._sleep(self.settings.worker_heartbeat_interval_s)
            if not self.running:
                break
            job = self.current_job
            await self._safe_heartbeat(
                WorkerStatus.BUSY if job else WorkerStatus.IDLE,
                job.id if job else None,
            )

    def check_health(self) -> dict[str, Any]:
        """Snapshot of this worker's state for health reporting."""
        heartbeat_age = None
        if self.last_heartbeat is not None:
            heartbeat_age = (datetime.now(UTC) - self.last_heartbeat).total_seconds()
        return {
            "worker_id": self.worker_id,
            "running": self.running,
            "current_job": str(self.current_job.id) if self.current_job else None,
            "jobs_processed": self.jobs_processed,
            "last_heartbeat_age_seconds": heartbeat_age,
            "healthy": self.running
            and heartbeat_age is not None
            and heartbeat_age < self.settings.worker_liveness_window_s,
        }


class WorkerPool:
    """Several single-slot workers sharing one event loop and one reaper."""

    def __init__(
        self,
        settings: Settings,
        store: JobStore,
        workers: WorkerRegistry,
        count: int,
        with_reaper: bool = False,
        registry: JobRegistry = job_registry,
    ):
        queue = JobQueue(store, settings)
        self.settings = settings
        self.reaper = StaleJobReaper(queue, settings) if with_reaper else None
        self.workers = [
            JobWorker(
                settings,
                queue,
                workers,
                worker_id=default_worker_id(index),
                registry=registry,
            )
            for index in range(count)
        ]

    async def run(self) -> None:
        tasks = [worker.start() for worker in self.workers]
        if self.reaper is not None:
            tasks.append(self.reaper.run())
        await asyncio.gather(*tasks)

    async def stop(self, graceful: bool = True) -> None:
        if self.reaper is not None:
            self.reaper.stop()
        await asyncio.gather(*(worker.stop(graceful) for worker in self.workers))
