"""
Cancellation checkpoints for running processors.

Cancellation is cooperative: a cancel request only flips the stored status.
Processors observe it by awaiting ``ctx.checkpoint()`` between units of
work, which also detects that the job was reclaimed by the stale-job reaper
and is no longer theirs to finish.
"""

import time
from collections.abc import Callable
from typing import Any
from uuid import UUID

from wayli_jobs.config.logging import get_logger
from wayli_jobs.v1.core.security import Principal
from wayli_jobs.v1.infra.jobs.models import Job, JobStatus
from wayli_jobs.v1.infra.jobs.queue import JobQueue

logger = get_logger(__name__)


class JobInterruptedError(Exception):
    """The running attempt must stop; its outcome will not be reported."""

    def __init__(self, job_id: UUID, message: str):
        self.job_id = job_id
        self.message = message
        super().__init__(message)


class JobCancelledError(JobInterruptedError):
    """Raised at a checkpoint when the job was cancelled."""

    def __init__(self, job_id: UUID):
        super().__init__(job_id, "Job was cancelled")


class JobOwnershipLostError(JobInterruptedError):
    """Raised at a checkpoint when the job is no longer running for this worker."""

    def __init__(self, job_id: UUID, status: str | None):
        self.status = status
        super().__init__(job_id, f"Job is no longer owned by this worker (status={status})")


class JobContext:
    """Everything a processor gets besides its payload."""

    def __init__(
        self,
        job: Job,
        queue: JobQueue,
        worker_id: str,
        principal: Principal,
        checkpoint_interval_s: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.job = job
        self.job_id: UUID = job.id
        self.queue = queue
        self.worker_id = worker_id
        self.principal = principal
        self.checkpoint_interval_s = checkpoint_interval_s
        self._min_read_interval_s = (
            queue.settings.job_cancellation_check_interval_ms / 1000
        )
        self._clock = clock
        self._last_checkpoint = clock()
        self._last_read: float | None = None

    async def checkpoint(self, force: bool = False) -> None:
        """
        Stop here if the job was cancelled or taken away.

        Store reads are throttled to one per
        ``job_cancellation_check_interval_ms``; ``force`` always reads.

        Raises:
            JobCancelledError: The job was cancelled
            JobOwnershipLostError: The job is no longer running under this worker
        """
        now = self._clock()
        gap = now - self._last_checkpoint
        if self.checkpoint_interval_s is not None and gap > self.checkpoint_interval_s:
            logger.warning(
                "Processor exceeded its checkpoint interval",
                job_id=str(self.job_id),
                type=self.job.type,
                seconds_since_checkpoint=round(gap, 3),
                declared_interval_s=self.checkpoint_interval_s,
            )
        self._last_checkpoint = now

        if (
            not force
            and self._last_read is not None
            and now - self._last_read < self._min_read_interval_s
        ):
            return
        self._last_read = now

        current = await self.queue.store.get(self.job_id)
        if current is not None and current.status == JobStatus.CANCELLED.value:
            raise JobCancelledError(self.job_id)
        if (
            current is None
            or current.status != JobStatus.RUNNING.value
            or current.worker_id != self.worker_id
        ):
            raise JobOwnershipLostError(
                self.job_id, current.status if current is not None else None
            )

    async def report_progress(
        self, percent: int, partial_result: dict[str, Any] | None = None
    ) -> None:
        """Record progress; raises like ``checkpoint`` if the job is gone."""
        applied = await self.queue.report_progress(
            self.job_id, percent, partial_result=partial_result, worker_id=self.worker_id
        )
        if not applied:
            await self.checkpoint(force=True)
