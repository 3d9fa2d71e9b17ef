"""
Processor-facing queue operations: claiming, progress, completion and the
retry policy.

Every status change is a conditional transition on the job store. A call
that loses a race (another worker claimed first, the reaper already
reclaimed the job, the owner cancelled it) is a silent no-op and returns
None.
"""

from datetime import timedelta
from typing import Any
from uuid import UUID

from wayli_jobs.config.logging import get_logger
from wayli_jobs.config.settings import Settings
from wayli_jobs.infra.database import utcnow
from wayli_jobs.v1.infra.jobs.models import Job, JobStatus
from wayli_jobs.v1.infra.jobs.store import JobStore

logger = get_logger(__name__)


def final_failure_message(max_retries: int, message: str) -> str:
    return f"Failed after {max_retries} attempts. Last error: {message}"


class JobQueue:
    """Claim protocol, progress/result reporting and retry policy."""

    def __init__(self, store: JobStore, settings: Settings):
        self.store = store
        self.settings = settings

    async def claim_next(self, worker_id: str) -> Job | None:
        """
        Claim the highest-priority eligible queued job for ``worker_id``.

        Selection is advisory; the claim is a conditional queued -> running
        transition. Losing it means another worker won, so the next candidate
        is selected, up to ``job_claim_max_races`` times per call.
        """
        for _ in range(self.settings.job_claim_max_races):
            now = utcnow()
            candidate = await self.store.next_candidate(now)
            if candidate is None:
                return None

            claimed = await self.store.conditional_transition(
                candidate.id,
                JobStatus.QUEUED,
                {
                    "status": JobStatus.RUNNING,
                    "worker_id": worker_id,
                    "started_at": now,
                    "progress": 0,
                },
            )
            if claimed is not None:
                logger.info(
                    "Job claimed",
                    job_id=str(claimed.id),
                    type=claimed.type,
                    worker_id=worker_id,
                    retry_count=claimed.retry_count,
                )
                return claimed

            logger.debug(
                "Lost claim race", job_id=str(candidate.id), worker_id=worker_id
            )

        logger.debug("Claim attempts exhausted for this poll", worker_id=worker_id)
        return None

    async def report_progress(
        self,
        job_id: UUID,
        percent: int,
        partial_result: dict[str, Any] | None = None,
        worker_id: str | None = None,
    ) -> bool:
        """Record progress; returns False if the job is no longer running."""
        return await self.store.update_progress(
            job_id, percent, partial_result=partial_result, worker_id=worker_id
        )

    async def report_success(
        self,
        job_id: UUID,
        result: dict[str, Any] | None,
        worker_id: str | None = None,
    ) -> Job | None:
        """Complete a running job. Not applied if it was cancelled or reclaimed."""
        job = await self.store.conditional_transition(
            job_id,
            JobStatus.RUNNING,
            {
                "status": JobStatus.COMPLETED,
                "progress": 100,
                "result": result,
                "completed_at": utcnow(),
            },
            expected={"worker_id": worker_id} if worker_id else None,
        )
        if job is None:
            logger.info(
                "Completion not applied; job no longer owned",
                job_id=str(job_id),
                worker_id=worker_id,
            )
        else:
            logger.info("Job completed", job_id=str(job_id), worker_id=worker_id)
        return job

    async def report_failure(
        self,
        job_id: UUID,
        message: str,
        worker_id: str | None = None,
        attempt: int | None = None,
    ) -> Job | None:
        """
        Apply the retry policy to a failed attempt of a running job.

        Below the retry budget the job goes back to queued with
        ``retry_count + 1``; at the budget it fails terminally. The transition
        is pinned to the ``retry_count`` that was read (and to ``worker_id``
        and ``attempt`` when given), so concurrent failure paths for the same
        attempt apply at most once.

        Returns:
            The updated job, or None if the job was not running, not owned by
            ``worker_id``, or already moved on
        """
        job = await self.store.get(job_id)
        if job is None or job.status != JobStatus.RUNNING.value:
            return None
        if worker_id is not None and job.worker_id != worker_id:
            return None
        if attempt is not None and job.retry_count != attempt:
            return None

        max_retries = self.settings.job_max_retries
        pinned: dict[str, Any] = {"retry_count": job.retry_count}
        if worker_id is not None:
            pinned["worker_id"] = worker_id
        now = utcnow()

        if job.can_retry(max_retries):
            updated = await self.store.conditional_transition(
                job_id,
                JobStatus.RUNNING,
                {
                    "status": JobStatus.QUEUED,
                    "retry_count": job.retry_count + 1,
                    "last_error": message,
                    "started_at": None,
                    "progress": 0,
                    "run_at": now + timedelta(seconds=self.settings.job_retry_delay_s),
                },
                expected=pinned,
            )
            if updated is not None:
                logger.warning(
                    "Job re-queued for retry",
                    job_id=str(job_id),
                    retry_count=updated.retry_count,
                    max_retries=max_retries,
                    error=message,
                )
            return updated

        updated = await self.store.conditional_transition(
            job_id,
            JobStatus.RUNNING,
            {
                "status": JobStatus.FAILED,
                "error": final_failure_message(max_retries, message),
                "last_error": message,
                "completed_at": now,
            },
            expected=pinned,
        )
        if updated is not None:
            logger.error(
                "Job failed permanently",
                job_id=str(job_id),
                retry_count=updated.retry_count,
                error=message,
            )
        return updated

    async def is_cancelled(self, job_id: UUID) -> bool:
        job = await self.store.get(job_id)
        return job is not None and job.status == JobStatus.CANCELLED.value
