"""
Job service: the API-facing operations (enqueue, cancel, query, subscribe).
"""

from uuid import UUID

from wayli_jobs.config.logging import get_logger
from wayli_jobs.config.settings import Settings
from wayli_jobs.infra.database import utcnow
from wayli_jobs.v1.core.exceptions import ConflictError, NotFoundError
from wayli_jobs.v1.core.security import Principal
from wayli_jobs.v1.infra.jobs.models import Job, JobStatus
from wayli_jobs.v1.infra.jobs.realtime import ChangeFeed, JobSubscription
from wayli_jobs.v1.infra.jobs.schemas import (
    JobCreate,
    JobEnqueueResponse,
    JobListFilters,
    JobStatsResponse,
)
from wayli_jobs.v1.infra.jobs.store import JobStore

logger = get_logger(__name__)

CANCEL_ATTEMPTS = 3


class JobNotFoundError(NotFoundError):
    def __init__(self, job_id: UUID):
        super().__init__("Job not found", {"job_id": str(job_id)})


class JobStateError(ConflictError):
    def __init__(self, job_id: UUID, status: str, action: str):
        super().__init__(
            f"Job cannot be {action} in status '{status}'",
            {"job_id": str(job_id), "status": status},
        )


def _owner_scope(principal: Principal | None) -> UUID | None:
    """Admins see every job; everyone else only their own."""
    if principal is None or principal.is_admin:
        return None
    return principal.user_uuid


class JobService:
    """Service for managing background jobs."""

    def __init__(self, settings: Settings, store: JobStore):
        self.settings = settings
        self.store = store

    async def enqueue(
        self, job_create: JobCreate, principal: Principal
    ) -> JobEnqueueResponse:
        job = await self.store.enqueue(
            job_create.type,
            job_create.payload,
            owner=principal.user_uuid,
            priority=job_create.priority,
            run_at=job_create.run_at,
        )
        return JobEnqueueResponse(job_id=job.id, status=job.status)

    async def get(self, job_id: UUID, principal: Principal | None = None) -> Job:
        """Get a job, hiding other owners' jobs from non-admins."""
        job = await self.store.get(job_id)
        owner = _owner_scope(principal)
        if job is None or (owner is not None and job.created_by != owner):
            raise JobNotFoundError(job_id)
        return job

    async def list_jobs(
        self, filters: JobListFilters, principal: Principal | None = None
    ) -> tuple[list[Job], int]:
        owner = _owner_scope(principal)
        if owner is not None:
            filters = filters.model_copy(update={"created_by": owner})
        return await self.store.list_jobs(filters)

    async def stats(self, principal: Principal | None = None) -> JobStatsResponse:
        return await self.store.stats(_owner_scope(principal))

    async def cancel(self, job_id: UUID, principal: Principal | None = None) -> Job:
        """
        Cancel a queued or running job.

        A queued job is cancelled before any worker can claim it. A running
        job is marked cancelled and its processor stops at its next
        checkpoint; a completion it reports afterwards is not applied.

        Raises:
            JobNotFoundError: Unknown job, or owned by someone else
            JobStateError: The job already reached a terminal status
        """
        job = await self.get(job_id, principal)

        # The status can move under us (claimed, re-queued); retry from the
        # freshly read status until it sticks or the job is terminal.
        for _ in range(CANCEL_ATTEMPTS):
            current = JobStatus(job.status)
            if current.is_terminal:
                break

            cancelled = await self.store.conditional_transition(
                job.id,
                current,
                {"status": JobStatus.CANCELLED, "completed_at": utcnow()},
            )
            if cancelled is not None:
                logger.info(
                    "Job cancelled",
                    job_id=str(job_id),
                    previous_status=current.value,
                    user_id=principal.user_id if principal else None,
                )
                return cancelled

            job = await self.store.get(job_id) or job

        raise JobStateError(job_id, job.status, "cancelled")

    def subscribe(self, owner: UUID, feed: ChangeFeed) -> JobSubscription:
        return JobSubscription(owner, feed, self.store, self.settings)
