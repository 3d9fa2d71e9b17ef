"""
Job store: persistence for jobs and the conditional-update primitive.

``conditional_transition`` is the only way a job changes status. It issues a
single ``UPDATE ... WHERE id = :id AND status = :expected`` and reports
whether the row matched, which is what lets independent worker processes
coordinate through the database alone.
"""

from collections.abc import Iterable, Mapping
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import and_, desc, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from wayli_jobs.config.logging import get_logger
from wayli_jobs.infra.database import utcnow
from wayli_jobs.v1.infra.jobs.models import (
    ACTIVE_STATUSES,
    ALLOWED_TRANSITIONS,
    Job,
    JobPriority,
    JobStatus,
    JobType,
    priority_rank,
)
from wayli_jobs.v1.infra.jobs.schemas import JobListFilters, JobStatsResponse

logger = get_logger(__name__)


class InvalidTransitionError(ValueError):
    """Raised for a status change the job state machine does not allow."""

    def __init__(self, current: JobStatus, target: JobStatus, reason: str | None = None):
        self.current = current
        self.target = target
        message = f"Invalid job transition {current.value} -> {target.value}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


def check_transition(current: JobStatus, target: JobStatus) -> None:
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionError(current, target)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class JobStore:
    """Jobs table access. Every method runs in its own short transaction."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def enqueue(
        self,
        job_type: JobType | str,
        payload: dict[str, Any] | None,
        owner: UUID,
        priority: JobPriority | str = JobPriority.NORMAL,
        run_at: datetime | None = None,
    ) -> Job:
        """Insert a new queued job."""
        now = utcnow()
        job = Job(
            id=uuid4(),
            type=JobType(job_type).value,
            status=JobStatus.QUEUED.value,
            priority=JobPriority(priority).value,
            payload=payload or {},
            progress=0,
            retry_count=0,
            created_by=owner,
            run_at=_as_utc(run_at) if run_at else now,
            created_at=now,
            updated_at=now,
        )

        async with self._session_factory() as session:
            session.add(job)
            await session.commit()

        logger.info(
            "Job enqueued",
            job_id=str(job.id),
            type=job.type,
            priority=job.priority,
            created_by=str(owner),
        )
        return job

    async def get(self, job_id: UUID) -> Job | None:
        async with self._session_factory() as session:
            return await session.get(Job, job_id)

    async def get_many(self, job_ids: Iterable[UUID]) -> list[Job]:
        ids = list(job_ids)
        if not ids:
            return []
        async with self._session_factory() as session:
            result = await session.execute(select(Job).where(Job.id.in_(ids)))
            return list(result.scalars().all())

    async def list_jobs(self, filters: JobListFilters) -> tuple[list[Job], int]:
        """List jobs newest first, returning the page and the total match count."""
        query = select(Job)

        if filters.created_by:
            query = query.where(Job.created_by == filters.created_by)
        if filters.status:
            query = query.where(Job.status.in_([s.value for s in filters.status]))
        if filters.type:
            query = query.where(Job.type == filters.type.value)

        async with self._session_factory() as session:
            count_query = select(func.count()).select_from(query.subquery())
            total = (await session.execute(count_query)).scalar() or 0

            page = query.order_by(desc(Job.created_at)).offset(filters.offset).limit(
                filters.limit
            )
            jobs = (await session.execute(page)).scalars().all()

        return list(jobs), total

    async def list_active(self, owner: UUID | None = None) -> list[Job]:
        """Queued and running jobs, oldest first."""
        query = select(Job).where(Job.status.in_([s.value for s in ACTIVE_STATUSES]))
        if owner:
            query = query.where(Job.created_by == owner)

        async with self._session_factory() as session:
            result = await session.execute(query.order_by(Job.created_at))
            return list(result.scalars().all())

    async def list_changed_since(
        self, since: datetime, owner: UUID | None = None
    ) -> list[Job]:
        """Jobs in any status whose ``updated_at`` is at or after ``since``."""
        query = select(Job).where(Job.updated_at >= _as_utc(since))
        if owner:
            query = query.where(Job.created_by == owner)

        async with self._session_factory() as session:
            result = await session.execute(query.order_by(Job.updated_at))
            return list(result.scalars().all())

    async def next_candidate(self, now: datetime | None = None) -> Job | None:
        """Pick the queued job a worker should try to claim next.

        Advisory only: another worker may claim it first.
        """
        now = now or utcnow()
        query = (
            select(Job)
            .where(
                and_(
                    Job.status == JobStatus.QUEUED.value,
                    Job.run_at <= now,
                )
            )
            .order_by(priority_rank.desc(), Job.created_at.asc(), Job.id)
            .limit(1)
        )
        async with self._session_factory() as session:
            result = await session.execute(query)
            return result.scalar_one_or_none()

    async def conditional_transition(
        self,
        job_id: UUID,
        expected_status: JobStatus | str,
        patch: Mapping[str, Any],
        *,
        expected: Mapping[str, Any] | None = None,
    ) -> Job | None:
        """
        Apply ``patch`` iff the job is still in ``expected_status``.

        Args:
            job_id: Job to transition
            expected_status: Status the row must have for the update to apply
            patch: Column values to write; must include the new ``status``
            expected: Extra column equality predicates pinning the exact
                incarnation of the row (e.g. ``retry_count``, ``worker_id``)

        Returns:
            The updated job, or None when the row did not match (not applied)

        Raises:
            InvalidTransitionError: The edge is not in the state machine
        """
        current = JobStatus(expected_status)
        values = dict(patch)
        if "status" not in values:
            raise ValueError("conditional_transition requires a target status")

        target = JobStatus(values["status"])
        check_transition(current, target)
        values["status"] = target.value

        if target == JobStatus.RUNNING:
            if not values.get("worker_id"):
                raise InvalidTransitionError(current, target, "worker_id is required")
        else:
            values["worker_id"] = None
        values["updated_at"] = utcnow()

        stmt = update(Job).where(Job.id == job_id, Job.status == current.value)
        for column, value in (expected or {}).items():
            attr = getattr(Job, column)
            stmt = stmt.where(attr.is_(None) if value is None else attr == value)
        stmt = stmt.values(**values).execution_options(synchronize_session=False)

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            if result.rowcount == 0:
                await session.rollback()
                logger.debug(
                    "Conditional transition not applied",
                    job_id=str(job_id),
                    expected_status=current.value,
                    target_status=target.value,
                )
                return None

            job = await session.get(Job, job_id, populate_existing=True)
            await session.commit()

        return job

    async def update_progress(
        self,
        job_id: UUID,
        percent: int,
        partial_result: dict[str, Any] | None = None,
        worker_id: str | None = None,
    ) -> bool:
        """Record progress on a running job.

        Writes against a job that is no longer running (or no longer owned by
        ``worker_id``) match nothing and return False.
        """
        if isinstance(percent, bool) or not 0 <= percent <= 100:
            raise ValueError(f"Progress must be between 0 and 100, got {percent}")

        values: dict[str, Any] = {"progress": int(percent), "updated_at": utcnow()}
        if partial_result is not None:
            values["result"] = partial_result

        stmt = update(Job).where(
            Job.id == job_id, Job.status == JobStatus.RUNNING.value
        )
        if worker_id is not None:
            stmt = stmt.where(Job.worker_id == worker_id)

        async with self._session_factory() as session:
            result = await session.execute(
                stmt.values(**values).execution_options(synchronize_session=False)
            )
            await session.commit()

        return result.rowcount > 0

    async def find_stale(self, cutoff: datetime) -> list[Job]:
        """Running jobs that started before ``cutoff``."""
        query = (
            select(Job)
            .where(
                and_(
                    Job.status == JobStatus.RUNNING.value,
                    Job.started_at < cutoff,
                )
            )
            .order_by(Job.started_at)
        )
        async with self._session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def stats(self, owner: UUID | None = None) -> JobStatsResponse:
        """Get job statistics, optionally scoped to one owner."""
        base_filter = Job.created_by == owner if owner else True

        async with self._session_factory() as session:
            total_result = await session.execute(
                select(func.count(Job.id)).where(base_filter)
            )
            total_jobs = total_result.scalar() or 0

            status_result = await session.execute(
                select(Job.status, func.count(Job.id))
                .where(base_filter)
                .group_by(Job.status)
            )
            by_status = dict(status_result.all())

            type_result = await session.execute(
                select(Job.type, func.count(Job.id)).where(base_filter).group_by(Job.type)
            )
            by_type = dict(type_result.all())

            one_hour_ago = utcnow() - timedelta(hours=1)
            failed_recent_result = await session.execute(
                select(func.count(Job.id)).where(
                    and_(
                        base_filter,
                        Job.status == JobStatus.FAILED.value,
                        Job.updated_at >= one_hour_ago,
                    )
                )
            )
            failed_last_hour = failed_recent_result.scalar() or 0

        queue_depth = by_status.get(JobStatus.QUEUED.value, 0) + by_status.get(
            JobStatus.RUNNING.value, 0
        )

        return JobStatsResponse(
            total_jobs=total_jobs,
            by_status=by_status,
            by_type=by_type,
            queue_depth=queue_depth,
            failed_last_hour=failed_last_hour,
        )
