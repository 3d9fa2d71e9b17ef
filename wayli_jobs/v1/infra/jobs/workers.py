"""
Worker registry: liveness heartbeats for observability.

The registry never gates claiming; correctness comes from conditional job
transitions and the stale-job reaper.
"""

from datetime import timedelta
from uuid import UUID

from sqlalchemy import desc, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from wayli_jobs.config.logging import get_logger
from wayli_jobs.config.settings import Settings
from wayli_jobs.infra.database import utcnow
from wayli_jobs.v1.infra.jobs.models import Worker, WorkerStatus

logger = get_logger(__name__)


class WorkerRegistry:
    """Upserts and queries the ``workers`` table."""

    def __init__(
        self, session_factory: async_sessionmaker[AsyncSession], settings: Settings
    ):
        self._session_factory = session_factory
        self.settings = settings

    async def register(self, worker_id: str) -> Worker:
        """Record a (re)started worker as idle."""
        now = utcnow()
        async with self._session_factory() as session:
            worker = await session.merge(
                Worker(
                    id=worker_id,
                    status=WorkerStatus.IDLE.value,
                    current_job=None,
                    last_heartbeat=now,
                    started_at=now,
                    updated_at=now,
                )
            )
            await session.commit()

        logger.info("Worker registered", worker_id=worker_id)
        return worker

    async def heartbeat(
        self,
        worker_id: str,
        status: WorkerStatus | str,
        current_job_id: UUID | None = None,
    ) -> None:
        """Refresh liveness, status and current job; recreates a missing row."""
        now = utcnow()
        status = WorkerStatus(status)
        async with self._session_factory() as session:
            worker = await session.get(Worker, worker_id)
            if worker is None:
                worker = Worker(id=worker_id, started_at=now)
                session.add(worker)
            worker.status = status.value
            worker.current_job = current_job_id
            worker.last_heartbeat = now
            worker.updated_at = now
            await session.commit()

    async def get(self, worker_id: str) -> Worker | None:
        async with self._session_factory() as session:
            return await session.get(Worker, worker_id)

    async def list_active(self, window_s: int | None = None) -> list[Worker]:
        """Workers whose last heartbeat falls inside the liveness window."""
        window = window_s if window_s is not None else self.settings.worker_liveness_window_s
        cutoff = utcnow() - timedelta(seconds=window)
        async with self._session_factory() as session:
            result = await session.execute(
                select(Worker)
                .where(Worker.last_heartbeat >= cutoff)
                .order_by(desc(Worker.last_heartbeat))
            )
            return list(result.scalars().all())
