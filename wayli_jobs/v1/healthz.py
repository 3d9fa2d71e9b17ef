from datetime import UTC, datetime, timedelta

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import func, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from wayli_jobs.config.logging import get_logger
from wayli_jobs.config.settings import Settings, SettingsDep
from wayli_jobs.infra.database import get_session
from wayli_jobs.v1.core.exceptions import create_success_response
from wayli_jobs.v1.infra.jobs.models import Job, JobStatus, Worker

logger = get_logger(__name__)
router = APIRouter()


class DatabaseHealth(BaseModel):
    """Database health status."""

    connected: bool
    response_time_ms: float | None = None
    error: str | None = None


class WorkerHealth(BaseModel):
    """Worker fleet and queue status."""

    active_workers: int
    busy_workers: int = 0
    last_heartbeat_age_seconds: int | None = None
    stale_jobs_count: int = 0
    queue_depth: int = 0


class HealthResponse(BaseModel):
    """Health response with database and worker status."""

    ok: bool
    version: str
    environment: str
    timestamp: str
    database: DatabaseHealth
    worker: WorkerHealth | None = None


@router.get("/healthz", response_model=dict)
async def health_check(
    settings: Settings = SettingsDep, session: AsyncSession = Depends(get_session)
):
    """Health check endpoint with database and worker status."""

    timestamp = datetime.now(UTC).isoformat()

    db_health = await _check_database_health(session)

    # A failed worker check doesn't fail overall health
    worker_health = None
    if db_health.connected:
        try:
            worker_health = await _check_worker_health(session, settings)
        except SQLAlchemyError:
            logger.exception("Worker health check failed")

    health = HealthResponse(
        ok=db_health.connected,
        version=settings.version,
        environment=settings.environment,
        timestamp=timestamp,
        database=db_health,
        worker=worker_health,
    )

    return create_success_response(data=health.model_dump())


async def _check_database_health(session: AsyncSession) -> DatabaseHealth:
    """Check database connectivity and response time."""
    start_time = datetime.now(UTC)

    try:
        await session.execute(text("SELECT 1"))

        end_time = datetime.now(UTC)
        response_time_ms = (end_time - start_time).total_seconds() * 1000

        return DatabaseHealth(
            connected=True, response_time_ms=round(response_time_ms, 2)
        )

    except (SQLAlchemyError, OSError) as e:
        return DatabaseHealth(connected=False, error=str(e))


async def _check_worker_health(
    session: AsyncSession, settings: Settings
) -> WorkerHealth:
    """Check worker liveness and queue status."""
    now = datetime.now(UTC)
    liveness_cutoff = now - timedelta(seconds=settings.worker_liveness_window_s)

    active_result = await session.execute(
        select(Worker.status, func.count(Worker.id))
        .where(Worker.last_heartbeat >= liveness_cutoff)
        .group_by(Worker.status)
    )
    by_status = dict(active_result.all())

    last_heartbeat = (
        await session.execute(select(func.max(Worker.last_heartbeat)))
    ).scalar()

    last_heartbeat_age_seconds = None
    if last_heartbeat:
        if last_heartbeat.tzinfo is None:
            last_heartbeat = last_heartbeat.replace(tzinfo=UTC)
        last_heartbeat_age_seconds = int((now - last_heartbeat).total_seconds())

    stale_cutoff = now - timedelta(seconds=settings.job_timeout_s)
    stale_jobs_count = (
        await session.execute(
            select(func.count(Job.id)).where(
                Job.status == JobStatus.RUNNING.value, Job.started_at < stale_cutoff
            )
        )
    ).scalar() or 0

    queue_depth = (
        await session.execute(
            select(func.count(Job.id)).where(
                Job.status.in_([JobStatus.QUEUED.value, JobStatus.RUNNING.value])
            )
        )
    ).scalar() or 0

    return WorkerHealth(
        active_workers=sum(by_status.values()),
        busy_workers=by_status.get("busy", 0),
        last_heartbeat_age_seconds=last_heartbeat_age_seconds,
        stale_jobs_count=stale_jobs_count,
        queue_depth=queue_depth,
    )
