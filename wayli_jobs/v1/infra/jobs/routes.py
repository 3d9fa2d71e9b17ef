"""
Job API endpoints: enqueue, query, cancel, live updates and worker status.
"""

import asyncio
import json
from collections.abc import AsyncIterator
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Query
from fastapi.responses import StreamingResponse

from wayli_jobs.config.logging import get_logger
from wayli_jobs.config.settings import Settings, SettingsDep
from wayli_jobs.v1.core.exceptions import create_success_response
from wayli_jobs.v1.core.security import Principal, PrincipalDep
from wayli_jobs.v1.infra.jobs.dependencies import (
    ChangeFeedDep,
    JobServiceDep,
    WorkerRegistryDep,
)
from wayli_jobs.v1.infra.jobs.models import JobStatus, JobType
from wayli_jobs.v1.infra.jobs.realtime import (
    ChangeFeed,
    JobSubscription,
    SubscriptionClosedError,
)
from wayli_jobs.v1.infra.jobs.schemas import (
    JobCreate,
    JobListFilters,
    JobListResponse,
    JobResponse,
    WorkerResponse,
)
from wayli_jobs.v1.infra.jobs.service import JobService
from wayli_jobs.v1.infra.jobs.workers import WorkerRegistry

logger = get_logger(__name__)
router = APIRouter(prefix="/jobs", tags=["jobs"])
workers_router = APIRouter(prefix="/workers", tags=["workers"])


@router.post("", response_model=dict)
async def enqueue_job(
    job_request: JobCreate,
    principal: Principal = PrincipalDep,
    service: JobService = JobServiceDep,
) -> dict[str, Any]:
    """Enqueue a new background job."""
    result = await service.enqueue(job_request, principal)

    logger.info(
        "Job enqueued via API",
        job_id=str(result.job_id),
        type=job_request.type.value,
        user_id=principal.user_id,
    )

    return create_success_response(data=result.model_dump(mode="json"))


@router.get("", response_model=dict)
async def list_jobs(
    status: list[JobStatus] | None = Query(
        default=None, description="Filter by status"
    ),
    type: JobType | None = Query(default=None, description="Filter by job type"),
    limit: int = Query(default=50, ge=1, le=1000, description="Maximum results"),
    offset: int = Query(default=0, ge=0, description="Results offset"),
    principal: Principal = PrincipalDep,
    service: JobService = JobServiceDep,
) -> dict[str, Any]:
    """List jobs with filtering and pagination, newest first."""
    filters = JobListFilters(status=status, type=type, limit=limit, offset=offset)
    jobs, total = await service.list_jobs(filters, principal)

    response_data = JobListResponse(
        jobs=[JobResponse.model_validate(job) for job in jobs],
        total=total,
        limit=limit,
        offset=offset,
    )

    return create_success_response(data=response_data.model_dump(mode="json"))


@router.get("/stats/overview", response_model=dict)
async def get_job_stats(
    principal: Principal = PrincipalDep,
    service: JobService = JobServiceDep,
) -> dict[str, Any]:
    """Get job statistics for the caller (all jobs for admins)."""
    stats = await service.stats(principal)
    return create_success_response(data=stats.model_dump())


@router.get("/stream")
async def stream_jobs(
    principal: Principal = PrincipalDep,
    service: JobService = JobServiceDep,
    feed: ChangeFeed = ChangeFeedDep,
    settings: Settings = SettingsDep,
) -> StreamingResponse:
    """Server-sent events with live updates for the caller's jobs."""
    subscription = service.subscribe(principal.user_uuid, feed)
    return StreamingResponse(
        job_event_stream(subscription, settings.realtime_stream_heartbeat_s),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.get("/{job_id}", response_model=dict)
async def get_job(
    job_id: UUID,
    principal: Principal = PrincipalDep,
    service: JobService = JobServiceDep,
) -> dict[str, Any]:
    """Get a specific job by ID."""
    job = await service.get(job_id, principal)
    return create_success_response(
        data=JobResponse.model_validate(job).model_dump(mode="json")
    )


@router.post("/{job_id}/cancel", response_model=dict)
async def cancel_job(
    job_id: UUID,
    principal: Principal = PrincipalDep,
    service: JobService = JobServiceDep,
) -> dict[str, Any]:
    """Cancel a queued or running job."""
    job = await service.cancel(job_id, principal)
    return create_success_response(
        data=JobResponse.model_validate(job).model_dump(mode="json")
    )


@workers_router.get("", response_model=dict)
async def list_active_workers(
    window_s: int | None = Query(
        default=None, ge=1, description="Liveness window in seconds"
    ),
    workers: WorkerRegistry = WorkerRegistryDep,
) -> dict[str, Any]:
    """List workers with a recent heartbeat."""
    active = await workers.list_active(window_s)
    return create_success_response(
        data=[WorkerResponse.model_validate(w).model_dump(mode="json") for w in active]
    )


def _sse(event: str, data: dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


async def job_event_stream(
    subscription: JobSubscription, heartbeat_s: float
) -> AsyncIterator[str]:
    """Render a subscription as SSE frames with periodic heartbeats."""
    queue: asyncio.Queue = asyncio.Queue()

    async def pump() -> None:
        try:
            async for update in subscription:
                await queue.put(update)
            await queue.put(None)
        except SubscriptionClosedError as exc:
            await queue.put(exc)
        except Exception as exc:
            logger.exception("Job event stream failed", owner=str(subscription.owner))
            await queue.put(exc)

    task = asyncio.create_task(pump())
    try:
        yield _sse("connected", {"timestamp": datetime.now(UTC).isoformat()})
        while True:
            try:
                item = await asyncio.wait_for(queue.get(), timeout=heartbeat_s)
            except TimeoutError:
                yield _sse("heartbeat", {"timestamp": datetime.now(UTC).isoformat()})
                continue

            if item is None:
                break
            if isinstance(item, Exception):
                yield _sse("error", {"message": str(item) or "Stream failed"})
                break
            yield _sse(item.event, item.model_dump(mode="json"))
    finally:
        subscription.close()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
