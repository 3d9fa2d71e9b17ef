"""
Job system Pydantic schemas.
"""

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from wayli_jobs.v1.infra.jobs.models import JobPriority, JobStatus, JobType


class JobCreate(BaseModel):
    """Schema for creating a new job."""

    type: JobType = Field(..., description="Job type")
    payload: dict[str, Any] = Field(default_factory=dict, description="Job parameters")
    priority: JobPriority = Field(default=JobPriority.NORMAL, description="Job priority")
    run_at: datetime | None = Field(
        default=None, description="Earliest time the job may be claimed"
    )


class JobResponse(BaseModel):
    """Schema for job API responses."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    type: str
    status: str
    priority: str
    payload: dict[str, Any]
    progress: int
    result: dict[str, Any] | None = None
    error: str | None = None
    last_error: str | None = None
    retry_count: int
    worker_id: str | None = None
    created_by: UUID
    run_at: datetime
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None


class JobListFilters(BaseModel):
    """Schema for job listing filters."""

    status: list[JobStatus] | None = Field(
        default=None, description="Filter by job status"
    )
    type: JobType | None = Field(default=None, description="Filter by job type")
    created_by: UUID | None = Field(default=None, description="Filter by owner")
    limit: int = Field(
        default=50, ge=1, le=1000, description="Maximum results to return"
    )
    offset: int = Field(default=0, ge=0, description="Results offset for pagination")


class JobListResponse(BaseModel):
    """Schema for job list API response."""

    jobs: list[JobResponse]
    total: int
    limit: int
    offset: int


class JobStatsResponse(BaseModel):
    """Schema for job statistics."""

    total_jobs: int
    by_status: dict[str, int]
    by_type: dict[str, int]
    queue_depth: int  # queued + running
    failed_last_hour: int


class JobEnqueueResponse(BaseModel):
    """Schema for job enqueue response."""

    job_id: UUID
    status: str


class WorkerResponse(BaseModel):
    """Schema for worker registry entries."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    status: str
    current_job: UUID | None = None
    last_heartbeat: datetime
    started_at: datetime


class JobUpdate(BaseModel):
    """Event pushed to subscribers when one of their jobs changes.

    ``event`` is ``update`` for every observed change and ``completed`` for
    the one change that moved the job into a terminal status.
    """

    event: Literal["update", "completed"]
    job_id: UUID
    type: str
    status: str
    progress: int = 0
    error: str | None = None
    result: dict[str, Any] | None = None
    updated_at: datetime | None = None
    reconciled: bool = Field(
        default=False, description="Produced by a post-connect snapshot, not a live change"
    )
