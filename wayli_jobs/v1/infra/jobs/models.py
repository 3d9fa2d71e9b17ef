"""
Job and worker models for the background job queue.
"""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import JSON, CheckConstraint, Index, Integer, Text, Uuid, case
from sqlalchemy.orm import Mapped, mapped_column

from wayli_jobs.infra.database import Base, UTCDateTime, utcnow


class JobStatus(str, Enum):
    """Job status enumeration."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}
)
ACTIVE_STATUSES = frozenset({JobStatus.QUEUED, JobStatus.RUNNING})

# Every status change goes through one of these edges. running -> queued is
# only taken by the retry path.
ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.RUNNING, JobStatus.CANCELLED}),
    JobStatus.RUNNING: frozenset(
        {
            JobStatus.QUEUED,
            JobStatus.COMPLETED,
            JobStatus.FAILED,
            JobStatus.CANCELLED,
        }
    ),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


class JobPriority(str, Enum):
    """Job priority; compared by rank, never by label."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return PRIORITY_RANK[self.value]


PRIORITY_RANK = {
    JobPriority.LOW.value: 0,
    JobPriority.NORMAL.value: 1,
    JobPriority.HIGH.value: 2,
}


class JobType(str, Enum):
    """The closed set of task kinds processors are registered for."""

    DATA_IMPORT = "data_import"
    DATA_EXPORT = "data_export"
    POI_DETECTION = "poi_detection"
    TRANSPORT_MODE_DETECTION = "transport_mode_detection"
    REVERSE_GEOCODING_MISSING = "reverse_geocoding_missing"
    TRIP_GENERATION = "trip_generation"
    IMAGE_GENERATION = "image_generation"


class WorkerStatus(str, Enum):
    IDLE = "idle"
    BUSY = "busy"


class Job(Base):
    """
    A unit of deferred work.

    Status only changes through conditional updates keyed on the current
    status, so competing workers and the reaper never both win the same
    transition. ``worker_id`` is set exactly while the job is running.
    """

    __tablename__ = "jobs"

    # Core fields
    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    type: Mapped[str] = mapped_column(Text, nullable=False, comment="Job type")
    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default=JobStatus.QUEUED.value,
        comment="queued|running|completed|failed|cancelled",
    )
    priority: Mapped[str] = mapped_column(
        Text, nullable=False, default=JobPriority.NORMAL.value, comment="low|normal|high"
    )
    payload: Mapped[dict[str, Any]] = mapped_column(
        JSON, nullable=False, default=dict, comment="Task-specific parameters"
    )

    # Progress and outcome
    progress: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, comment="Percent complete, 0-100"
    )
    result: Mapped[dict[str, Any] | None] = mapped_column(
        JSON, nullable=True, comment="Partial result while running, final when completed"
    )
    error: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Terminal failure message"
    )
    last_error: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Most recent processing error"
    )
    retry_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, comment="Failed attempts re-queued so far"
    )

    # Ownership
    worker_id: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Owning worker while running"
    )
    created_by: Mapped[UUID] = mapped_column(
        Uuid, nullable=False, comment="Owner identity"
    )

    # Timestamps
    run_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, comment="Earliest time to claim"
    )
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('queued', 'running', 'completed', 'failed', 'cancelled')",
            name="jobs_status_check",
        ),
        CheckConstraint(
            "priority IN ('low', 'normal', 'high')", name="jobs_priority_check"
        ),
        CheckConstraint("progress BETWEEN 0 AND 100", name="jobs_progress_check"),
        CheckConstraint("retry_count >= 0", name="jobs_retry_count_check"),
        CheckConstraint(
            "(status = 'running') = (worker_id IS NOT NULL)",
            name="jobs_worker_running_check",
        ),
        Index("ix_jobs_status_run_at", "status", "run_at"),
        Index("ix_jobs_created_by_status", "created_by", "status"),
    )

    @property
    def job_status(self) -> JobStatus:
        return JobStatus(self.status)

    def is_active(self) -> bool:
        """Check if job is in an active state (queued, running)."""
        return self.job_status in ACTIVE_STATUSES

    def is_terminal(self) -> bool:
        return self.job_status.is_terminal

    def can_retry(self, max_retries: int) -> bool:
        """Check whether another failure would still be re-queued."""
        return self.retry_count < max_retries


# Selection order: highest rank first, then oldest.
priority_rank = case(PRIORITY_RANK, value=Job.priority, else_=0)


class Worker(Base):
    """A worker process slot and its liveness heartbeat."""

    __tablename__ = "workers"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    status: Mapped[str] = mapped_column(
        Text, nullable=False, default=WorkerStatus.IDLE.value, comment="idle|busy"
    )
    current_job: Mapped[UUID | None] = mapped_column(
        Uuid, nullable=True, comment="Job being executed; informational only"
    )
    last_heartbeat: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
    started_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )

    __table_args__ = (
        CheckConstraint("status IN ('idle', 'busy')", name="workers_status_check"),
        Index("ix_workers_last_heartbeat", "last_heartbeat"),
    )
