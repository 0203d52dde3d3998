"""Worker pool observability models."""

from datetime import datetime
from enum import Enum
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, Field

from backend.ingest.models.common import utcnow


class WorkerState(str, Enum):
    """Worker pool lifecycle state."""

    idle = "idle"
    running = "running"
    stopping = "stopping"
    stopped = "stopped"


class WorkerEvent(str, Enum):
    """Event kinds emitted by the worker pool."""

    started = "started"
    stopped = "stopped"
    job_started = "job_started"
    job_completed = "job_completed"
    job_failed = "job_failed"
    job_progress = "job_progress"
    error = "error"


class ProgressUpdate(BaseModel):
    """Progress reported by a running stage."""

    current: int
    total: int
    message: str | None = None
    details: dict[str, Any] | None = None


class WorkerEventData(BaseModel):
    """Message placed on the event channel."""

    event: WorkerEvent
    worker_name: str
    job_id: UUID | None = None
    error: str | None = None
    progress: ProgressUpdate | None = None
    duration_ms: float | None = None
    timestamp: datetime = Field(default_factory=utcnow)


class WorkerStats(BaseModel):
    """Aggregate counters for a worker pool."""

    name: str
    state: WorkerState
    concurrency: int
    started_at: datetime | None = None
    processed_jobs: int = 0
    succeeded_jobs: int = 0
    failed_jobs: int = 0
    active_jobs: int = 0
    average_duration_ms: float = 0.0
    error_rate: float = 0.0
    last_activity: datetime | None = None


class QueueStats(BaseModel):
    """Per-queue job counts."""

    name: str
    pending: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0


class SystemHealth(BaseModel):
    """Aggregate health of queues and workers."""

    status: Literal["healthy", "degraded", "unhealthy"]
    workers: list[WorkerStats]
    queues: list[QueueStats]
    timestamp: datetime = Field(default_factory=utcnow)
