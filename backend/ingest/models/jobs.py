"""Processing job models."""

from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from backend.ingest.models.common import (
    TERMINAL_JOB_STATUSES,
    JobStatus,
    JobType,
    utcnow,
)


class ProcessingJob(BaseModel):
    """Unit of queued work for one pipeline stage of one document."""

    job_id: UUID = Field(default_factory=uuid4)
    doc_id: UUID
    user_id: UUID
    job_type: JobType
    status: JobStatus = JobStatus.queued
    priority: int = 5  # lower value is claimed first
    retry_count: int = Field(0, ge=0)
    max_retries: int = Field(3, ge=0)
    created_at: datetime = Field(default_factory=utcnow)
    available_at: datetime | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    last_error: str | None = None
    worker_id: str | None = None
    cancel_requested: bool = False
    progress_current: int = 0
    progress_total: int = 100
    progress_message: str | None = None
    result: dict[str, Any] | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES

    @property
    def progress_percentage(self) -> float:
        if self.progress_total <= 0:
            return 0.0
        return round(self.progress_current / self.progress_total * 100, 2)


class JobFilter(BaseModel):
    """Filter for listing jobs."""

    doc_id: UUID | None = None
    user_id: UUID | None = None
    job_types: list[JobType] | None = None
    statuses: list[JobStatus] | None = None
    limit: int = Field(100, ge=1)
