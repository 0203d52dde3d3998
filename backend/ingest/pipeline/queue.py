"""Durable job queue - ordering, retry and backoff policy over a JobRepository."""

import logging
import random
from collections.abc import Callable, Collection
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from backend.ingest.config import Settings
from backend.ingest.db.repositories import JobRepository
from backend.ingest.errors import JobNotFoundError
from backend.ingest.models import (
    JobFilter,
    JobStatus,
    JobType,
    ProcessingJob,
    QueueStats,
    utcnow,
)

logger = logging.getLogger(__name__)


@dataclass
class QueueConfig:
    """Retry and scheduling configuration."""

    max_retries: int = 3
    default_priority: int = 5
    backoff_base_ms: int = 1000
    backoff_max_ms: int = 300_000
    jitter_min_ms: int = 0
    jitter_max_ms: int = 1000

    @classmethod
    def from_settings(cls, settings: Settings) -> "QueueConfig":
        return cls(
            max_retries=settings.job_max_retries,
            default_priority=settings.job_default_priority,
            backoff_base_ms=settings.retry_backoff_base_ms,
            backoff_max_ms=settings.retry_backoff_max_ms,
            jitter_min_ms=settings.retry_jitter_min_ms,
            jitter_max_ms=settings.retry_jitter_max_ms,
        )


def compute_backoff_ms(
    retry_count: int,
    config: QueueConfig,
    jitter_fn: Callable[[float, float], float] = random.uniform,
) -> float:
    """Exponential backoff with jitter, capped at ``backoff_max_ms``."""
    exponential = config.backoff_base_ms * (1 + 2**retry_count)
    jitter = jitter_fn(config.jitter_min_ms, config.jitter_max_ms)
    return min(exponential + jitter, config.backoff_max_ms)


def _error_text(error: str | BaseException) -> str:
    if isinstance(error, BaseException):
        return str(error) or type(error).__name__
    return error


class JobQueue:
    """Job queue with priority ordering, retries and cooperative cancellation."""

    def __init__(
        self,
        repository: JobRepository,
        config: QueueConfig | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
        jitter_fn: Callable[[float, float], float] = random.uniform,
    ) -> None:
        """Initialize queue.

        Args:
            repository: Job repository providing atomic primitives
            config: Retry configuration (defaults to QueueConfig())
            clock: Injectable clock returning naive UTC
            jitter_fn: Injectable jitter source (default: random.uniform)
        """
        self._repository = repository
        self._config = config or QueueConfig()
        self._clock = clock
        self._jitter = jitter_fn

    @property
    def config(self) -> QueueConfig:
        return self._config

    def new_job(
        self,
        doc_id: UUID,
        user_id: UUID,
        job_type: JobType,
        *,
        priority: int | None = None,
    ) -> ProcessingJob:
        """Build a queued job carrying this queue's retry defaults."""
        return ProcessingJob(
            doc_id=doc_id,
            user_id=user_id,
            job_type=job_type,
            priority=self._config.default_priority if priority is None else priority,
            max_retries=self._config.max_retries,
            created_at=self._clock(),
        )

    async def enqueue(self, job: ProcessingJob) -> ProcessingJob:
        """Add a job to the queue.

        Raises:
            DuplicateJobError: A queued or running job exists for (doc_id, job_type)
        """
        queued = await self._repository.insert_job(
            job.model_copy(update={"status": JobStatus.queued})
        )
        logger.debug(
            "Job enqueued",
            extra={
                "structured": {
                    "job_id": str(queued.job_id),
                    "doc_id": str(queued.doc_id),
                    "job_type": queued.job_type.value,
                    "priority": queued.priority,
                }
            },
        )
        return queued

    async def claim(
        self, worker_id: str, job_types: Collection[JobType]
    ) -> ProcessingJob | None:
        """Take the most urgent eligible job, marking it running.

        Returns None without side effects when nothing is claimable.
        """
        return await self._repository.claim_next(worker_id, job_types, self._clock())

    async def get(self, job_id: UUID) -> ProcessingJob | None:
        return await self._repository.get_job(job_id)

    async def complete(
        self, job_id: UUID, result: dict[str, Any] | None = None
    ) -> ProcessingJob | None:
        """Mark a running job succeeded.

        Returns:
            The succeeded job, or None if it was not running (repeat calls)
        """
        return await self._repository.update_job_if(
            job_id,
            [JobStatus.running],
            status=JobStatus.succeeded,
            finished_at=self._clock(),
            result=result,
            last_error=None,
        )

    async def fail(
        self, job_id: UUID, error: str | BaseException, *, retryable: bool = True
    ) -> ProcessingJob | None:
        """Record a failed attempt.

        A retryable failure increments ``retry_count`` and requeues the job
        after a backoff delay while ``retry_count < max_retries``; otherwise
        the job becomes terminal ``failed``. Non-retryable failures are
        terminal immediately and leave ``retry_count`` unchanged.

        Returns:
            The updated job (queued or failed), or None if it was not running
        """
        job = await self._repository.get_job(job_id)
        if job is None or job.status != JobStatus.running:
            return None

        message = _error_text(error)
        now = self._clock()

        if retryable:
            retry_count = job.retry_count + 1
            if retry_count < job.max_retries:
                delay_ms = compute_backoff_ms(retry_count, self._config, self._jitter)
                return await self._repository.update_job_if(
                    job_id,
                    [JobStatus.running],
                    status=JobStatus.queued,
                    retry_count=retry_count,
                    last_error=message,
                    available_at=now + timedelta(milliseconds=delay_ms),
                    started_at=None,
                    worker_id=None,
                )
        else:
            retry_count = job.retry_count

        return await self._repository.update_job_if(
            job_id,
            [JobStatus.running],
            status=JobStatus.failed,
            retry_count=retry_count,
            last_error=message,
            finished_at=now,
        )

    async def cancel(self, job_id: UUID) -> ProcessingJob | None:
        """Cancel a job.

        Queued jobs move straight to ``cancelled``; running jobs get
        ``cancel_requested`` and stop at their next safe point.

        Returns:
            Updated job, or None if the job was already terminal

        Raises:
            JobNotFoundError: Unknown job id
        """
        job = await self._repository.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"job {job_id} not found")

        cancelled = await self._repository.update_job_if(
            job_id, [JobStatus.queued], status=JobStatus.cancelled, finished_at=self._clock()
        )
        if cancelled is not None:
            return cancelled

        return await self._repository.update_job_if(
            job_id, [JobStatus.running], cancel_requested=True
        )

    async def mark_cancelled(
        self, job_id: UUID, *, requested_only: bool = False
    ) -> ProcessingJob | None:
        """Finish a running job that stopped at a cancellation point.

        With ``requested_only`` the job must still carry ``cancel_requested``,
        so a withdrawn request keeps it running.
        """
        return await self._repository.update_job_if(
            job_id,
            [JobStatus.running],
            when_cancel_requested=True if requested_only else None,
            status=JobStatus.cancelled,
            finished_at=self._clock(),
        )

    async def withdraw_cancel(self, job_id: UUID) -> ProcessingJob | None:
        """Clear a pending cancel request.

        Returns:
            Updated job, or None if the job was not active with a pending request
        """
        return await self._repository.update_job_if(
            job_id,
            [JobStatus.queued, JobStatus.running],
            when_cancel_requested=True,
            cancel_requested=False,
        )

    async def is_cancel_requested(self, job_id: UUID) -> bool:
        job = await self._repository.get_job(job_id)
        return job is None or job.cancel_requested or job.status == JobStatus.cancelled

    async def report_progress(
        self, job_id: UUID, current: int, total: int, message: str | None = None
    ) -> ProcessingJob | None:
        """Record progress of a running job."""
        return await self._repository.update_job_if(
            job_id,
            [JobStatus.running],
            progress_current=current,
            progress_total=total,
            progress_message=message,
        )

    async def list_jobs(self, job_filter: JobFilter | None = None) -> list[ProcessingJob]:
        """List jobs matching the filter, oldest first."""
        return await self._repository.list_jobs(job_filter or JobFilter())

    async def active_jobs(self, doc_id: UUID) -> list[ProcessingJob]:
        return await self._repository.list_jobs(
            JobFilter(doc_id=doc_id, statuses=[JobStatus.queued, JobStatus.running])
        )

    async def release_stale(self, older_than: timedelta) -> list[ProcessingJob]:
        """Fail running jobs whose worker vanished, so they follow the retry path.

        A job is stale when it has been running longer than ``older_than``.
        """
        cutoff = self._clock() - older_than
        running = await self._repository.list_jobs(
            JobFilter(statuses=[JobStatus.running], limit=1000)
        )

        released: list[ProcessingJob] = []
        for job in running:
            if job.started_at is None or job.started_at > cutoff:
                continue
            updated = await self.fail(job.job_id, f"worker lost: running since {job.started_at}")
            if updated is not None:
                released.append(updated)

        if released:
            logger.warning("Released %d stale jobs", len(released))
        return released

    async def stats(self) -> list[QueueStats]:
        """Per job-type counts of queued, running and finished jobs."""
        counts = await self._repository.count_by_status()

        return [
            QueueStats(
                name=job_type.value,
                pending=counts.get((job_type, JobStatus.queued), 0),
                active=counts.get((job_type, JobStatus.running), 0),
                completed=counts.get((job_type, JobStatus.succeeded), 0),
                failed=counts.get((job_type, JobStatus.failed), 0),
                cancelled=counts.get((job_type, JobStatus.cancelled), 0),
            )
            for job_type in JobType
        ]
