"""Worker pool - concurrent claim/execute/report slots over the job queue.

Per slot:
- Claim the most urgent job the pool's stages can run
- Move the document into the stage's running state (optimistic)
- Execute the stage with a hard timeout
- Persist output and complete, or fail into the retry path
A failing job never takes the pool down.
"""

import asyncio
import logging
import time
from collections.abc import Collection
from dataclasses import dataclass
from datetime import timedelta
from typing import Protocol
from uuid import UUID

from backend.ingest.config import Settings
from backend.ingest.errors import (
    ConcurrencyConflict,
    StageCancelledError,
    StageTimeoutError,
    TransientError,
    error_reason,
    is_retryable,
)
from backend.ingest.models import (
    JobStatus,
    JobType,
    ProcessingJob,
    ProgressUpdate,
    WorkerEvent,
    WorkerEventData,
    WorkerState,
    WorkerStats,
    utcnow,
)
from backend.ingest.pipeline.events import EventChannel
from backend.ingest.pipeline.orchestrator import Orchestrator
from backend.ingest.pipeline.queue import JobQueue
from backend.ingest.pipeline.stages import CancelToken, StageContext, StageOutput, StageRegistry

logger = logging.getLogger(__name__)

# Weight of the newest sample in the moving average of job duration
DURATION_SMOOTHING = 0.1


@dataclass
class WorkerPoolConfig:
    """Configuration for a worker pool."""

    name: str = "ingest-worker"
    concurrency: int = 3
    poll_interval_ms: int = 3000
    timeout_ms: int = 600_000
    shutdown_grace_ms: int = 30_000
    enabled: bool = True
    job_types: list[JobType] | None = None  # None: every type the registry serves
    stale_after_ms: int | None = None  # release jobs left running by a dead worker
    sweep_interval_ms: int | None = None  # None: every stale_after_ms
    max_error_rate: float = 0.1

    def __post_init__(self) -> None:
        if self.concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if self.poll_interval_ms <= 0:
            raise ValueError("poll_interval_ms must be positive")
        if self.timeout_ms <= 0:
            raise ValueError("timeout_ms must be positive")
        if self.shutdown_grace_ms < 0:
            raise ValueError("shutdown_grace_ms must not be negative")
        if self.sweep_interval_ms is not None and self.sweep_interval_ms <= 0:
            raise ValueError("sweep_interval_ms must be positive")
        if not 0.0 < self.max_error_rate <= 1.0:
            raise ValueError("max_error_rate must be in (0, 1]")

    @classmethod
    def from_settings(cls, settings: Settings) -> "WorkerPoolConfig":
        return cls(
            name=settings.worker_name,
            concurrency=settings.worker_concurrency,
            poll_interval_ms=settings.worker_poll_interval_ms,
            timeout_ms=settings.worker_timeout_ms,
            shutdown_grace_ms=settings.worker_shutdown_grace_ms,
            stale_after_ms=settings.worker_timeout_ms * 2,
            max_error_rate=settings.health_max_error_rate,
        )


class JobMetrics(Protocol):
    """Job execution metrics (implemented by PrometheusJobMetrics)."""

    def record_latency(self, job_type: str, outcome: str, latency_ms: float) -> None: ...

    def inc_error(self, job_type: str, reason: str) -> None: ...

    def inc_claimed(self, job_type: str) -> None: ...


class JobLogger(Protocol):
    """Structured per-attempt job logging (implemented by StructuredJobLogger)."""

    def log_attempt(
        self,
        job: ProcessingJob,
        worker_id: str,
        outcome: str,
        latency_ms: float,
        error_reason: str | None = None,
    ) -> None: ...


class NullJobMetrics:
    """Metrics recorder that discards everything."""

    def record_latency(self, job_type: str, outcome: str, latency_ms: float) -> None:
        return None

    def inc_error(self, job_type: str, reason: str) -> None:
        return None

    def inc_claimed(self, job_type: str) -> None:
        return None


class NullJobLogger:
    """Job logger that writes nothing."""

    def log_attempt(
        self,
        job: ProcessingJob,
        worker_id: str,
        outcome: str,
        latency_ms: float,
        error_reason: str | None = None,
    ) -> None:
        return None


class WorkerPool:
    """Fixed-size pool of asyncio worker slots."""

    def __init__(
        self,
        queue: JobQueue,
        orchestrator: Orchestrator,
        stages: StageRegistry,
        config: WorkerPoolConfig | None = None,
        *,
        metrics: JobMetrics | None = None,
        job_logger: JobLogger | None = None,
        events: EventChannel | None = None,
    ) -> None:
        """Initialize pool.

        Args:
            queue: Job queue to claim from
            orchestrator: Receives stage outcomes
            stages: Stage per job type
            config: Pool configuration (defaults to WorkerPoolConfig())
            metrics: Metrics recorder (optional, defaults to no-op)
            job_logger: Structured logger (optional, defaults to no-op)
            events: Event channel (optional)
        """
        self._queue = queue
        self._orchestrator = orchestrator
        self._stages = stages
        self._config = config or WorkerPoolConfig()
        self._metrics = metrics if metrics is not None else NullJobMetrics()
        self._job_logger = job_logger if job_logger is not None else NullJobLogger()
        self._events = events

        self._state = WorkerState.idle
        self._stop_event = asyncio.Event()
        self._tasks: list[asyncio.Task[None]] = []
        self._running_tokens: dict[UUID, CancelToken] = {}
        self._next_sweep_at = 0.0

        self._started_at = None
        self._last_activity = None
        self._processed = 0
        self._succeeded = 0
        self._failed = 0
        self._active = 0
        self._average_duration_ms = 0.0

    @property
    def name(self) -> str:
        return self._config.name

    @property
    def state(self) -> WorkerState:
        return self._state

    @property
    def job_types(self) -> list[JobType]:
        served = self._stages.job_types()
        if self._config.job_types is None:
            return served
        return [job_type for job_type in self._config.job_types if job_type in served]

    async def start(self) -> None:
        """Start all slots. No-op if already running or disabled."""
        if self._state == WorkerState.running:
            return
        if not self._config.enabled:
            logger.info("Worker pool %s is disabled", self.name)
            return

        self._stop_event = asyncio.Event()
        self._state = WorkerState.running
        self._started_at = utcnow()

        if self._config.stale_after_ms is not None:
            await self.release_stale_jobs()
            self._next_sweep_at = time.monotonic() + self._sweep_interval()

        self._tasks = [
            asyncio.create_task(self._slot_loop(f"{self.name}-{slot}"), name=f"{self.name}-{slot}")
            for slot in range(self._config.concurrency)
        ]

        logger.info("Worker pool %s started with %d slots", self.name, self._config.concurrency)
        self._emit(WorkerEvent.started)

    async def stop(self, grace_ms: int | None = None) -> None:
        """Stop claiming, let in-flight jobs finish, then force-cancel stragglers."""
        if self._state in (WorkerState.idle, WorkerState.stopped):
            self._state = WorkerState.stopped
            return

        self._state = WorkerState.stopping
        self._stop_event.set()

        grace = (self._config.shutdown_grace_ms if grace_ms is None else grace_ms) / 1000
        if self._tasks:
            _, pending = await asyncio.wait(self._tasks, timeout=grace)
            for task in pending:
                task.cancel()
            if pending:
                logger.warning("Force-cancelling %d busy slots of %s", len(pending), self.name)
                await asyncio.gather(*pending, return_exceptions=True)

        self._tasks = []
        self._state = WorkerState.stopped
        logger.info("Worker pool %s stopped", self.name)
        self._emit(WorkerEvent.stopped)

    def request_cancel(self, job_id: UUID) -> bool:
        """Flag a job running in this process; returns False if not running here."""
        token = self._running_tokens.get(job_id)
        if token is None:
            return False
        token.cancel()
        return True

    def withdraw_cancel(self, job_id: UUID) -> bool:
        """Undo request_cancel for a job running in this process."""
        token = self._running_tokens.get(job_id)
        if token is None:
            return False
        token.cancelled = False
        return True

    async def run_once(self, worker_id: str | None = None) -> bool:
        """Claim and process at most one job.

        Returns:
            True if a job was claimed
        """
        worker_id = worker_id or f"{self.name}-0"
        job = await self._queue.claim(worker_id, self.job_types)
        if job is None:
            return False

        await self._process(job, worker_id)
        return True

    async def run_until_idle(self, max_jobs: int = 1000) -> int:
        """Process claimable jobs one at a time until none is left.

        Returns:
            Number of jobs claimed
        """
        claimed = 0
        while claimed < max_jobs and await self.run_once():
            claimed += 1
        return claimed

    async def release_stale_jobs(self) -> list[ProcessingJob]:
        """Requeue jobs whose worker died mid-run, failing documents that run out of retries."""
        if self._config.stale_after_ms is None:
            return []

        released = await self._queue.release_stale(
            timedelta(milliseconds=self._config.stale_after_ms)
        )
        for job in released:
            if job.status == JobStatus.failed:
                await self._orchestrator.stage_failed(job)
        return released

    def stats(self) -> WorkerStats:
        """Aggregate counters for this pool."""
        return WorkerStats(
            name=self.name,
            state=self._state,
            concurrency=self._config.concurrency,
            started_at=self._started_at,
            processed_jobs=self._processed,
            succeeded_jobs=self._succeeded,
            failed_jobs=self._failed,
            active_jobs=self._active,
            average_duration_ms=round(self._average_duration_ms, 2),
            error_rate=self._error_rate(),
            last_activity=self._last_activity,
        )

    def is_healthy(self) -> bool:
        return (
            self._state == WorkerState.running
            and self._error_rate() < self._config.max_error_rate
            and self._active <= self._config.concurrency
        )

    async def _slot_loop(self, worker_id: str) -> None:
        poll_seconds = self._config.poll_interval_ms / 1000

        while not self._stop_event.is_set():
            await self._sweep_if_due()

            try:
                claimed = await self.run_once(worker_id)
            except Exception as e:
                # Queue or store unavailable; keep polling
                logger.exception("Worker slot %s error", worker_id)
                self._emit(WorkerEvent.error, error=str(e))
                claimed = False

            if claimed:
                continue

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=poll_seconds)
            except (TimeoutError, asyncio.TimeoutError):
                pass

    def _sweep_interval(self) -> float:
        interval_ms = self._config.sweep_interval_ms or self._config.stale_after_ms or 0
        return interval_ms / 1000

    async def _sweep_if_due(self) -> None:
        """Release stale jobs at most once per sweep interval across all slots."""
        if self._config.stale_after_ms is None or time.monotonic() < self._next_sweep_at:
            return
        self._next_sweep_at = time.monotonic() + self._sweep_interval()

        try:
            await self.release_stale_jobs()
        except Exception as e:
            logger.exception("Stale job sweep failed for %s", self.name)
            self._emit(WorkerEvent.error, error=str(e))

    async def _process(self, job: ProcessingJob, worker_id: str) -> None:
        start_time = time.monotonic()
        timeout_seconds = self._config.timeout_ms / 1000

        self._active += 1
        self._last_activity = utcnow()
        self._metrics.inc_claimed(job.job_type.value)
        self._emit(WorkerEvent.job_started, job_id=job.job_id)

        token = CancelToken(poll=lambda: self._queue.is_cancel_requested(job.job_id))
        self._running_tokens[job.job_id] = token

        try:
            try:
                output = await asyncio.wait_for(
                    self._run_stage(job, token), timeout=timeout_seconds
                )
            except StageCancelledError:
                await self._handle_cancelled(job, worker_id, start_time)
            except ConcurrencyConflict as e:
                await self._discard_stale(job, worker_id, start_time, str(e))
            except (TimeoutError, asyncio.TimeoutError):
                await self._handle_failure(
                    job, worker_id, start_time, StageTimeoutError(timeout_seconds)
                )
            except Exception as e:
                await self._handle_failure(job, worker_id, start_time, e)
            else:
                await self._queue.complete(job.job_id, output.summary())
                self._record_success(job, worker_id, start_time)
        except asyncio.CancelledError:
            # Pool stop ran out of grace; hand the job back to the retry path
            released = await self._queue.fail(job.job_id, "worker stopped", retryable=True)
            if released is not None and released.status == JobStatus.failed:
                await self._orchestrator.stage_failed(released)
            raise
        finally:
            self._running_tokens.pop(job.job_id, None)
            self._active -= 1
            self._last_activity = utcnow()

    async def _run_stage(self, job: ProcessingJob, token: CancelToken) -> StageOutput:
        """Move the document into the stage, execute it and persist the output."""
        document = await self._orchestrator.begin_stage(job)

        ctx = StageContext(
            job=job,
            document=document,
            cancel_token=token,
            report_progress=lambda update: self._report_progress(job.job_id, update),
        )

        stage = self._stages.get(job.job_type)
        output = await stage.execute(ctx)
        # Last safe point before anything is written
        await token.check()
        await self._orchestrator.stage_succeeded(job, output)
        return output

    async def _report_progress(self, job_id: UUID, update: ProgressUpdate) -> None:
        await self._queue.report_progress(job_id, update.current, update.total, update.message)
        self._emit(WorkerEvent.job_progress, job_id=job_id, progress=update)

    def _record_success(self, job: ProcessingJob, worker_id: str, start_time: float) -> None:
        elapsed_ms = (time.monotonic() - start_time) * 1000
        self._succeeded += 1
        self._record_duration(elapsed_ms)

        self._metrics.record_latency(job.job_type.value, "success", elapsed_ms)
        self._job_logger.log_attempt(job, worker_id, "success", elapsed_ms)
        self._emit(WorkerEvent.job_completed, job_id=job.job_id, duration_ms=elapsed_ms)

    async def _handle_failure(
        self, job: ProcessingJob, worker_id: str, start_time: float, exc: Exception
    ) -> None:
        elapsed_ms = (time.monotonic() - start_time) * 1000
        reason = error_reason(exc)
        outcome = "timeout" if isinstance(exc, StageTimeoutError) else "error"

        if isinstance(exc, StageTimeoutError) or is_retryable(exc):
            logger.warning("Job %s attempt failed: %s", job.job_id, exc)
        else:
            logger.error("Job %s failed permanently: %s", job.job_id, exc, exc_info=exc)

        updated = await self._queue.fail(job.job_id, exc, retryable=is_retryable(exc))

        self._failed += 1
        self._record_duration(elapsed_ms)
        self._metrics.record_latency(job.job_type.value, outcome, elapsed_ms)
        self._metrics.inc_error(job.job_type.value, reason)
        self._job_logger.log_attempt(job, worker_id, outcome, elapsed_ms, error_reason=reason)
        self._emit(WorkerEvent.job_failed, job_id=job.job_id, error=str(exc), duration_ms=elapsed_ms)

        if updated is not None and updated.status == JobStatus.failed:
            await self._orchestrator.stage_failed(updated)

    async def _handle_cancelled(self, job: ProcessingJob, worker_id: str, start_time: float) -> None:
        elapsed_ms = (time.monotonic() - start_time) * 1000

        cancelled = await self._queue.mark_cancelled(job.job_id, requested_only=True)
        if cancelled is None:
            current = await self._queue.get(job.job_id)
            if current is not None and current.status == JobStatus.running:
                # The request was withdrawn after the stage stopped; run it again
                await self._handle_failure(
                    job, worker_id, start_time, TransientError("cancellation withdrawn")
                )
                return

        await self._orchestrator.stage_cancelled(job)

        self._metrics.record_latency(job.job_type.value, "cancelled", elapsed_ms)
        self._job_logger.log_attempt(
            cancelled or job, worker_id, "cancelled", elapsed_ms, error_reason="cancelled"
        )

    async def _discard_stale(
        self, job: ProcessingJob, worker_id: str, start_time: float, detail: str
    ) -> None:
        """Drop a job whose document no longer expects it."""
        elapsed_ms = (time.monotonic() - start_time) * 1000
        logger.info("Discarding stale job %s: %s", job.job_id, detail)

        await self._queue.mark_cancelled(job.job_id)
        self._metrics.record_latency(job.job_type.value, "conflict", elapsed_ms)
        self._job_logger.log_attempt(job, worker_id, "conflict", elapsed_ms, error_reason="conflict")

    def _record_duration(self, elapsed_ms: float) -> None:
        self._processed += 1
        if self._processed == 1:
            self._average_duration_ms = elapsed_ms
        else:
            self._average_duration_ms = (
                self._average_duration_ms * (1 - DURATION_SMOOTHING)
                + elapsed_ms * DURATION_SMOOTHING
            )

    def _error_rate(self) -> float:
        if self._processed == 0:
            return 0.0
        return round(self._failed / self._processed, 4)

    def _emit(self, event: WorkerEvent, **fields) -> None:
        if self._events is None:
            return
        self._events.publish(WorkerEventData(event=event, worker_name=self.name, **fields))


def job_types_for(names: Collection[str]) -> list[JobType]:
    """Parse job type names, e.g. from a CLI flag."""
    return [JobType(name) for name in names]
