"""Unit tests for the job queue - ordering, retries, backoff and cancellation."""

import uuid
from datetime import datetime, timedelta

import pytest

from backend.ingest.db.inmemory import InMemoryJobRepository
from backend.ingest.errors import DuplicateJobError, JobNotFoundError
from backend.ingest.models import JobFilter, JobStatus, JobType
from backend.ingest.pipeline.queue import JobQueue, QueueConfig, compute_backoff_ms

ALL_TYPES = list(JobType)


class FakeClock:
    """Manually advanced clock."""

    def __init__(self) -> None:
        self.now = datetime(2024, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


def _job(queue: JobQueue, job_type: JobType = JobType.parse_markdown, priority: int | None = None):
    return queue.new_job(uuid.uuid4(), uuid.uuid4(), job_type, priority=priority)


class TestBackoff:
    """Test compute_backoff_ms."""

    def test_backoff_grows_exponentially(self) -> None:
        config = QueueConfig(backoff_base_ms=1000, jitter_min_ms=0, jitter_max_ms=0)

        delays = [compute_backoff_ms(n, config) for n in (1, 2, 3)]

        assert delays == [3000, 5000, 9000]

    def test_backoff_adds_jitter(self) -> None:
        config = QueueConfig(backoff_base_ms=1000, jitter_min_ms=0, jitter_max_ms=1000)

        delay = compute_backoff_ms(1, config, jitter_fn=lambda low, high: high)

        assert delay == 4000

    def test_backoff_is_capped(self) -> None:
        config = QueueConfig(backoff_base_ms=1000, backoff_max_ms=10_000, jitter_min_ms=0, jitter_max_ms=0)

        assert compute_backoff_ms(20, config) == 10_000


class TestClaim:
    """Test claim ordering."""

    @pytest.mark.asyncio
    async def test_claim_empty_queue_returns_none(self, queue: JobQueue) -> None:
        assert await queue.claim("w1", ALL_TYPES) is None

    @pytest.mark.asyncio
    async def test_lower_priority_value_is_claimed_first(self, queue: JobQueue) -> None:
        low = await queue.enqueue(_job(queue, priority=9))
        high = await queue.enqueue(_job(queue, priority=1))

        first = await queue.claim("w1", ALL_TYPES)
        second = await queue.claim("w1", ALL_TYPES)

        assert [first.job_id, second.job_id] == [high.job_id, low.job_id]

    @pytest.mark.asyncio
    async def test_same_priority_is_fifo(self, jobs: InMemoryJobRepository) -> None:
        clock = FakeClock()
        queue = JobQueue(jobs, clock=clock)
        enqueued = []
        for _ in range(3):
            enqueued.append(await queue.enqueue(_job(queue)))
            clock.advance(seconds=1)

        claimed = [await queue.claim("w1", ALL_TYPES) for _ in range(3)]

        assert [j.job_id for j in claimed] == [j.job_id for j in enqueued]

    @pytest.mark.asyncio
    async def test_claim_marks_job_running(self, queue: JobQueue) -> None:
        job = await queue.enqueue(_job(queue))

        claimed = await queue.claim("worker-7", ALL_TYPES)

        assert claimed.job_id == job.job_id
        assert claimed.status == JobStatus.running
        assert claimed.worker_id == "worker-7"
        assert claimed.started_at is not None
        assert await queue.claim("worker-8", ALL_TYPES) is None

    @pytest.mark.asyncio
    async def test_claim_filters_by_job_type(self, queue: JobQueue) -> None:
        await queue.enqueue(_job(queue, JobType.chunk))

        assert await queue.claim("w1", [JobType.parse_pdf]) is None
        assert (await queue.claim("w1", [JobType.chunk])).job_type == JobType.chunk

    @pytest.mark.asyncio
    async def test_duplicate_active_job_is_rejected(self, queue: JobQueue) -> None:
        job = _job(queue)
        await queue.enqueue(job)

        duplicate = queue.new_job(job.doc_id, job.user_id, job.job_type)
        with pytest.raises(DuplicateJobError):
            await queue.enqueue(duplicate)

    @pytest.mark.asyncio
    async def test_new_job_uses_queue_defaults(self, jobs: InMemoryJobRepository) -> None:
        queue = JobQueue(jobs, QueueConfig(max_retries=7, default_priority=2))

        job = _job(queue)

        assert job.max_retries == 7
        assert job.priority == 2
        assert job.status == JobStatus.queued


class TestCompleteAndFail:
    """Test completion and the retry path."""

    @pytest.mark.asyncio
    async def test_complete_is_idempotent(self, queue: JobQueue) -> None:
        await queue.enqueue(_job(queue))
        claimed = await queue.claim("w1", ALL_TYPES)

        done = await queue.complete(claimed.job_id, {"chunks": 3})
        again = await queue.complete(claimed.job_id)

        assert done.status == JobStatus.succeeded
        assert done.result == {"chunks": 3}
        assert done.finished_at is not None
        assert again is None
        assert (await queue.get(claimed.job_id)).status == JobStatus.succeeded

    @pytest.mark.asyncio
    async def test_retryable_failure_requeues_with_backoff(self, jobs: InMemoryJobRepository) -> None:
        """Test that a transient failure requeues the job after its backoff delay."""
        clock = FakeClock()
        queue = JobQueue(
            jobs, QueueConfig(backoff_base_ms=1000, jitter_min_ms=0, jitter_max_ms=0), clock=clock
        )
        await queue.enqueue(_job(queue))
        claimed = await queue.claim("w1", ALL_TYPES)

        failed = await queue.fail(claimed.job_id, "connection reset")

        assert failed.status == JobStatus.queued
        assert failed.retry_count == 1
        assert failed.last_error == "connection reset"
        assert failed.available_at == clock.now + timedelta(milliseconds=3000)
        assert failed.worker_id is None

        assert await queue.claim("w1", ALL_TYPES) is None
        clock.advance(seconds=3)
        retried = await queue.claim("w1", ALL_TYPES)
        assert retried.job_id == claimed.job_id
        assert retried.retry_count == 1

    @pytest.mark.asyncio
    async def test_retries_exhaust_into_failed(self, queue: JobQueue) -> None:
        job = await queue.enqueue(_job(queue))
        assert job.max_retries == 3

        statuses = []
        for _ in range(3):
            claimed = await queue.claim("w1", ALL_TYPES)
            statuses.append(await queue.fail(claimed.job_id, RuntimeError("boom")))

        assert [j.status for j in statuses] == [JobStatus.queued, JobStatus.queued, JobStatus.failed]
        assert statuses[-1].retry_count == 3
        assert statuses[-1].finished_at is not None
        assert await queue.claim("w1", ALL_TYPES) is None

    @pytest.mark.asyncio
    async def test_non_retryable_failure_is_terminal(self, queue: JobQueue) -> None:
        await queue.enqueue(_job(queue))
        claimed = await queue.claim("w1", ALL_TYPES)

        failed = await queue.fail(claimed.job_id, "corrupt PDF", retryable=False)

        assert failed.status == JobStatus.failed
        assert failed.retry_count == 0
        assert failed.last_error == "corrupt PDF"

    @pytest.mark.asyncio
    async def test_fail_of_job_not_running_is_ignored(self, queue: JobQueue) -> None:
        job = await queue.enqueue(_job(queue))

        assert await queue.fail(job.job_id, "late") is None
        assert await queue.fail(uuid.uuid4(), "unknown") is None

    @pytest.mark.asyncio
    async def test_exception_without_message_uses_type_name(self, queue: JobQueue) -> None:
        await queue.enqueue(_job(queue))
        claimed = await queue.claim("w1", ALL_TYPES)

        failed = await queue.fail(claimed.job_id, KeyError())

        assert failed.last_error == "KeyError"


class TestCancel:
    """Test cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_queued_job(self, queue: JobQueue) -> None:
        job = await queue.enqueue(_job(queue))

        cancelled = await queue.cancel(job.job_id)

        assert cancelled.status == JobStatus.cancelled
        assert await queue.claim("w1", ALL_TYPES) is None
        assert await queue.is_cancel_requested(job.job_id) is True

    @pytest.mark.asyncio
    async def test_cancel_running_job_sets_flag(self, queue: JobQueue) -> None:
        await queue.enqueue(_job(queue))
        claimed = await queue.claim("w1", ALL_TYPES)

        flagged = await queue.cancel(claimed.job_id)

        assert flagged.status == JobStatus.running
        assert flagged.cancel_requested is True
        assert await queue.is_cancel_requested(claimed.job_id) is True

        finished = await queue.mark_cancelled(claimed.job_id)
        assert finished.status == JobStatus.cancelled

    @pytest.mark.asyncio
    async def test_cancel_finished_job_returns_none(self, queue: JobQueue) -> None:
        await queue.enqueue(_job(queue))
        claimed = await queue.claim("w1", ALL_TYPES)
        await queue.complete(claimed.job_id)

        assert await queue.cancel(claimed.job_id) is None

    @pytest.mark.asyncio
    async def test_cancel_unknown_job_raises(self, queue: JobQueue) -> None:
        with pytest.raises(JobNotFoundError):
            await queue.cancel(uuid.uuid4())

    @pytest.mark.asyncio
    async def test_cancelled_job_frees_the_active_slot(self, queue: JobQueue) -> None:
        job = await queue.enqueue(_job(queue))
        await queue.cancel(job.job_id)

        replacement = await queue.enqueue(queue.new_job(job.doc_id, job.user_id, job.job_type))

        assert replacement.status == JobStatus.queued


class TestProgressAndStats:
    """Test progress reporting, listing, stale release and stats."""

    @pytest.mark.asyncio
    async def test_report_progress_on_running_job(self, queue: JobQueue) -> None:
        await queue.enqueue(_job(queue))
        claimed = await queue.claim("w1", ALL_TYPES)

        updated = await queue.report_progress(claimed.job_id, 40, 100, "halfway")

        assert updated.progress_percentage == 40.0
        assert updated.progress_message == "halfway"

    @pytest.mark.asyncio
    async def test_list_jobs_filters_by_document(self, queue: JobQueue) -> None:
        job = await queue.enqueue(_job(queue))
        await queue.enqueue(_job(queue))

        listed = await queue.list_jobs(JobFilter(doc_id=job.doc_id))
        active = await queue.active_jobs(job.doc_id)

        assert [j.job_id for j in listed] == [job.job_id]
        assert [j.job_id for j in active] == [job.job_id]

    @pytest.mark.asyncio
    async def test_release_stale_requeues_abandoned_jobs(self, jobs: InMemoryJobRepository) -> None:
        clock = FakeClock()
        queue = JobQueue(jobs, QueueConfig(backoff_base_ms=0, jitter_min_ms=0, jitter_max_ms=0), clock=clock)
        await queue.enqueue(_job(queue))
        claimed = await queue.claim("dead-worker", ALL_TYPES)

        assert await queue.release_stale(timedelta(minutes=5)) == []

        clock.advance(minutes=10)
        released = await queue.release_stale(timedelta(minutes=5))

        assert [j.job_id for j in released] == [claimed.job_id]
        assert released[0].status == JobStatus.queued
        assert "worker lost" in released[0].last_error

    @pytest.mark.asyncio
    async def test_stats_counts_per_job_type(self, queue: JobQueue) -> None:
        await queue.enqueue(_job(queue, JobType.chunk))
        await queue.enqueue(_job(queue, JobType.chunk))
        claimed = await queue.claim("w1", [JobType.chunk])
        await queue.complete(claimed.job_id)

        stats = {s.name: s for s in await queue.stats()}

        assert set(stats) == {t.value for t in JobType}
        assert stats["chunk"].pending == 1
        assert stats["chunk"].completed == 1
        assert stats["parse_pdf"].pending == 0


class TestWithdrawCancel:
    """Test withdrawing a cancel request."""

    @pytest.mark.asyncio
    async def test_withdrawn_request_keeps_job_running(self, queue: JobQueue) -> None:
        await queue.enqueue(_job(queue))
        claimed = await queue.claim("w1", ALL_TYPES)
        await queue.cancel(claimed.job_id)

        resumed = await queue.withdraw_cancel(claimed.job_id)

        assert resumed.status == JobStatus.running
        assert resumed.cancel_requested is False
        assert await queue.is_cancel_requested(claimed.job_id) is False
        assert await queue.mark_cancelled(claimed.job_id, requested_only=True) is None
        assert (await queue.get(claimed.job_id)).status == JobStatus.running

    @pytest.mark.asyncio
    async def test_withdraw_without_request_is_a_no_op(self, queue: JobQueue) -> None:
        await queue.enqueue(_job(queue))
        claimed = await queue.claim("w1", ALL_TYPES)

        assert await queue.withdraw_cancel(claimed.job_id) is None

    @pytest.mark.asyncio
    async def test_withdraw_after_cancellation_finished(self, queue: JobQueue) -> None:
        await queue.enqueue(_job(queue))
        claimed = await queue.claim("w1", ALL_TYPES)
        await queue.cancel(claimed.job_id)
        await queue.mark_cancelled(claimed.job_id, requested_only=True)

        assert await queue.withdraw_cancel(claimed.job_id) is None
        assert (await queue.get(claimed.job_id)).status == JobStatus.cancelled
