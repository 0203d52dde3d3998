"""Ingest service - the job submission API used by HTTP routes and the CLI."""

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from uuid import UUID

from backend.ingest.db.repositories import DocumentRepository
from backend.ingest.docs.dedup import Deduplicator
from backend.ingest.errors import DocumentNotFoundError, JobNotFoundError
from backend.ingest.models import (
    Document,
    DocumentChunk,
    DocumentStatus,
    IngestStatus,
    JobStatus,
    ProcessingJob,
    SystemHealth,
)
from backend.ingest.pipeline.orchestrator import Orchestrator
from backend.ingest.pipeline.queue import JobQueue
from backend.ingest.pipeline.workers import WorkerPool

logger = logging.getLogger(__name__)

_CHUNKED_STATUSES = frozenset({IngestStatus.chunked, IngestStatus.embedding, IngestStatus.ready})


@dataclass
class SubmitResult:
    """Outcome of a document submission."""

    doc_id: UUID
    is_new: bool
    ingest_status: IngestStatus
    job_id: UUID | None = None


class IngestService:
    """Coordinates admission, status queries and pipeline control."""

    def __init__(
        self,
        documents: DocumentRepository,
        queue: JobQueue,
        orchestrator: Orchestrator,
        deduplicator: Deduplicator,
        pools: Sequence[WorkerPool] = (),
    ) -> None:
        self._documents = documents
        self._queue = queue
        self._orchestrator = orchestrator
        self._deduplicator = deduplicator
        self._pools = list(pools)

    def attach_pool(self, pool: WorkerPool) -> None:
        self._pools.append(pool)

    async def submit_document(
        self,
        user_id: UUID,
        content: bytes,
        filename: str,
        mime_type: str,
        *,
        priority: int | None = None,
    ) -> SubmitResult:
        """Admit an upload and start its pipeline when it is new.

        Raises:
            ValueError: Empty, oversized, or disallowed upload
            StorageError: Object write failed
        """
        admitted = await self._deduplicator.admit(user_id, content, filename, mime_type)

        job_id = None
        if admitted.needs_processing and admitted.restored:
            # A stage still running from before the delete carries on
            job = await self._orchestrator.resume_document(admitted.doc_id, priority=priority)
            for pool in self._pools:
                pool.withdraw_cancel(job.job_id)
            job_id = job.job_id
        elif admitted.needs_processing:
            job = await self._orchestrator.start_document(admitted.doc_id, priority=priority)
            job_id = job.job_id

        document = await self._get_owned(admitted.doc_id, user_id)
        return SubmitResult(
            doc_id=admitted.doc_id,
            is_new=admitted.is_new,
            ingest_status=document.ingest_status,
            job_id=job_id,
        )

    async def get_document_status(
        self, doc_id: UUID, user_id: UUID | None = None
    ) -> DocumentStatus:
        """Status, progress and error of a document.

        Raises:
            DocumentNotFoundError: Unknown, deleted, or owned by someone else
        """
        document = await self._get_owned(doc_id, user_id)

        active = await self._queue.active_jobs(doc_id)
        running = next((job for job in active if job.status == JobStatus.running), None)

        chunk_count = None
        if document.ingest_status in _CHUNKED_STATUSES:
            chunk_count = len(await self._documents.list_chunks(doc_id))

        return DocumentStatus(
            doc_id=doc_id,
            ingest_status=document.ingest_status,
            progress=self._orchestrator.progress(document, running),
            error_message=document.error_message,
            page_count=document.page_count,
            chunk_count=chunk_count,
        )

    async def list_chunks(self, doc_id: UUID, user_id: UUID | None = None) -> list[DocumentChunk]:
        await self._get_owned(doc_id, user_id)
        return await self._documents.list_chunks(doc_id)

    async def delete_document(self, doc_id: UUID, user_id: UUID | None = None) -> None:
        """Soft-delete a document and cancel its queued or running jobs."""
        await self._get_owned(doc_id, user_id)
        await self._documents.soft_delete_document(doc_id)

        for job in await self._queue.active_jobs(doc_id):
            await self._cancel(job)

        logger.info("Document %s deleted", doc_id)

    async def reprocess_document(
        self, doc_id: UUID, user_id: UUID | None = None, *, priority: int | None = None
    ) -> ProcessingJob:
        """Restart a settled document from parsing.

        Raises:
            DocumentNotFoundError: Unknown, deleted, or owned by someone else
            ConcurrencyConflict: A stage is in flight
        """
        await self._get_owned(doc_id, user_id)
        return await self._orchestrator.reprocess(doc_id, priority=priority)

    async def cancel_job(self, job_id: UUID, user_id: UUID | None = None) -> ProcessingJob | None:
        """Cancel a job; returns None when it had already finished.

        Raises:
            JobNotFoundError: Unknown job or owned by someone else
        """
        job = await self._queue.get(job_id)
        if job is None or (user_id is not None and job.user_id != user_id):
            raise JobNotFoundError(f"job {job_id} not found")
        return await self._cancel(job)

    async def system_health(self) -> SystemHealth:
        """Queue counts plus worker stats.

        healthy: every pool healthy; degraded: some; unhealthy: none.
        """
        queues = await self._queue.stats()
        workers = [pool.stats() for pool in self._pools]
        healthy = sum(1 for pool in self._pools if pool.is_healthy())

        if self._pools and healthy == len(self._pools):
            status = "healthy"
        elif healthy > 0:
            status = "degraded"
        else:
            status = "unhealthy"

        return SystemHealth(status=status, workers=workers, queues=queues)

    async def _cancel(self, job: ProcessingJob) -> ProcessingJob | None:
        updated = await self._queue.cancel(job.job_id)
        if updated is None:
            return None

        if updated.status == JobStatus.cancelled:
            # Retried jobs leave the document in the stage's running state
            await self._orchestrator.stage_cancelled(updated)
        else:
            for pool in self._pools:
                pool.request_cancel(job.job_id)
        return updated

    async def _get_owned(self, doc_id: UUID, user_id: UUID | None) -> Document:
        document = await self._documents.get_document(doc_id)
        if document is None or (user_id is not None and document.user_id != user_id):
            raise DocumentNotFoundError(f"document {doc_id} not found")
        return document
