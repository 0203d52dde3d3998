"""Repository protocol interfaces for the metadata store."""

from collections.abc import Collection, Mapping, Sequence
from datetime import datetime
from typing import Any, Protocol
from uuid import UUID

from backend.ingest.models import (
    Document,
    DocumentChunk,
    DocumentSection,
    EmbeddingStatus,
    IngestStatus,
    JobFilter,
    JobStatus,
    JobType,
    ProcessingJob,
)


class DocumentRepository(Protocol):
    """Repository for documents and the sections/chunks they own."""

    async def create_document(self, document: Document) -> Document:
        """Insert a new document row.

        Raises:
            DuplicateDocumentError: (user_id, content_hash) already exists
        """
        ...

    async def get_document(self, doc_id: UUID, *, include_deleted: bool = False) -> Document | None:
        """Get document by ID.

        Args:
            doc_id: Document ID
            include_deleted: Return tombstoned documents too

        Returns:
            Document or None if not found
        """
        ...

    async def find_by_user_and_hash(self, user_id: UUID, content_hash: str) -> Document | None:
        """Find a document (deleted or not) by owner and fingerprint."""
        ...

    async def delete_document(self, doc_id: UUID) -> None:
        """Physically remove a document and everything it owns."""
        ...

    async def soft_delete_document(self, doc_id: UUID) -> bool:
        """Tombstone a document. Returns False if it was missing or already deleted."""
        ...

    async def restore_document(self, doc_id: UUID) -> Document | None:
        """Clear the tombstone of a soft-deleted document."""
        ...

    async def transition_document(
        self,
        doc_id: UUID,
        expected: Collection[IngestStatus],
        new_status: IngestStatus,
        *,
        error_message: str | None = None,
        **fields: Any,
    ) -> Document:
        """Move a document to ``new_status`` if its stored status is in ``expected``.

        Raises:
            ConcurrencyConflict: Stored status does not match, or the
                document is missing or deleted
        """
        ...

    async def save_sections(
        self,
        doc_id: UUID,
        sections: Sequence[DocumentSection],
        *,
        expected: Collection[IngestStatus],
        new_status: IngestStatus,
        text_length: int,
        page_count: int | None,
        language: str | None,
    ) -> Document:
        """Replace the document's sections and transition it in one transaction.

        Existing chunks are dropped because they reference the old sections.
        """
        ...

    async def save_chunks(
        self,
        doc_id: UUID,
        chunks: Sequence[DocumentChunk],
        *,
        expected: Collection[IngestStatus],
        new_status: IngestStatus,
    ) -> Document:
        """Replace the document's chunks and transition it in one transaction."""
        ...

    async def set_embedding_status(
        self,
        doc_id: UUID,
        statuses: Mapping[UUID, EmbeddingStatus],
        *,
        expected: Collection[IngestStatus],
        new_status: IngestStatus,
    ) -> Document:
        """Record per-chunk embedding outcomes and transition the document."""
        ...

    async def list_sections(self, doc_id: UUID) -> list[DocumentSection]:
        """List sections ordered by start_char, then level."""
        ...

    async def list_chunks(self, doc_id: UUID) -> list[DocumentChunk]:
        """List chunks ordered by chunk_index."""
        ...


class JobRepository(Protocol):
    """Repository for processing jobs.

    Holds only atomic primitives; retry and ordering policy lives in JobQueue.
    """

    async def insert_job(self, job: ProcessingJob) -> ProcessingJob:
        """Insert a queued job.

        Raises:
            DuplicateJobError: An active job exists for (doc_id, job_type)
        """
        ...

    async def get_job(self, job_id: UUID) -> ProcessingJob | None:
        """Get job by ID."""
        ...

    async def find_active_job(self, doc_id: UUID, job_type: JobType) -> ProcessingJob | None:
        """Find the queued or running job for (doc_id, job_type), if any."""
        ...

    async def claim_next(
        self, worker_id: str, job_types: Collection[JobType], now: datetime
    ) -> ProcessingJob | None:
        """Atomically take the best eligible queued job.

        Eligible: status queued, job_type in job_types, available_at unset or
        not after now. Best: lowest priority value, then oldest created_at.
        The job is returned already marked running with started_at=now.
        """
        ...

    async def update_job_if(
        self,
        job_id: UUID,
        expected: Collection[JobStatus],
        *,
        when_cancel_requested: bool | None = None,
        **fields: Any,
    ) -> ProcessingJob | None:
        """Update job fields only if its status is in ``expected``.

        With ``when_cancel_requested`` set, the job's cancel_requested flag
        must match it too.

        Returns:
            Updated job, or None if the job is missing or the condition failed
        """
        ...

    async def list_jobs(self, job_filter: JobFilter) -> list[ProcessingJob]:
        """List jobs matching the filter, oldest first."""
        ...

    async def count_by_status(self) -> dict[tuple[JobType, JobStatus], int]:
        """Count jobs grouped by (job_type, status)."""
        ...
