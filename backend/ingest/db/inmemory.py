"""In-memory implementations of repository interfaces.

Every method completes without awaiting, so each call is atomic with respect
to other coroutines on the same event loop.
"""

import uuid
from collections import Counter
from collections.abc import Collection, Mapping, Sequence
from datetime import datetime
from typing import Any

from backend.ingest.errors import ConcurrencyConflict, DuplicateDocumentError, DuplicateJobError
from backend.ingest.models import (
    ACTIVE_JOB_STATUSES,
    Document,
    DocumentChunk,
    DocumentSection,
    EmbeddingStatus,
    IngestStatus,
    JobFilter,
    JobStatus,
    JobType,
    ProcessingJob,
    utcnow,
)


class InMemoryDocumentRepository:
    """In-memory implementation of DocumentRepository."""

    def __init__(self) -> None:
        self._documents: dict[uuid.UUID, Document] = {}
        self._sections: dict[uuid.UUID, list[DocumentSection]] = {}
        self._chunks: dict[uuid.UUID, list[DocumentChunk]] = {}

    async def create_document(self, document: Document) -> Document:
        """Insert a new document row."""
        for existing in self._documents.values():
            if (
                existing.user_id == document.user_id
                and existing.content_hash == document.content_hash
            ):
                raise DuplicateDocumentError(
                    f"document {existing.doc_id} already has hash {document.content_hash}"
                )

        self._documents[document.doc_id] = document.model_copy()
        return document.model_copy()

    async def get_document(
        self, doc_id: uuid.UUID, *, include_deleted: bool = False
    ) -> Document | None:
        """Get document by ID."""
        document = self._documents.get(doc_id)
        if document is None:
            return None
        if document.is_deleted and not include_deleted:
            return None
        return document.model_copy()

    async def find_by_user_and_hash(
        self, user_id: uuid.UUID, content_hash: str
    ) -> Document | None:
        """Find a document by owner and fingerprint."""
        for document in self._documents.values():
            if document.user_id == user_id and document.content_hash == content_hash:
                return document.model_copy()
        return None

    async def delete_document(self, doc_id: uuid.UUID) -> None:
        """Physically remove a document and everything it owns."""
        self._documents.pop(doc_id, None)
        self._sections.pop(doc_id, None)
        self._chunks.pop(doc_id, None)

    async def soft_delete_document(self, doc_id: uuid.UUID) -> bool:
        """Tombstone a document."""
        document = self._documents.get(doc_id)
        if document is None or document.is_deleted:
            return False

        now = utcnow()
        self._documents[doc_id] = document.model_copy(update={"deleted_at": now, "updated_at": now})
        return True

    async def restore_document(self, doc_id: uuid.UUID) -> Document | None:
        """Clear the tombstone of a soft-deleted document."""
        document = self._documents.get(doc_id)
        if document is None:
            return None

        restored = document.model_copy(update={"deleted_at": None, "updated_at": utcnow()})
        self._documents[doc_id] = restored
        return restored.model_copy()

    async def transition_document(
        self,
        doc_id: uuid.UUID,
        expected: Collection[IngestStatus],
        new_status: IngestStatus,
        *,
        error_message: str | None = None,
        **fields: Any,
    ) -> Document:
        """Optimistically move a document to a new status."""
        document = self._check_status(doc_id, expected)

        updated = document.model_copy(
            update={
                **fields,
                "ingest_status": new_status,
                "error_message": error_message,
                "updated_at": utcnow(),
            }
        )
        self._documents[doc_id] = updated
        return updated.model_copy()

    async def save_sections(
        self,
        doc_id: uuid.UUID,
        sections: Sequence[DocumentSection],
        *,
        expected: Collection[IngestStatus],
        new_status: IngestStatus,
        text_length: int,
        page_count: int | None,
        language: str | None,
    ) -> Document:
        """Replace sections and transition the document."""
        document = self._check_status(doc_id, expected)

        self._sections[doc_id] = [section.model_copy() for section in sections]
        self._chunks.pop(doc_id, None)

        updated = document.model_copy(
            update={
                "ingest_status": new_status,
                "text_length": text_length,
                "page_count": page_count,
                "language": language,
                "error_message": None,
                "updated_at": utcnow(),
            }
        )
        self._documents[doc_id] = updated
        return updated.model_copy()

    async def save_chunks(
        self,
        doc_id: uuid.UUID,
        chunks: Sequence[DocumentChunk],
        *,
        expected: Collection[IngestStatus],
        new_status: IngestStatus,
    ) -> Document:
        """Replace chunks and transition the document."""
        document = self._check_status(doc_id, expected)

        self._chunks[doc_id] = [chunk.model_copy() for chunk in chunks]

        updated = document.model_copy(
            update={"ingest_status": new_status, "error_message": None, "updated_at": utcnow()}
        )
        self._documents[doc_id] = updated
        return updated.model_copy()

    async def set_embedding_status(
        self,
        doc_id: uuid.UUID,
        statuses: Mapping[uuid.UUID, EmbeddingStatus],
        *,
        expected: Collection[IngestStatus],
        new_status: IngestStatus,
    ) -> Document:
        """Record per-chunk embedding outcomes and transition the document."""
        document = self._check_status(doc_id, expected)

        self._chunks[doc_id] = [
            chunk.model_copy(update={"embedding_status": statuses[chunk.chunk_id]})
            if chunk.chunk_id in statuses
            else chunk
            for chunk in self._chunks.get(doc_id, [])
        ]

        updated = document.model_copy(
            update={"ingest_status": new_status, "error_message": None, "updated_at": utcnow()}
        )
        self._documents[doc_id] = updated
        return updated.model_copy()

    async def list_sections(self, doc_id: uuid.UUID) -> list[DocumentSection]:
        """List sections in document order."""
        sections = self._sections.get(doc_id, [])
        return [
            section.model_copy()
            for section in sorted(sections, key=lambda s: (s.start_char, s.level))
        ]

    async def list_chunks(self, doc_id: uuid.UUID) -> list[DocumentChunk]:
        """List chunks ordered by chunk_index."""
        chunks = self._chunks.get(doc_id, [])
        return [chunk.model_copy() for chunk in sorted(chunks, key=lambda c: c.chunk_index)]

    def _check_status(self, doc_id: uuid.UUID, expected: Collection[IngestStatus]) -> Document:
        document = self._documents.get(doc_id)

        if document is None or document.is_deleted:
            raise ConcurrencyConflict(f"document {doc_id} is missing or deleted")

        if document.ingest_status not in expected:
            raise ConcurrencyConflict(
                f"document {doc_id} is {document.ingest_status.value}, "
                f"expected one of {sorted(s.value for s in expected)}"
            )

        return document


class InMemoryJobRepository:
    """In-memory implementation of JobRepository."""

    def __init__(self) -> None:
        self._jobs: dict[uuid.UUID, ProcessingJob] = {}

    async def insert_job(self, job: ProcessingJob) -> ProcessingJob:
        """Insert a queued job."""
        if self._active(job.doc_id, job.job_type) is not None:
            raise DuplicateJobError(
                f"active {job.job_type.value} job already exists for document {job.doc_id}"
            )

        self._jobs[job.job_id] = job.model_copy()
        return job.model_copy()

    async def get_job(self, job_id: uuid.UUID) -> ProcessingJob | None:
        """Get job by ID."""
        job = self._jobs.get(job_id)
        return job.model_copy() if job else None

    async def find_active_job(self, doc_id: uuid.UUID, job_type: JobType) -> ProcessingJob | None:
        """Find the queued or running job for (doc_id, job_type)."""
        job = self._active(doc_id, job_type)
        return job.model_copy() if job else None

    async def claim_next(
        self, worker_id: str, job_types: Collection[JobType], now: datetime
    ) -> ProcessingJob | None:
        """Atomically take the best eligible queued job."""
        candidates = [
            job
            for job in self._jobs.values()
            if job.status == JobStatus.queued
            and job.job_type in job_types
            and (job.available_at is None or job.available_at <= now)
        ]

        if not candidates:
            return None

        best = min(candidates, key=lambda j: (j.priority, j.created_at))
        claimed = best.model_copy(
            update={
                "status": JobStatus.running,
                "started_at": now,
                "worker_id": worker_id,
                "progress_current": 0,
                "progress_message": None,
            }
        )
        self._jobs[claimed.job_id] = claimed
        return claimed.model_copy()

    async def update_job_if(
        self,
        job_id: uuid.UUID,
        expected: Collection[JobStatus],
        *,
        when_cancel_requested: bool | None = None,
        **fields: Any,
    ) -> ProcessingJob | None:
        """Update job fields only if its status is in ``expected``."""
        job = self._jobs.get(job_id)

        if job is None or job.status not in expected:
            return None
        if when_cancel_requested is not None and job.cancel_requested != when_cancel_requested:
            return None

        updated = job.model_copy(update=fields)
        self._jobs[job_id] = updated
        return updated.model_copy()

    async def list_jobs(self, job_filter: JobFilter) -> list[ProcessingJob]:
        """List jobs matching the filter, oldest first."""
        results: list[ProcessingJob] = []

        for job in sorted(self._jobs.values(), key=lambda j: j.created_at):
            if job_filter.doc_id is not None and job.doc_id != job_filter.doc_id:
                continue
            if job_filter.user_id is not None and job.user_id != job_filter.user_id:
                continue
            if job_filter.job_types is not None and job.job_type not in job_filter.job_types:
                continue
            if job_filter.statuses is not None and job.status not in job_filter.statuses:
                continue
            results.append(job.model_copy())

        return results[: job_filter.limit]

    async def count_by_status(self) -> dict[tuple[JobType, JobStatus], int]:
        """Count jobs grouped by (job_type, status)."""
        return dict(Counter((job.job_type, job.status) for job in self._jobs.values()))

    def _active(self, doc_id: uuid.UUID, job_type: JobType) -> ProcessingJob | None:
        for job in self._jobs.values():
            if (
                job.doc_id == doc_id
                and job.job_type == job_type
                and job.status in ACTIVE_JOB_STATUSES
            ):
                return job
        return None
