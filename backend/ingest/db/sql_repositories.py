"""SQL implementations of repository interfaces."""

import uuid
from collections import defaultdict
from collections.abc import Collection, Mapping, Sequence
from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.ingest.db.models import Document as DocumentDB
from backend.ingest.db.models import DocumentChunk as DocumentChunkDB
from backend.ingest.db.models import DocumentSection as DocumentSectionDB
from backend.ingest.db.models import ProcessingJob as ProcessingJobDB
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


def _column_values(fields: Mapping[str, Any]) -> dict[str, Any]:
    """Convert enum members to their stored string values."""
    return {key: value.value if isinstance(value, Enum) else value for key, value in fields.items()}


def _document_from_row(row: DocumentDB) -> Document:
    return Document.model_validate(row, from_attributes=True)


def _section_from_row(row: DocumentSectionDB) -> DocumentSection:
    return DocumentSection.model_validate(row, from_attributes=True)


def _chunk_from_row(row: DocumentChunkDB) -> DocumentChunk:
    return DocumentChunk.model_validate(row, from_attributes=True)


def _job_from_row(row: ProcessingJobDB) -> ProcessingJob:
    return ProcessingJob.model_validate(row, from_attributes=True)


def _section_row(section: DocumentSection) -> DocumentSectionDB:
    return DocumentSectionDB(
        **section.model_dump(exclude={"coordinates"}),
        coordinates=section.coordinates.model_dump() if section.coordinates else None,
    )


def _chunk_row(chunk: DocumentChunk) -> DocumentChunkDB:
    return DocumentChunkDB(**_column_values(chunk.model_dump()))


class SqlDocumentRepository:
    """SQL implementation of DocumentRepository."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def create_document(self, document: Document) -> Document:
        """Insert a new document row."""
        async with self._session_factory() as session:
            session.add(DocumentDB(**_column_values(document.model_dump())))
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise DuplicateDocumentError(
                    f"document with hash {document.content_hash} already exists"
                ) from e

        return document.model_copy()

    async def get_document(
        self, doc_id: uuid.UUID, *, include_deleted: bool = False
    ) -> Document | None:
        """Get document by ID."""
        async with self._session_factory() as session:
            row = await session.get(DocumentDB, doc_id)

            if row is None:
                return None
            if row.deleted_at is not None and not include_deleted:
                return None

            return _document_from_row(row)

    async def find_by_user_and_hash(
        self, user_id: uuid.UUID, content_hash: str
    ) -> Document | None:
        """Find a document by owner and fingerprint."""
        async with self._session_factory() as session:
            row = await session.scalar(
                select(DocumentDB).where(
                    DocumentDB.user_id == user_id, DocumentDB.content_hash == content_hash
                )
            )
            return _document_from_row(row) if row else None

    async def delete_document(self, doc_id: uuid.UUID) -> None:
        """Physically remove a document and everything it owns."""
        async with self._session_factory() as session:
            await session.execute(delete(DocumentChunkDB).where(DocumentChunkDB.doc_id == doc_id))
            await session.execute(
                delete(DocumentSectionDB).where(DocumentSectionDB.doc_id == doc_id)
            )
            await session.execute(delete(DocumentDB).where(DocumentDB.doc_id == doc_id))
            await session.commit()

    async def soft_delete_document(self, doc_id: uuid.UUID) -> bool:
        """Tombstone a document."""
        now = utcnow()
        async with self._session_factory() as session:
            result = await session.execute(
                update(DocumentDB)
                .where(DocumentDB.doc_id == doc_id, DocumentDB.deleted_at.is_(None))
                .values(deleted_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount == 1

    async def restore_document(self, doc_id: uuid.UUID) -> Document | None:
        """Clear the tombstone of a soft-deleted document."""
        async with self._session_factory() as session:
            row = await session.get(DocumentDB, doc_id)
            if row is None:
                return None

            row.deleted_at = None
            row.updated_at = utcnow()
            await session.commit()
            return _document_from_row(row)

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
        async with self._session_factory() as session:
            await self._guarded_update(
                session,
                doc_id,
                expected,
                {**fields, "ingest_status": new_status, "error_message": error_message},
            )
            await session.commit()
            return await self._load(session, doc_id)

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
        """Replace sections and transition the document in one transaction."""
        async with self._session_factory() as session:
            await self._guarded_update(
                session,
                doc_id,
                expected,
                {
                    "ingest_status": new_status,
                    "text_length": text_length,
                    "page_count": page_count,
                    "language": language,
                    "error_message": None,
                },
            )

            # Chunks reference sections, so they go first
            await session.execute(delete(DocumentChunkDB).where(DocumentChunkDB.doc_id == doc_id))
            await session.execute(
                delete(DocumentSectionDB).where(DocumentSectionDB.doc_id == doc_id)
            )
            session.add_all([_section_row(section) for section in sections])

            await session.commit()
            return await self._load(session, doc_id)

    async def save_chunks(
        self,
        doc_id: uuid.UUID,
        chunks: Sequence[DocumentChunk],
        *,
        expected: Collection[IngestStatus],
        new_status: IngestStatus,
    ) -> Document:
        """Replace chunks and transition the document in one transaction."""
        async with self._session_factory() as session:
            await self._guarded_update(
                session, doc_id, expected, {"ingest_status": new_status, "error_message": None}
            )

            await session.execute(delete(DocumentChunkDB).where(DocumentChunkDB.doc_id == doc_id))
            session.add_all([_chunk_row(chunk) for chunk in chunks])

            await session.commit()
            return await self._load(session, doc_id)

    async def set_embedding_status(
        self,
        doc_id: uuid.UUID,
        statuses: Mapping[uuid.UUID, EmbeddingStatus],
        *,
        expected: Collection[IngestStatus],
        new_status: IngestStatus,
    ) -> Document:
        """Record per-chunk embedding outcomes and transition the document."""
        by_status: dict[EmbeddingStatus, list[uuid.UUID]] = defaultdict(list)
        for chunk_id, status in statuses.items():
            by_status[status].append(chunk_id)

        async with self._session_factory() as session:
            await self._guarded_update(
                session, doc_id, expected, {"ingest_status": new_status, "error_message": None}
            )

            for status, chunk_ids in by_status.items():
                await session.execute(
                    update(DocumentChunkDB)
                    .where(
                        DocumentChunkDB.doc_id == doc_id,
                        DocumentChunkDB.chunk_id.in_(chunk_ids),
                    )
                    .values(embedding_status=status.value)
                    .execution_options(synchronize_session=False)
                )

            await session.commit()
            return await self._load(session, doc_id)

    async def list_sections(self, doc_id: uuid.UUID) -> list[DocumentSection]:
        """List sections in document order."""
        async with self._session_factory() as session:
            rows = await session.scalars(
                select(DocumentSectionDB)
                .where(DocumentSectionDB.doc_id == doc_id)
                .order_by(DocumentSectionDB.start_char, DocumentSectionDB.level)
            )
            return [_section_from_row(row) for row in rows]

    async def list_chunks(self, doc_id: uuid.UUID) -> list[DocumentChunk]:
        """List chunks ordered by chunk_index."""
        async with self._session_factory() as session:
            rows = await session.scalars(
                select(DocumentChunkDB)
                .where(DocumentChunkDB.doc_id == doc_id)
                .order_by(DocumentChunkDB.chunk_index)
            )
            return [_chunk_from_row(row) for row in rows]

    async def _guarded_update(
        self,
        session: AsyncSession,
        doc_id: uuid.UUID,
        expected: Collection[IngestStatus],
        values: dict[str, Any],
    ) -> None:
        """Conditional UPDATE on the stored status; raises on a lost race."""
        result = await session.execute(
            update(DocumentDB)
            .where(
                DocumentDB.doc_id == doc_id,
                DocumentDB.deleted_at.is_(None),
                DocumentDB.ingest_status.in_([status.value for status in expected]),
            )
            .values(**_column_values({**values, "updated_at": utcnow()}))
            .execution_options(synchronize_session=False)
        )

        if result.rowcount != 1:
            await session.rollback()
            raise ConcurrencyConflict(
                f"document {doc_id} is not in any of {sorted(s.value for s in expected)}"
            )

    async def _load(self, session: AsyncSession, doc_id: uuid.UUID) -> Document:
        row = await session.get(DocumentDB, doc_id, populate_existing=True)
        if row is None:
            raise ConcurrencyConflict(f"document {doc_id} disappeared during transition")
        return _document_from_row(row)


class SqlJobRepository:
    """SQL implementation of JobRepository."""

    def __init__(
        self, session_factory: async_sessionmaker[AsyncSession], *, claim_attempts: int = 5
    ) -> None:
        self._session_factory = session_factory
        self._claim_attempts = claim_attempts

    async def insert_job(self, job: ProcessingJob) -> ProcessingJob:
        """Insert a queued job."""
        async with self._session_factory() as session:
            session.add(ProcessingJobDB(**_column_values(job.model_dump())))
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise DuplicateJobError(
                    f"active {job.job_type.value} job already exists for document {job.doc_id}"
                ) from e

        return job.model_copy()

    async def get_job(self, job_id: uuid.UUID) -> ProcessingJob | None:
        """Get job by ID."""
        async with self._session_factory() as session:
            row = await session.get(ProcessingJobDB, job_id)
            return _job_from_row(row) if row else None

    async def find_active_job(self, doc_id: uuid.UUID, job_type: JobType) -> ProcessingJob | None:
        """Find the queued or running job for (doc_id, job_type)."""
        async with self._session_factory() as session:
            row = await session.scalar(
                select(ProcessingJobDB).where(
                    ProcessingJobDB.doc_id == doc_id,
                    ProcessingJobDB.job_type == job_type.value,
                    ProcessingJobDB.status.in_([s.value for s in ACTIVE_JOB_STATUSES]),
                )
            )
            return _job_from_row(row) if row else None

    async def claim_next(
        self, worker_id: str, job_types: Collection[JobType], now: datetime
    ) -> ProcessingJob | None:
        """Atomically take the best eligible queued job.

        Selects a candidate, then flips it to running with a conditional
        UPDATE. Losing the race to another worker moves on to the next
        candidate.
        """
        type_values = [job_type.value for job_type in job_types]
        if not type_values:
            return None

        for _ in range(self._claim_attempts):
            async with self._session_factory() as session:
                candidate_id = await session.scalar(
                    select(ProcessingJobDB.job_id)
                    .where(
                        ProcessingJobDB.status == JobStatus.queued.value,
                        ProcessingJobDB.job_type.in_(type_values),
                        or_(
                            ProcessingJobDB.available_at.is_(None),
                            ProcessingJobDB.available_at <= now,
                        ),
                    )
                    .order_by(ProcessingJobDB.priority.asc(), ProcessingJobDB.created_at.asc())
                    .limit(1)
                )

                if candidate_id is None:
                    return None

                result = await session.execute(
                    update(ProcessingJobDB)
                    .where(
                        ProcessingJobDB.job_id == candidate_id,
                        ProcessingJobDB.status == JobStatus.queued.value,
                    )
                    .values(
                        status=JobStatus.running.value,
                        started_at=now,
                        worker_id=worker_id,
                        progress_current=0,
                        progress_message=None,
                    )
                    .execution_options(synchronize_session=False)
                )

                if result.rowcount == 1:
                    await session.commit()
                    row = await session.get(ProcessingJobDB, candidate_id, populate_existing=True)
                    if row is not None:
                        return _job_from_row(row)

                await session.rollback()

        return None

    async def update_job_if(
        self,
        job_id: uuid.UUID,
        expected: Collection[JobStatus],
        *,
        when_cancel_requested: bool | None = None,
        **fields: Any,
    ) -> ProcessingJob | None:
        """Update job fields only if its status is in ``expected``."""
        conditions = [
            ProcessingJobDB.job_id == job_id,
            ProcessingJobDB.status.in_([status.value for status in expected]),
        ]
        if when_cancel_requested is not None:
            conditions.append(ProcessingJobDB.cancel_requested == when_cancel_requested)

        async with self._session_factory() as session:
            result = await session.execute(
                update(ProcessingJobDB)
                .where(*conditions)
                .values(**_column_values(fields))
                .execution_options(synchronize_session=False)
            )

            if result.rowcount != 1:
                await session.rollback()
                return None

            await session.commit()
            row = await session.get(ProcessingJobDB, job_id, populate_existing=True)
            return _job_from_row(row) if row else None

    async def list_jobs(self, job_filter: JobFilter) -> list[ProcessingJob]:
        """List jobs matching the filter, oldest first."""
        query = select(ProcessingJobDB)

        if job_filter.doc_id is not None:
            query = query.where(ProcessingJobDB.doc_id == job_filter.doc_id)
        if job_filter.user_id is not None:
            query = query.where(ProcessingJobDB.user_id == job_filter.user_id)
        if job_filter.job_types is not None:
            query = query.where(
                ProcessingJobDB.job_type.in_([t.value for t in job_filter.job_types])
            )
        if job_filter.statuses is not None:
            query = query.where(
                ProcessingJobDB.status.in_([s.value for s in job_filter.statuses])
            )

        query = query.order_by(ProcessingJobDB.created_at.asc()).limit(job_filter.limit)

        async with self._session_factory() as session:
            rows = await session.scalars(query)
            return [_job_from_row(row) for row in rows]

    async def count_by_status(self) -> dict[tuple[JobType, JobStatus], int]:
        """Count jobs grouped by (job_type, status)."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(ProcessingJobDB.job_type, ProcessingJobDB.status, func.count())
                .group_by(ProcessingJobDB.job_type, ProcessingJobDB.status)
            )
            return {
                (JobType(job_type), JobStatus(status)): count
                for job_type, status, count in result.all()
            }
