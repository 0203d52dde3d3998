"""Pipeline orchestrator - the document ingest_status state machine.

uploading -> uploaded -> parsing -> parsed -> chunking -> chunked
-> embedding -> ready, with failed reachable from any non-terminal state.

Every transition is optimistic: it only applies if the stored status still
matches the expected pre-state, so stale or duplicate workers lose.
"""

import logging
from dataclasses import dataclass
from uuid import UUID

from backend.ingest.db.repositories import DocumentRepository
from backend.ingest.errors import (
    ConcurrencyConflict,
    DocumentNotFoundError,
    DuplicateJobError,
    UnsupportedFormatError,
)
from backend.ingest.models import (
    Document,
    DocumentProgress,
    IngestStatus,
    JobStatus,
    JobType,
    ProcessingJob,
)
from backend.ingest.pipeline.queue import JobQueue
from backend.ingest.pipeline.stages import ChunkOutput, EmbedOutput, ParseOutput, StageOutput

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StageTransition:
    """Status bracket around one stage."""

    label: str
    pre: IngestStatus
    running: IngestStatus
    post: IngestStatus
    next_job: JobType | None


_PARSE = StageTransition(
    "Parsing", IngestStatus.uploaded, IngestStatus.parsing, IngestStatus.parsed, JobType.chunk
)

STAGES: dict[JobType, StageTransition] = {
    JobType.parse_pdf: _PARSE,
    JobType.parse_markdown: _PARSE,
    JobType.chunk: StageTransition(
        "Chunking", IngestStatus.parsed, IngestStatus.chunking, IngestStatus.chunked, JobType.embed
    ),
    JobType.embed: StageTransition(
        "Embedding", IngestStatus.chunked, IngestStatus.embedding, IngestStatus.ready, None
    ),
}

PARSE_JOB_TYPES: dict[str, JobType] = {
    "application/pdf": JobType.parse_pdf,
    "text/markdown": JobType.parse_markdown,
    "text/x-markdown": JobType.parse_markdown,
    "text/plain": JobType.parse_markdown,
}

IN_FLIGHT_STATUSES = frozenset(
    {IngestStatus.uploading, IngestStatus.parsing, IngestStatus.chunking, IngestStatus.embedding}
)

REPROCESSABLE_STATUSES = frozenset(
    {
        IngestStatus.uploaded,
        IngestStatus.parsed,
        IngestStatus.chunked,
        IngestStatus.ready,
        IngestStatus.failed,
    }
)

_PROGRESS: dict[IngestStatus, tuple[int, str]] = {
    IngestStatus.uploading: (5, "Uploading document"),
    IngestStatus.uploaded: (10, "Waiting to be parsed"),
    IngestStatus.parsing: (40, "Parsing document"),
    IngestStatus.parsed: (60, "Waiting to be chunked"),
    IngestStatus.chunking: (80, "Chunking document"),
    IngestStatus.chunked: (90, "Waiting to be embedded"),
    IngestStatus.embedding: (95, "Embedding chunks"),
    IngestStatus.ready: (100, "Ready"),
    IngestStatus.failed: (0, "Processing failed"),
}


def parse_job_type_for(mime_type: str) -> JobType:
    """Select the parse job type for a mime type.

    Raises:
        UnsupportedFormatError: No parser handles the mime type
    """
    try:
        return PARSE_JOB_TYPES[mime_type]
    except KeyError as e:
        raise UnsupportedFormatError(mime_type) from e


class Orchestrator:
    """Advances documents through the pipeline as their jobs finish."""

    def __init__(
        self,
        documents: DocumentRepository,
        queue: JobQueue,
        *,
        embedding_enabled: bool = False,
    ) -> None:
        self._documents = documents
        self._queue = queue
        self._embedding_enabled = embedding_enabled

    @property
    def embedding_enabled(self) -> bool:
        return self._embedding_enabled

    async def start_document(self, doc_id: UUID, *, priority: int | None = None) -> ProcessingJob:
        """Enqueue the parse job for an uploaded document.

        Raises:
            DocumentNotFoundError: Unknown or deleted document
            ConcurrencyConflict: Document is not in ``uploaded``
            UnsupportedFormatError: No parser for the document's mime type
            DuplicateJobError: A parse job is already queued or running
        """
        document = await self._get_document(doc_id)
        if document.ingest_status != IngestStatus.uploaded:
            raise ConcurrencyConflict(
                f"document {doc_id} is {document.ingest_status.value}, expected uploaded"
            )

        job_type = parse_job_type_for(document.mime_type)
        job = self._queue.new_job(doc_id, document.user_id, job_type, priority=priority)
        return await self._queue.enqueue(job)

    async def begin_stage(self, job: ProcessingJob) -> Document:
        """Move the document into the stage's running state.

        The running state itself is accepted too, for retried jobs.

        Raises:
            ConcurrencyConflict: The document moved on, failed, or was deleted
        """
        transition = STAGES[job.job_type]
        return await self._documents.transition_document(
            job.doc_id, [transition.pre, transition.running], transition.running
        )

    async def stage_succeeded(self, job: ProcessingJob, output: StageOutput) -> Document:
        """Persist stage output, advance the document and enqueue the next stage.

        Raises:
            ConcurrencyConflict: The document left the running state meanwhile;
                nothing was written
        """
        transition = STAGES[job.job_type]
        expected = [transition.running]

        if isinstance(output, ParseOutput):
            result = output.result
            document = await self._documents.save_sections(
                job.doc_id,
                result.sections,
                expected=expected,
                new_status=transition.post,
                text_length=len(result.text),
                page_count=result.page_count,
                language=result.language,
            )
        elif isinstance(output, ChunkOutput):
            document = await self._documents.save_chunks(
                job.doc_id, output.chunks, expected=expected, new_status=transition.post
            )
        elif isinstance(output, EmbedOutput):
            document = await self._documents.set_embedding_status(
                job.doc_id, output.statuses, expected=expected, new_status=transition.post
            )
        else:
            raise TypeError(f"unexpected stage output {type(output).__name__}")

        next_job = transition.next_job
        if next_job == JobType.embed and not self._embedding_enabled:
            next_job = None

        if next_job is not None:
            try:
                await self._queue.enqueue(
                    self._queue.new_job(
                        job.doc_id, job.user_id, next_job, priority=job.priority
                    )
                )
            except DuplicateJobError:
                logger.info("Next %s job already queued for %s", next_job.value, job.doc_id)

        return document

    async def stage_failed(self, job: ProcessingJob) -> Document | None:
        """Fail the document after its job failed terminally.

        Returns None when the document already moved on (conflict dropped).
        """
        transition = STAGES[job.job_type]
        message = f"{transition.label} failed: {job.last_error or 'unknown error'}"

        try:
            document = await self._documents.transition_document(
                job.doc_id,
                [transition.pre, transition.running],
                IngestStatus.failed,
                error_message=message,
            )
        except ConcurrencyConflict as e:
            logger.info("Dropped failure transition for %s: %s", job.doc_id, e)
            return None

        logger.warning(
            "Document failed",
            extra={
                "structured": {
                    "doc_id": str(job.doc_id),
                    "job_id": str(job.job_id),
                    "job_type": job.job_type.value,
                    "retry_count": job.retry_count,
                    "error": job.last_error,
                }
            },
        )
        return document

    async def stage_cancelled(self, job: ProcessingJob) -> Document | None:
        """Return the document to the stage's pre-state after cancellation."""
        transition = STAGES[job.job_type]

        try:
            return await self._documents.transition_document(
                job.doc_id, [transition.running], transition.pre
            )
        except ConcurrencyConflict as e:
            logger.info("Dropped cancel transition for %s: %s", job.doc_id, e)
            return None

    async def reprocess(self, doc_id: UUID, *, priority: int | None = None) -> ProcessingJob:
        """Restart the pipeline from parsing.

        Raises:
            DocumentNotFoundError: Unknown or deleted document
            ConcurrencyConflict: A stage is in flight
        """
        document = await self._get_document(doc_id)
        if document.ingest_status not in REPROCESSABLE_STATUSES:
            raise ConcurrencyConflict(
                f"document {doc_id} is {document.ingest_status.value}; cannot reprocess"
            )

        for active in await self._queue.active_jobs(doc_id):
            if active.status == JobStatus.running:
                raise ConcurrencyConflict(f"job {active.job_id} is running for {doc_id}")
            await self._queue.cancel(active.job_id)

        await self._documents.transition_document(
            doc_id, list(REPROCESSABLE_STATUSES), IngestStatus.uploaded
        )
        logger.info("Reprocessing document %s", doc_id)
        return await self.start_document(doc_id, priority=priority)

    async def resume_document(
        self, doc_id: UUID, *, priority: int | None = None
    ) -> ProcessingJob:
        """Pick the pipeline of a restored document back up.

        A stage job that the delete asked to cancel keeps running once the
        request is withdrawn. Without one, the pipeline restarts from parsing.

        Raises:
            DocumentNotFoundError: Unknown or deleted document
            UnsupportedFormatError: No parser for the document's mime type
        """
        document = await self._get_document(doc_id)

        for active in await self._queue.active_jobs(doc_id):
            resumed = await self._queue.withdraw_cancel(active.job_id)
            if resumed is None:
                resumed = await self._queue.get(active.job_id)
            if (
                resumed is not None
                and resumed.status in (JobStatus.queued, JobStatus.running)
                and not resumed.cancel_requested
            ):
                logger.info("Resumed %s job %s for %s", resumed.job_type.value, resumed.job_id, doc_id)
                return resumed

        # A cancelled stage may return the document to uploaded concurrently
        await self._documents.transition_document(
            doc_id, [document.ingest_status, IngestStatus.uploaded], IngestStatus.uploaded
        )
        return await self.start_document(doc_id, priority=priority)

    def progress(self, document: Document, job: ProcessingJob | None = None) -> DocumentProgress:
        """Coarse progress for a status, refined by the running job's progress."""
        status = document.ingest_status
        percentage, message = _PROGRESS[status]

        if status == IngestStatus.chunked and not self._embedding_enabled:
            return DocumentProgress(stage=status, percentage=100, message="Chunked")

        if job is not None and job.status == JobStatus.running:
            transition = STAGES[job.job_type]
            if transition.running == status:
                low = _PROGRESS[transition.pre][0]
                high = _PROGRESS[transition.post][0]
                fraction = min(max(job.progress_percentage / 100, 0.0), 1.0)
                percentage = int(low + (high - low) * fraction)
                if job.progress_message:
                    message = f"{message}: {job.progress_message}"

        return DocumentProgress(stage=status, percentage=percentage, message=message)

    async def _get_document(self, doc_id: UUID) -> Document:
        document = await self._documents.get_document(doc_id)
        if document is None:
            raise DocumentNotFoundError(f"document {doc_id} not found")
        return document
