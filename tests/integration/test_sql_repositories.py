"""Integration tests for the SQL repositories (SQLite via aiosqlite)."""

import uuid
from datetime import datetime, timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from backend.ingest.db.sql_repositories import SqlDocumentRepository, SqlJobRepository
from backend.ingest.docs.chunker import Chunker, ChunkerConfig
from backend.ingest.docs.markdown_parser import MarkdownParser
from backend.ingest.errors import ConcurrencyConflict, DuplicateDocumentError, DuplicateJobError
from backend.ingest.models import (
    Document,
    EmbeddingStatus,
    IngestStatus,
    JobFilter,
    JobStatus,
    JobType,
    ProcessingJob,
)
from backend.ingest.models.common import utcnow
from backend.ingest.pipeline.queue import JobQueue, QueueConfig

TEXT = "# Policy\n\nIntro text.\n\n## Scope\n\nApplies to everyone.\n\n# Appendix\n\nMore.\n"


def _document(user_id: uuid.UUID | None = None, content_hash: str = "h1") -> Document:
    return Document(
        user_id=user_id or uuid.uuid4(),
        filename="policy.md",
        content_hash=content_hash,
        mime_type="text/markdown",
        size_bytes=len(TEXT),
        storage_path=f"u/{content_hash}.md",
        ingest_status=IngestStatus.uploaded,
    )


def _job(doc_id: uuid.UUID, job_type: JobType = JobType.parse_markdown, **fields) -> ProcessingJob:
    return ProcessingJob(doc_id=doc_id, user_id=uuid.uuid4(), job_type=job_type, **fields)


@pytest.fixture
def doc_repo(session_factory: async_sessionmaker[AsyncSession]) -> SqlDocumentRepository:
    return SqlDocumentRepository(session_factory)


@pytest.fixture
def job_repo(session_factory: async_sessionmaker[AsyncSession]) -> SqlJobRepository:
    return SqlJobRepository(session_factory)


class TestSqlDocumentRepository:
    """Test SqlDocumentRepository."""

    @pytest.mark.asyncio
    async def test_create_and_get(self, doc_repo: SqlDocumentRepository) -> None:
        document = _document()

        await doc_repo.create_document(document)
        loaded = await doc_repo.get_document(document.doc_id)

        assert loaded is not None
        assert loaded.doc_id == document.doc_id
        assert loaded.ingest_status == IngestStatus.uploaded
        assert loaded.content_hash == "h1"

    @pytest.mark.asyncio
    async def test_duplicate_hash_for_same_user_is_rejected(
        self, doc_repo: SqlDocumentRepository
    ) -> None:
        user_id = uuid.uuid4()
        await doc_repo.create_document(_document(user_id))

        with pytest.raises(DuplicateDocumentError):
            await doc_repo.create_document(_document(user_id))

        other = await doc_repo.create_document(_document(uuid.uuid4()))
        assert other is not None

    @pytest.mark.asyncio
    async def test_transition_is_optimistic(self, doc_repo: SqlDocumentRepository) -> None:
        document = await doc_repo.create_document(_document())

        moved = await doc_repo.transition_document(
            document.doc_id, [IngestStatus.uploaded], IngestStatus.parsing
        )
        assert moved.ingest_status == IngestStatus.parsing

        with pytest.raises(ConcurrencyConflict):
            await doc_repo.transition_document(
                document.doc_id, [IngestStatus.uploaded], IngestStatus.parsing
            )

        failed = await doc_repo.transition_document(
            document.doc_id, [IngestStatus.parsing], IngestStatus.failed, error_message="boom"
        )
        assert failed.error_message == "boom"

    @pytest.mark.asyncio
    async def test_soft_delete_and_restore(self, doc_repo: SqlDocumentRepository) -> None:
        document = await doc_repo.create_document(_document())

        assert await doc_repo.soft_delete_document(document.doc_id) is True
        assert await doc_repo.soft_delete_document(document.doc_id) is False
        assert await doc_repo.get_document(document.doc_id) is None
        assert (await doc_repo.get_document(document.doc_id, include_deleted=True)).is_deleted

        found = await doc_repo.find_by_user_and_hash(document.user_id, document.content_hash)
        assert found is not None and found.is_deleted

        with pytest.raises(ConcurrencyConflict):
            await doc_repo.transition_document(
                document.doc_id, [IngestStatus.uploaded], IngestStatus.parsing
            )

        restored = await doc_repo.restore_document(document.doc_id)
        assert restored is not None and not restored.is_deleted

    @pytest.mark.asyncio
    async def test_sections_and_chunks_roundtrip(self, doc_repo: SqlDocumentRepository) -> None:
        """Test that sections and chunks are saved with their transition and read back in order."""
        document = await doc_repo.create_document(_document())
        await doc_repo.transition_document(
            document.doc_id, [IngestStatus.uploaded], IngestStatus.parsing
        )
        result = MarkdownParser().parse(document.doc_id, TEXT.encode(), "text/markdown")

        parsed = await doc_repo.save_sections(
            document.doc_id,
            result.sections,
            expected=[IngestStatus.parsing],
            new_status=IngestStatus.parsed,
            text_length=len(result.text),
            page_count=None,
            language=result.language,
        )
        assert parsed.ingest_status == IngestStatus.parsed
        assert parsed.text_length == len(TEXT)

        sections = await doc_repo.list_sections(document.doc_id)
        assert [s.title for s in sections] == ["Policy", "Scope", "Appendix"]
        assert sections[1].parent_section_id == sections[0].section_id
        assert "".join(s.content for s in sections) == TEXT

        await doc_repo.transition_document(
            document.doc_id, [IngestStatus.parsed], IngestStatus.chunking
        )
        chunks = Chunker(ChunkerConfig(max_tokens=8)).chunk(document.doc_id, sections, TEXT)
        chunked = await doc_repo.save_chunks(
            document.doc_id, chunks, expected=[IngestStatus.chunking], new_status=IngestStatus.chunked
        )
        assert chunked.ingest_status == IngestStatus.chunked

        stored = await doc_repo.list_chunks(document.doc_id)
        assert [c.chunk_index for c in stored] == list(range(len(chunks)))
        assert "".join(c.content for c in stored) == TEXT

        await doc_repo.transition_document(
            document.doc_id, [IngestStatus.chunked], IngestStatus.embedding
        )
        statuses = {c.chunk_id: EmbeddingStatus.embedded for c in stored}
        statuses[stored[0].chunk_id] = EmbeddingStatus.failed
        ready = await doc_repo.set_embedding_status(
            document.doc_id, statuses, expected=[IngestStatus.embedding], new_status=IngestStatus.ready
        )
        assert ready.ingest_status == IngestStatus.ready

        embedded = await doc_repo.list_chunks(document.doc_id)
        assert embedded[0].embedding_status == EmbeddingStatus.failed
        assert all(c.embedding_status == EmbeddingStatus.embedded for c in embedded[1:])

    @pytest.mark.asyncio
    async def test_failed_transition_writes_no_sections(self, doc_repo: SqlDocumentRepository) -> None:
        document = await doc_repo.create_document(_document())
        result = MarkdownParser().parse(document.doc_id, TEXT.encode(), "text/markdown")

        with pytest.raises(ConcurrencyConflict):
            await doc_repo.save_sections(
                document.doc_id,
                result.sections,
                expected=[IngestStatus.parsing],
                new_status=IngestStatus.parsed,
                text_length=len(TEXT),
                page_count=None,
                language=None,
            )

        assert await doc_repo.list_sections(document.doc_id) == []
        assert (await doc_repo.get_document(document.doc_id)).ingest_status == IngestStatus.uploaded

    @pytest.mark.asyncio
    async def test_delete_document_removes_everything(self, doc_repo: SqlDocumentRepository) -> None:
        document = await doc_repo.create_document(_document())

        await doc_repo.delete_document(document.doc_id)

        assert await doc_repo.get_document(document.doc_id, include_deleted=True) is None


class TestSqlJobRepository:
    """Test SqlJobRepository and the queue policy on top of it."""

    @pytest.mark.asyncio
    async def test_one_active_job_per_document_and_type(self, job_repo: SqlJobRepository) -> None:
        doc_id = uuid.uuid4()
        first = await job_repo.insert_job(_job(doc_id))

        with pytest.raises(DuplicateJobError):
            await job_repo.insert_job(_job(doc_id))

        await job_repo.insert_job(_job(doc_id, JobType.chunk))
        await job_repo.update_job_if(first.job_id, [JobStatus.queued], status=JobStatus.cancelled)
        replacement = await job_repo.insert_job(_job(doc_id))

        assert replacement.status == JobStatus.queued
        assert (await job_repo.find_active_job(doc_id, JobType.parse_markdown)).job_id == replacement.job_id

    @pytest.mark.asyncio
    async def test_claim_respects_priority_fifo_and_availability(
        self, job_repo: SqlJobRepository
    ) -> None:
        now = datetime(2024, 1, 1, 12, 0, 0)
        late = await job_repo.insert_job(_job(uuid.uuid4(), priority=5, created_at=now))
        early = await job_repo.insert_job(
            _job(uuid.uuid4(), priority=5, created_at=now - timedelta(seconds=5))
        )
        urgent = await job_repo.insert_job(_job(uuid.uuid4(), priority=1, created_at=now))
        await job_repo.insert_job(
            _job(uuid.uuid4(), priority=0, created_at=now, available_at=now + timedelta(minutes=1))
        )

        order = []
        for _ in range(3):
            claimed = await job_repo.claim_next("w1", list(JobType), now)
            order.append(claimed.job_id)
            assert claimed.status == JobStatus.running
            assert claimed.worker_id == "w1"
            assert claimed.started_at == now

        assert order == [urgent.job_id, early.job_id, late.job_id]
        assert await job_repo.claim_next("w1", list(JobType), now) is None

    @pytest.mark.asyncio
    async def test_update_job_if_is_conditional(self, job_repo: SqlJobRepository) -> None:
        job = await job_repo.insert_job(_job(uuid.uuid4()))

        assert await job_repo.update_job_if(job.job_id, [JobStatus.running], status=JobStatus.succeeded) is None

        updated = await job_repo.update_job_if(
            job.job_id, [JobStatus.queued], status=JobStatus.cancelled, result={"reason": "test"}
        )
        assert updated.status == JobStatus.cancelled
        assert updated.result == {"reason": "test"}

    @pytest.mark.asyncio
    async def test_update_job_if_can_require_cancel_request(
        self, job_repo: SqlJobRepository
    ) -> None:
        job = await job_repo.insert_job(_job(uuid.uuid4()))

        skipped = await job_repo.update_job_if(
            job.job_id, [JobStatus.queued], when_cancel_requested=True, status=JobStatus.cancelled
        )
        assert skipped is None

        await job_repo.update_job_if(job.job_id, [JobStatus.queued], cancel_requested=True)
        withdrawn = await job_repo.update_job_if(
            job.job_id, [JobStatus.queued], when_cancel_requested=True, cancel_requested=False
        )
        assert withdrawn.cancel_requested is False
        assert withdrawn.status == JobStatus.queued

    @pytest.mark.asyncio
    async def test_queue_retry_path_over_sql(self, job_repo: SqlJobRepository) -> None:
        queue = JobQueue(job_repo, QueueConfig(backoff_base_ms=0, jitter_min_ms=0, jitter_max_ms=0))
        job = await queue.enqueue(queue.new_job(uuid.uuid4(), uuid.uuid4(), JobType.chunk))

        for _ in range(3):
            claimed = await queue.claim("w1", [JobType.chunk])
            assert claimed.job_id == job.job_id
            final = await queue.fail(claimed.job_id, "storage timeout")

        assert final.status == JobStatus.failed
        assert final.retry_count == 3

    @pytest.mark.asyncio
    async def test_list_and_count(self, job_repo: SqlJobRepository) -> None:
        doc_id = uuid.uuid4()
        await job_repo.insert_job(_job(doc_id))
        await job_repo.insert_job(_job(doc_id, JobType.chunk))
        await job_repo.insert_job(_job(uuid.uuid4(), JobType.chunk))

        listed = await job_repo.list_jobs(JobFilter(doc_id=doc_id))
        counts = await job_repo.count_by_status()

        assert len(listed) == 2
        assert counts[(JobType.chunk, JobStatus.queued)] == 2
        assert counts[(JobType.parse_markdown, JobStatus.queued)] == 1


@pytest.mark.postgres
@pytest.mark.asyncio
async def test_claim_on_postgres(postgres_engine: AsyncEngine) -> None:
    """Test claim ordering against a real PostgreSQL database."""
    repo = SqlJobRepository(async_sessionmaker(bind=postgres_engine, expire_on_commit=False))
    job = await repo.insert_job(_job(uuid.uuid4()))

    claimed = await repo.claim_next("pg-worker", [JobType.parse_markdown], utcnow())

    assert claimed.job_id == job.job_id
    assert claimed.status == JobStatus.running
