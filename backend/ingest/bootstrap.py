"""Wiring of stores, queue, orchestrator, worker pool and service."""

import logging
from dataclasses import dataclass, replace

from sqlalchemy.ext.asyncio import AsyncEngine

from backend.ingest.config import Settings
from backend.ingest.db.engine import create_async_engine_from_settings, create_session_factory
from backend.ingest.db.inmemory import InMemoryDocumentRepository, InMemoryJobRepository
from backend.ingest.db.models import Base
from backend.ingest.db.repositories import DocumentRepository, JobRepository
from backend.ingest.db.sql_repositories import SqlDocumentRepository, SqlJobRepository
from backend.ingest.docs.chunker import Chunker, ChunkerConfig
from backend.ingest.docs.dedup import Deduplicator
from backend.ingest.docs.registry import create_parser_registry
from backend.ingest.models import JobType
from backend.ingest.pipeline.events import EventChannel
from backend.ingest.pipeline.orchestrator import Orchestrator
from backend.ingest.pipeline.queue import JobQueue, QueueConfig
from backend.ingest.pipeline.service import IngestService
from backend.ingest.pipeline.stages import Embedder, create_stage_registry
from backend.ingest.pipeline.workers import WorkerPool, WorkerPoolConfig
from backend.ingest.storage.content_store import ContentStore, create_content_store
from backend.ingest.utils.logging import StructuredJobLogger
from backend.ingest.utils.metrics import PrometheusJobMetrics

logger = logging.getLogger(__name__)


@dataclass
class IngestContainer:
    """Long-lived components shared by the API and worker processes."""

    settings: Settings
    documents: DocumentRepository
    jobs: JobRepository
    store: ContentStore
    queue: JobQueue
    orchestrator: Orchestrator
    pool: WorkerPool
    service: IngestService
    events: EventChannel
    engine: AsyncEngine | None = None

    async def close(self) -> None:
        await self.pool.stop()
        if self.engine is not None:
            await self.engine.dispose()


async def build_container(
    settings: Settings,
    *,
    embedder: Embedder | None = None,
    store: ContentStore | None = None,
    job_types: list[JobType] | None = None,
) -> IngestContainer:
    """Build every component from settings.

    Args:
        settings: Application settings
        embedder: Embedding model client; without one documents stop at chunked
        store: Content store override (defaults to the configured backend)
        job_types: Job types the worker pool serves (default: all)
    """
    engine = None
    documents: DocumentRepository
    jobs: JobRepository

    if settings.metadata_backend == "memory":
        documents = InMemoryDocumentRepository()
        jobs = InMemoryJobRepository()
    elif settings.metadata_backend == "sql":
        engine = create_async_engine_from_settings(settings)
        if settings.db_create_all:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        session_factory = create_session_factory(engine)
        documents = SqlDocumentRepository(session_factory)
        jobs = SqlJobRepository(session_factory)
    else:
        raise ValueError(f"Unknown metadata backend: {settings.metadata_backend}")

    if store is None:
        store = create_content_store(settings)

    embedding_enabled = settings.embedding_enabled and embedder is not None
    if settings.embedding_enabled and embedder is None:
        logger.warning("Embedding enabled but no embedder configured; documents stop at chunked")

    queue = JobQueue(jobs, QueueConfig.from_settings(settings))
    orchestrator = Orchestrator(documents, queue, embedding_enabled=embedding_enabled)
    stages = create_stage_registry(
        documents,
        store,
        create_parser_registry(settings),
        Chunker(ChunkerConfig.from_settings(settings)),
        embedder if embedding_enabled else None,
    )

    events = EventChannel()
    pool = WorkerPool(
        queue,
        orchestrator,
        stages,
        replace(WorkerPoolConfig.from_settings(settings), job_types=job_types),
        metrics=PrometheusJobMetrics(),
        job_logger=StructuredJobLogger(),
        events=events,
    )

    deduplicator = Deduplicator(
        documents,
        store,
        max_upload_bytes=settings.max_upload_mb * 1024 * 1024,
        allowed_mime_types=settings.allowed_mime_types,
    )
    service = IngestService(documents, queue, orchestrator, deduplicator, pools=[pool])

    return IngestContainer(
        settings=settings,
        documents=documents,
        jobs=jobs,
        store=store,
        queue=queue,
        orchestrator=orchestrator,
        pool=pool,
        service=service,
        events=events,
        engine=engine,
    )
