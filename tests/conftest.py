"""Shared pytest fixtures for all test suites."""

import os
import uuid
from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from backend.ingest.db.inmemory import InMemoryDocumentRepository, InMemoryJobRepository
from backend.ingest.db.models import Base
from backend.ingest.docs.chunker import Chunker, ChunkerConfig
from backend.ingest.docs.dedup import Deduplicator
from backend.ingest.docs.registry import create_parser_registry
from backend.ingest.pipeline.orchestrator import Orchestrator
from backend.ingest.pipeline.queue import JobQueue, QueueConfig
from backend.ingest.pipeline.service import IngestService
from backend.ingest.pipeline.stages import create_stage_registry
from backend.ingest.pipeline.workers import WorkerPool, WorkerPoolConfig
from backend.ingest.storage.content_store import InMemoryContentStore


@pytest.fixture
def user_id() -> uuid.UUID:
    return uuid.UUID("00000000-0000-0000-0000-000000000002")


@pytest.fixture
def documents() -> InMemoryDocumentRepository:
    return InMemoryDocumentRepository()


@pytest.fixture
def jobs() -> InMemoryJobRepository:
    return InMemoryJobRepository()


@pytest.fixture
def store() -> InMemoryContentStore:
    return InMemoryContentStore()


@pytest.fixture
def queue_config() -> QueueConfig:
    """Zero backoff so retried jobs are claimable immediately."""
    return QueueConfig(backoff_base_ms=0, jitter_min_ms=0, jitter_max_ms=0)


@pytest.fixture
def queue(jobs: InMemoryJobRepository, queue_config: QueueConfig) -> JobQueue:
    return JobQueue(jobs, queue_config)


@pytest.fixture
def orchestrator(documents: InMemoryDocumentRepository, queue: JobQueue) -> Orchestrator:
    return Orchestrator(documents, queue)


@pytest.fixture
def deduplicator(
    documents: InMemoryDocumentRepository, store: InMemoryContentStore
) -> Deduplicator:
    return Deduplicator(documents, store, max_upload_bytes=1024 * 1024)


@pytest.fixture
def pool(
    documents: InMemoryDocumentRepository,
    store: InMemoryContentStore,
    queue: JobQueue,
    orchestrator: Orchestrator,
) -> WorkerPool:
    stages = create_stage_registry(
        documents,
        store,
        create_parser_registry(),
        Chunker(ChunkerConfig(max_tokens=50)),
    )
    config = WorkerPoolConfig(name="test-pool", concurrency=2, poll_interval_ms=10, timeout_ms=5000)
    return WorkerPool(queue, orchestrator, stages, config)


@pytest.fixture
def service(
    documents: InMemoryDocumentRepository,
    queue: JobQueue,
    orchestrator: Orchestrator,
    deduplicator: Deduplicator,
    pool: WorkerPool,
) -> IngestService:
    return IngestService(documents, queue, orchestrator, deduplicator, pools=[pool])


@pytest_asyncio.fixture
async def sqlite_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed SQLite engine so every session sees the same database."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(sqlite_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=sqlite_engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def postgres_engine() -> AsyncGenerator[AsyncEngine, None]:
    """Create async engine for PostgreSQL integration tests.

    Requires POSTGRES_TEST_URL to be set to a real PostgreSQL connection string.
    Tests using this fixture should be marked with @pytest.mark.postgres.
    """
    database_url = os.getenv("POSTGRES_TEST_URL")
    if not database_url:
        pytest.skip("POSTGRES_TEST_URL not set - skipping postgres test")

    if database_url.startswith("postgresql://"):
        database_url = database_url.replace("postgresql://", "postgresql+asyncpg://", 1)

    engine = create_async_engine(database_url, poolclass=NullPool, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()
