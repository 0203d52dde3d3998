"""Pipeline stages - pure work functions selected by job type.

Stages read what they need and return their output; they never write
metadata. The orchestrator persists stage output together with the status
transition, so an aborted stage leaves nothing behind.
"""

import asyncio
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol
from uuid import UUID

from backend.ingest.db.repositories import DocumentRepository
from backend.ingest.docs.chunker import Chunker
from backend.ingest.docs.parser import ParseResult, ParserRegistry
from backend.ingest.errors import EmbedError, StageCancelledError, StructuralError
from backend.ingest.models import (
    Document,
    DocumentChunk,
    DocumentSection,
    EmbeddingStatus,
    JobType,
    ProcessingJob,
    ProgressUpdate,
)
from backend.ingest.storage.content_store import ContentStore


@dataclass
class CancelToken:
    """Token for cooperative cancellation.

    ``poll`` asks the queue whether cancellation was requested; stages call
    ``check`` at safe points.
    """

    cancelled: bool = False
    poll: Callable[[], Awaitable[bool]] | None = None

    def cancel(self) -> None:
        self.cancelled = True

    async def check(self) -> None:
        """Refresh from ``poll`` and raise if cancelled."""
        if not self.cancelled and self.poll is not None:
            self.cancelled = await self.poll()
        self.throw_if_cancelled()

    def throw_if_cancelled(self) -> None:
        """Raise StageCancelledError if cancelled."""
        if self.cancelled:
            raise StageCancelledError("job cancelled")


async def _no_progress(update: ProgressUpdate) -> None:
    return None


@dataclass
class StageContext:
    """Everything a stage needs to run one job."""

    job: ProcessingJob
    document: Document
    cancel_token: CancelToken = field(default_factory=CancelToken)
    report_progress: Callable[[ProgressUpdate], Awaitable[None]] = _no_progress


@dataclass
class ParseOutput:
    result: ParseResult

    def summary(self) -> dict[str, Any]:
        return {
            "sections": len(self.result.sections),
            "text_length": len(self.result.text),
            "page_count": self.result.page_count,
            "language": self.result.language,
        }


@dataclass
class ChunkOutput:
    chunks: list[DocumentChunk]

    def summary(self) -> dict[str, Any]:
        return {
            "chunks": len(self.chunks),
            "tokens": sum(chunk.token_count for chunk in self.chunks),
        }


@dataclass
class EmbedOutput:
    statuses: dict[UUID, EmbeddingStatus]

    def summary(self) -> dict[str, Any]:
        embedded = sum(1 for s in self.statuses.values() if s == EmbeddingStatus.embedded)
        return {"embedded": embedded, "failed": len(self.statuses) - embedded}


StageOutput = ParseOutput | ChunkOutput | EmbedOutput


class Stage(Protocol):
    """Capability executed by workers for one job type."""

    async def execute(self, ctx: StageContext) -> StageOutput: ...


class Embedder(Protocol):
    """Opaque embedding model call.

    Returns one flag per input text, True when the vector was stored.
    """

    async def embed(self, doc_id: UUID, texts: Sequence[str]) -> Sequence[bool]: ...


def assemble_text(sections: Iterable[DocumentSection]) -> str:
    """Rebuild the extracted text from the sections' own spans."""
    ordered = sorted(sections, key=lambda s: (s.start_char, s.level))
    return "".join(section.content for section in ordered)


class ParseStage:
    """Reads the stored object and runs the parser for its mime type."""

    def __init__(self, store: ContentStore, parsers: ParserRegistry) -> None:
        self._store = store
        self._parsers = parsers

    async def execute(self, ctx: StageContext) -> ParseOutput:
        document = ctx.document
        parser = self._parsers.get(document.mime_type)

        await ctx.cancel_token.check()
        content = await self._store.get(document.storage_path)
        await ctx.report_progress(ProgressUpdate(current=20, total=100, message="content loaded"))

        await ctx.cancel_token.check()
        # Layout analysis is CPU-bound
        result = await asyncio.to_thread(
            parser.parse, document.doc_id, content, document.mime_type
        )
        await ctx.report_progress(
            ProgressUpdate(
                current=90,
                total=100,
                message=f"parsed {len(result.sections)} sections",
                details={"sections": len(result.sections)},
            )
        )

        await ctx.cancel_token.check()
        return ParseOutput(result=result)


class ChunkStage:
    """Chunks the persisted section tree."""

    def __init__(self, documents: DocumentRepository, chunker: Chunker) -> None:
        self._documents = documents
        self._chunker = chunker

    async def execute(self, ctx: StageContext) -> ChunkOutput:
        doc_id = ctx.document.doc_id

        await ctx.cancel_token.check()
        sections = await self._documents.list_sections(doc_id)
        if not sections:
            raise StructuralError(f"document {doc_id} has no sections to chunk")

        text = assemble_text(sections)
        if ctx.document.text_length is not None and len(text) != ctx.document.text_length:
            raise StructuralError(
                f"section text length {len(text)} does not match document "
                f"text length {ctx.document.text_length}"
            )

        await ctx.cancel_token.check()
        chunks = await asyncio.to_thread(self._chunker.chunk, doc_id, sections, text)
        await ctx.report_progress(
            ProgressUpdate(current=90, total=100, message=f"built {len(chunks)} chunks")
        )

        await ctx.cancel_token.check()
        return ChunkOutput(chunks=chunks)


class EmbedStage:
    """Embeds chunks in batches through an opaque Embedder."""

    def __init__(
        self, documents: DocumentRepository, embedder: Embedder, *, batch_size: int = 32
    ) -> None:
        self._documents = documents
        self._embedder = embedder
        self._batch_size = batch_size

    async def execute(self, ctx: StageContext) -> EmbedOutput:
        doc_id = ctx.document.doc_id
        chunks = await self._documents.list_chunks(doc_id)
        statuses: dict[UUID, EmbeddingStatus] = {}

        for offset in range(0, len(chunks), self._batch_size):
            await ctx.cancel_token.check()

            batch = chunks[offset : offset + self._batch_size]
            flags = await self._embedder.embed(doc_id, [chunk.content for chunk in batch])
            if len(flags) != len(batch):
                raise EmbedError(f"embedder returned {len(flags)} results for {len(batch)} chunks")

            for chunk, ok in zip(batch, flags):
                statuses[chunk.chunk_id] = EmbeddingStatus.embedded if ok else EmbeddingStatus.failed

            await ctx.report_progress(
                ProgressUpdate(
                    current=offset + len(batch),
                    total=len(chunks),
                    message=f"embedded {offset + len(batch)}/{len(chunks)} chunks",
                )
            )

        await ctx.cancel_token.check()
        return EmbedOutput(statuses=statuses)


class StageRegistry:
    """Maps job types to the stage that executes them."""

    def __init__(self) -> None:
        self._stages: dict[JobType, Stage] = {}

    def register(self, job_type: JobType, stage: Stage) -> None:
        self._stages[job_type] = stage

    def get(self, job_type: JobType) -> Stage:
        try:
            return self._stages[job_type]
        except KeyError as e:
            raise StructuralError(f"no stage registered for {job_type.value}") from e

    def job_types(self) -> list[JobType]:
        return list(self._stages)


def create_stage_registry(
    documents: DocumentRepository,
    store: ContentStore,
    parsers: ParserRegistry,
    chunker: Chunker,
    embedder: Embedder | None = None,
) -> StageRegistry:
    """Register parse and chunk stages, plus embed when an embedder is given."""
    parse_stage = ParseStage(store, parsers)

    registry = StageRegistry()
    registry.register(JobType.parse_pdf, parse_stage)
    registry.register(JobType.parse_markdown, parse_stage)
    registry.register(JobType.chunk, ChunkStage(documents, chunker))
    if embedder is not None:
        registry.register(JobType.embed, EmbedStage(documents, embedder))
    return registry
