"""Document domain models."""

from datetime import datetime
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from backend.ingest.models.common import EmbeddingStatus, IngestStatus, utcnow


class Document(BaseModel):
    """One uploaded file and its pipeline state."""

    doc_id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    filename: str
    content_hash: str  # sha256 hex
    mime_type: str
    size_bytes: int = Field(..., ge=0)
    storage_path: str
    ingest_status: IngestStatus = IngestStatus.uploading
    page_count: int | None = None
    language: str | None = None
    text_length: int | None = None
    error_message: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    deleted_at: datetime | None = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


class BoundingBox(BaseModel):
    """PDF block coordinates in points (x0, y0, x1, y1)."""

    x0: float
    y0: float
    x1: float
    y1: float


class DocumentSection(BaseModel):
    """Node in the hierarchical section tree of a document.

    Sections form an arena indexed by ``section_id``; ``parent_section_id`` is
    a back-reference only.
    """

    section_id: UUID = Field(default_factory=uuid4)
    doc_id: UUID
    parent_section_id: UUID | None = None
    level: int = Field(..., ge=1)
    section_order: int = Field(..., ge=0)
    title: str | None = None
    content: str
    start_char: int = Field(..., ge=0)
    end_char: int = Field(..., ge=0)
    start_page: int | None = None
    end_page: int | None = None
    coordinates: BoundingBox | None = None
    confidence: float = Field(1.0, ge=0.0, le=1.0)


class DocumentChunk(BaseModel):
    """Token-bounded slice of a document's extracted text."""

    chunk_id: UUID = Field(default_factory=uuid4)
    doc_id: UUID
    section_id: UUID | None = None
    chunk_index: int = Field(..., ge=0)
    content: str
    start_char: int = Field(..., ge=0)
    end_char: int = Field(..., ge=0)
    token_count: int = Field(..., ge=0)
    is_boundary_chunk: bool = False
    embedding_status: EmbeddingStatus = EmbeddingStatus.pending


class DocumentProgress(BaseModel):
    """Coarse progress of a document through the pipeline."""

    stage: IngestStatus
    percentage: int = Field(..., ge=0, le=100)
    message: str


class DocumentStatus(BaseModel):
    """Status view returned to the submission API."""

    doc_id: UUID
    ingest_status: IngestStatus
    progress: DocumentProgress
    error_message: str | None = None
    page_count: int | None = None
    chunk_count: int | None = None
