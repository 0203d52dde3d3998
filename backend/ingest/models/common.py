"""Common types and enums shared across all models."""

from datetime import datetime, timezone
from enum import Enum


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored by the metadata store."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class IngestStatus(str, Enum):
    """Document lifecycle stage across the whole pipeline."""

    uploading = "uploading"
    uploaded = "uploaded"
    parsing = "parsing"
    parsed = "parsed"
    chunking = "chunking"
    chunked = "chunked"
    embedding = "embedding"
    ready = "ready"
    failed = "failed"


class JobType(str, Enum):
    """Pipeline stage a processing job represents."""

    parse_pdf = "parse_pdf"
    parse_markdown = "parse_markdown"
    chunk = "chunk"
    embed = "embed"


class JobStatus(str, Enum):
    """Processing job status."""

    queued = "queued"
    running = "running"
    succeeded = "succeeded"
    failed = "failed"
    cancelled = "cancelled"


ACTIVE_JOB_STATUSES = frozenset({JobStatus.queued, JobStatus.running})
TERMINAL_JOB_STATUSES = frozenset({JobStatus.succeeded, JobStatus.failed, JobStatus.cancelled})


class EmbeddingStatus(str, Enum):
    """Per-chunk embedding state."""

    pending = "pending"
    embedded = "embedded"
    failed = "failed"
