"""Models package - re-exports for convenience."""

from backend.ingest.models.common import (
    ACTIVE_JOB_STATUSES,
    TERMINAL_JOB_STATUSES,
    EmbeddingStatus,
    IngestStatus,
    JobStatus,
    JobType,
    utcnow,
)
from backend.ingest.models.documents import (
    BoundingBox,
    Document,
    DocumentChunk,
    DocumentProgress,
    DocumentSection,
    DocumentStatus,
)
from backend.ingest.models.jobs import JobFilter, ProcessingJob
from backend.ingest.models.workers import (
    ProgressUpdate,
    QueueStats,
    SystemHealth,
    WorkerEvent,
    WorkerEventData,
    WorkerState,
    WorkerStats,
)
