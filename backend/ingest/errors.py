"""Error taxonomy for the ingestion pipeline.

Transient errors are retried by the job queue up to ``max_retries``;
structural errors fail the document immediately. Concurrency conflicts mark
a stale or duplicate completion and are dropped without failing anything.
"""


class IngestError(Exception):
    """Base class for pipeline errors."""

    pass


class TransientError(IngestError):
    """Recoverable failure (storage timeout, network blip)."""

    pass


class StorageError(TransientError):
    """Content store read or write failed."""

    pass


class StageTimeoutError(TransientError):
    """Stage execution exceeded the job timeout."""

    def __init__(self, timeout_seconds: float) -> None:
        super().__init__(f"timeout: stage exceeded {timeout_seconds:g}s")
        self.timeout_seconds = timeout_seconds


class StructuralError(IngestError):
    """Unrecoverable input or data-integrity failure. Never retried."""

    pass


class ParseError(StructuralError):
    """Document could not be parsed.

    A parse failure is structural unless flagged ``transient`` (e.g. the
    underlying read timed out), in which case it follows the retry path.
    """

    def __init__(self, reason: str, *, transient: bool = False) -> None:
        super().__init__(reason)
        self.reason = reason
        self.transient = transient


class UnsupportedFormatError(ParseError):
    """No parser is registered for the mime type."""

    def __init__(self, mime_type: str) -> None:
        super().__init__(f"unsupported format: {mime_type}")
        self.mime_type = mime_type


class ChunkError(StructuralError):
    """Section input violates offset invariants."""

    pass


class EmbedError(StructuralError):
    """Embedder returned a result that does not match its input."""

    pass


class StageCancelledError(IngestError):
    """Cancellation was observed at a safe point inside a stage."""

    pass


class ConcurrencyConflict(IngestError):
    """Optimistic status check failed at transition time."""

    pass


class DuplicateJobError(IngestError):
    """A queued or running job already exists for this document and stage."""

    pass


class DuplicateDocumentError(IngestError):
    """A document with the same owner and fingerprint already exists."""

    pass


class DocumentNotFoundError(IngestError):
    """Document does not exist or is not visible to the caller."""

    pass


class JobNotFoundError(IngestError):
    """Processing job does not exist."""

    pass


def is_retryable(exc: BaseException) -> bool:
    """Classify an exception raised inside a stage.

    Unknown exceptions are treated as transient.
    """
    if isinstance(exc, ParseError):
        return exc.transient
    if isinstance(exc, (StructuralError, StageCancelledError)):
        return False
    return True


def error_reason(exc: BaseException) -> str:
    """Short reason tag used for metrics and log records."""
    if isinstance(exc, StageTimeoutError):
        return "timeout"
    if isinstance(exc, StageCancelledError):
        return "cancelled"
    if isinstance(exc, StorageError):
        return "storage"
    if isinstance(exc, StructuralError):
        return "structural"
    return type(exc).__name__
