"""Document admission with content-hash deduplication."""

import hashlib
import logging
from typing import NamedTuple
from uuid import UUID

from backend.ingest.db.repositories import DocumentRepository
from backend.ingest.errors import DuplicateDocumentError, StorageError
from backend.ingest.models import Document, IngestStatus
from backend.ingest.storage.content_store import ContentStore, storage_path_for
from backend.ingest.utils.metrics import record_admission

logger = logging.getLogger(__name__)

# A restored document in one of these states still has its pipeline output
_SETTLED_STATUSES = frozenset({IngestStatus.chunked, IngestStatus.ready})


class AdmitResult(NamedTuple):
    """Outcome of admitting an upload.

    ``needs_processing`` is set for new documents and for restored
    documents whose pipeline was interrupted by deletion. ``restored`` marks
    a soft-deleted document brought back by the upload.
    """

    doc_id: UUID
    is_new: bool
    needs_processing: bool = False
    restored: bool = False


def fingerprint(content: bytes) -> str:
    """SHA-256 hex digest of the raw bytes."""
    return hashlib.sha256(content).hexdigest()


class Deduplicator:
    """Admits uploads, returning the existing document for repeat content."""

    def __init__(
        self,
        documents: DocumentRepository,
        store: ContentStore,
        *,
        max_upload_bytes: int | None = None,
        allowed_mime_types: list[str] | None = None,
    ) -> None:
        self._documents = documents
        self._store = store
        self._max_upload_bytes = max_upload_bytes
        self._allowed_mime_types = allowed_mime_types

    async def admit(
        self, user_id: UUID, content: bytes, filename: str, mime_type: str
    ) -> AdmitResult:
        """Admit an upload.

        Args:
            user_id: Owner of the document
            content: Raw file bytes
            filename: Original filename
            mime_type: Declared content type

        Returns:
            AdmitResult with the document id and whether it was newly created

        Raises:
            ValueError: Empty, oversized, or disallowed upload
            StorageError: Object write failed; no document row is left behind
        """
        self._validate(content, mime_type)
        content_hash = fingerprint(content)

        existing = await self._documents.find_by_user_and_hash(user_id, content_hash)
        if existing is not None:
            return await self._admit_existing(existing)

        storage_path = storage_path_for(user_id, content_hash, filename)

        # Object first: a row must never point at missing bytes
        await self._store.put(storage_path, content)

        document = Document(
            user_id=user_id,
            filename=filename,
            content_hash=content_hash,
            mime_type=mime_type,
            size_bytes=len(content),
            storage_path=storage_path,
            ingest_status=IngestStatus.uploading,
        )

        try:
            await self._documents.create_document(document)
        except DuplicateDocumentError:
            # Lost a race with a concurrent upload of the same content
            winner = await self._documents.find_by_user_and_hash(user_id, content_hash)
            if winner is None:
                raise
            if winner.storage_path != storage_path:
                await self._delete_quietly(storage_path)
            logger.info(
                "Concurrent upload resolved to existing document",
                extra={"structured": {"doc_id": str(winner.doc_id), "user_id": str(user_id)}},
            )
            record_admission(is_new=False)
            return AdmitResult(doc_id=winner.doc_id, is_new=False)
        except Exception:
            await self._delete_quietly(storage_path)
            raise

        await self._documents.transition_document(
            document.doc_id, [IngestStatus.uploading], IngestStatus.uploaded
        )

        logger.info(
            "Document admitted",
            extra={
                "structured": {
                    "doc_id": str(document.doc_id),
                    "user_id": str(user_id),
                    "size_bytes": len(content),
                    "mime_type": mime_type,
                }
            },
        )
        record_admission(is_new=True)
        return AdmitResult(doc_id=document.doc_id, is_new=True, needs_processing=True)

    async def _admit_existing(self, existing: Document) -> AdmitResult:
        record_admission(is_new=False)

        if not existing.is_deleted:
            return AdmitResult(doc_id=existing.doc_id, is_new=False)

        restored = await self._documents.restore_document(existing.doc_id)
        if restored is None:
            return AdmitResult(doc_id=existing.doc_id, is_new=False)

        logger.info(
            "Restored soft-deleted document",
            extra={"structured": {"doc_id": str(existing.doc_id)}},
        )

        if restored.ingest_status in _SETTLED_STATUSES:
            return AdmitResult(doc_id=restored.doc_id, is_new=False, restored=True)

        # The pipeline was interrupted by the delete; the caller resumes it
        return AdmitResult(
            doc_id=restored.doc_id, is_new=False, needs_processing=True, restored=True
        )

    def _validate(self, content: bytes, mime_type: str) -> None:
        if not content:
            raise ValueError("Upload is empty")
        if self._max_upload_bytes is not None and len(content) > self._max_upload_bytes:
            raise ValueError(
                f"Upload too large: {len(content)} bytes (max {self._max_upload_bytes})"
            )
        if self._allowed_mime_types is not None and mime_type not in self._allowed_mime_types:
            raise ValueError(f"Unsupported mime type: {mime_type}")

    async def _delete_quietly(self, storage_path: str) -> None:
        try:
            await self._store.delete(storage_path)
        except StorageError:
            logger.warning("Failed to remove orphaned object %s", storage_path, exc_info=True)
