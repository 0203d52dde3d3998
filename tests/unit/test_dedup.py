"""Unit tests for document admission and content-hash deduplication."""

import uuid

import pytest

from backend.ingest.db.inmemory import InMemoryDocumentRepository
from backend.ingest.docs.dedup import Deduplicator, fingerprint
from backend.ingest.errors import DuplicateDocumentError, StorageError
from backend.ingest.models import Document, IngestStatus
from backend.ingest.storage.content_store import InMemoryContentStore, storage_path_for

CONTENT = b"# Handbook\n\nWelcome aboard.\n"


class FailingStore(InMemoryContentStore):
    """Store whose writes always fail."""

    async def put(self, path: str, data: bytes) -> None:
        raise StorageError("disk full")


class RacingDocuments(InMemoryDocumentRepository):
    """Repository where another upload wins the insert race."""

    def __init__(self, winner: Document) -> None:
        super().__init__()
        self._winner = winner
        self._armed = True

    async def find_by_user_and_hash(self, user_id, content_hash):
        if self._armed:
            self._armed = False
            return None
        return await super().find_by_user_and_hash(user_id, content_hash)

    async def create_document(self, document: Document) -> Document:
        await super().create_document(self._winner)
        raise DuplicateDocumentError("lost the race")


def test_fingerprint_is_sha256_hex() -> None:
    assert fingerprint(b"") == "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
    assert len(fingerprint(CONTENT)) == 64


def test_storage_path_uses_owner_hash_and_extension() -> None:
    user_id = uuid.UUID("00000000-0000-0000-0000-000000000001")
    assert storage_path_for(user_id, "abc", "Report.PDF") == f"{user_id}/abc.pdf"
    assert storage_path_for(user_id, "abc", "noext") == f"{user_id}/abc"


@pytest.mark.asyncio
async def test_new_upload_is_stored_and_uploaded(
    deduplicator: Deduplicator,
    documents: InMemoryDocumentRepository,
    store: InMemoryContentStore,
    user_id: uuid.UUID,
) -> None:
    """Test that new content creates a document in uploaded with its bytes stored."""
    result = await deduplicator.admit(user_id, CONTENT, "handbook.md", "text/markdown")

    assert result.is_new is True
    assert result.needs_processing is True

    document = await documents.get_document(result.doc_id)
    assert document is not None
    assert document.ingest_status == IngestStatus.uploaded
    assert document.content_hash == fingerprint(CONTENT)
    assert document.size_bytes == len(CONTENT)
    assert await store.get(document.storage_path) == CONTENT


@pytest.mark.asyncio
async def test_repeat_upload_returns_existing_document(
    deduplicator: Deduplicator, store: InMemoryContentStore, user_id: uuid.UUID
) -> None:
    first = await deduplicator.admit(user_id, CONTENT, "handbook.md", "text/markdown")
    second = await deduplicator.admit(user_id, CONTENT, "copy-of-handbook.md", "text/markdown")

    assert second.doc_id == first.doc_id
    assert second.is_new is False
    assert second.needs_processing is False
    assert len(store) == 1


@pytest.mark.asyncio
async def test_same_content_for_different_users_is_not_shared(deduplicator: Deduplicator) -> None:
    first = await deduplicator.admit(uuid.uuid4(), CONTENT, "a.md", "text/markdown")
    second = await deduplicator.admit(uuid.uuid4(), CONTENT, "a.md", "text/markdown")

    assert first.doc_id != second.doc_id
    assert second.is_new is True


@pytest.mark.asyncio
async def test_empty_upload_is_rejected(deduplicator: Deduplicator, user_id: uuid.UUID) -> None:
    with pytest.raises(ValueError, match="empty"):
        await deduplicator.admit(user_id, b"", "a.md", "text/markdown")


@pytest.mark.asyncio
async def test_oversized_upload_is_rejected(
    documents: InMemoryDocumentRepository, store: InMemoryContentStore, user_id: uuid.UUID
) -> None:
    deduplicator = Deduplicator(documents, store, max_upload_bytes=10)

    with pytest.raises(ValueError, match="too large"):
        await deduplicator.admit(user_id, b"x" * 11, "a.md", "text/markdown")
    assert len(store) == 0


@pytest.mark.asyncio
async def test_disallowed_mime_type_is_rejected(
    documents: InMemoryDocumentRepository, store: InMemoryContentStore, user_id: uuid.UUID
) -> None:
    deduplicator = Deduplicator(documents, store, allowed_mime_types=["application/pdf"])

    with pytest.raises(ValueError, match="Unsupported mime type"):
        await deduplicator.admit(user_id, CONTENT, "a.md", "text/markdown")


@pytest.mark.asyncio
async def test_storage_failure_leaves_no_document(
    documents: InMemoryDocumentRepository, user_id: uuid.UUID
) -> None:
    """Test that a failed object write creates no document row."""
    deduplicator = Deduplicator(documents, FailingStore())

    with pytest.raises(StorageError):
        await deduplicator.admit(user_id, CONTENT, "a.md", "text/markdown")

    assert await documents.find_by_user_and_hash(user_id, fingerprint(CONTENT)) is None


@pytest.mark.asyncio
async def test_lost_insert_race_returns_winner(
    store: InMemoryContentStore, user_id: uuid.UUID
) -> None:
    """Test that a concurrent upload of the same content resolves to one document."""
    winner = Document(
        user_id=user_id,
        filename="a.md",
        content_hash=fingerprint(CONTENT),
        mime_type="text/markdown",
        size_bytes=len(CONTENT),
        storage_path=storage_path_for(user_id, fingerprint(CONTENT), "a.md"),
        ingest_status=IngestStatus.uploaded,
    )
    deduplicator = Deduplicator(RacingDocuments(winner), store)

    result = await deduplicator.admit(user_id, CONTENT, "a.md", "text/markdown")

    assert result.doc_id == winner.doc_id
    assert result.is_new is False
    # Same path as the winner, so the object is kept
    assert winner.storage_path in store


@pytest.mark.asyncio
async def test_reupload_restores_soft_deleted_document(
    deduplicator: Deduplicator, documents: InMemoryDocumentRepository, user_id: uuid.UUID
) -> None:
    """Test that uploading deleted content again restores it and asks for processing."""
    first = await deduplicator.admit(user_id, CONTENT, "a.md", "text/markdown")
    await documents.transition_document(first.doc_id, [IngestStatus.uploaded], IngestStatus.parsing)
    await documents.soft_delete_document(first.doc_id)

    second = await deduplicator.admit(user_id, CONTENT, "a.md", "text/markdown")

    assert second.doc_id == first.doc_id
    assert second.is_new is False
    assert second.needs_processing is True
    assert second.restored is True
    restored = await documents.get_document(first.doc_id)
    assert restored is not None
    # Status is left for the caller, which may resume a stage still running
    assert restored.ingest_status == IngestStatus.parsing


@pytest.mark.asyncio
async def test_reupload_of_chunked_deleted_document_keeps_output(
    deduplicator: Deduplicator, documents: InMemoryDocumentRepository, user_id: uuid.UUID
) -> None:
    first = await deduplicator.admit(user_id, CONTENT, "a.md", "text/markdown")
    await documents.transition_document(first.doc_id, [IngestStatus.uploaded], IngestStatus.chunked)
    await documents.soft_delete_document(first.doc_id)

    second = await deduplicator.admit(user_id, CONTENT, "a.md", "text/markdown")

    assert second.needs_processing is False
    restored = await documents.get_document(first.doc_id)
    assert restored is not None
    assert restored.ingest_status == IngestStatus.chunked
