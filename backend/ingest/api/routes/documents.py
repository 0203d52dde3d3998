"""Document endpoints - upload, status, chunks, reprocess, delete, job cancel."""

import os
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, File, Form, HTTPException, Response, UploadFile, status
from pydantic import BaseModel

from backend.ingest.api.deps import get_service, get_user_id
from backend.ingest.errors import (
    ConcurrencyConflict,
    DocumentNotFoundError,
    DuplicateJobError,
    JobNotFoundError,
    StorageError,
    UnsupportedFormatError,
)
from backend.ingest.models import DocumentChunk, DocumentStatus, IngestStatus, JobStatus
from backend.ingest.pipeline.service import IngestService

router = APIRouter(prefix="/documents", tags=["documents"])
jobs_router = APIRouter(prefix="/jobs", tags=["jobs"])

_MIME_BY_EXTENSION = {
    ".pdf": "application/pdf",
    ".md": "text/markdown",
    ".markdown": "text/markdown",
    ".txt": "text/plain",
}


class SubmitDocumentResponse(BaseModel):
    """Response for POST /documents."""

    doc_id: UUID
    is_new: bool
    ingest_status: IngestStatus
    job_id: UUID | None = None


class ChunkListResponse(BaseModel):
    """Response for GET /documents/{doc_id}/chunks."""

    doc_id: UUID
    chunks: list[DocumentChunk]
    count: int


class JobResponse(BaseModel):
    """Job reference returned by reprocess and cancel."""

    job_id: UUID
    status: JobStatus


def resolve_mime_type(content_type: str | None, filename: str) -> str:
    """Use the declared type unless it is missing or generic."""
    if content_type and content_type != "application/octet-stream":
        return content_type.split(";")[0].strip()
    ext = os.path.splitext(filename)[1].lower()
    return _MIME_BY_EXTENSION.get(ext, content_type or "application/octet-stream")


@router.post("", response_model=SubmitDocumentResponse, status_code=status.HTTP_201_CREATED)
async def submit_document(
    response: Response,
    file: Annotated[UploadFile, File(description="PDF or Markdown file")],
    user_id: Annotated[UUID, Depends(get_user_id)],
    service: Annotated[IngestService, Depends(get_service)],
    priority: Annotated[int | None, Form()] = None,
) -> SubmitDocumentResponse:
    """Upload a document and start ingestion.

    Returns:
        201 for new content, 200 when the same content was already uploaded

    Raises:
        HTTPException: 400 invalid upload, 503 content store unavailable
    """
    filename = file.filename or "upload"
    content = await file.read()
    mime_type = resolve_mime_type(file.content_type, filename)

    try:
        result = await service.submit_document(
            user_id, content, filename, mime_type, priority=priority
        )
    except (ValueError, UnsupportedFormatError) as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    except StorageError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Content store unavailable"
        ) from e

    if not result.is_new:
        response.status_code = status.HTTP_200_OK

    return SubmitDocumentResponse(
        doc_id=result.doc_id,
        is_new=result.is_new,
        ingest_status=result.ingest_status,
        job_id=result.job_id,
    )


@router.get("/{doc_id}/status", response_model=DocumentStatus)
async def get_document_status(
    doc_id: UUID,
    user_id: Annotated[UUID, Depends(get_user_id)],
    service: Annotated[IngestService, Depends(get_service)],
) -> DocumentStatus:
    """Ingest status, progress and error of a document."""
    try:
        return await service.get_document_status(doc_id, user_id)
    except DocumentNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e


@router.get("/{doc_id}/chunks", response_model=ChunkListResponse)
async def list_chunks(
    doc_id: UUID,
    user_id: Annotated[UUID, Depends(get_user_id)],
    service: Annotated[IngestService, Depends(get_service)],
) -> ChunkListResponse:
    """Chunks of a document in chunk_index order."""
    try:
        chunks = await service.list_chunks(doc_id, user_id)
    except DocumentNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e

    return ChunkListResponse(doc_id=doc_id, chunks=chunks, count=len(chunks))


@router.post(
    "/{doc_id}/reprocess", response_model=JobResponse, status_code=status.HTTP_202_ACCEPTED
)
async def reprocess_document(
    doc_id: UUID,
    user_id: Annotated[UUID, Depends(get_user_id)],
    service: Annotated[IngestService, Depends(get_service)],
) -> JobResponse:
    """Restart ingestion from parsing.

    Raises:
        HTTPException: 404 if not found, 409 while a stage is in flight
    """
    try:
        job = await service.reprocess_document(doc_id, user_id)
    except DocumentNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except (ConcurrencyConflict, DuplicateJobError) as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e

    return JobResponse(job_id=job.job_id, status=job.status)


@router.delete("/{doc_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_document(
    doc_id: UUID,
    user_id: Annotated[UUID, Depends(get_user_id)],
    service: Annotated[IngestService, Depends(get_service)],
) -> Response:
    """Soft-delete a document and cancel its pending jobs."""
    try:
        await service.delete_document(doc_id, user_id)
    except DocumentNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e

    return Response(status_code=status.HTTP_204_NO_CONTENT)


@jobs_router.post("/{job_id}/cancel", response_model=JobResponse)
async def cancel_job(
    job_id: UUID,
    user_id: Annotated[UUID, Depends(get_user_id)],
    service: Annotated[IngestService, Depends(get_service)],
) -> JobResponse:
    """Cancel a queued job, or request cancellation of a running one.

    Raises:
        HTTPException: 404 if not found, 409 if the job already finished
    """
    try:
        job = await service.cancel_job(job_id, user_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e

    if job is None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Job already finished")

    return JobResponse(job_id=job.job_id, status=job.status)
