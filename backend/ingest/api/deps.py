"""FastAPI dependencies.

Authentication is out of scope: the caller identifies itself with an
``X-User-Id`` header carrying a UUID.
"""

import uuid
from typing import Annotated

from fastapi import Header, HTTPException, Request, status

from backend.ingest.pipeline.service import IngestService


async def get_user_id(
    x_user_id: Annotated[str | None, Header()] = None,
) -> uuid.UUID:
    """Extract the caller's user id.

    Raises:
        HTTPException: 401 if the header is missing or not a UUID
    """
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-User-Id header",
        )

    try:
        return uuid.UUID(x_user_id)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid X-User-Id header (expected UUID)",
        ) from e


def get_service(request: Request) -> IngestService:
    """Ingest service built by the application lifespan."""
    return request.app.state.container.service
