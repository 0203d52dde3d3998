"""FastAPI application - document ingestion API."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from backend.ingest.api.routes.documents import jobs_router
from backend.ingest.api.routes.documents import router as documents_router
from backend.ingest.api.routes.health import router as health_router
from backend.ingest.api.routes.metrics import router as metrics_router
from backend.ingest.bootstrap import build_container
from backend.ingest.config import Settings, get_settings
from backend.ingest.utils.logging import configure_logging


def create_app(settings: Settings | None = None) -> FastAPI:
    """Build the application; the lifespan wires components and starts workers."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        resolved = settings or get_settings()
        configure_logging(resolved.log_level)

        container = await build_container(resolved)
        app.state.container = container
        if resolved.api_run_workers:
            await container.pool.start()
        try:
            yield
        finally:
            await container.close()

    app = FastAPI(title="Document Ingestion API", version="0.1.0", lifespan=lifespan)

    # Register routes
    app.include_router(health_router, tags=["health"])
    app.include_router(metrics_router, tags=["metrics"])
    app.include_router(documents_router)
    app.include_router(jobs_router)

    @app.get("/")
    async def root() -> dict[str, str]:
        """Root endpoint."""
        return {"message": "Document Ingestion API", "version": "0.1.0"}

    return app


app = create_app()
