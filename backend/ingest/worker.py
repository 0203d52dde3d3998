"""Standalone worker process.

Usage:
    python -m backend.ingest.worker [--concurrency N] [--job-types parse_pdf,chunk]

Runs a worker pool against the configured metadata store until SIGINT or
SIGTERM, then stops gracefully.
"""

import asyncio
import logging
import signal

import typer

from backend.ingest.bootstrap import build_container
from backend.ingest.config import Settings, get_settings
from backend.ingest.models import JobType
from backend.ingest.pipeline.workers import job_types_for
from backend.ingest.utils.logging import configure_logging

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="ingest-worker",
    help="Run document ingestion workers",
    add_completion=False,
)


async def _serve(settings: Settings, job_types: list[JobType] | None) -> None:
    container = await build_container(settings, job_types=job_types)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await container.pool.start()
    logger.info(
        "Worker %s serving %s", container.pool.name, [t.value for t in container.pool.job_types]
    )

    await stop.wait()
    logger.info("Shutdown signal received")
    await container.close()


@app.command()
def serve(
    concurrency: int | None = typer.Option(
        None, "--concurrency", "-c", help="Number of worker slots"
    ),
    job_types: str | None = typer.Option(
        None, "--job-types", help="Comma-separated job types to serve (default: all)"
    ),
    name: str | None = typer.Option(None, "--name", help="Worker pool name"),
) -> None:
    """Serve queued jobs until interrupted."""
    settings = get_settings()
    configure_logging(settings.log_level)

    overrides = {}
    if concurrency is not None:
        overrides["worker_concurrency"] = concurrency
    if name:
        overrides["worker_name"] = name
    if overrides:
        settings = settings.model_copy(update=overrides)

    selected = None
    if job_types:
        try:
            selected = job_types_for([part.strip() for part in job_types.split(",")])
        except ValueError as e:
            raise typer.BadParameter(str(e), param_hint="--job-types") from e

    asyncio.run(_serve(settings, selected))


def main() -> None:
    app()


if __name__ == "__main__":
    main()
