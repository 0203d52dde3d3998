"""Structured logging for job execution."""

import logging
from typing import Any

from backend.ingest.models import ProcessingJob

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


class StructuredJobLogger:
    """Structured logger for job attempts."""

    def log_attempt(
        self,
        job: ProcessingJob,
        worker_id: str,
        outcome: str,
        latency_ms: float,
        error_reason: str | None = None,
    ) -> None:
        """Log one job attempt with structured data."""
        log_data: dict[str, Any] = {
            "job_id": str(job.job_id),
            "doc_id": str(job.doc_id),
            "job_type": job.job_type.value,
            "worker_id": worker_id,
            "attempt": job.retry_count + 1,
            "outcome": outcome,
            "latency_ms": round(latency_ms, 2),
        }

        if error_reason:
            log_data["error_reason"] = error_reason

        log_msg = f"Job execution: {job.job_type.value} - {outcome}"

        if outcome == "success":
            logger.info(log_msg, extra={"structured": log_data})
        else:
            logger.warning(log_msg, extra={"structured": log_data})


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging for the worker and API processes."""
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
