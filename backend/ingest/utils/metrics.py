"""Prometheus metrics for job execution and document admission."""

from prometheus_client import Counter, Histogram

# Job execution metrics
job_latency_ms = Histogram(
    "ingest_job_latency_ms",
    "Job stage execution latency in milliseconds",
    ["job_type", "outcome"],
    buckets=[10, 50, 100, 250, 500, 1000, 2500, 5000, 15000, 60000, 300000],
)

job_errors_total = Counter(
    "ingest_job_errors_total",
    "Total failed job attempts",
    ["job_type", "reason"],
)

jobs_claimed_total = Counter(
    "ingest_jobs_claimed_total",
    "Total jobs claimed by workers",
    ["job_type"],
)

# Admission metrics
documents_admitted_total = Counter(
    "ingest_documents_admitted_total",
    "Total uploads admitted, by dedup outcome",
    ["outcome"],
)


class PrometheusJobMetrics:
    """Prometheus-based job metrics implementation."""

    def record_latency(self, job_type: str, outcome: str, latency_ms: float) -> None:
        """Record stage execution latency."""
        job_latency_ms.labels(job_type=job_type, outcome=outcome).observe(latency_ms)

    def inc_error(self, job_type: str, reason: str) -> None:
        """Increment error counter."""
        job_errors_total.labels(job_type=job_type, reason=reason).inc()

    def inc_claimed(self, job_type: str) -> None:
        """Increment claimed-job counter."""
        jobs_claimed_total.labels(job_type=job_type).inc()


def record_admission(is_new: bool) -> None:
    """Count an admitted upload as new or duplicate."""
    documents_admitted_total.labels(outcome="new" if is_new else "duplicate").inc()
