"""Unit tests for the event channel, metrics and structured job logging."""

import logging
import uuid

import pytest
from prometheus_client import REGISTRY

from backend.ingest.errors import (
    ParseError,
    StageCancelledError,
    StageTimeoutError,
    StorageError,
    StructuralError,
    error_reason,
    is_retryable,
)
from backend.ingest.models import JobType, ProcessingJob, WorkerEvent, WorkerEventData
from backend.ingest.pipeline.events import EventChannel
from backend.ingest.pipeline.workers import NullJobLogger, NullJobMetrics
from backend.ingest.utils.logging import StructuredJobLogger
from backend.ingest.utils.metrics import PrometheusJobMetrics, record_admission


def _event(kind: WorkerEvent = WorkerEvent.job_started) -> WorkerEventData:
    return WorkerEventData(event=kind, worker_name="w")


class TestEventChannel:
    """Test EventChannel fan-out."""

    def test_publish_reaches_every_subscriber(self) -> None:
        channel = EventChannel()
        first = channel.subscribe()
        second = channel.subscribe()

        channel.publish(_event())

        assert first.qsize() == 1
        assert second.qsize() == 1
        assert channel.subscriber_count == 2

    def test_full_subscriber_drops_events(self) -> None:
        channel = EventChannel(maxsize=1)
        subscriber = channel.subscribe()

        channel.publish(_event(WorkerEvent.job_started))
        channel.publish(_event(WorkerEvent.job_completed))

        assert subscriber.qsize() == 1
        assert subscriber.get_nowait().event == WorkerEvent.job_started

    def test_unsubscribe_stops_delivery(self) -> None:
        channel = EventChannel()
        subscriber = channel.subscribe()
        channel.unsubscribe(subscriber)
        channel.unsubscribe(subscriber)

        channel.publish(_event())

        assert subscriber.empty()
        assert channel.subscriber_count == 0


class TestErrorClassification:
    """Test retry classification of stage errors."""

    @pytest.mark.parametrize(
        "exc,retryable",
        [
            (StorageError("s3 down"), True),
            (StageTimeoutError(1.5), True),
            (ConnectionResetError(), True),
            (ParseError("corrupt PDF"), False),
            (ParseError("read timeout", transient=True), True),
            (StructuralError("bad offsets"), False),
            (StageCancelledError("job cancelled"), False),
        ],
    )
    def test_is_retryable(self, exc: Exception, retryable: bool) -> None:
        assert is_retryable(exc) is retryable

    def test_error_reason_tags(self) -> None:
        assert error_reason(StageTimeoutError(2)) == "timeout"
        assert error_reason(StorageError("x")) == "storage"
        assert error_reason(ParseError("x")) == "structural"
        assert error_reason(KeyError("x")) == "KeyError"

    def test_timeout_message_names_limit(self) -> None:
        assert str(StageTimeoutError(0.05)) == "timeout: stage exceeded 0.05s"


class TestMetrics:
    """Test Prometheus metric wiring."""

    def test_error_counter_increments(self) -> None:
        labels = {"job_type": "chunk", "reason": "storage"}
        before = REGISTRY.get_sample_value("ingest_job_errors_total", labels) or 0.0

        PrometheusJobMetrics().inc_error("chunk", "storage")

        assert REGISTRY.get_sample_value("ingest_job_errors_total", labels) == before + 1

    def test_latency_histogram_observes(self) -> None:
        labels = {"job_type": "parse_pdf", "outcome": "success"}
        before = REGISTRY.get_sample_value("ingest_job_latency_ms_count", labels) or 0.0

        PrometheusJobMetrics().record_latency("parse_pdf", "success", 12.5)

        assert REGISTRY.get_sample_value("ingest_job_latency_ms_count", labels) == before + 1

    def test_admission_counter_by_outcome(self) -> None:
        labels = {"outcome": "duplicate"}
        before = REGISTRY.get_sample_value("ingest_documents_admitted_total", labels) or 0.0

        record_admission(is_new=False)

        assert REGISTRY.get_sample_value("ingest_documents_admitted_total", labels) == before + 1


def test_structured_logger_records_attempt(caplog: pytest.LogCaptureFixture) -> None:
    job = ProcessingJob(
        doc_id=uuid.uuid4(), user_id=uuid.uuid4(), job_type=JobType.parse_pdf, retry_count=2
    )

    with caplog.at_level(logging.INFO, logger="backend.ingest.utils.logging"):
        StructuredJobLogger().log_attempt(job, "w-1", "timeout", 12.5, error_reason="timeout")

    record = caplog.records[-1]
    assert record.levelno == logging.WARNING
    assert record.structured["attempt"] == 3
    assert record.structured["outcome"] == "timeout"
    assert record.structured["latency_ms"] == 12.5
    assert record.structured["error_reason"] == "timeout"


def test_null_recorders_write_nothing(caplog: pytest.LogCaptureFixture) -> None:
    """Test the pool's default recorders accept every call and leave no trace."""
    job = ProcessingJob(doc_id=uuid.uuid4(), user_id=uuid.uuid4(), job_type=JobType.chunk)
    labels = {"job_type": "chunk", "reason": "storage"}
    before = REGISTRY.get_sample_value("ingest_job_errors_total", labels)

    with caplog.at_level(logging.DEBUG):
        metrics = NullJobMetrics()
        metrics.inc_claimed("chunk")
        metrics.inc_error("chunk", "storage")
        metrics.record_latency("chunk", "error", 3.0)
        NullJobLogger().log_attempt(job, "w-1", "error", 3.0, error_reason="storage")

    assert caplog.records == []
    assert REGISTRY.get_sample_value("ingest_job_errors_total", labels) == before
