from __future__ import annotations

from storybook_orchestrator.audit import AuditSink
from storybook_orchestrator.storage.memory import InMemoryStoryStorage


class _BrokenStorage(InMemoryStoryStorage):
    def log_error(self, record):  # type: ignore[override]
        raise ConnectionError("audit table unavailable")

    def log_request(self, record):  # type: ignore[override]
        raise ConnectionError("audit table unavailable")

    def record_metric(self, record):  # type: ignore[override]
        raise ConnectionError("audit table unavailable")


def test_error_records_stack_trace_when_exception_given() -> None:
    storage = InMemoryStoryStorage()
    try:
        raise RuntimeError("boom")
    except RuntimeError as exc:
        AuditSink(storage).error(
            operation="submit", error_type="INTERNAL_ERROR", message="boom", exc=exc
        )

    (record,) = storage.error_logs
    assert record.error_type == "INTERNAL_ERROR"
    assert record.severity == "error"
    assert "RuntimeError: boom" in record.stack_trace


def test_request_and_metric_are_persisted() -> None:
    storage = InMemoryStoryStorage()
    sink = AuditSink(storage)

    sink.request(
        user_id="alice", operation="status", method="GET", status_code=200, response_time_ms=12
    )
    sink.metric("external_api_response_time", 42.5, unit="ms", tags={"endpoint": "initiate"})

    assert storage.request_logs[0].operation == "status"
    assert storage.metrics[0].metric_value == 42.5
    assert storage.metrics[0].tags == {"endpoint": "initiate"}


def test_storage_failures_never_propagate() -> None:
    sink = AuditSink(_BrokenStorage())

    sink.error(operation="submit", error_type="X", message="m", severity="warning")
    sink.request(
        user_id="alice", operation="submit", method="POST", status_code=500, response_time_ms=1
    )
    sink.metric("m", 1.0)
