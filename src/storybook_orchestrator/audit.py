"""Best-effort audit trail: error log, request log and metrics.

Nothing here may fail the request that is being audited. Storage errors are
logged and dropped.
"""

from __future__ import annotations

import logging
import traceback
from datetime import UTC, datetime
from typing import Any

from storybook_orchestrator.storage.base import StoryStorage
from storybook_orchestrator.storage.models import (
    ErrorLogRecord,
    MetricRecord,
    RequestLogRecord,
    Severity,
)

logger = logging.getLogger(__name__)


class AuditSink:
    def __init__(self, storage: StoryStorage) -> None:
        self.storage = storage

    def error(
        self,
        *,
        operation: str,
        error_type: str,
        message: str,
        user_id: str | None = None,
        request_data: dict[str, Any] | None = None,
        severity: Severity = "error",
        exc: BaseException | None = None,
    ) -> None:
        log = logger.error if severity == "error" else logger.warning
        log(
            "audit event=error operation=%s error_type=%s user_id=%s message=%s",
            operation,
            error_type,
            user_id,
            message,
        )
        stack_trace = None
        if exc is not None:
            stack_trace = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        record = ErrorLogRecord(
            user_id=user_id,
            operation=operation,
            error_type=error_type,
            error_message=message,
            stack_trace=stack_trace,
            request_data=request_data,
            severity=severity,
            created_at=datetime.now(UTC),
        )
        try:
            self.storage.log_error(record)
        except Exception as write_exc:  # noqa: BLE001
            logger.warning("audit event=error_log_failed reason=%s", write_exc)

    def request(
        self,
        *,
        user_id: str,
        operation: str,
        method: str,
        status_code: int,
        response_time_ms: int,
        request_body: dict[str, Any] | None = None,
        response_body: dict[str, Any] | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        record = RequestLogRecord(
            user_id=user_id,
            operation=operation,
            method=method,
            request_body=request_body,
            response_body=response_body,
            status_code=status_code,
            response_time_ms=response_time_ms,
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=datetime.now(UTC),
        )
        try:
            self.storage.log_request(record)
        except Exception as write_exc:  # noqa: BLE001
            logger.warning("audit event=request_log_failed reason=%s", write_exc)

    def metric(
        self,
        name: str,
        value: float,
        *,
        unit: str | None = None,
        tags: dict[str, Any] | None = None,
    ) -> None:
        record = MetricRecord(
            metric_name=name,
            metric_value=value,
            metric_unit=unit,
            tags=tags or {},
            recorded_at=datetime.now(UTC),
        )
        try:
            self.storage.record_metric(record)
        except Exception as write_exc:  # noqa: BLE001
            logger.warning("audit event=metric_failed name=%s reason=%s", name, write_exc)
