"""Storage interface for story task lifecycle, rate windows, documents and audit rows."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

from storybook_orchestrator.storage.models import (
    ErrorLogRecord,
    JobMappingRecord,
    MetricRecord,
    RateWindowRecord,
    RequestLogRecord,
    StoryDocumentRecord,
    StoryPageRecord,
    TaskRecord,
    TaskStatus,
)


class StoryStorage(Protocol):
    def migrate(self) -> None: ...

    # Tasks. Reads are scoped by owner: another user's task reads as None.
    def create_task(
        self,
        *,
        brief: str,
        tags: list[str],
        custom_tags: list[str],
        user_id: str,
    ) -> TaskRecord: ...

    def get_task(self, task_id: str, user_id: str) -> TaskRecord | None: ...

    def set_task_status(
        self,
        task_id: str,
        status: TaskStatus,
        *,
        error_message: str | None = None,
        completed_at: datetime | None = None,
        progress: int | None = None,
    ) -> TaskRecord: ...

    # Job mappings, unique per local task id.
    def create_mapping(
        self,
        *,
        local_task_id: str,
        user_id: str,
        status: TaskStatus,
        request_data: dict[str, Any] | None,
        retry_count: int = 0,
        max_retries: int = 3,
    ) -> JobMappingRecord: ...

    def update_mapping(self, local_task_id: str, **patch: Any) -> JobMappingRecord: ...

    def get_mapping(self, local_task_id: str) -> JobMappingRecord | None: ...

    # Rate windows.
    def get_rate_window(
        self, user_id: str, operation: str, since: datetime
    ) -> RateWindowRecord | None: ...

    def create_rate_window(
        self,
        *,
        user_id: str,
        operation: str,
        window_start: datetime,
        window_seconds: int,
        max_requests: int,
    ) -> RateWindowRecord: ...

    def increment_rate_window(self, window_id: str) -> RateWindowRecord: ...

    # Documents, unique per task id.
    def get_document(self, task_id: str, user_id: str) -> StoryDocumentRecord | None: ...

    def create_document(
        self,
        *,
        task_id: str,
        user_id: str,
        title: str,
        description: str | None,
        pages: list[StoryPageRecord],
    ) -> StoryDocumentRecord: ...

    # Append-only audit rows.
    def log_error(self, record: ErrorLogRecord) -> None: ...

    def log_request(self, record: RequestLogRecord) -> None: ...

    def record_metric(self, record: MetricRecord) -> None: ...

    def list_request_logs(self, user_id: str, since: datetime) -> list[RequestLogRecord]: ...

    def purge_audit_logs(
        self,
        *,
        request_logs_before: datetime,
        metrics_before: datetime,
        resolved_errors_before: datetime,
    ) -> int: ...
