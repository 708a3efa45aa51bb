"""In-memory storage backend for tests and local runs."""

from __future__ import annotations

import threading
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from storybook_orchestrator.errors import DuplicateRecordError
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

_MAPPING_FIELDS = frozenset(
    {
        "thread_id",
        "run_id",
        "status",
        "request_data",
        "response_data",
        "error_message",
        "retry_count",
        "max_retries",
    }
)


class InMemoryStoryStorage:
    """Dict-backed implementation that enforces the same uniqueness rules as Postgres."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tasks: dict[str, TaskRecord] = {}
        self._mappings: dict[str, JobMappingRecord] = {}
        self._windows: dict[str, RateWindowRecord] = {}
        self._documents: dict[str, StoryDocumentRecord] = {}
        self.error_logs: list[ErrorLogRecord] = []
        self.request_logs: list[RequestLogRecord] = []
        self.metrics: list[MetricRecord] = []

    def migrate(self) -> None:
        return None

    def create_task(
        self,
        *,
        brief: str,
        tags: list[str],
        custom_tags: list[str],
        user_id: str,
    ) -> TaskRecord:
        now = datetime.now(UTC)
        record = TaskRecord(
            task_id=str(uuid4()),
            user_id=user_id,
            brief=brief,
            tags=list(tags),
            custom_tags=list(custom_tags),
            status="pending",
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self._tasks[record.task_id] = record
        return record.model_copy(deep=True)

    def get_task(self, task_id: str, user_id: str) -> TaskRecord | None:
        task = self._tasks.get(task_id)
        if task is None or task.user_id != user_id:
            return None
        return task.model_copy(deep=True)

    def set_task_status(
        self,
        task_id: str,
        status: TaskStatus,
        *,
        error_message: str | None = None,
        completed_at: datetime | None = None,
        progress: int | None = None,
    ) -> TaskRecord:
        with self._lock:
            current = self._tasks.get(task_id)
            if current is None:
                raise KeyError(f"Task {task_id} does not exist")
            update: dict[str, Any] = {"status": status, "updated_at": datetime.now(UTC)}
            if error_message is not None:
                update["error_message"] = error_message
            if completed_at is not None:
                update["completed_at"] = completed_at
            if progress is not None:
                update["progress"] = progress
            updated = current.model_copy(update=update)
            self._tasks[task_id] = updated
        return updated.model_copy(deep=True)

    def create_mapping(
        self,
        *,
        local_task_id: str,
        user_id: str,
        status: TaskStatus,
        request_data: dict[str, Any] | None,
        retry_count: int = 0,
        max_retries: int = 3,
    ) -> JobMappingRecord:
        now = datetime.now(UTC)
        with self._lock:
            if local_task_id in self._mappings:
                raise DuplicateRecordError(f"Job mapping for task {local_task_id} already exists")
            record = JobMappingRecord(
                mapping_id=str(uuid4()),
                local_task_id=local_task_id,
                user_id=user_id,
                status=status,
                request_data=request_data,
                retry_count=retry_count,
                max_retries=max_retries,
                created_at=now,
                updated_at=now,
            )
            self._mappings[local_task_id] = record
        return record.model_copy(deep=True)

    def update_mapping(self, local_task_id: str, **patch: Any) -> JobMappingRecord:
        unknown = set(patch) - _MAPPING_FIELDS
        if unknown:
            raise ValueError(f"Unknown job mapping fields: {sorted(unknown)}")
        with self._lock:
            current = self._mappings.get(local_task_id)
            if current is None:
                raise KeyError(f"Job mapping for task {local_task_id} does not exist")
            updated = current.model_copy(update={**patch, "updated_at": datetime.now(UTC)})
            self._mappings[local_task_id] = updated
        return updated.model_copy(deep=True)

    def get_mapping(self, local_task_id: str) -> JobMappingRecord | None:
        mapping = self._mappings.get(local_task_id)
        return mapping.model_copy(deep=True) if mapping else None

    def get_rate_window(
        self, user_id: str, operation: str, since: datetime
    ) -> RateWindowRecord | None:
        candidates = [
            window
            for window in self._windows.values()
            if window.user_id == user_id
            and window.operation == operation
            and window.window_start >= since
        ]
        if not candidates:
            return None
        latest = max(candidates, key=lambda window: window.window_start)
        return latest.model_copy(deep=True)

    def create_rate_window(
        self,
        *,
        user_id: str,
        operation: str,
        window_start: datetime,
        window_seconds: int,
        max_requests: int,
    ) -> RateWindowRecord:
        now = datetime.now(UTC)
        with self._lock:
            for window in self._windows.values():
                if (
                    window.user_id == user_id
                    and window.operation == operation
                    and window.window_start == window_start
                ):
                    raise DuplicateRecordError(
                        f"Rate window for {user_id}/{operation} at {window_start} already exists"
                    )
            record = RateWindowRecord(
                window_id=str(uuid4()),
                user_id=user_id,
                operation=operation,
                request_count=1,
                window_start=window_start,
                window_seconds=window_seconds,
                max_requests=max_requests,
                created_at=now,
                updated_at=now,
            )
            self._windows[record.window_id] = record
        return record.model_copy(deep=True)

    def increment_rate_window(self, window_id: str) -> RateWindowRecord:
        with self._lock:
            current = self._windows.get(window_id)
            if current is None:
                raise KeyError(f"Rate window {window_id} does not exist")
            updated = current.model_copy(
                update={
                    "request_count": current.request_count + 1,
                    "updated_at": datetime.now(UTC),
                }
            )
            self._windows[window_id] = updated
        return updated.model_copy(deep=True)

    def get_document(self, task_id: str, user_id: str) -> StoryDocumentRecord | None:
        document = self._documents.get(task_id)
        if document is None or document.user_id != user_id:
            return None
        return document.model_copy(deep=True)

    def create_document(
        self,
        *,
        task_id: str,
        user_id: str,
        title: str,
        description: str | None,
        pages: list[StoryPageRecord],
    ) -> StoryDocumentRecord:
        with self._lock:
            if task_id in self._documents:
                raise DuplicateRecordError(f"Story document for task {task_id} already exists")
            record = StoryDocumentRecord(
                document_id=str(uuid4()),
                task_id=task_id,
                user_id=user_id,
                title=title,
                description=description,
                pages=[page.model_copy() for page in pages],
                created_at=datetime.now(UTC),
            )
            self._documents[task_id] = record
        return record.model_copy(deep=True)

    def count_documents(self, task_id: str) -> int:
        return 1 if task_id in self._documents else 0

    def log_error(self, record: ErrorLogRecord) -> None:
        with self._lock:
            self.error_logs.append(record)

    def log_request(self, record: RequestLogRecord) -> None:
        with self._lock:
            self.request_logs.append(record)

    def record_metric(self, record: MetricRecord) -> None:
        with self._lock:
            self.metrics.append(record)

    def list_request_logs(self, user_id: str, since: datetime) -> list[RequestLogRecord]:
        rows = [
            row for row in self.request_logs if row.user_id == user_id and row.created_at >= since
        ]
        return sorted(rows, key=lambda row: row.created_at, reverse=True)

    def purge_audit_logs(
        self,
        *,
        request_logs_before: datetime,
        metrics_before: datetime,
        resolved_errors_before: datetime,
    ) -> int:
        with self._lock:
            before = len(self.request_logs) + len(self.metrics) + len(self.error_logs)
            self.request_logs = [
                row for row in self.request_logs if row.created_at >= request_logs_before
            ]
            self.metrics = [row for row in self.metrics if row.recorded_at >= metrics_before]
            self.error_logs = [
                row
                for row in self.error_logs
                if not (row.resolved and row.created_at < resolved_errors_before)
            ]
            after = len(self.request_logs) + len(self.metrics) + len(self.error_logs)
        return before - after
