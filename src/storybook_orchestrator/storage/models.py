"""Storage models shared by the orchestrator and persistence backends."""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

# Task lifecycle: pending -> processing -> completed | failed.
TaskStatus = Literal["pending", "processing", "completed", "failed"]

Severity = Literal["info", "warning", "error"]


class TaskRecord(BaseModel):
    """Local record of one generation request."""

    task_id: str
    user_id: str
    brief: str
    tags: list[str] = Field(default_factory=list)
    custom_tags: list[str] = Field(default_factory=list)
    status: TaskStatus = "pending"
    progress: int = 0
    error_message: str | None = None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None


class JobMappingRecord(BaseModel):
    """Links a local task to the external job's thread and run ids."""

    mapping_id: str
    local_task_id: str
    user_id: str
    thread_id: str | None = None
    run_id: str | None = None
    status: TaskStatus = "pending"
    request_data: dict[str, Any] | None = None
    response_data: dict[str, Any] | None = None
    error_message: str | None = None
    retry_count: int = 0
    max_retries: int = 3
    created_at: datetime
    updated_at: datetime


class RateWindowRecord(BaseModel):
    """Request counter for one (user, operation) window."""

    window_id: str
    user_id: str
    operation: str
    request_count: int
    window_start: datetime
    window_seconds: int
    max_requests: int
    created_at: datetime
    updated_at: datetime


class StoryPageRecord(BaseModel):
    page_number: int
    text: str
    image: str


class StoryDocumentRecord(BaseModel):
    """Parsed storybook persisted once per completed task."""

    document_id: str
    task_id: str
    user_id: str
    title: str
    description: str | None = None
    pages: list[StoryPageRecord] = Field(default_factory=list)
    created_at: datetime


class ErrorLogRecord(BaseModel):
    user_id: str | None = None
    operation: str | None = None
    error_type: str
    error_message: str
    stack_trace: str | None = None
    request_data: dict[str, Any] | None = None
    severity: Severity = "error"
    resolved: bool = False
    created_at: datetime


class RequestLogRecord(BaseModel):
    user_id: str
    operation: str
    method: str
    request_body: dict[str, Any] | None = None
    response_body: dict[str, Any] | None = None
    status_code: int
    response_time_ms: int
    ip_address: str | None = None
    user_agent: str | None = None
    created_at: datetime


class MetricRecord(BaseModel):
    metric_name: str
    metric_value: float
    metric_unit: str | None = None
    tags: dict[str, Any] = Field(default_factory=dict)
    recorded_at: datetime
