"""Request and response bodies of the public operations.

Fields are snake_case in Python and camelCase on the wire.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from storybook_orchestrator.storage.models import StoryDocumentRecord, TaskStatus


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class GenerateRequest(ApiModel):
    brief: str = Field(min_length=1, max_length=2000)
    tags: list[str] = Field(default_factory=list)
    custom_tags: list[str] | None = None


class SubmitResponse(ApiModel):
    task_id: str
    status: TaskStatus
    external_thread_id: str | None = None
    external_run_id: str | None = None
    message: str | None = None
    error: str | None = None


class StatusResponse(ApiModel):
    task_id: str
    status: TaskStatus
    progress: int = 0
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None
    error_message: str | None = None
    external_thread_id: str | None = None
    external_run_id: str | None = None
    error: str | None = None


class PageOut(ApiModel):
    number: int
    text: str
    image: str


class DocumentOut(ApiModel):
    document_id: str | None = None
    title: str
    description: str | None = None
    pages: list[PageOut] = Field(default_factory=list)

    @classmethod
    def from_record(cls, record: StoryDocumentRecord) -> DocumentOut:
        return cls(
            document_id=record.document_id,
            title=record.title,
            description=record.description,
            pages=[
                PageOut(number=page.page_number, text=page.text, image=page.image)
                for page in record.pages
            ],
        )


class ResultResponse(ApiModel):
    task_id: str
    status: TaskStatus
    message: str | None = None
    error_message: str | None = None
    document: DocumentOut | None = None
    raw_content: str | None = None
    error: str | None = None


class SaveRequest(ApiModel):
    task_id: str = Field(min_length=1)
    document: DocumentOut


class SaveResponse(ApiModel):
    success: bool
    document_id: str
    message: str | None = None


class UsageResponse(ApiModel):
    days: int
    total_requests: int
    error_count: int
    avg_response_time_ms: float
    by_operation: dict[str, int] = Field(default_factory=dict)
