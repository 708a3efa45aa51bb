"""Storage backends and models."""

from storybook_orchestrator.storage.base import StoryStorage
from storybook_orchestrator.storage.memory import InMemoryStoryStorage
from storybook_orchestrator.storage.models import (
    JobMappingRecord,
    RateWindowRecord,
    StoryDocumentRecord,
    StoryPageRecord,
    TaskRecord,
)
from storybook_orchestrator.storage.postgres import PostgresStoryStorage

__all__ = [
    "InMemoryStoryStorage",
    "JobMappingRecord",
    "PostgresStoryStorage",
    "RateWindowRecord",
    "StoryDocumentRecord",
    "StoryPageRecord",
    "StoryStorage",
    "TaskRecord",
]
