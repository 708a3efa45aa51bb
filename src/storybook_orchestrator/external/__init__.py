"""Client for the external story generation service."""

from storybook_orchestrator.external.client import ExternalJobClient, ExternalStatus, JobHandle
from storybook_orchestrator.external.transport import (
    ByteStream,
    HttpResponse,
    HttpTransport,
    UrllibTransport,
)

__all__ = [
    "ByteStream",
    "ExternalJobClient",
    "ExternalStatus",
    "HttpResponse",
    "HttpTransport",
    "JobHandle",
    "UrllibTransport",
]
