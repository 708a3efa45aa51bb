"""Error taxonomy and the discriminated failure result returned by operations.

Expected conditions (missing task, rate limit, bad credential) are returned as
``Failure`` values so route handlers can map them to HTTP responses without
try/except. Exceptions are kept for conditions raised deep inside a
collaborator (external service, storage constraint) and for faults nobody
expected.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel

FailureKind = Literal[
    "bad_request",
    "auth_error",
    "rate_limit_exceeded",
    "not_found",
    "external_service_error",
    "internal_error",
]

STATUS_CODES: dict[FailureKind, int] = {
    "bad_request": 400,
    "auth_error": 401,
    "not_found": 404,
    "rate_limit_exceeded": 429,
    "external_service_error": 500,
    "internal_error": 500,
}


class StorybookError(Exception):
    """Base class for errors raised by this package."""

    kind: FailureKind = "internal_error"

    def to_failure(self, *, status_code: int | None = None) -> Failure:
        return Failure.of(self.kind, str(self), status_code=status_code)


class AuthError(StorybookError):
    kind: FailureKind = "auth_error"


class RateLimitExceeded(StorybookError):
    kind: FailureKind = "rate_limit_exceeded"


class NotFoundError(StorybookError):
    kind: FailureKind = "not_found"


class ExternalServiceError(StorybookError):
    """The generation service answered with a non-success status or was unreachable."""

    kind: FailureKind = "external_service_error"

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class StreamTimeoutError(ExternalServiceError):
    """The result stream did not finish before the caller's deadline."""


class InternalError(StorybookError):
    kind: FailureKind = "internal_error"


class DuplicateRecordError(StorybookError):
    """A uniqueness constraint rejected the write."""


class Failure(BaseModel):
    """Non-success outcome of a public operation."""

    kind: FailureKind
    message: str
    status_code: int

    @classmethod
    def of(cls, kind: FailureKind, message: str, *, status_code: int | None = None) -> Failure:
        return cls(
            kind=kind,
            message=message,
            status_code=status_code if status_code is not None else STATUS_CODES[kind],
        )
