"""Fakes and sample data shared by the test suite."""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from storybook_orchestrator.auth import Identity
from storybook_orchestrator.errors import AuthError, ExternalServiceError
from storybook_orchestrator.external.transport import HttpResponse

BASE_URL = "https://agents.test"

STORY_TEXT = """Title: Rosie and the Rainbow Candy

Page 1:
Text: Rosie the rabbit woke up dreaming of rainbow candy.
Image: A small white rabbit yawning in a cozy burrow, morning light.

Page 2:
Text: She asked her friend Tom the turtle to help her search.
Image: Rabbit and turtle talking beside a mossy log.

Page 3:
Text: They crossed the whispering meadow full of tall grass.
Image: Two friends walking through golden grass under a blue sky.

Page 4:
Text: A wise owl told them the candy grows where rain meets sun.
Image: An owl on a branch pointing a wing toward distant clouds.

Page 5:
Text: They waited together until a gentle rain began to fall.
Image: Rabbit and turtle sharing a leaf umbrella in soft rain.

Page 6:
Text: The sun came out and a rainbow arched over the hill.
Image: A bright rainbow over a green hill with sparkling drops.

Page 7:
Text: At the rainbow's end they found candy and shared it with everyone.
Image: Forest animals gathered around a pile of colorful candy.
"""


def sse_message(content: str, *, role: str = "assistant", type_: str = "message") -> str:
    return "data: " + json.dumps({"type": type_, "role": role, "content": content}) + "\n\n"


def sse_body(text: str, *, pieces: int = 5) -> bytes:
    """Split ``text`` into several assistant frames wrapped in realistic noise."""
    size = max(1, len(text) // pieces + 1)
    frames = [": keep-alive\n\n", sse_message("Write a story...", role="user")]
    frames.extend(sse_message(text[i : i + size]) for i in range(0, len(text), size))
    frames.append("data: " + json.dumps({"type": "status", "status": "completed"}) + "\n\n")
    return "".join(frames).encode("utf-8")


def split_bytes(data: bytes, size: int) -> list[bytes]:
    return [data[i : i + size] for i in range(0, len(data), size)]


class FakeStream:
    def __init__(self, chunks: list[bytes]) -> None:
        self._chunks = list(chunks)
        self.closed = False
        self.reads = 0

    def read(self, size: int) -> bytes:
        self.reads += 1
        if not self._chunks:
            return b""
        return self._chunks.pop(0)

    def close(self) -> None:
        self.closed = True


@dataclass
class FakeTransport:
    """Scripted stand-in for the generation service."""

    initiate_status: int = 200
    initiate_payload: dict[str, Any] = field(
        default_factory=lambda: {"thread_id": "thread-1", "agent_run_id": "run-1"}
    )
    run_status: str = "running"
    run_error: str | None = None
    status_http: int = 200
    status_raises: bool = False
    stream_body: bytes = b""
    stream_chunk_size: int = 37
    stream_raises: bool = False
    save_status: int = 200
    save_payload: dict[str, Any] = field(default_factory=lambda: {"book_id": "book-9"})
    on_initiate: Callable[[], None] | None = None
    calls: list[tuple[str, str]] = field(default_factory=list)
    streams_opened: int = 0

    def request(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str],
        body: bytes | None = None,
        timeout_s: float,
    ) -> HttpResponse:
        self.calls.append((method, url))
        if url.endswith("/agent/initiate"):
            if self.on_initiate is not None:
                self.on_initiate()
            return HttpResponse(
                status=self.initiate_status,
                body=json.dumps(self.initiate_payload).encode("utf-8"),
            )
        if "/agent-run/" in url:
            if self.status_raises:
                raise ExternalServiceError("connection reset")
            payload: dict[str, Any] = {"status": self.run_status}
            if self.run_error:
                payload["error"] = self.run_error
            return HttpResponse(status=self.status_http, body=json.dumps(payload).encode("utf-8"))
        if url.endswith("/api/suna/save"):
            return HttpResponse(
                status=self.save_status,
                body=json.dumps(self.save_payload).encode("utf-8"),
            )
        return HttpResponse(status=404, body=b"not found")

    def open_stream(self, url: str, *, headers: dict[str, str], timeout_s: float) -> FakeStream:
        self.calls.append(("STREAM", url))
        if self.stream_raises:
            raise ExternalServiceError("Stream request failed with status 502", status_code=502)
        self.streams_opened += 1
        return FakeStream(split_bytes(self.stream_body, self.stream_chunk_size))


class StaticVerifier:
    """Accepts tokens of the form ``token-<user id>``."""

    def verify(self, credential: str) -> Identity:
        if not credential.startswith("token-"):
            raise AuthError("Invalid credential")
        return Identity(user_id=credential[len("token-") :], credential=credential)


def auth_headers(user_id: str = "alice") -> dict[str, str]:
    return {"Authorization": f"Bearer token-{user_id}"}
