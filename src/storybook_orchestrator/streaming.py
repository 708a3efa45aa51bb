"""Consume the external job's event stream and accumulate the agent's text.

The stream is newline-delimited. Each line is empty, a comment (``:`` prefix)
or an event line ``data: <json>``. Reads from the socket do not respect line
boundaries, so the trailing partial line of every chunk is held back until
the next chunk (or end-of-stream) completes it.
"""

from __future__ import annotations

import codecs
import json
import logging
import threading
import time
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field
from typing import Any

from storybook_orchestrator.errors import StreamTimeoutError
from storybook_orchestrator.external.transport import ByteStream

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
COMMENT_PREFIX = ":"
AGENT_ROLE = "assistant"


class CancellationToken:
    """Deadline plus manual cancel flag, checked by the reconciler between reads."""

    def __init__(
        self,
        timeout_s: float | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._clock = clock
        self._deadline = clock() + timeout_s if timeout_s is not None else None
        self._cancelled = threading.Event()

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        if self._cancelled.is_set():
            return True
        return self._deadline is not None and self._clock() >= self._deadline


@dataclass
class ReconciledStream:
    content: str
    messages: list[dict[str, Any]] = field(default_factory=list)
    frames: int = 0
    skipped: int = 0


def iter_chunks(
    stream: ByteStream,
    *,
    read_size: int = 4096,
    cancel_token: CancellationToken | None = None,
) -> Iterator[bytes]:
    """Yield raw chunks until the stream reports end-of-stream (an empty read)."""
    while True:
        if cancel_token is not None and cancel_token.cancelled:
            raise StreamTimeoutError("Result stream did not finish before the deadline")
        chunk = stream.read(read_size)
        if not chunk:
            return
        yield chunk


def iter_lines(chunks: Iterable[bytes]) -> Iterator[str]:
    """Yield complete text lines from arbitrarily split byte chunks."""
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    pending = ""
    for chunk in chunks:
        pending += decoder.decode(chunk)
        *complete, pending = pending.split("\n")
        for line in complete:
            yield line.rstrip("\r")
    pending += decoder.decode(b"", final=True)
    if pending:
        yield pending.rstrip("\r")


def decode_frame(line: str) -> dict[str, Any] | None:
    """Return the JSON payload of an event line, or None for blanks and comments.

    Raises ``ValueError`` when the line is an event line whose payload is not a
    JSON object.
    """
    if not line or line.startswith(COMMENT_PREFIX):
        return None
    if not line.startswith(DATA_PREFIX):
        return None
    raw = line[len(DATA_PREFIX) :].lstrip(" ")
    payload = json.loads(raw)
    if not isinstance(payload, dict):
        raise ValueError("event payload is not a JSON object")
    return payload


class StreamReconciler:
    def __init__(self, *, read_size: int = 4096) -> None:
        if read_size <= 0:
            raise ValueError("read_size must be positive")
        self.read_size = read_size

    def reconcile(
        self,
        stream: ByteStream,
        cancel_token: CancellationToken | None = None,
    ) -> ReconciledStream:
        """Read ``stream`` to its end and return the accumulated agent output.

        When ``cancel_token`` fires, the stream is closed and ``StreamTimeoutError``
        is raised; nothing read so far is returned.
        """
        token = cancel_token or CancellationToken()
        parts: list[str] = []
        messages: list[dict[str, Any]] = []
        frames = 0
        skipped = 0
        try:
            chunks = iter_chunks(stream, read_size=self.read_size, cancel_token=token)
            for line in iter_lines(chunks):
                try:
                    payload = decode_frame(line)
                except ValueError:
                    # json.JSONDecodeError is a ValueError subclass.
                    skipped += 1
                    logger.debug("stream event=skipped_frame line=%r", line[:120])
                    continue
                if payload is None:
                    continue
                frames += 1
                content = payload.get("content")
                if payload.get("type") != "message" or not content:
                    continue
                messages.append(payload)
                if payload.get("role") == AGENT_ROLE:
                    parts.append(content if isinstance(content, str) else str(content))
        finally:
            stream.close()

        logger.info(
            "stream event=reconciled frames=%d messages=%d skipped=%d",
            frames,
            len(messages),
            skipped,
        )
        return ReconciledStream(
            content="".join(parts),
            messages=messages,
            frames=frames,
            skipped=skipped,
        )
