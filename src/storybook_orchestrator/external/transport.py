"""Minimal HTTP transport used by the external job client.

The client only needs two shapes: a buffered request/response and a raw byte
stream. Both sit behind a protocol so tests can hand in a fake without
touching the network.
"""

from __future__ import annotations

import http.client
from dataclasses import dataclass, field
from typing import Any, Protocol
from urllib import error, request

from storybook_orchestrator.errors import ExternalServiceError


@dataclass
class HttpResponse:
    status: int
    body: bytes = b""
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")


class ByteStream(Protocol):
    def read(self, size: int) -> bytes: ...

    def close(self) -> None: ...


class HttpTransport(Protocol):
    def request(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str],
        body: bytes | None = None,
        timeout_s: float,
    ) -> HttpResponse: ...

    def open_stream(
        self,
        url: str,
        *,
        headers: dict[str, str],
        timeout_s: float,
    ) -> ByteStream: ...


class _UrllibStream:
    """Adapts an ``http.client.HTTPResponse`` to ``ByteStream``."""

    def __init__(self, response: Any) -> None:
        self._response = response

    def read(self, size: int) -> bytes:
        # read1 returns what is already buffered without waiting for `size` bytes.
        reader = getattr(self._response, "read1", None) or self._response.read
        try:
            chunk = reader(size)
        except (http.client.HTTPException, OSError) as exc:
            raise ExternalServiceError(f"Stream read failed: {exc!r}") from exc
        remaining = getattr(self._response, "length", None)
        if not chunk and isinstance(remaining, int) and remaining > 0:
            raise ExternalServiceError(
                f"Stream closed early with {remaining} bytes still expected"
            )
        return chunk

    def close(self) -> None:
        self._response.close()


class UrllibTransport:
    """Transport backed by ``urllib.request``."""

    def request(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str],
        body: bytes | None = None,
        timeout_s: float,
    ) -> HttpResponse:
        req = request.Request(url=url, data=body, method=method, headers=headers)
        try:
            with request.urlopen(req, timeout=timeout_s) as response:
                return HttpResponse(
                    status=response.status,
                    body=response.read(),
                    headers=dict(response.headers.items()),
                )
        except error.HTTPError as exc:
            return HttpResponse(
                status=exc.code,
                body=exc.read(),
                headers=dict(exc.headers.items()) if exc.headers else {},
            )
        except error.URLError as exc:
            raise ExternalServiceError(f"Request to {url} failed: {exc.reason}") from exc
        except (TimeoutError, OSError, http.client.HTTPException) as exc:
            raise ExternalServiceError(f"Request to {url} failed: {exc!r}") from exc

    def open_stream(
        self,
        url: str,
        *,
        headers: dict[str, str],
        timeout_s: float,
    ) -> ByteStream:
        req = request.Request(url=url, method="GET", headers=headers)
        try:
            response = request.urlopen(req, timeout=timeout_s)
        except error.HTTPError as exc:
            message = exc.read().decode("utf-8", errors="replace")
            raise ExternalServiceError(
                f"Stream request failed with status {exc.code}: {message[:400]}",
                status_code=exc.code,
            ) from exc
        except error.URLError as exc:
            raise ExternalServiceError(f"Stream request failed: {exc.reason}") from exc
        except (TimeoutError, OSError, http.client.HTTPException) as exc:
            raise ExternalServiceError(f"Stream request failed: {exc!r}") from exc
        return _UrllibStream(response)
