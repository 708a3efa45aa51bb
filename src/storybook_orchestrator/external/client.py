"""Client for the external agent service that runs story generation jobs."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Literal
from urllib import parse

from storybook_orchestrator.errors import ExternalServiceError
from storybook_orchestrator.external.prompting import build_story_prompt
from storybook_orchestrator.external.transport import ByteStream, HttpTransport, UrllibTransport

logger = logging.getLogger(__name__)

ExternalState = Literal["running", "completed", "failed"]

_FAILED_STATES = frozenset({"failed"})


@dataclass
class JobHandle:
    thread_id: str
    run_id: str
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class ExternalStatus:
    state: ExternalState
    error: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.state != "running"


class ExternalJobClient:
    """Starts external jobs, polls their status and opens their result stream."""

    def __init__(
        self,
        *,
        base_url: str,
        save_url: str | None = None,
        transport: HttpTransport | None = None,
        model_name: str = "openai/gpt-4o",
        timeout_s: float = 30.0,
    ) -> None:
        if not base_url:
            raise ValueError("base_url is required")
        self.base_url = base_url.rstrip("/")
        self.save_url = save_url or f"{self.base_url}/api/suna/save"
        self.transport = transport or UrllibTransport()
        self.model_name = model_name
        self.timeout_s = timeout_s

    def initiate(
        self,
        brief: str,
        tags: list[str],
        credential: str,
        *,
        custom_tags: list[str] | None = None,
    ) -> JobHandle:
        form = {
            "prompt": build_story_prompt(brief, tags, custom_tags),
            "model_name": self.model_name,
            "enable_thinking": "false",
            "reasoning_effort": "medium",
            "stream": "true",
            "enable_context_manager": "false",
        }
        response = self.transport.request(
            "POST",
            f"{self.base_url}/agent/initiate",
            headers={
                **_auth_headers(credential),
                "Content-Type": "application/x-www-form-urlencoded",
            },
            body=parse.urlencode(form).encode("utf-8"),
            timeout_s=self.timeout_s,
        )
        if not response.ok:
            raise ExternalServiceError(
                f"External service error: {response.status} - {response.text()[:400]}",
                status_code=response.status,
            )
        payload = _json_object(response.body, context="initiate")
        thread_id = payload.get("thread_id")
        run_id = payload.get("agent_run_id")
        if not thread_id or not run_id:
            raise ExternalServiceError("External service response is missing job identifiers")
        logger.info("external_job event=initiated thread_id=%s run_id=%s", thread_id, run_id)
        return JobHandle(thread_id=str(thread_id), run_id=str(run_id), raw=payload)

    def poll_status(self, run_id: str, credential: str) -> ExternalStatus | None:
        """Return the job's state, or None when it cannot be determined right now."""
        try:
            response = self.transport.request(
                "GET",
                f"{self.base_url}/agent-run/{parse.quote(run_id, safe='')}",
                headers=_auth_headers(credential),
                timeout_s=self.timeout_s,
            )
        except ExternalServiceError as exc:
            logger.warning("external_job event=poll_failed run_id=%s reason=%s", run_id, exc)
            return None
        if not response.ok:
            logger.warning(
                "external_job event=poll_failed run_id=%s status=%d", run_id, response.status
            )
            return None
        try:
            payload = _json_object(response.body, context="status")
        except ExternalServiceError as exc:
            logger.warning("external_job event=poll_failed run_id=%s reason=%s", run_id, exc)
            return None

        raw_state = str(payload.get("status", "")).lower()
        error = payload.get("error")
        if raw_state == "completed":
            state: ExternalState = "completed"
        elif raw_state in _FAILED_STATES:
            state = "failed"
        else:
            state = "running"
        return ExternalStatus(
            state=state,
            error=str(error) if error else None,
            raw=payload,
        )

    def open_result_stream(self, run_id: str, credential: str) -> ByteStream:
        query = parse.urlencode({"token": credential})
        return self.transport.open_stream(
            f"{self.base_url}/agent-run/{parse.quote(run_id, safe='')}/stream?{query}",
            headers={**_auth_headers(credential), "Accept": "text/event-stream"},
            timeout_s=self.timeout_s,
        )

    def save_document(
        self,
        *,
        task_id: str,
        user_id: str,
        document: dict[str, Any],
        credential: str,
    ) -> str:
        """Forward a finished document to the external library; returns its id there."""
        response = self.transport.request(
            "POST",
            self.save_url,
            headers={**_auth_headers(credential), "Content-Type": "application/json"},
            body=json.dumps(
                {"task_id": task_id, "user_id": user_id, "book_data": document}
            ).encode("utf-8"),
            timeout_s=self.timeout_s,
        )
        if not response.ok:
            raise ExternalServiceError(
                f"External save failed: {response.status} - {response.text()[:400]}",
                status_code=response.status,
            )
        payload = _json_object(response.body, context="save")
        document_id = payload.get("book_id") or payload.get("id")
        if not document_id:
            raise ExternalServiceError("External save response is missing a document id")
        return str(document_id)


def _auth_headers(credential: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {credential}"}


def _json_object(body: bytes, *, context: str) -> dict[str, Any]:
    try:
        parsed = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ExternalServiceError(f"External {context} response is not valid JSON") from exc
    if not isinstance(parsed, dict):
        raise ExternalServiceError(f"External {context} response is not a JSON object")
    return parsed
