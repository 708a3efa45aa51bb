"""Submit / status / result / save operations over the story task lifecycle.

Beginner terms used in this file:
- Task: the local record of one generation request (pending -> processing ->
  completed | failed).
- Job mapping: the row that ties a task to the external job's thread and run ids.
- Reconcile: compare the local task with the external job and write terminal
  results through to both rows.

Every public method returns either a response model or a ``Failure``. Expected
conditions never raise; unexpected exceptions are audited and turned into an
``internal_error`` failure.
"""

from __future__ import annotations

import logging
import time
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, TypeVar

from storybook_orchestrator.audit import AuditSink
from storybook_orchestrator.auth import Identity, IdentityVerifier, bearer_credential
from storybook_orchestrator.config.settings import Settings
from storybook_orchestrator.errors import (
    AuthError,
    DuplicateRecordError,
    ExternalServiceError,
    Failure,
    InternalError,
    NotFoundError,
    RateLimitExceeded,
)
from storybook_orchestrator.external.client import ExternalJobClient
from storybook_orchestrator.parsing import parse_story_content
from storybook_orchestrator.ratelimit import RateLimiter
from storybook_orchestrator.schemas import (
    DocumentOut,
    GenerateRequest,
    ResultResponse,
    SaveRequest,
    SaveResponse,
    StatusResponse,
    SubmitResponse,
    UsageResponse,
)
from storybook_orchestrator.storage.base import StoryStorage
from storybook_orchestrator.storage.models import (
    JobMappingRecord,
    StoryPageRecord,
    TaskRecord,
)
from storybook_orchestrator.streaming import CancellationToken, StreamReconciler

logger = logging.getLogger(__name__)

TResult = TypeVar("TResult")

PARSE_FAILED = "parse failed"


@dataclass
class RequestContext:
    """Per-request facts the audit trail needs."""

    operation: str
    method: str
    ip_address: str | None = None
    user_agent: str | None = None
    started_at: float = field(default_factory=time.perf_counter)

    def elapsed_ms(self) -> int:
        return int((time.perf_counter() - self.started_at) * 1000)


class Orchestrator:
    def __init__(
        self,
        *,
        storage: StoryStorage,
        rate_limiter: RateLimiter,
        job_client: ExternalJobClient,
        reconciler: StreamReconciler,
        audit: AuditSink,
        verifier: IdentityVerifier,
        settings: Settings,
    ) -> None:
        self.storage = storage
        self.rate_limiter = rate_limiter
        self.job_client = job_client
        self.reconciler = reconciler
        self.audit = audit
        self.verifier = verifier
        self.settings = settings

    def authenticate(
        self,
        authorization: str | None,
        ctx: RequestContext,
        *,
        request_data: dict[str, Any] | None = None,
    ) -> Identity | Failure:
        try:
            credential = bearer_credential(authorization)
            return self.verifier.verify(credential)
        except AuthError as exc:
            self.audit.error(
                operation=ctx.operation,
                error_type="AUTH_ERROR",
                message=f"Unauthorized access attempt: {exc}",
                request_data=request_data,
                severity="warning",
            )
            return AuthError("Unauthorized").to_failure()

    def submit(
        self, identity: Identity, payload: GenerateRequest, ctx: RequestContext
    ) -> SubmitResponse | Failure:
        return self._guard(
            ctx, identity, payload.to_wire(), lambda: self._submit(identity, payload, ctx)
        )

    def check_status(
        self, identity: Identity, task_id: str, ctx: RequestContext
    ) -> StatusResponse | Failure:
        return self._guard(
            ctx, identity, {"taskId": task_id}, lambda: self._check_status(identity, task_id, ctx)
        )

    def fetch_result(
        self,
        identity: Identity,
        task_id: str,
        ctx: RequestContext,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> ResultResponse | Failure:
        return self._guard(
            ctx,
            identity,
            {"taskId": task_id},
            lambda: self._fetch_result(identity, task_id, ctx, cancel_token),
        )

    def save(
        self, identity: Identity, payload: SaveRequest, ctx: RequestContext
    ) -> SaveResponse | Failure:
        return self._guard(
            ctx, identity, {"taskId": payload.task_id}, lambda: self._save(identity, payload, ctx)
        )

    def usage(self, identity: Identity, days: int) -> UsageResponse:
        since = datetime.now(UTC) - timedelta(days=days)
        rows = self.storage.list_request_logs(identity.user_id, since)
        total = len(rows)
        return UsageResponse(
            days=days,
            total_requests=total,
            error_count=sum(1 for row in rows if row.status_code >= 400),
            avg_response_time_ms=(
                round(sum(row.response_time_ms for row in rows) / total, 2) if total else 0.0
            ),
            by_operation=dict(Counter(row.operation for row in rows)),
        )

    def _submit(
        self, identity: Identity, payload: GenerateRequest, ctx: RequestContext
    ) -> SubmitResponse | Failure:
        user_id = identity.user_id
        request_data = payload.to_wire()
        if not self._allowed(user_id, ctx, self.settings.submit_rate_limit):
            return self._rate_limited(user_id, ctx)

        task = self.storage.create_task(
            brief=payload.brief,
            tags=payload.tags,
            custom_tags=payload.custom_tags or [],
            user_id=user_id,
        )
        self.storage.create_mapping(
            local_task_id=task.task_id,
            user_id=user_id,
            status="pending",
            request_data=request_data,
            retry_count=0,
            max_retries=self.settings.max_job_retries,
        )
        logger.info("story_task event=created task_id=%s user_id=%s", task.task_id, user_id)

        started = time.perf_counter()
        try:
            handle = self.job_client.initiate(
                payload.brief,
                payload.tags,
                identity.credential,
                custom_tags=payload.custom_tags,
            )
        except ExternalServiceError as exc:
            message = str(exc)
            self.storage.set_task_status(task.task_id, "failed", error_message=message)
            self.storage.update_mapping(task.task_id, status="failed", error_message=message)
            self.audit.metric(
                "external_api_response_time",
                _ms_since(started),
                unit="ms",
                tags={"endpoint": "initiate", "success": False},
            )
            self.audit.error(
                operation=ctx.operation,
                error_type="EXTERNAL_INITIATE_FAILED",
                message=message,
                user_id=user_id,
                request_data=request_data,
            )
            logger.warning(
                "story_task event=initiate_failed task_id=%s reason=%s", task.task_id, message
            )
            response = SubmitResponse(
                task_id=task.task_id,
                status="failed",
                error="Failed to start story generation",
            )
            self._log_request(ctx, user_id, 500, request_data, response.to_wire())
            return response

        self.audit.metric(
            "external_api_response_time",
            _ms_since(started),
            unit="ms",
            tags={"endpoint": "initiate", "success": True},
        )
        self.storage.set_task_status(task.task_id, "processing")
        self.storage.update_mapping(
            task.task_id,
            thread_id=handle.thread_id,
            run_id=handle.run_id,
            status="processing",
            response_data=handle.raw,
        )
        logger.info(
            "story_task event=processing task_id=%s thread_id=%s run_id=%s",
            task.task_id,
            handle.thread_id,
            handle.run_id,
        )
        response = SubmitResponse(
            task_id=task.task_id,
            status="processing",
            external_thread_id=handle.thread_id,
            external_run_id=handle.run_id,
            message="Story generation started successfully",
        )
        self._log_request(ctx, user_id, 200, request_data, response.to_wire())
        return response

    def _check_status(
        self, identity: Identity, task_id: str, ctx: RequestContext
    ) -> StatusResponse | Failure:
        user_id = identity.user_id
        if not self._allowed(user_id, ctx, self.settings.status_rate_limit):
            return self._rate_limited(user_id, ctx)

        task = self.storage.get_task(task_id, user_id)
        if task is None:
            return self._task_not_found(user_id, task_id, ctx)

        mapping = self.storage.get_mapping(task_id)
        if mapping is None:
            self.audit.error(
                operation=ctx.operation,
                error_type="MAPPING_NOT_FOUND",
                message=f"Job mapping not found: {task_id}",
                user_id=user_id,
                severity="warning",
            )
            return _status_response(task, None, error="Task mapping not found")

        task = self._reconcile(identity, task, mapping, ctx)
        response = _status_response(task, mapping)
        self._log_request(
            ctx,
            user_id,
            200,
            {"taskId": task_id},
            {"taskId": task_id, "status": task.status, "progress": task.progress},
        )
        return response

    def _fetch_result(
        self,
        identity: Identity,
        task_id: str,
        ctx: RequestContext,
        cancel_token: CancellationToken | None,
    ) -> ResultResponse | Failure:
        user_id = identity.user_id
        if not self._allowed(user_id, ctx, self.settings.result_rate_limit):
            return self._rate_limited(user_id, ctx)

        task = self.storage.get_task(task_id, user_id)
        if task is None:
            return self._task_not_found(user_id, task_id, ctx)

        mapping = self.storage.get_mapping(task_id)
        if mapping is not None:
            task = self._reconcile(identity, task, mapping, ctx)

        if task.status != "completed":
            message = (
                "Task is still processing"
                if task.status in ("pending", "processing")
                else "Task not completed"
            )
            return ResultResponse(
                task_id=task_id,
                status=task.status,
                message=message,
                error_message=task.error_message,
            )

        existing = self.storage.get_document(task_id, user_id)
        if existing is not None:
            self._log_request(
                ctx,
                user_id,
                200,
                {"taskId": task_id},
                {"taskId": task_id, "status": "completed", "hasDocument": True},
            )
            return ResultResponse(
                task_id=task_id,
                status="completed",
                document=DocumentOut.from_record(existing),
            )

        if mapping is None or not mapping.run_id:
            self.audit.error(
                operation=ctx.operation,
                error_type="MAPPING_NOT_FOUND",
                message=f"Job mapping not found: {task_id}",
                user_id=user_id,
                severity="warning",
            )
            return NotFoundError("Task mapping not found").to_failure()

        token = cancel_token or CancellationToken(self.settings.stream_timeout_s)
        try:
            stream = self.job_client.open_result_stream(mapping.run_id, identity.credential)
            reconciled = self.reconciler.reconcile(stream, token)
        except ExternalServiceError as exc:
            self.audit.error(
                operation=ctx.operation,
                error_type="RESULT_FETCH_FAILED",
                message=str(exc),
                user_id=user_id,
                request_data={"taskId": task_id, "runId": mapping.run_id},
            )
            return ExternalServiceError(
                "Failed to fetch result from the generation service"
            ).to_failure()

        parsed = parse_story_content(reconciled.content)
        if not parsed.is_valid:
            self.audit.error(
                operation=ctx.operation,
                error_type="PARSE_FAILED",
                message=(
                    f"Could not parse story content for {task_id}: "
                    f"title={bool(parsed.title)} pages={len(parsed.pages)}"
                ),
                user_id=user_id,
                severity="warning",
            )
            self._log_request(
                ctx,
                user_id,
                200,
                {"taskId": task_id},
                {"taskId": task_id, "status": "completed", "error": PARSE_FAILED},
            )
            return ResultResponse(
                task_id=task_id,
                status="completed",
                raw_content=reconciled.content,
                error=PARSE_FAILED,
            )

        pages = [
            StoryPageRecord(page_number=page.number, text=page.text, image=page.image)
            for page in parsed.pages
        ]
        try:
            document = self.storage.create_document(
                task_id=task_id,
                user_id=user_id,
                title=parsed.title,
                description=task.brief,
                pages=pages,
            )
        except DuplicateRecordError:
            # A concurrent fetch persisted first; serve its document.
            logger.info("story_document event=duplicate_discarded task_id=%s", task_id)
            winner = self.storage.get_document(task_id, user_id)
            if winner is None:
                raise
            document = winner
        else:
            logger.info(
                "story_document event=created task_id=%s document_id=%s pages=%d",
                task_id,
                document.document_id,
                len(document.pages),
            )

        self._log_request(
            ctx,
            user_id,
            200,
            {"taskId": task_id},
            {"taskId": task_id, "status": "completed", "documentCreated": True},
        )
        return ResultResponse(
            task_id=task_id,
            status="completed",
            document=DocumentOut.from_record(document),
            raw_content=reconciled.content,
        )

    def _save(
        self, identity: Identity, payload: SaveRequest, ctx: RequestContext
    ) -> SaveResponse | Failure:
        user_id = identity.user_id
        if not self._allowed(user_id, ctx, self.settings.save_rate_limit):
            return self._rate_limited(user_id, ctx)

        if self.storage.get_task(payload.task_id, user_id) is None:
            return self._task_not_found(user_id, payload.task_id, ctx)

        try:
            document_id = self.job_client.save_document(
                task_id=payload.task_id,
                user_id=user_id,
                document=payload.document.to_wire(),
                credential=identity.credential,
            )
        except ExternalServiceError as exc:
            self.audit.error(
                operation=ctx.operation,
                error_type="EXTERNAL_SAVE_FAILED",
                message=str(exc),
                user_id=user_id,
                request_data={"taskId": payload.task_id},
            )
            return ExternalServiceError(
                "Failed to save document with the generation service"
            ).to_failure(status_code=503)

        response = SaveResponse(
            success=True,
            document_id=document_id,
            message="Story saved to your library",
        )
        self._log_request(ctx, user_id, 200, {"taskId": payload.task_id}, response.to_wire())
        return response

    def _reconcile(
        self,
        identity: Identity,
        task: TaskRecord,
        mapping: JobMappingRecord,
        ctx: RequestContext,
    ) -> TaskRecord:
        """Poll the external job of a processing task and write terminal results through."""
        if task.status != "processing" or not mapping.run_id:
            return task

        external = self.job_client.poll_status(mapping.run_id, identity.credential)
        if external is None:
            self.audit.error(
                operation=ctx.operation,
                error_type="STATUS_CHECK_FAILED",
                message=f"Could not determine external status for run {mapping.run_id}",
                user_id=identity.user_id,
                request_data={"taskId": task.task_id, "runId": mapping.run_id},
                severity="warning",
            )
            return task
        if not external.is_terminal:
            return task

        updated = self.storage.set_task_status(
            task.task_id,
            external.state,
            error_message=external.error,
            completed_at=datetime.now(UTC),
            progress=100 if external.state == "completed" else None,
        )
        self.storage.update_mapping(
            task.task_id,
            status=external.state,
            response_data=external.raw,
            error_message=external.error,
        )
        logger.info(
            "story_task event=reconciled task_id=%s status=%s", task.task_id, external.state
        )
        return updated

    def _allowed(self, user_id: str, ctx: RequestContext, ceiling: int) -> bool:
        return self.rate_limiter.allow(user_id, ctx.operation, ceiling)

    def _rate_limited(self, user_id: str, ctx: RequestContext) -> Failure:
        self.audit.error(
            operation=ctx.operation,
            error_type="RATE_LIMIT_EXCEEDED",
            message="User exceeded rate limit",
            user_id=user_id,
            severity="warning",
        )
        return RateLimitExceeded("Rate limit exceeded. Please try again later.").to_failure()

    def _task_not_found(self, user_id: str, task_id: str, ctx: RequestContext) -> Failure:
        self.audit.error(
            operation=ctx.operation,
            error_type="TASK_NOT_FOUND",
            message=f"Task not found: {task_id}",
            user_id=user_id,
            severity="warning",
        )
        return NotFoundError("Task not found").to_failure()

    def _log_request(
        self,
        ctx: RequestContext,
        user_id: str,
        status_code: int,
        request_body: dict[str, Any] | None,
        response_body: dict[str, Any] | None,
    ) -> None:
        self.audit.request(
            user_id=user_id,
            operation=ctx.operation,
            method=ctx.method,
            status_code=status_code,
            response_time_ms=ctx.elapsed_ms(),
            request_body=request_body,
            response_body=response_body,
            ip_address=ctx.ip_address,
            user_agent=ctx.user_agent,
        )

    def _guard(
        self,
        ctx: RequestContext,
        identity: Identity,
        request_data: dict[str, Any],
        run: Callable[[], TResult],
    ) -> TResult | Failure:
        try:
            return run()
        except Exception as exc:  # noqa: BLE001
            logger.exception(
                "story_task event=internal_error operation=%s user_id=%s",
                ctx.operation,
                identity.user_id,
            )
            self._log_request(
                ctx, identity.user_id, 500, request_data, {"error": "Internal server error"}
            )
            self.audit.error(
                operation=ctx.operation,
                error_type="INTERNAL_ERROR",
                message=str(exc),
                user_id=identity.user_id,
                request_data=request_data,
                exc=exc,
            )
            return InternalError("Internal server error").to_failure()


def _status_response(
    task: TaskRecord, mapping: JobMappingRecord | None, *, error: str | None = None
) -> StatusResponse:
    return StatusResponse(
        task_id=task.task_id,
        status=task.status,
        progress=task.progress,
        created_at=task.created_at,
        updated_at=task.updated_at,
        completed_at=task.completed_at,
        error_message=task.error_message,
        external_thread_id=mapping.thread_id if mapping else None,
        external_run_id=mapping.run_id if mapping else None,
        error=error,
    )


def _ms_since(started: float) -> float:
    return round((time.perf_counter() - started) * 1000.0, 2)
