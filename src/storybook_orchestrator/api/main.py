"""FastAPI app entrypoint for storybook-orchestrator."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Header, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from storybook_orchestrator.audit import AuditSink
from storybook_orchestrator.auth import Identity, IdentityVerifier, JwtIdentityVerifier
from storybook_orchestrator.config.settings import Settings, get_settings
from storybook_orchestrator.errors import Failure
from storybook_orchestrator.external.client import ExternalJobClient
from storybook_orchestrator.external.transport import HttpTransport
from storybook_orchestrator.orchestrator import Orchestrator, RequestContext
from storybook_orchestrator.ratelimit import RateLimiter
from storybook_orchestrator.schemas import ApiModel, GenerateRequest, SaveRequest
from storybook_orchestrator.storage.base import StoryStorage
from storybook_orchestrator.storage.postgres import PostgresStoryStorage
from storybook_orchestrator.streaming import StreamReconciler

logger = logging.getLogger(__name__)


def build_orchestrator(
    *,
    settings: Settings,
    storage: StoryStorage,
    transport: HttpTransport | None = None,
    verifier: IdentityVerifier | None = None,
) -> Orchestrator:
    if verifier is None:
        if not settings.jwt_secret:
            raise RuntimeError(
                "Missing JWT secret. Set STORYBOOK_JWT_SECRET before starting the app."
            )
        verifier = JwtIdentityVerifier(settings.jwt_secret, audience=settings.jwt_audience or None)
    return Orchestrator(
        storage=storage,
        rate_limiter=RateLimiter(storage, window_seconds=settings.rate_limit_window_s),
        job_client=ExternalJobClient(
            base_url=settings.external_base_url,
            save_url=settings.resolved_save_url(),
            transport=transport,
            model_name=settings.external_model_name,
            timeout_s=settings.external_timeout_s,
        ),
        reconciler=StreamReconciler(read_size=settings.stream_read_size),
        audit=AuditSink(storage),
        verifier=verifier,
        settings=settings,
    )


def _ensure_runtime_state(
    app: FastAPI,
    *,
    settings: Settings,
    storage_override: StoryStorage | None,
    transport: HttpTransport | None,
    verifier: IdentityVerifier | None,
) -> None:
    if not hasattr(app.state, "storage"):
        if storage_override is None and not settings.database_url:
            raise RuntimeError(
                "Missing database URL. Set STORYBOOK_DATABASE_URL before starting the app."
            )
        app.state.storage = storage_override or PostgresStoryStorage(settings.database_url)
        app.state.storage.migrate()

    if not hasattr(app.state, "settings"):
        app.state.settings = settings

    if not hasattr(app.state, "orchestrator"):
        app.state.orchestrator = build_orchestrator(
            settings=settings,
            storage=app.state.storage,
            transport=transport,
            verifier=verifier,
        )


def _request_context(request: Request, operation: str) -> RequestContext:
    forwarded = request.headers.get("x-forwarded-for")
    ip_address = (
        forwarded.split(",")[0].strip()
        if forwarded
        else request.headers.get("x-real-ip") or (request.client.host if request.client else None)
    )
    return RequestContext(
        operation=operation,
        method=request.method,
        ip_address=ip_address,
        user_agent=request.headers.get("user-agent"),
    )


def _respond(result: ApiModel | Failure, *, status_code: int = 200) -> JSONResponse:
    if isinstance(result, Failure):
        return JSONResponse({"error": result.message}, status_code=result.status_code)
    return JSONResponse(result.to_wire(), status_code=status_code)


def create_app(
    *,
    storage: StoryStorage | None = None,
    settings_override: Settings | None = None,
    transport: HttpTransport | None = None,
    verifier: IdentityVerifier | None = None,
) -> FastAPI:
    settings = settings_override or get_settings()
    logging.getLogger("storybook_orchestrator").setLevel(settings.log_level.upper())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        _ensure_runtime_state(
            app,
            settings=settings,
            storage_override=storage,
            transport=transport,
            verifier=verifier,
        )
        yield

    app_lifespan = lifespan if storage is None else None
    app = FastAPI(title=settings.app_name, lifespan=app_lifespan)

    # Keep test paths reliable when lifespan is not executed by the client.
    if storage is not None:
        _ensure_runtime_state(
            app,
            settings=settings,
            storage_override=storage,
            transport=transport,
            verifier=verifier,
        )

    def _get_orchestrator(request: Request) -> Orchestrator:
        if not hasattr(request.app.state, "orchestrator"):
            _ensure_runtime_state(
                request.app,
                settings=settings,
                storage_override=storage,
                transport=transport,
                verifier=verifier,
            )
        return request.app.state.orchestrator

    @app.exception_handler(RequestValidationError)
    async def validation_error(_request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            {"error": "Invalid request", "detail": jsonable_encoder(exc.errors())},
            status_code=400,
        )

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "service": settings.app_name}

    @app.post("/api/story/generate")
    def generate(
        payload: GenerateRequest,
        request: Request,
        authorization: str | None = Header(default=None),
    ) -> JSONResponse:
        orchestrator = _get_orchestrator(request)
        ctx = _request_context(request, "submit")
        identity = orchestrator.authenticate(
            authorization, ctx, request_data={"brief": payload.brief[:100]}
        )
        if isinstance(identity, Failure):
            return _respond(identity)
        result = orchestrator.submit(identity, payload, ctx)
        if isinstance(result, Failure):
            return _respond(result)
        return _respond(result, status_code=500 if result.status == "failed" else 200)

    @app.get("/api/story/status")
    def status(
        request: Request,
        task_id: str = Query(alias="taskId", min_length=1),
        authorization: str | None = Header(default=None),
    ) -> JSONResponse:
        orchestrator = _get_orchestrator(request)
        ctx = _request_context(request, "status")
        identity = orchestrator.authenticate(authorization, ctx, request_data={"taskId": task_id})
        if isinstance(identity, Failure):
            return _respond(identity)
        return _respond(orchestrator.check_status(identity, task_id, ctx))

    @app.get("/api/story/result")
    def result(
        request: Request,
        task_id: str = Query(alias="taskId", min_length=1),
        authorization: str | None = Header(default=None),
    ) -> JSONResponse:
        orchestrator = _get_orchestrator(request)
        ctx = _request_context(request, "result")
        identity = orchestrator.authenticate(authorization, ctx, request_data={"taskId": task_id})
        if isinstance(identity, Failure):
            return _respond(identity)
        return _respond(orchestrator.fetch_result(identity, task_id, ctx))

    @app.post("/api/story/save")
    def save(
        payload: SaveRequest,
        request: Request,
        authorization: str | None = Header(default=None),
    ) -> JSONResponse:
        orchestrator = _get_orchestrator(request)
        ctx = _request_context(request, "save")
        identity = orchestrator.authenticate(
            authorization, ctx, request_data={"taskId": payload.task_id}
        )
        if isinstance(identity, Failure):
            return _respond(identity)
        return _respond(orchestrator.save(identity, payload, ctx))

    @app.get("/api/usage")
    def usage(
        request: Request,
        days: int = Query(default=7, ge=1, le=90),
        authorization: str | None = Header(default=None),
    ) -> JSONResponse:
        orchestrator = _get_orchestrator(request)
        ctx = _request_context(request, "usage")
        identity: Identity | Failure = orchestrator.authenticate(authorization, ctx)
        if isinstance(identity, Failure):
            return _respond(identity)
        return _respond(orchestrator.usage(identity, days))

    return app


# Module-level app for `uvicorn storybook_orchestrator.api.main:app`.
app = create_app()
