from __future__ import annotations

import logging
import os
import uuid
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware

from app.config import ScanSettings
from app.errors import ApiError
from app.job_backends import JobBackend, create_job_backend_for_runtime
from app.job_store import ExpirySweeper, JobStore
from app.metrics import MetricsCollector
from app.mock_services import InMemoryResultSaver, MockAnalyzer, MockContextProvider, MockTextExtractor
from app.routes import metrics as metrics_routes
from app.routes import scans as scan_routes
from app.routes._deps import error_response, request_id_from_request, trace_id_from_request
from app.scan_controller import Analyzer, ContextProvider, ResultSaver, ScanController, TextExtractor
from app.schemas import success_envelope
from app.token_optimizer import default_budget

logger = logging.getLogger(__name__)


def _backend_environ(settings: ScanSettings, environ: Mapping[str, str]) -> dict[str, str]:
    env = dict(environ)
    env["SCAN_JOB_BACKEND"] = settings.job_backend
    env["SCAN_JOB_SQLITE_PATH"] = settings.job_sqlite_path
    env["SCAN_JOB_KEY_PREFIX"] = settings.job_key_prefix
    if settings.redis_dsn:
        env["REDIS_DSN"] = settings.redis_dsn
    return env


def create_app(
    settings: ScanSettings | None = None,
    *,
    environ: Mapping[str, str] | None = None,
    backend: JobBackend | None = None,
    extractor: TextExtractor | None = None,
    context_provider: ContextProvider | None = None,
    analyzer: Analyzer | None = None,
    saver: ResultSaver | None = None,
) -> FastAPI:
    env = os.environ if environ is None else environ
    cfg = settings or ScanSettings.from_env(env)
    job_backend = backend or create_job_backend_for_runtime(_backend_environ(cfg, env))
    store = JobStore(job_backend, ttl_s=cfg.job_ttl_s, tombstone_s=cfg.job_tombstone_s)
    collector = MetricsCollector(capacity=cfg.metrics_capacity)
    controller = ScanController(
        store=store,
        collector=collector,
        budget=default_budget(max_items=cfg.token_max_items, truncate_order=cfg.token_truncate_order),
        extractor=extractor or MockTextExtractor(),
        context_provider=context_provider or MockContextProvider(),
        analyzer=analyzer or MockAnalyzer(),
        saver=saver or InMemoryResultSaver(),
        deadline_s=cfg.deadline_s,
        merge_quick_verdict=cfg.merge_quick_verdict,
    )
    sweeper = ExpirySweeper(store, interval_s=cfg.sweep_interval_s)

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        await sweeper.start()
        logger.info(
            "scan_service_started backend=%s ttl_s=%s deadline_s=%s",
            type(job_backend).__name__,
            cfg.job_ttl_s,
            cfg.deadline_s,
        )
        try:
            yield
        finally:
            await controller.drain(timeout_s=cfg.deadline_s)
            await sweeper.stop()

    app = FastAPI(title="SafeMeals Scan API", version="0.1.0", lifespan=lifespan)
    app.state.settings = cfg
    app.state.job_store = store
    app.state.metrics_collector = collector
    app.state.scan_controller = controller
    app.state.expiry_sweeper = sweeper

    cors_origins = env.get("CORS_ALLOW_ORIGINS", "http://127.0.0.1:3000,http://localhost:3000")
    allow_origins = [x.strip() for x in cors_origins.split(",") if x.strip()]
    if allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=allow_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
            expose_headers=["Server-Timing", "x-trace-id"],
        )

    @app.middleware("http")
    async def add_trace_id(request: Request, call_next):
        incoming_trace_id = request.headers.get("x-trace-id", "").strip()
        request.state.trace_id = incoming_trace_id or uuid.uuid4().hex
        request.state.request_id = request.headers.get("x-request-id", f"req_{uuid.uuid4().hex[:12]}")
        response = await call_next(request)
        response.headers["x-trace-id"] = trace_id_from_request(request)
        response.headers["x-request-id"] = request_id_from_request(request)
        return response

    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError):
        if exc.retryable:
            logger.warning("api_error_retryable code=%s path=%s", exc.code, request.url.path)
        return error_response(
            request,
            code=exc.code,
            message=exc.message,
            error_class=exc.error_class,
            retryable=exc.retryable,
            status_code=exc.http_status,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return error_response(
            request,
            code="REQ_VALIDATION_FAILED",
            message="invalid payload",
            error_class="validation",
            retryable=False,
            status_code=400,
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return error_response(
                request,
                code="REQ_NOT_FOUND",
                message="resource not found",
                error_class="validation",
                retryable=False,
                status_code=404,
            )
        return error_response(
            request,
            code="REQ_HTTP_ERROR",
            message=str(exc.detail),
            error_class="validation",
            retryable=False,
            status_code=exc.status_code,
        )

    @app.get("/healthz")
    def healthz(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok"}, trace_id_from_request(request))

    @app.get("/api/v1/health")
    def health_api(request: Request) -> dict[str, object]:
        return success_envelope(
            {
                "status": "ok",
                "job_backend": type(job_backend).__name__,
                "in_flight": controller.in_flight,
                "sweeper_running": sweeper.running,
            },
            trace_id_from_request(request),
        )

    app.include_router(scan_routes.router)
    app.include_router(metrics_routes.router)
    return app


app = create_app()
