from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import AsyncIterator, Optional
from dotenv import load_dotenv
import logging
import os
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

from .. import __version__
from ..core.config import Settings
from ..core.errors import RemoteVibeError
from ..domain.session_models import HealthResponse
from ..infrastructure.events import load_event_client
from ..infrastructure.session_store import InMemorySessionStore, SessionStore
from ..observability.metrics import metrics_middleware_factory
from ..services.command_executor import CommandExecutor
from ..services.context_builder import WorkspaceContextBuilder
from ..services.model_client import ModelClient, build_model_client
from ..services.notification_bridge import NotificationBridge
from ..services.question_detector import QuestionDetector
from .routers.events import router as events_router
from .routers.sessions import router as sessions_router

load_dotenv()  # Load environment variables from .env if present (REMOTE_VIBE_AUTH_TOKEN, OPENAI_API_KEY, etc.)

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


async def _handle_remote_vibe_error(request: Request, exc: RemoteVibeError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("Request %s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "detail": exc.message,
            "code": exc.code,
            "details": exc.details,
            "timestamp": _now_iso(),
        },
    )


def create_app(
    settings: Optional[Settings] = None,
    model_client: Optional[ModelClient] = None,
    store: Optional[SessionStore] = None,
    bridge: Optional[NotificationBridge] = None,
    context_builder: Optional[WorkspaceContextBuilder] = None,
) -> FastAPI:
    """Composition root: builds the session pipeline and mounts the routers."""
    settings = settings or Settings.from_env()
    store = store if store is not None else InMemorySessionStore()
    bridge = bridge if bridge is not None else NotificationBridge(queue_size=settings.observer_queue_size)
    executor = CommandExecutor(
        store=store,
        bridge=bridge,
        model_client=model_client or build_model_client(),
        context_builder=context_builder or WorkspaceContextBuilder(),
        detector=QuestionDetector(settings.question_tail_lines),
        model_timeout=settings.model_timeout_seconds,
        history_limit=settings.history_limit,
    )

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        if load_event_client() is not None:
            logger.info("Mirroring session events to Redis")
        yield
        if executor.in_flight:
            logger.info("Cancelling %d in-flight commands", executor.in_flight)
        await executor.shutdown()
        bridge.close()

    app = FastAPI(title="Remote Vibe Session API", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.bridge = bridge
    app.state.executor = executor

    if settings.public_mode:
        logger.warning("Public mode enabled: requests are not authenticated")

    app.add_exception_handler(RemoteVibeError, _handle_remote_vibe_error)  # type: ignore[arg-type]

    # Observability: request latency histogram
    app.middleware("http")(metrics_middleware_factory())

    app.include_router(sessions_router)
    app.include_router(events_router)
    # Also expose the HTTP routes under /api
    app.include_router(sessions_router, prefix="/api")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials="*" not in settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def _health() -> HealthResponse:
        return HealthResponse(
            status="ok",
            active_session_count=store.count_sessions(),
            live_session_count=store.count_sessions(active_only=True),
            timestamp=_now_iso(),
            version=__version__,
        )

    @app.get("/")
    def root():
        return {"name": "Remote Vibe Session API", "version": __version__}

    @app.get("/health", response_model=HealthResponse)
    def health() -> HealthResponse:
        return _health()

    @app.get("/api/health", response_model=HealthResponse)
    def api_health() -> HealthResponse:
        return _health()

    @app.get("/metrics")
    def metrics() -> Response:
        # Expose Prometheus metrics
        data = generate_latest(REGISTRY)
        return Response(content=data, media_type=CONTENT_TYPE_LATEST)

    return app


app = create_app()


def run() -> None:
    import uvicorn

    host = os.getenv("REMOTE_VIBE_HOST", "0.0.0.0")
    port = int(os.getenv("REMOTE_VIBE_PORT", "5001"))
    uvicorn.run(app, host=host, port=port)
