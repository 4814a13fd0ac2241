"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, CORS, the
pipeline error handler, lifespan wiring for the record store, invalidation
bus and optional Redis relay, and the v1 API router.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import JSONResponse, Response

from src.app.api.middleware.logging import LoggingMiddleware
from src.app.api.v1.router import router as v1_router
from src.app.config import get_settings
from src.app.core.database import close_db, get_session, init_db
from src.app.core.logging import configure_structlog
from src.app.core.monitoring import MetricsMiddleware, get_metrics_response
from src.app.core.redis import close_redis, get_redis_pool
from src.app.events.bus import InvalidationBus
from src.app.pipeline.errors import ErrorKind, PipelineError

MEMORY_STORE_URL_PREFIX = "memory://"

ERROR_STATUS: dict[ErrorKind, int] = {
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.VALIDATION_FAILURE: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorKind.WRITE_CONFLICT: status.HTTP_409_CONFLICT,
    ErrorKind.AUTHORIZATION_DENIED: status.HTTP_403_FORBIDDEN,
    ErrorKind.TRANSPORT_FAILURE: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorKind.PARTIAL_SEQUENCE_FAILURE: status.HTTP_502_BAD_GATEWAY,
}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: wire the pipeline on startup, close on shutdown."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()

    use_memory_store = settings.DATABASE_URL.startswith(MEMORY_STORE_URL_PREFIX)
    if not use_memory_store:
        await init_db()

    bus = InvalidationBus()
    app.state.invalidation_bus = bus

    # ── Pipeline ────────────────────────────────────────────────────────
    try:
        from src.app.pipeline.notifications import PostgresNotificationSink
        from src.app.pipeline.service import build_pipeline_service
        from src.app.pipeline.store import InMemoryRecordStore, PostgresRecordStore

        if use_memory_store:
            store = InMemoryRecordStore()
            notifications = None
        else:
            store = PostgresRecordStore(session_factory=get_session)
            notifications = PostgresNotificationSink(session_factory=get_session)

        app.state.pipeline_service = build_pipeline_service(
            store, bus=bus, notifications=notifications, settings=settings
        )
        log.info(
            "pipeline.initialized",
            store=type(store).__name__,
            enforce_conversion_eligibility=settings.ENFORCE_CONVERSION_ELIGIBILITY,
        )
    except Exception:
        log.warning("pipeline.init_failed", exc_info=True)
        app.state.pipeline_service = None

    # ── Cross-process invalidation ──────────────────────────────────────
    relay = None
    relay_task = None
    if settings.INVALIDATION_RELAY_ENABLED:
        try:
            from src.app.events.relay import RedisInvalidationRelay

            relay = RedisInvalidationRelay(
                get_redis_pool(),
                bus,
                stream=settings.INVALIDATION_STREAM,
                maxlen=settings.INVALIDATION_STREAM_MAXLEN,
            )
            relay.attach()
            relay_task = asyncio.create_task(relay.run())
            log.info("invalidation_relay.initialized", stream=settings.INVALIDATION_STREAM)
        except Exception:
            log.warning("invalidation_relay.init_failed", exc_info=True)
            relay = None

    yield

    # ── Shutdown ────────────────────────────────────────────────────────
    if relay is not None:
        relay.detach()
    if relay_task is not None:
        relay_task.cancel()
        try:
            await relay_task
        except asyncio.CancelledError:
            pass

    service = getattr(app.state, "pipeline_service", None)
    if service is not None:
        service.close()

    if not use_memory_store:
        await close_db()
    await close_redis()


async def pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
    """Map a PipelineError to its status code and a {error, message, retryable} body."""
    return JSONResponse(
        status_code=ERROR_STATUS.get(exc.kind, status.HTTP_500_INTERNAL_SERVER_ERROR),
        content=exc.to_dict(),
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Sales Pipeline API",
        version="0.1.0",
        description="Pipeline stage transitions, lead conversion and rollups",
        lifespan=lifespan,
    )

    app.add_exception_handler(PipelineError, pipeline_error_handler)

    # Middleware is added in reverse order (last added = outermost)

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins() or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    app.include_router(v1_router)

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
