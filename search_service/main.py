"""Unified search service main application."""

import asyncio
import time
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import structlog

from libs.common.auth import AuthManager
from libs.common.config import SearchServiceConfig
from libs.common.events import create_event_publisher, create_event_subscriber
from libs.common.logging import configure_logging
from libs.common.tracing import configure_tracing, get_search_tracer
from .analytics.recorder import AnalyticsRecorder
from .analytics.reports import AnalyticsReports
from .analytics.sinks import create_analytics_sink
from .api.routes import router as api_router
from .engine.search_manager import SearchManager
from .errors import (
    AllAdaptersFailedError,
    AnalyticsWriteError,
    ConfigurationError,
    UnknownEventError,
    ValidationError,
)
from .ranking.config import ConfigHolder
from .ranking.sync import ConfigSync
from .retrievers.factory import create_adapters
from .runtime.metrics import SERVICE_NAME, service_metrics

logger = structlog.get_logger("search_service")


async def _start_components(app: FastAPI, config: SearchServiceConfig) -> None:
    """Build adapters, tuning, analytics and the search manager onto ``app.state``."""
    metrics = service_metrics()
    adapters, connections = create_adapters(config)

    holder = ConfigHolder()
    if config.ml_search_tuning_path:
        holder.reload_from_file(config.ml_search_tuning_path)

    publisher = create_event_publisher(config.ml_redis_url) if config.ml_search_publish_events else None
    sink = create_analytics_sink(
        config.ml_search_analytics_backend,
        config.ml_redis_url,
        key_prefix=config.ml_search_analytics_key_prefix,
    )
    recorder = AnalyticsRecorder(
        sink,
        queue_size=config.ml_search_analytics_queue_size,
        metrics=metrics,
        publisher=publisher,
    )
    await recorder.start()

    app.state.metrics_collector = metrics
    app.state.connections = connections
    app.state.event_publisher = publisher
    app.state.analytics_sink = sink
    app.state.analytics_recorder = recorder
    app.state.search_manager = SearchManager(
        adapters,
        holder,
        recorder,
        adapter_timeout_ms=config.ml_search_adapter_timeout_ms,
        metrics=metrics,
        tracer=get_search_tracer(SERVICE_NAME),
    )
    app.state.analytics_reports = AnalyticsReports(sink)
    app.state.auth_manager = AuthManager(
        config.ml_jwt_secret_key,
        config.ml_jwt_algorithm,
        config.ml_jwt_access_token_expire_minutes,
    )
    app.state.config_sync = ConfigSync(holder, publisher=publisher, metrics=metrics)

    app.state.event_subscriber = None
    app.state.subscriber_task = None
    if config.ml_search_publish_events:
        subscriber = create_event_subscriber(config.ml_redis_url)
        app.state.config_sync.attach(subscriber)
        app.state.event_subscriber = subscriber
        app.state.subscriber_task = asyncio.create_task(subscriber.start_listening())


async def _stop_components(app: FastAPI) -> None:
    state = app.state
    if state.subscriber_task is not None:
        state.subscriber_task.cancel()
        try:
            await state.subscriber_task
        except asyncio.CancelledError:
            pass
        await state.event_subscriber.close()

    await state.analytics_recorder.stop()
    await state.search_manager.cleanup()
    if state.connections is not None:
        await state.connections.close()
    await state.analytics_sink.close()
    if state.event_publisher is not None:
        state.event_publisher.close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager.

    Components already placed on ``app.state`` (for example by tests) are
    used as-is and left for their owner to shut down.
    """
    # Startup
    config = SearchServiceConfig()
    configure_logging(SERVICE_NAME, config.ml_log_level, config.ml_log_format)

    # Initialize tracing
    if config.ml_tracing_enabled:
        tracer = configure_tracing(SERVICE_NAME, config.ml_otel_exporter)
        if tracer:
            logger.info("OpenTelemetry tracing enabled", exporter=config.ml_otel_exporter)
        else:
            logger.warning("Tracing initialization failed")
    else:
        logger.info("OpenTelemetry tracing disabled via configuration")

    owned = not hasattr(app.state, "search_manager")
    if owned:
        logger.info("Starting search service", adapter_backend=config.ml_search_adapter_backend)
        await _start_components(app, config)
    logger.info("Search service started successfully")

    yield

    # Shutdown
    logger.info("Shutting down search service")
    if owned:
        await _stop_components(app)
    logger.info("Search service shutdown complete")


def _validation_response(field, detail: str) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={"error": "validation_error", "field": field, "detail": detail},
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Map search errors onto HTTP responses."""

    @app.exception_handler(ValidationError)
    async def handle_validation_error(request: Request, exc: ValidationError):
        return _validation_response(exc.field, exc.message)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation_error(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        # Drop the "body"/"query" prefix
        loc = [str(part) for part in first.get("loc", ())[1:]]
        return _validation_response(".".join(loc) or None, first.get("msg", "invalid request"))

    @app.exception_handler(ConfigurationError)
    async def handle_configuration_error(request: Request, exc: ConfigurationError):
        return JSONResponse(
            status_code=422,
            content={"error": "configuration_error", "detail": str(exc)},
        )

    @app.exception_handler(UnknownEventError)
    async def handle_unknown_event(request: Request, exc: UnknownEventError):
        return JSONResponse(
            status_code=404,
            content={"error": "unknown_event", "detail": f"no search event with id {exc.event_id}"},
        )

    @app.exception_handler(AnalyticsWriteError)
    async def handle_analytics_write_error(request: Request, exc: AnalyticsWriteError):
        logger.error("Analytics store unavailable", path=request.url.path, error=str(exc))
        return JSONResponse(
            status_code=503,
            content={"error": "analytics_unavailable", "detail": "analytics store unavailable"},
        )

    @app.exception_handler(AllAdaptersFailedError)
    async def handle_all_adapters_failed(request: Request, exc: AllAdaptersFailedError):
        return JSONResponse(
            status_code=503,
            content={
                "error": "search_unavailable",
                "unavailableEntities": [kind.value for kind in exc.failed],
            },
        )


def create_app() -> FastAPI:
    """Create the FastAPI application."""
    app = FastAPI(
        title="Unified Search Service",
        description="Relevance-ranked search across assets, creators, projects and licenses",
        version="0.1.0",
        lifespan=lifespan,
    )

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include API routes
    app.include_router(api_router, prefix="/api/v1")
    register_exception_handlers(app)

    @app.middleware("http")
    async def add_process_time_header(request: Request, call_next):
        """Add processing time header to responses."""
        start_time = time.time()
        response = await call_next(request)
        process_time = time.time() - start_time
        response.headers["X-Process-Time"] = str(process_time)
        return response

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        """Collect metrics for HTTP requests."""
        start_time = time.time()

        try:
            response = await call_next(request)
            status_code = response.status_code
        except Exception as e:
            logger.error("Unhandled request error", path=request.url.path, error=str(e))
            status_code = 500
            response = JSONResponse(
                status_code=500,
                content={"error": "internal_error", "detail": "Internal server error"}
            )

        duration = time.time() - start_time

        # Record metrics
        if hasattr(request.app.state, "metrics_collector"):
            request.app.state.metrics_collector.record_http_request(
                method=request.method,
                endpoint=request.url.path,
                status=status_code,
                duration=duration
            )

        return response

    @app.get("/health")
    async def health_check(request: Request):
        """Health check endpoint."""
        try:
            search_health = await request.app.state.search_manager.health_check()
        except AttributeError as e:
            logger.error("Health check failed", error=str(e))
            return JSONResponse(
                status_code=503,
                content={"status": "unhealthy", "service": SERVICE_NAME, "error": str(e)}
            )

        if search_health["analytics_running"]:
            return {"status": "healthy", "service": SERVICE_NAME, **search_health}
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "service": SERVICE_NAME, **search_health}
        )

    @app.get("/metrics")
    async def metrics(request: Request):
        """Prometheus metrics endpoint."""
        if hasattr(request.app.state, "metrics_collector"):
            metrics_data = request.app.state.metrics_collector.get_metrics()
            return Response(content=metrics_data, media_type="text/plain")
        return Response(content="# No metrics available\n", media_type="text/plain")

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "service": SERVICE_NAME,
            "version": "0.1.0",
            "status": "running",
            "endpoints": {
                "health": "/health",
                "metrics": "/metrics",
                "search": "/api/v1/search",
                "click": "/api/v1/search/click",
                "analytics": "/api/v1/search/analytics/summary",
                "config": "/api/v1/search/config",
            }
        }

    return app


app = create_app()


def main() -> None:
    """Run the service with uvicorn."""
    uvicorn.run(
        "search_service.main:app",
        host="0.0.0.0",
        port=SearchServiceConfig().ml_search_port,
        log_level="info"
    )


if __name__ == "__main__":
    main()
