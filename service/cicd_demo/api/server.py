"""FastAPI server application"""

import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from http import HTTPStatus
from typing import Any, Optional, Sequence

import uvicorn
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from .health import HealthProbe, build_health_report, default_probes
from .middleware import RateLimitMiddleware, SecurityHeadersMiddleware, setup_cors
from .request_middleware import RequestInstrumentationMiddleware
from .routes import router
from ..cache import InstrumentedCache, create_cache_backend
from ..config import Config, load_config
from ..observability import (
    CompositeReporter,
    Instrumentation,
    LoggingReporter,
    MetricRegistry,
    MetricsCollector,
    OpenTelemetryReporter,
    ProcessMetricsSampler,
    Reporter,
    Tracer,
    setup_logging,
    setup_tracing,
)
from ..observability.logging import get_logger
from ..users import UserService

logger = get_logger(__name__)


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def build_reporter(config: Config) -> Reporter:
    """Span reporter chain from tracing configuration

    With tracing disabled spans are still created, so trace context keeps
    propagating, but none is reported.
    """
    reporters = []
    if not config.tracing.enabled:
        return CompositeReporter()
    if config.tracing.log_spans:
        reporters.append(LoggingReporter())
    if config.tracing.otlp_endpoint or config.tracing.console:
        provider = setup_tracing(
            service_name=config.service.name,
            endpoint=config.tracing.otlp_endpoint,
            console=config.tracing.console,
        )
        reporters.append(OpenTelemetryReporter(provider))
    if len(reporters) == 1:
        return reporters[0]
    return CompositeReporter(*reporters)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    # Startup
    config: Config = app.state.config
    sampler = ProcessMetricsSampler(app.state.metrics, config.metrics.process_interval_seconds)
    sampler.start()
    logger.info(
        "Service started",
        extra={"service": config.service.name, "environment": config.service.environment},
    )

    yield

    # Shutdown
    await sampler.stop()
    await app.state.cache.close()
    app.state.tracer.close()


def create_app(
    config: Optional[Config] = None,
    reporter: Optional[Reporter] = None,
    cache_backend: Optional[Any] = None,
    probes: Optional[Sequence[HealthProbe]] = None,
) -> FastAPI:
    """Create and configure FastAPI application

    All instrumentation objects are created here, once per application, and
    shared through ``app.state``.
    """
    config = config or load_config()

    registry = MetricRegistry()
    metrics = MetricsCollector(registry)
    tracer = Tracer(
        config.service.name,
        reporter=reporter if reporter is not None else build_reporter(config),
        sampled=config.tracing.sampled,
    )
    instrumentation = Instrumentation(tracer, metrics)

    backend = cache_backend if cache_backend is not None else create_cache_backend(
        config.dependencies.redis_url
    )
    cache = InstrumentedCache(backend, instrumentation)

    app = FastAPI(
        title="CI/CD Demo Application",
        version=config.service.version,
        description="A simple application to demonstrate CI/CD pipeline",
        docs_url=config.api.docs_url,
        redoc_url=None,
        lifespan=lifespan,
    )

    app.state.config = config
    app.state.registry = registry
    app.state.metrics = metrics
    app.state.tracer = tracer
    app.state.instrumentation = instrumentation
    app.state.cache = cache
    app.state.users = UserService(cache, instrumentation)
    app.state.probes = list(probes) if probes is not None else default_probes(config, backend)
    app.state.started_at = time.monotonic()

    # Middleware added last runs first
    app.add_middleware(SecurityHeadersMiddleware, docs_path=config.api.docs_url)
    app.add_middleware(RateLimitMiddleware, requests_per_minute=config.api.rate_limit_per_minute)
    setup_cors(app, config.api.allowed_origins, config.service.environment)
    app.add_middleware(RequestInstrumentationMiddleware, instrumentation=instrumentation)

    @app.get("/")
    async def root():
        """Service information"""
        return {
            "message": "CI/CD Demo Application",
            "version": config.service.version,
            "description": "A simple application to demonstrate CI/CD pipeline",
            "endpoints": {
                "health": "/healthz",
                "metrics": "/metrics",
                "docs": config.api.docs_url,
                "api": "/api/v1",
            },
        }

    app.include_router(router, prefix="/api/v1")

    @app.get("/healthz")
    @app.get("/health", include_in_schema=False)
    async def health_check():
        """Health check endpoint with process metrics and dependency status"""
        report = await build_health_report(
            config, metrics, app.state.probes, app.state.started_at
        )
        status_code = 200 if report["status"] == "ok" else 503
        return JSONResponse(status_code=status_code, content=report)

    @app.get("/live")
    async def liveness_check():
        """Liveness probe - checks if service is alive"""
        return {"status": "alive"}

    @app.get("/ready")
    async def readiness_check():
        """Readiness probe - ready when every dependency is reachable"""
        report = await build_health_report(
            config, metrics, app.state.probes, app.state.started_at
        )
        if report["status"] != "ok":
            return JSONResponse(
                status_code=503,
                content={"status": "not_ready", "dependencies": report["dependencies"]},
            )
        return {"status": "ready"}

    @app.get("/metrics")
    async def metrics_endpoint():
        """Prometheus metrics endpoint"""
        content, content_type = metrics.export()
        return Response(content=content, media_type=content_type)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404 and exc.detail == HTTPStatus.NOT_FOUND.phrase:
            message = f"Route {request.url.path} not found"
        else:
            message = str(exc.detail)
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": HTTPStatus(exc.status_code).phrase,
                "message": message,
                "timestamp": _timestamp(),
            },
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={
                "error": "Bad Request",
                "message": "Invalid request payload",
                "details": jsonable_encoder(exc.errors()),
                "timestamp": _timestamp(),
            },
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Generic error envelope; details only in development"""
        logger.error("Unhandled error: %s", exc, exc_info=exc)
        return JSONResponse(
            status_code=500,
            content={
                "error": "Something went wrong!",
                "message": str(exc) if config.service.is_development else "Internal server error",
                "timestamp": _timestamp(),
            },
        )

    return app


def main():
    """Run the API server"""
    config = load_config()
    setup_logging()
    app = create_app(config)
    uvicorn.run(
        app,
        host=config.service.host,
        port=config.service.port,
        log_level="info",
    )


if __name__ == "__main__":
    main()
