"""Model publishing service main application."""

import asyncio
import time
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import structlog

from .adapters.control_plane import create_control_plane
from .adapters.model_oracle import KServeModelOracle
from .api.routes import router as api_router
from .pipelines.retry_handler import create_control_plane_retry_handler, create_store_retry_handler
from .runtime.api_keys import ApiKeyManager
from .runtime.documentation import DocumentationGenerator
from .runtime.errors import PublishingError
from .runtime.reconciler import PublicationReconciler
from .runtime.synthesizer import GatewaySettings, PolicySynthesizer
from .runtime.tenants import TenantResolver
from .runtime.usage import UsageTracker
from libs.common.auth import InternalAuthManager, create_auth_manager_from_config
from libs.common.config import PublishingConfig
from libs.common.events import create_event_publisher
from libs.common.logging import configure_logging
from libs.common.metrics import get_metrics_collector
from libs.common.security import CredentialHasher, SecurityHeaders
from libs.publishing_store.factory import create_publishing_store_from_config

logger = structlog.get_logger("publishing")


async def _reconcile_periodically(reconciler: PublicationReconciler, interval: float) -> None:
    """Heal drift and flush usage until cancelled."""
    while True:
        await asyncio.sleep(interval)
        try:
            await reconciler.reconcile_all()
        except PublishingError as e:
            logger.warning("Reconciliation pass aborted", error=e.reason)


def build_reconciler(config: PublishingConfig, store, control_plane, event_publisher=None, metrics=None):
    """Wire a reconciler and its collaborators from configuration."""
    return PublicationReconciler(
        store=store,
        control_plane=control_plane,
        oracle=KServeModelOracle(control_plane, timeout=config.ml_publishing_apply_timeout_seconds),
        resolver=TenantResolver(config.tenant_list),
        api_keys=ApiKeyManager(
            store,
            CredentialHasher(
                schemes=(config.ml_publishing_api_key_hash_scheme,),
                rounds=config.ml_publishing_api_key_hash_rounds,
            ),
        ),
        usage=UsageTracker(),
        synthesizer=PolicySynthesizer(GatewaySettings.from_config(config)),
        default_hostname=config.ml_publishing_default_hostname,
        cluster_domain=config.ml_publishing_cluster_domain,
        apply_timeout=config.ml_publishing_apply_timeout_seconds,
        control_plane_retry=create_control_plane_retry_handler(config.ml_publishing_apply_max_attempts),
        store_retry=create_store_retry_handler(config.ml_publishing_store_max_attempts),
        event_publisher=event_publisher,
        metrics=metrics,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    # Startup
    config = PublishingConfig()
    configure_logging("model-publishing", config.ml_log_level, config.ml_log_format)

    logger.info("Starting model publishing service", env=config.ml_env)

    app.state.config = config
    app.state.metrics_collector = get_metrics_collector("model-publishing")
    app.state.event_publisher = create_event_publisher(
        config.ml_redis_url, enabled=config.ml_publishing_events_enabled
    )
    app.state.store = create_publishing_store_from_config(config)
    app.state.control_plane = create_control_plane(config)
    app.state.auth_manager = create_auth_manager_from_config(config)
    app.state.internal_auth_manager = InternalAuthManager(config.ml_jwt_secret_key)
    app.state.documentation_generator = DocumentationGenerator()

    app.state.reconciler = build_reconciler(
        config,
        app.state.store,
        app.state.control_plane,
        event_publisher=app.state.event_publisher,
        metrics=app.state.metrics_collector,
    )
    await app.state.reconciler.initialize()

    reconcile_task = None
    if config.ml_publishing_reconcile_interval_seconds > 0:
        reconcile_task = asyncio.create_task(
            _reconcile_periodically(app.state.reconciler, config.ml_publishing_reconcile_interval_seconds)
        )

    logger.info("Model publishing service started successfully", tenants=config.tenant_list)

    yield

    # Shutdown
    logger.info("Shutting down model publishing service")
    if reconcile_task is not None:
        reconcile_task.cancel()
        try:
            await reconcile_task
        except asyncio.CancelledError:
            pass
    await app.state.reconciler.aclose()
    await app.state.store.close()
    await app.state.event_publisher.close()
    logger.info("Model publishing service shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="Model Publishing Service",
    description="Publishes served models through the AI gateway with API keys and rate limits",
    version="0.1.0",
    lifespan=lifespan
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
app.include_router(api_router, prefix="/api")


@app.exception_handler(PublishingError)
async def publishing_error_handler(request: Request, exc: PublishingError):
    """Map the error taxonomy onto HTTP statuses."""
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    detail = "; ".join(
        f"{'.'.join(str(part) for part in error.get('loc', ()))}: {error.get('msg', '')}" for error in errors
    )
    return JSONResponse(status_code=400, content={"error": "validation", "detail": detail or "Invalid request"})


@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    """Attach security headers to every response."""
    response = await call_next(request)
    for name, value in SecurityHeaders.get_security_headers().items():
        response.headers.setdefault(name, value)
    return response


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    """Collect metrics for HTTP requests."""
    start_time = time.time()

    try:
        response = await call_next(request)
        status_code = response.status_code
    except Exception as e:
        logger.exception("Unhandled request error", path=request.url.path)
        status_code = 500
        response = JSONResponse(
            status_code=500,
            content={"error": "internal", "detail": "Internal server error"}
        )

    duration = time.time() - start_time

    # Templated path keeps label cardinality bounded
    route = request.scope.get("route")
    endpoint = getattr(route, "path", request.url.path)
    if hasattr(app.state, 'metrics_collector'):
        app.state.metrics_collector.record_http_request(
            method=request.method,
            endpoint=endpoint,
            status=status_code,
            duration=duration
        )

    return response


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    if not hasattr(app.state, 'store'):
        return JSONResponse(status_code=503, content={"status": "unhealthy", "service": "model-publishing"})

    store_healthy = await app.state.store.health_check()
    try:
        control_plane_healthy = await asyncio.wait_for(
            asyncio.to_thread(app.state.control_plane.health_check),
            app.state.config.ml_publishing_apply_timeout_seconds,
        )
    except asyncio.TimeoutError:
        control_plane_healthy = False

    checks = {"store": store_healthy, "controlPlane": control_plane_healthy}
    if all(checks.values()):
        return {"status": "healthy", "service": "model-publishing", "checks": checks}
    return JSONResponse(
        status_code=503,
        content={"status": "unhealthy", "service": "model-publishing", "checks": checks}
    )


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    if hasattr(app.state, 'metrics_collector'):
        metrics_data = app.state.metrics_collector.get_metrics()
        return Response(content=metrics_data, media_type="text/plain")
    else:
        return Response(content="# No metrics available\n", media_type="text/plain")


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": "model-publishing",
        "version": "0.1.0",
        "status": "running",
        "endpoints": {
            "health": "/health",
            "metrics": "/metrics",
            "publish": "/api/models/{name}/publish",
            "published_models": "/api/published-models",
            "validate_api_key": "/api/validate-api-key/{tenant}/{name}",
            "usage_report": "/api/usage/report",
        }
    }


if __name__ == "__main__":
    config = PublishingConfig()
    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=config.ml_publishing_port,
        reload=config.ml_env == "local",
        log_level=config.ml_log_level.lower(),
    )
