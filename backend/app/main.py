from contextlib import asynccontextmanager
from typing import Any

import sentry_sdk
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, RedirectResponse
from sentry_sdk.integrations.fastapi import FastApiIntegration

from .api.routes import discovery as discovery_routes
from .discovery import CatalogService, DiscoveryComposer, IntentionGuardrail, SecurityFilter
from .discovery.providers import build_default_registry
from .discovery.providers.http import close_clients
from .health import health_checker
from .logging_config import SERVICE_NAME, SERVICE_VERSION, configure_structlog, get_logger
from .metrics import PrometheusMiddleware, get_metrics
from .settings import settings
from .utils import (
    add_cors,
    add_rate_limiting,
    add_request_id_tracing,
    add_security_headers,
)

# Configure structured logging (must be done before any logging calls)
configure_structlog(json_logs=not settings.DEBUG)

if settings.SENTRY_DSN:
    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.SENTRY_ENVIRONMENT,
        release=settings.SENTRY_RELEASE or f"{SERVICE_NAME}@dev",
        integrations=[FastApiIntegration()],
        traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
    )

logger = get_logger(__name__)


def build_composer() -> DiscoveryComposer:
    return DiscoveryComposer(
        CatalogService(),
        registry=build_default_registry(),
        security=SecurityFilter(),
        intention_guardrail=IntentionGuardrail(),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    composer: DiscoveryComposer | None = getattr(app.state, "composer", None)
    if composer is None:
        composer = build_composer()
        app.state.composer = composer
    await composer.catalog.startup()
    logger.info(
        "discovery_started",
        catalog_size=len(composer.catalog),
        catalog_source=composer.catalog.data_source,
        providers=[p.name for p in composer.registry.providers] if composer.registry else [],
    )
    try:
        yield
    finally:
        await composer.catalog.shutdown()
        await close_clients()


app = FastAPI(
    title="Local Discovery API",
    version=SERVICE_VERSION,
    description="Conversational discovery of local businesses",
    lifespan=lifespan,
)
add_cors(app)
add_security_headers(app)
add_request_id_tracing(app)
add_rate_limiting(app)
app.add_middleware(PrometheusMiddleware)

API_PREFIX = "/v1"

app.include_router(discovery_routes.router, prefix=API_PREFIX)


@app.get("/health")
async def health(request: Request):
    """Return service health including catalog and provider checks."""
    composer = getattr(request.app.state, "composer", None)
    health_status = await health_checker.check_all(composer)
    status_code = 200 if health_status["status"] == "healthy" else 503
    body = {
        "status": health_status["status"],
        "timestamp": health_status.get("timestamp"),
        "checks": health_status.get("checks", {}),
    }
    if settings.DEBUG:
        body["details"] = _scrub_health_details(health_status)
    body["service"] = SERVICE_NAME
    body["version"] = SERVICE_VERSION

    return JSONResponse(content=body, status_code=status_code)


@app.get("/metrics")
def metrics():
    """Expose Prometheus metrics."""
    try:
        return get_metrics()
    except Exception:  # pragma: no cover
        logger.exception("Metrics export failed")
        raise HTTPException(status_code=503, detail="metrics unavailable")


@app.get("/", include_in_schema=False)
def root_redirect():
    return RedirectResponse(url="/docs", status_code=307)


def _scrub_health_details(payload: dict[str, Any]) -> dict[str, Any]:
    """Remove sensitive error fields before returning debug health details."""

    def _scrub(value: Any) -> Any:
        if isinstance(value, dict):
            cleaned: dict[str, Any] = {}
            for key, inner in value.items():
                if key in {"error", "error_type", "traceback"}:
                    continue
                cleaned[key] = _scrub(inner)
            return cleaned
        if isinstance(value, list):
            return [_scrub(item) for item in value]
        return value

    return _scrub(payload)
