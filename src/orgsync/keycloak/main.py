"""Keycloak org sync service - FastAPI application."""

from contextlib import asynccontextmanager

import httpx
import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from orgsync.keycloak.config import Settings, get_settings
from orgsync.keycloak.logs import configure_logging
from orgsync.keycloak.metrics import render_latest
from orgsync.keycloak.models import ProviderConfig
from orgsync.keycloak.routes import (
    catalog_router,
    events_router,
    health_router,
    providers_router,
)
from orgsync.keycloak.routes.deps import init_deps, shutdown_deps

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    settings: Settings = app.state.settings

    configure_logging(log_level=settings.log_level, json_format=settings.json_logs)
    logger.info(
        "Starting Keycloak org sync service",
        environment=settings.environment,
        catalog_mode=settings.catalog_mode,
    )

    state = await init_deps(
        settings,
        configs=app.state.provider_configs,
        transport=app.state.transport,
    )
    logger.info("Service initialized", providers=sorted(state.providers))

    yield

    logger.info("Shutting down Keycloak org sync service")
    await shutdown_deps()


def create_app(
    settings: Settings | None = None,
    provider_configs: list[ProviderConfig] | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    `provider_configs` replaces reading `settings.providers_file`, and
    `transport` is handed to every outbound HTTP client.
    """
    if settings is None:
        settings = get_settings()

    app = FastAPI(
        title="Keycloak Org Sync",
        description="Keeps catalog users and groups in sync with Keycloak realms",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs" if settings.environment != "production" else None,
        redoc_url="/redoc" if settings.environment != "production" else None,
    )
    app.state.settings = settings
    app.state.provider_configs = provider_configs
    app.state.transport = transport

    app.include_router(health_router)
    app.include_router(events_router)
    app.include_router(providers_router)
    app.include_router(catalog_router)

    @app.get("/metrics", include_in_schema=False)
    async def metrics() -> Response:
        body, content_type = render_latest()
        return Response(content=body, media_type=content_type)

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled exception", path=request.url.path)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )

    return app


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "orgsync.keycloak.main:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
    )
