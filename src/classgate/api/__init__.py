"""
HTTP API.

FastAPI application serving registration, policy documents, agent and
bootstrap distribution, and enrollment.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Callable

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from classgate import __version__
from classgate.api.auth import (
    RateLimiter,
    check_auth_rate_limit,
    check_rate_limit,
    require_admin,
    require_admin_role,
    require_bearer,
    require_device,
    require_enrollment,
    require_teacher,
)
from classgate.api.dependencies import ServiceDependencies, deps
from classgate.api.routes import public_router, router
from classgate.api.schemas import (
    ErrorResponse,
    HealthCheck,
    ManifestFile,
    ManifestResponse,
    RegisterResponse,
    RegistrationTokenResponse,
    RotateResponse,
    SetupStatus,
    TicketResponse,
    ValidateTokenResponse,
)
from classgate.config import ClassGateConfig
from classgate.delivery.events import DeviceEventStreamer
from classgate.delivery.manifest import DeliveryService
from classgate.errors import ClassGateError
from classgate.policy.parser import CatalogStore
from classgate.policy.resolver import PolicyResolver
from classgate.registry.database import DeviceRegistry
from classgate.tokens.issuer import TokenIssuer

logger = logging.getLogger(__name__)


# ============================================================================
# Application Lifecycle
# ============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Releases the registry connection pool on shutdown.
    """
    logger.info("Starting ClassGate API")
    yield
    logger.info("Shutting down ClassGate API")
    if deps.registry is not None:
        deps.registry.close()


# ============================================================================
# FastAPI Application
# ============================================================================


def create_app(
    title: str = "ClassGate API",
    version: str = __version__,
    debug: bool = False,
    cors_origins: list[str] | None = None,
) -> FastAPI:
    """
    Create and configure FastAPI application.

    Args:
        title: API title
        version: API version
        debug: Enable debug mode
        cors_origins: Allowed CORS origins

    Returns:
        Configured FastAPI application
    """
    app = FastAPI(
        title=title,
        description="Device registration and policy delivery for classroom internet filtering",
        version=version,
        debug=debug,
        lifespan=lifespan,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
    )

    # CORS middleware
    origins = cors_origins or ["http://localhost:3000", "http://127.0.0.1:3000"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["ETag", "X-Content-SHA256"],
    )

    app.include_router(public_router)
    app.include_router(router)

    @app.exception_handler(ClassGateError)
    async def classgate_exception_handler(request: Request, exc: ClassGateError):
        """Render domain errors as ``{success: false, error}``."""
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse(error=exc.message).model_dump(by_alias=True),
            headers=exc.headers,
        )

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Handle unexpected exceptions."""
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "detail": str(exc) if debug else None,
            },
        )

    return app


def configure_services(
    app: FastAPI,
    config: ClassGateConfig,
    registry: DeviceRegistry | None = None,
    catalog_store: CatalogStore | None = None,
    delivery: DeliveryService | None = None,
    clock: Callable[[], datetime] | None = None,
) -> None:
    """
    Configure application services.

    Services not passed in are built from the configuration.

    Args:
        app: FastAPI application
        config: Loaded configuration
        registry: Device registry instance
        catalog_store: Catalog source
        delivery: Agent/bootstrap file sets
        clock: Local-time clock for schedule resolution
    """
    if registry is None:
        registry = DeviceRegistry(config.database.path, wal_mode=config.database.wal_mode)
    if catalog_store is None:
        catalog_store = CatalogStore(config.catalog.path, hot_reload=config.catalog.hot_reload)
    if delivery is None:
        delivery = DeliveryService.from_config(config.delivery)

    deps.config = config
    deps.registry = registry
    deps.catalog_store = catalog_store
    deps.delivery = delivery
    deps.issuer = TokenIssuer(config.tokens, registry)
    deps.resolver = PolicyResolver(registry, catalog_store, clock=clock or datetime.now)
    deps.events = DeviceEventStreamer(
        registry,
        catalog_store,
        clock=clock or datetime.now,
        poll_seconds=config.events.poll_seconds,
        keep_alive_seconds=config.events.keep_alive_seconds,
    )
    deps.rate_limiter = (
        RateLimiter(config.rate_limit.requests_per_minute)
        if config.rate_limit.enabled
        else None
    )
    app.state.config = config

    logger.info("API services configured")


# Default app instance
app = create_app()


__all__ = [
    # Application
    "app",
    "create_app",
    "configure_services",
    # Authentication
    "RateLimiter",
    "check_auth_rate_limit",
    "check_rate_limit",
    "require_admin",
    "require_admin_role",
    "require_bearer",
    "require_device",
    "require_enrollment",
    "require_teacher",
    # Routes
    "router",
    "public_router",
    "deps",
    "ServiceDependencies",
    # Schemas
    "ErrorResponse",
    "HealthCheck",
    "ManifestFile",
    "ManifestResponse",
    "RegisterResponse",
    "RegistrationTokenResponse",
    "RotateResponse",
    "SetupStatus",
    "TicketResponse",
    "ValidateTokenResponse",
]
