"""
Service container for the HTTP layer.

``configure_services`` fills ``deps`` once at startup; route handlers and
auth dependencies read the services through the getters below.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

from fastapi import HTTPException, status

if TYPE_CHECKING:
    from classgate.api.auth import RateLimiter
    from classgate.config import ClassGateConfig
    from classgate.delivery.events import DeviceEventStreamer
    from classgate.delivery.manifest import DeliveryService
    from classgate.policy.parser import CatalogStore
    from classgate.policy.resolver import PolicyResolver
    from classgate.registry.database import DeviceRegistry
    from classgate.tokens.issuer import TokenIssuer


class ServiceDependencies:
    """
    Container for service dependencies.

    Set these after app initialization to inject the registry, issuer, etc.
    """

    config: ClassGateConfig | None = None
    registry: DeviceRegistry | None = None
    issuer: TokenIssuer | None = None
    resolver: PolicyResolver | None = None
    catalog_store: CatalogStore | None = None
    delivery: DeliveryService | None = None
    events: DeviceEventStreamer | None = None
    rate_limiter: RateLimiter | None = None
    start_time: float = time.time()


deps = ServiceDependencies()


def _unavailable(name: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail=f"{name} not initialized",
    )


def get_config() -> ClassGateConfig:
    """Get configuration."""
    if deps.config is None:
        raise _unavailable("Configuration")
    return deps.config


def get_registry() -> DeviceRegistry:
    """Get device registry instance."""
    if deps.registry is None:
        raise _unavailable("Device registry")
    return deps.registry


def get_issuer() -> TokenIssuer:
    """Get token issuer instance."""
    if deps.issuer is None:
        raise _unavailable("Token issuer")
    return deps.issuer


def get_catalog_store() -> CatalogStore:
    """Get catalog store instance."""
    if deps.catalog_store is None:
        raise _unavailable("Catalog")
    return deps.catalog_store


def get_delivery() -> DeliveryService:
    """Get delivery service instance."""
    if deps.delivery is None:
        raise _unavailable("Delivery service")
    return deps.delivery


def get_events() -> DeviceEventStreamer:
    """Get device event streamer instance."""
    if deps.events is None:
        raise _unavailable("Event stream")
    return deps.events
