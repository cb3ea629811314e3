"""
Pytest configuration and shared fixtures for ClassGate tests.
"""

from __future__ import annotations

import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Generator

import jwt
import pytest
import yaml
from fastapi.testclient import TestClient

from classgate.api import configure_services, create_app
from classgate.config import (
    DEFAULT_AGENT_FILES,
    DEFAULT_BOOTSTRAP_FILES,
    AdminAuthConfig,
    CatalogConfig,
    ClassGateConfig,
    DatabaseConfig,
    DeliveryConfig,
    RateLimitConfig,
    ServerConfig,
    TokenConfig,
)
from classgate.delivery.manifest import DeliveryService
from classgate.policy.parser import CatalogStore
from classgate.registry.database import DeviceRegistry
from classgate.tokens.issuer import TokenIssuer


JWT_SECRET = "test-jwt-secret-0123456789abcdef0123456789"
DEVICE_TOKEN_KEY = "test-device-key-0123456789abcdef0123456789"
SHARED_SECRET = "test-shared-secret-0123456789abcdef"
ADMIN_JWT_SECRET = "test-admin-secret-0123456789abcdef0123456"
AGENT_VERSION = "4.2.0"

# Tuesday 11:00 local: outside Room1's exam slot, so the default group applies
FIXED_NOW = datetime(2026, 10, 20, 11, 0)


CATALOG_DATA: dict[str, Any] = {
    "groups": [
        {
            "id": "g-primary",
            "name": "primaria",
            "display_name": "Primaria",
            "rules": {
                "whitelist": ["wikipedia.org", "khanacademy.org"],
                "blocked_subdomain": ["ads.wikipedia.org"],
                "blocked_path": ["wikipedia.org/wiki/special:random"],
            },
        },
        {
            "id": "g-exam",
            "name": "examen",
            "display_name": "Exam mode",
            "rules": {"whitelist": ["moodle.school.example"]},
        },
        {
            "id": "g-off",
            "name": "vacaciones",
            "display_name": "Holidays",
            "enabled": False,
            "rules": {"whitelist": ["example.org"]},
        },
    ],
    "classrooms": [
        {
            "id": "room-1",
            "name": "Room1",
            "default_group": "g-primary",
            "schedules": [
                {"day": 2, "start": "09:00", "end": "10:00", "group": "g-exam"},
            ],
        },
        {"id": "room-2", "name": "Room2", "default_group": "g-exam"},
        {"id": "room-3", "name": "Room3"},
        {"id": "room-4", "name": "Room4", "default_group": "g-off"},
    ],
}

PRIMARY_DOCUMENT = (
    "## WHITELIST\n"
    "wikipedia.org\n"
    "khanacademy.org\n"
    "\n"
    "## BLOCKED-SUBDOMAINS\n"
    "ads.wikipedia.org\n"
    "\n"
    "## BLOCKED-PATHS\n"
    "wikipedia.org/wiki/special:random\n"
)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def sample_catalog(temp_dir: Path) -> Path:
    """Create a sample catalog file."""
    catalog_path = temp_dir / "catalog.yaml"
    with open(catalog_path, "w") as f:
        yaml.dump(CATALOG_DATA, f)
    return catalog_path


@pytest.fixture
def agent_root(temp_dir: Path) -> Path:
    """Create an agent release tree with every default file."""
    root = temp_dir / "agent"
    for rel in DEFAULT_AGENT_FILES:
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(f"# {rel}\nWrite-Host 'ClassGate {AGENT_VERSION}'\n")
    return root


@pytest.fixture
def sample_config(temp_dir: Path, sample_catalog: Path, agent_root: Path) -> Path:
    """Create a sample configuration file."""
    config_path = temp_dir / "classgate.yaml"
    config_data = {
        "server": {
            "port": 3100,
            "public_url": "https://filter.school.example/",
            "log_level": "debug",
        },
        "database": {"path": str(temp_dir / "registry.db")},
        "tokens": {
            "jwt_secret": JWT_SECRET,
            "device_token_key": DEVICE_TOKEN_KEY,
            "shared_secret": SHARED_SECRET,
        },
        "admin_auth": {"jwt_secret": ADMIN_JWT_SECRET},
        "catalog": {"path": str(sample_catalog)},
        "delivery": {"agent_root": str(agent_root), "agent_version": AGENT_VERSION},
        "rate_limit": {"enabled": False},
    }
    with open(config_path, "w") as f:
        yaml.dump(config_data, f)
    return config_path


@pytest.fixture
def test_config(temp_dir: Path, sample_catalog: Path, agent_root: Path) -> ClassGateConfig:
    """Configuration with every secret set explicitly (no environment)."""
    return ClassGateConfig(
        server=ServerConfig(public_url=""),
        database=DatabaseConfig(path=str(temp_dir / "registry.db")),
        tokens=TokenConfig(
            shared_secret=SHARED_SECRET,
            jwt_secret=JWT_SECRET,
            device_token_key=DEVICE_TOKEN_KEY,
        ),
        admin_auth=AdminAuthConfig(jwt_secret=ADMIN_JWT_SECRET),
        catalog=CatalogConfig(path=str(sample_catalog)),
        delivery=DeliveryConfig(
            agent_root=str(agent_root),
            agent_version=AGENT_VERSION,
            agent_files=list(DEFAULT_AGENT_FILES),
            bootstrap_files=list(DEFAULT_BOOTSTRAP_FILES),
        ),
        rate_limit=RateLimitConfig(enabled=False),
    )


@pytest.fixture
def registry(test_config: ClassGateConfig) -> Generator[DeviceRegistry, None, None]:
    """Create a device registry for tests."""
    registry = DeviceRegistry(test_config.database.path)
    yield registry
    registry.close()


@pytest.fixture
def catalog_store(sample_catalog: Path) -> CatalogStore:
    """Catalog store backed by the sample catalog."""
    return CatalogStore(sample_catalog)


@pytest.fixture
def delivery(test_config: ClassGateConfig) -> DeliveryService:
    """Delivery service over the sample agent tree."""
    return DeliveryService.from_config(test_config.delivery)


@pytest.fixture
def issuer(test_config: ClassGateConfig, registry: DeviceRegistry) -> TokenIssuer:
    """Token issuer bound to the test registry."""
    return TokenIssuer(test_config.tokens, registry)


@pytest.fixture
def registration_token(issuer: TokenIssuer) -> str:
    """Create the installation's registration token."""
    return issuer.bootstrap_registration_token()


@pytest.fixture
def make_admin_token() -> Callable[..., str]:
    """Factory for admin access tokens as the external auth service signs them."""

    def _make(
        roles: list[Any] | None = None,
        classroom_ids: list[str] | None = None,
        subject: str = "teacher@school.example",
        expires_in: timedelta = timedelta(minutes=30),
        secret: str = ADMIN_JWT_SECRET,
    ) -> str:
        now = datetime.now(timezone.utc)
        claims: dict[str, Any] = {
            "sub": subject,
            "roles": roles if roles is not None else ["admin"],
            "iat": now,
            "exp": now + expires_in,
        }
        if classroom_ids is not None:
            claims["classroomIds"] = classroom_ids
        return jwt.encode(claims, secret, algorithm="HS256")

    return _make


@pytest.fixture
def test_app(
    test_config: ClassGateConfig,
    registry: DeviceRegistry,
    catalog_store: CatalogStore,
    delivery: DeliveryService,
):
    """Create a fully configured FastAPI application."""
    app = create_app(debug=True)
    configure_services(
        app,
        test_config,
        registry=registry,
        catalog_store=catalog_store,
        delivery=delivery,
        clock=lambda: FIXED_NOW,
    )
    return app


@pytest.fixture
def client(test_app) -> TestClient:
    """Create test client."""
    return TestClient(test_app)
