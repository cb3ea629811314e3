"""
Configuration management for ClassGate.

Handles loading, validation, and access to server configuration.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


# Default configuration paths
DEFAULT_CONFIG_PATH = Path("/etc/classgate/classgate.yaml")
DEFAULT_CATALOG_PATH = Path("/etc/classgate/catalog.yaml")
DEFAULT_DB_PATH = Path("/var/lib/classgate/registry.db")
DEFAULT_AGENT_ROOT = Path("/opt/classgate/agent/windows")

# Release file set served to registered devices
DEFAULT_AGENT_FILES = [
    "Install-ClassGate.ps1",
    "Uninstall-ClassGate.ps1",
    "lib/ClassGate.Common.psm1",
    "lib/ClassGate.DNS.psm1",
    "lib/ClassGate.Firewall.psm1",
    "scripts/Update-ClassGate.ps1",
    "scripts/Test-DNSHealth.ps1",
    "scripts/Enroll-Device.ps1",
]

# Subset served to not-yet-registered devices
DEFAULT_BOOTSTRAP_FILES = [
    "Install-ClassGate.ps1",
    "lib/ClassGate.Common.psm1",
    "scripts/Enroll-Device.ps1",
]


@dataclass
class ServerConfig:
    """HTTP server settings."""

    host: str = "0.0.0.0"
    port: int = 3000
    public_url: str | None = None
    log_level: str = "info"
    debug: bool = False
    cors_origins: list[str] = field(
        default_factory=lambda: ["http://localhost:3000", "http://127.0.0.1:3000"]
    )

    def __post_init__(self) -> None:
        if self.public_url is None:
            self.public_url = os.environ.get("PUBLIC_URL")

    @property
    def base_url(self) -> str:
        """Externally reachable base URL, without trailing slash."""
        if self.public_url:
            return self.public_url.rstrip("/")
        return f"http://{self.host}:{self.port}"


@dataclass
class DatabaseConfig:
    """Device registry database settings."""

    path: str = str(DEFAULT_DB_PATH)
    wal_mode: bool = True


@dataclass
class TokenConfig:
    """Credential settings for the token chain."""

    shared_secret: str | None = None
    jwt_secret: str | None = None
    device_token_key: str | None = None
    enrollment_ttl_minutes: int = 15
    enrollment_issuer: str = "classgate-api"
    enrollment_audience: str = "classgate-enroll"

    def __post_init__(self) -> None:
        # Secrets come from the environment unless set explicitly
        if self.shared_secret is None:
            self.shared_secret = os.environ.get("SHARED_SECRET")
        if self.jwt_secret is None:
            self.jwt_secret = os.environ.get("JWT_SECRET")
        if self.device_token_key is None:
            self.device_token_key = os.environ.get("DEVICE_TOKEN_KEY") or self.jwt_secret


@dataclass
class AdminAuthConfig:
    """Verification settings for externally issued admin access tokens."""

    jwt_secret: str | None = None
    algorithms: list[str] = field(default_factory=lambda: ["HS256"])
    issuer: str | None = None
    audience: str | None = None

    def __post_init__(self) -> None:
        if self.jwt_secret is None:
            self.jwt_secret = os.environ.get("ADMIN_JWT_SECRET")


@dataclass
class CatalogConfig:
    """Classroom/group/rule catalog settings."""

    path: str = str(DEFAULT_CATALOG_PATH)
    hot_reload: bool = True


@dataclass
class DeliveryConfig:
    """Agent and bootstrap file distribution settings."""

    agent_root: str = str(DEFAULT_AGENT_ROOT)
    agent_version: str | None = None
    agent_files: list[str] = field(default_factory=lambda: list(DEFAULT_AGENT_FILES))
    bootstrap_files: list[str] = field(
        default_factory=lambda: list(DEFAULT_BOOTSTRAP_FILES)
    )

    def __post_init__(self) -> None:
        if self.agent_version is None:
            from classgate import __version__

            self.agent_version = os.environ.get("AGENT_VERSION") or __version__


@dataclass
class EventsConfig:
    """Device event stream settings."""

    poll_seconds: float = 5.0
    keep_alive_seconds: float = 30.0


@dataclass
class RateLimitConfig:
    """Per-IP rate limits: a general budget and a strict one for credential routes."""

    enabled: bool = True
    requests_per_minute: int = 200
    auth_requests_per_minute: int = 10


@dataclass
class ClassGateConfig:
    """Main configuration container."""

    server: ServerConfig = field(default_factory=ServerConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    tokens: TokenConfig = field(default_factory=TokenConfig)
    admin_auth: AdminAuthConfig = field(default_factory=AdminAuthConfig)
    catalog: CatalogConfig = field(default_factory=CatalogConfig)
    delivery: DeliveryConfig = field(default_factory=DeliveryConfig)
    events: EventsConfig = field(default_factory=EventsConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)

    def __post_init__(self) -> None:
        # Admin tokens are signed by the same auth service unless told otherwise
        if self.admin_auth.jwt_secret is None:
            self.admin_auth.jwt_secret = self.tokens.jwt_secret

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ClassGateConfig:
        """Create configuration from dictionary."""
        return cls(
            server=ServerConfig(**data.get("server", {})),
            database=DatabaseConfig(**data.get("database", {})),
            tokens=TokenConfig(**data.get("tokens", {})),
            admin_auth=AdminAuthConfig(**data.get("admin_auth", {})),
            catalog=CatalogConfig(**data.get("catalog", {})),
            delivery=DeliveryConfig(**data.get("delivery", {})),
            events=EventsConfig(**data.get("events", {})),
            rate_limit=RateLimitConfig(**data.get("rate_limit", {})),
        )


def load_config(path: str | Path | None = None) -> ClassGateConfig:
    """
    Load configuration from YAML file.

    Args:
        path: Path to configuration file. If None, uses default paths.

    Returns:
        ClassGateConfig instance with loaded settings.

    Raises:
        FileNotFoundError: If config file not found.
        yaml.YAMLError: If config file is invalid YAML.
    """
    if path is None:
        candidates = [
            DEFAULT_CONFIG_PATH,
            Path("config/classgate.yaml"),
            Path("classgate.yaml"),
        ]
        for candidate in candidates:
            if candidate.exists():
                path = candidate
                break

    if path is None:
        return ClassGateConfig()

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    with open(path) as f:
        data = yaml.safe_load(f) or {}

    return ClassGateConfig.from_dict(data)


def validate_config(config: ClassGateConfig) -> list[str]:
    """
    Validate configuration and return list of errors.

    Args:
        config: Configuration to validate.

    Returns:
        List of error messages. Empty list if valid.
    """
    errors: list[str] = []

    valid_log_levels = {"debug", "info", "warning", "error"}
    if config.server.log_level not in valid_log_levels:
        errors.append(f"Invalid log_level: {config.server.log_level}")

    if not (1 <= config.server.port <= 65535):
        errors.append(f"Invalid server port: {config.server.port}")

    if config.tokens.enrollment_ttl_minutes <= 0:
        errors.append(
            f"Invalid enrollment_ttl_minutes: {config.tokens.enrollment_ttl_minutes}"
        )

    if not config.tokens.jwt_secret:
        errors.append("JWT secret required to sign enrollment tickets")

    if not config.tokens.device_token_key:
        errors.append("Device token key required to derive device tokens")

    if not config.tokens.shared_secret:
        errors.append("Shared secret not set: token rotation will be unavailable")

    if config.events.poll_seconds <= 0:
        errors.append(f"Invalid events poll_seconds: {config.events.poll_seconds}")

    if not config.delivery.agent_files:
        errors.append("Agent file set is empty")

    unknown_bootstrap = set(config.delivery.bootstrap_files) - set(
        config.delivery.agent_files
    )
    if unknown_bootstrap:
        errors.append(
            "Bootstrap files not part of the agent release: "
            + ", ".join(sorted(unknown_bootstrap))
        )

    return errors
