"""
Authentication dependencies for API security.

Supports:
- Device bearer tokens (policy and agent updates)
- Enrollment tickets (bootstrap files and enrollment scripts)
- Admin access tokens issued by the external auth service
- Rate limiting via token bucket algorithm
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field

from fastapi import Depends, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from classgate.api.dependencies import deps, get_config, get_issuer, get_registry
from classgate.config import ClassGateConfig
from classgate.errors import AuthInvalid, AuthMissing, PermissionDenied, RateLimited
from classgate.registry.database import DeviceRegistry
from classgate.registry.models import Device
from classgate.tokens.admin import AdminPrincipal, verify_admin_access_token
from classgate.tokens.issuer import (
    ENROLLMENT_ROLES,
    EnrollmentCheck,
    TokenIssuer,
    hash_device_token,
)

logger = logging.getLogger(__name__)


# ============================================================================
# Bearer Credentials
# ============================================================================


bearer_scheme = HTTPBearer(auto_error=False)


async def require_bearer(
    credentials: HTTPAuthorizationCredentials | None = Security(bearer_scheme),
) -> str:
    """
    FastAPI dependency to extract a bearer credential.

    Only presence is checked here; what the credential means is up to the
    route.

    Raises:
        AuthMissing: If no ``Authorization: Bearer`` header was sent
    """
    if credentials is None or not credentials.credentials:
        raise AuthMissing("Authorization header required")
    return credentials.credentials


def require_device(
    token: str = Depends(require_bearer),
    registry: DeviceRegistry = Depends(get_registry),
) -> Device:
    """
    FastAPI dependency resolving a device bearer token to its device.

    Raises:
        AuthInvalid: If no device currently holds the token
    """
    device = registry.get_device_by_token_hash(hash_device_token(token))
    if device is None:
        raise AuthInvalid("Invalid device token")
    return device


def require_enrollment(
    token: str = Depends(require_bearer),
    issuer: TokenIssuer = Depends(get_issuer),
) -> EnrollmentCheck:
    """
    FastAPI dependency accepting an enrollment ticket for any classroom.

    Raises:
        AuthInvalid: If the ticket is malformed, expired or forged
    """
    check = issuer.verify_enrollment_token(token)
    if not check.ok:
        raise AuthInvalid("Invalid enrollment token")
    return check


def require_admin(
    token: str = Depends(require_bearer),
    config: ClassGateConfig = Depends(get_config),
) -> AdminPrincipal:
    """
    FastAPI dependency verifying an admin access token.

    Raises:
        AuthInvalid: If the token does not verify
    """
    principal = verify_admin_access_token(token, config.admin_auth)
    if principal is None:
        raise AuthInvalid("Invalid access token")
    return principal


def require_teacher(principal: AdminPrincipal = Depends(require_admin)) -> AdminPrincipal:
    """Require a role allowed to enroll devices (admin or teacher)."""
    if not ENROLLMENT_ROLES.intersection(principal.roles):
        raise PermissionDenied("Teacher access required")
    return principal


def require_admin_role(principal: AdminPrincipal = Depends(require_admin)) -> AdminPrincipal:
    """Require the admin role."""
    if not principal.is_admin:
        raise PermissionDenied("Admin access required")
    return principal


# ============================================================================
# Rate Limiting
# ============================================================================


@dataclass
class TokenBucket:
    """
    Token bucket for rate limiting.

    Attributes:
        capacity: Maximum tokens in bucket
        tokens: Current token count
        fill_rate: Tokens added per second
        last_update: Last time tokens were added
    """

    capacity: int
    tokens: float = field(init=False)
    fill_rate: float = field(init=False)
    last_update: float = field(default_factory=time.time)

    def __post_init__(self) -> None:
        """Initialize token count and fill rate."""
        self.tokens = float(self.capacity)
        self.fill_rate = self.capacity / 60.0  # tokens per second

    def consume(self, tokens: int = 1) -> bool:
        """
        Attempt to consume tokens.

        Args:
            tokens: Number of tokens to consume

        Returns:
            True if tokens were available
        """
        self._refill()

        if self.tokens >= tokens:
            self.tokens -= tokens
            return True
        return False

    def _refill(self) -> None:
        """Refill tokens based on time elapsed."""
        now = time.time()
        elapsed = now - self.last_update
        self.tokens = min(self.capacity, self.tokens + elapsed * self.fill_rate)
        self.last_update = now


class RateLimiter:
    """
    Rate limiter using token bucket algorithm.

    Tracks request rates per client identifier (IP address, optionally
    namespaced by endpoint class).
    """

    def __init__(self, default_rate: int = 60) -> None:
        """
        Initialize rate limiter.

        Args:
            default_rate: Default requests per minute
        """
        self._buckets: dict[str, TokenBucket] = {}
        self._default_rate = default_rate
        self._cleanup_interval = 300  # 5 minutes
        self._last_cleanup = time.time()

    def check_rate(self, client_id: str, rate_limit: int | None = None) -> bool:
        """
        Check if client is within rate limit.

        Args:
            client_id: Client identifier
            rate_limit: Optional custom rate limit

        Returns:
            True if request is allowed
        """
        self._maybe_cleanup()

        rate = rate_limit or self._default_rate

        if client_id not in self._buckets:
            self._buckets[client_id] = TokenBucket(capacity=rate)

        return self._buckets[client_id].consume()

    def get_remaining(self, client_id: str) -> int:
        """
        Get remaining requests for client.

        Args:
            client_id: Client identifier

        Returns:
            Number of remaining requests
        """
        if client_id not in self._buckets:
            return self._default_rate
        return int(self._buckets[client_id].tokens)

    def _maybe_cleanup(self) -> None:
        """Clean up old buckets periodically."""
        now = time.time()
        if now - self._last_cleanup < self._cleanup_interval:
            return

        # Remove buckets that haven't been used in 10 minutes
        cutoff = now - 600
        self._buckets = {
            k: v for k, v in self._buckets.items() if v.last_update > cutoff
        }
        self._last_cleanup = now


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _enforce(client_id: str, rate_limit: int | None) -> None:
    limiter = deps.rate_limiter
    if limiter is None:
        return
    if not limiter.check_rate(client_id, rate_limit):
        logger.warning("Rate limit exceeded for %s", client_id)
        raise RateLimited(remaining=limiter.get_remaining(client_id))


async def check_rate_limit(request: Request) -> None:
    """
    Check the general per-IP rate limit.

    Raises:
        RateLimited: If rate limit exceeded
    """
    _enforce(_client_ip(request), None)


async def check_auth_rate_limit(request: Request) -> None:
    """
    Check the stricter per-IP limit for credential-bearing endpoints.

    Raises:
        RateLimited: If rate limit exceeded
    """
    rate = deps.config.rate_limit.auth_requests_per_minute if deps.config else None
    _enforce(f"auth:{_client_ip(request)}", rate)
