"""
Token Issuer.

Mints and validates every credential in the provisioning chain:

- registration token: standing installation-wide secret for device registration
- enrollment ticket: short-lived JWT bound to one classroom
- device token: per-device bearer secret for policy and update requests
- shared secret: separate operator credential for token rotation
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING

import jwt

from classgate.errors import NotConfigured, PermissionDenied
from classgate.registry.models import REGISTRATION_TOKEN_KEY

if TYPE_CHECKING:
    from classgate.config import TokenConfig
    from classgate.registry.database import DeviceRegistry
    from classgate.tokens.admin import AdminPrincipal


logger = logging.getLogger(__name__)

ENROLLMENT_TOKEN_TYPE = "enroll"
JWT_ALGORITHM = "HS256"

# Roles allowed to request enrollment tickets
ENROLLMENT_ROLES = frozenset({"admin", "teacher"})


class EnrollmentStatus(Enum):
    """Outcome of checking an enrollment ticket against a classroom."""

    OK = "ok"
    SCOPE_MISMATCH = "scope_mismatch"
    INVALID = "invalid"


@dataclass(frozen=True)
class EnrollmentCheck:
    """Result of enrollment ticket verification."""

    status: EnrollmentStatus
    classroom_id: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == EnrollmentStatus.OK


@dataclass(frozen=True)
class EnrollmentTicket:
    """A freshly issued enrollment ticket."""

    token: str
    classroom_id: str
    expires_at: datetime


@dataclass(frozen=True)
class DeviceCredential:
    """
    A device bearer token with the values persisted for it.

    Attributes:
        token: Plain bearer token, handed to the device only
        nonce: Random seed the token is derived from (stored)
        token_hash: SHA-256 of the token, used for lookups (stored)
    """

    token: str
    nonce: str
    token_hash: str


def hash_device_token(token: str) -> str:
    """
    Hash a device token for storage and lookup.

    Args:
        token: Plain bearer token

    Returns:
        SHA-256 hex digest
    """
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def generate_registration_token() -> str:
    """Generate a new registration token."""
    return f"cgr_{secrets.token_urlsafe(32)}"


class TokenIssuer:
    """
    Issues and validates credentials.

    Device tokens are derived as ``base64url(HMAC-SHA256(key, nonce))``
    with a 256-bit random nonce. The registry keeps the nonce and the
    token hash; the key lives only in configuration. A registered device
    asking again therefore gets the same token back without the token
    ever being stored.
    """

    def __init__(self, config: TokenConfig, registry: DeviceRegistry) -> None:
        """
        Initialize the issuer.

        Args:
            config: Token settings (secrets, TTLs)
            registry: Registry holding the registration token
        """
        self.config = config
        self.registry = registry

    # =========================================================================
    # Registration Token
    # =========================================================================

    def validate_registration_token(self, value: str | None) -> bool:
        """
        Check a value against the installation's registration token.

        Args:
            value: Candidate token

        Returns:
            True only if a registration token exists and equals value
        """
        if not value or not isinstance(value, str):
            return False
        current = self.registry.get_registration_token()
        if not current:
            return False
        return hmac.compare_digest(value.encode("utf-8"), current.encode("utf-8"))

    def bootstrap_registration_token(self) -> str:
        """
        Create the registration token if none exists.

        Returns:
            The current registration token (existing or new)
        """
        token = self.registry.insert_setting_if_absent(
            REGISTRATION_TOKEN_KEY, generate_registration_token()
        )
        return token

    def regenerate_registration_token(self) -> str:
        """
        Replace the registration token.

        Returns:
            The new token; the previous one is rejected from now on
        """
        token = generate_registration_token()
        self.registry.set_setting(REGISTRATION_TOKEN_KEY, token)
        logger.warning("Registration token regenerated")
        return token

    def has_registration_token(self) -> bool:
        """Check if the installation has a registration token."""
        return self.registry.get_registration_token() is not None

    # =========================================================================
    # Enrollment Tickets
    # =========================================================================

    def issue_enrollment_ticket(
        self,
        classroom_id: str,
        principal: AdminPrincipal,
    ) -> EnrollmentTicket:
        """
        Issue a classroom-bound enrollment ticket.

        Args:
            classroom_id: Classroom the ticket is valid for
            principal: Authenticated administrative caller

        Returns:
            EnrollmentTicket with token and expiry

        Raises:
            PermissionDenied: If the caller has no rights over the classroom
            NotConfigured: If no signing secret is configured
        """
        if not ENROLLMENT_ROLES.intersection(principal.roles):
            raise PermissionDenied("Teacher access required")
        if not principal.can_manage(classroom_id):
            raise PermissionDenied("No access to this classroom")

        secret = self._signing_secret()
        now = datetime.now(timezone.utc)
        expires_at = now + timedelta(minutes=self.config.enrollment_ttl_minutes)

        token = jwt.encode(
            {
                "typ": ENROLLMENT_TOKEN_TYPE,
                "classroomId": classroom_id,
                "sub": principal.subject,
                "iss": self.config.enrollment_issuer,
                "aud": self.config.enrollment_audience,
                "iat": now,
                "exp": expires_at,
            },
            secret,
            algorithm=JWT_ALGORITHM,
        )

        logger.info(
            "Issued enrollment ticket for classroom %s by %s", classroom_id, principal.subject
        )
        return EnrollmentTicket(token=token, classroom_id=classroom_id, expires_at=expires_at)

    def verify_enrollment_token(
        self,
        token: str | None,
        classroom_id: str | None = None,
    ) -> EnrollmentCheck:
        """
        Verify an enrollment ticket, optionally against a classroom.

        Args:
            token: Ticket presented by the device
            classroom_id: Classroom the request targets; None accepts any

        Returns:
            EnrollmentCheck: INVALID for unknown, expired or malformed
            tickets; SCOPE_MISMATCH for a valid ticket bound to another
            classroom; OK otherwise
        """
        if not token or not self.config.jwt_secret:
            return EnrollmentCheck(EnrollmentStatus.INVALID)

        try:
            claims = jwt.decode(
                token,
                self.config.jwt_secret,
                algorithms=[JWT_ALGORITHM],
                audience=self.config.enrollment_audience,
                issuer=self.config.enrollment_issuer,
                options={"require": ["exp", "iat"]},
            )
        except jwt.PyJWTError as e:
            logger.debug("Enrollment token rejected: %s", e)
            return EnrollmentCheck(EnrollmentStatus.INVALID)

        bound = claims.get("classroomId")
        if claims.get("typ") != ENROLLMENT_TOKEN_TYPE or not isinstance(bound, str) or not bound:
            return EnrollmentCheck(EnrollmentStatus.INVALID)

        if classroom_id is not None and bound != classroom_id:
            return EnrollmentCheck(EnrollmentStatus.SCOPE_MISMATCH, classroom_id=bound)

        return EnrollmentCheck(EnrollmentStatus.OK, classroom_id=bound)

    def _signing_secret(self) -> str:
        if not self.config.jwt_secret:
            raise NotConfigured("JWT secret not configured")
        return self.config.jwt_secret

    # =========================================================================
    # Device Tokens
    # =========================================================================

    def issue_device_token(self) -> DeviceCredential:
        """
        Generate a fresh device token.

        Returns:
            DeviceCredential with the token and the values to persist
        """
        nonce = secrets.token_hex(32)
        token = self.derive_device_token(nonce)
        return DeviceCredential(token=token, nonce=nonce, token_hash=hash_device_token(token))

    def derive_device_token(self, nonce: str) -> str:
        """
        Derive the bearer token for a stored nonce.

        Args:
            nonce: Hex nonce stored with the device

        Returns:
            URL-safe token (43 characters, no padding)

        Raises:
            NotConfigured: If no device token key is configured
        """
        key = self.config.device_token_key
        if not key:
            raise NotConfigured("Device token key not configured")
        digest = hmac.new(key.encode("utf-8"), bytes.fromhex(nonce), hashlib.sha256).digest()
        return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")

    # =========================================================================
    # Shared Secret
    # =========================================================================

    @property
    def shared_secret_configured(self) -> bool:
        return bool(self.config.shared_secret)

    def validate_shared_secret(self, value: str | None) -> bool:
        """
        Check the operator shared secret.

        Args:
            value: Candidate secret

        Returns:
            True if a shared secret is configured and equals value
        """
        if not value or not self.config.shared_secret:
            return False
        return hmac.compare_digest(
            value.encode("utf-8"), self.config.shared_secret.encode("utf-8")
        )
