"""
Admin access token verification.

Admin sessions are issued by the external authentication service; this
module only verifies the access tokens it signs and turns them into an
AdminPrincipal.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import jwt

if TYPE_CHECKING:
    from classgate.config import AdminAuthConfig


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AdminPrincipal:
    """
    Authenticated administrative caller.

    Attributes:
        subject: User identifier from the token
        roles: Role names (admin, teacher, ...)
        classroom_ids: Classrooms a teacher is limited to; None means all
    """

    subject: str
    roles: frozenset[str] = field(default_factory=frozenset)
    classroom_ids: frozenset[str] | None = None

    @property
    def is_admin(self) -> bool:
        return "admin" in self.roles

    def can_manage(self, classroom_id: str) -> bool:
        """Check if the caller has rights over a classroom."""
        if self.is_admin or self.classroom_ids is None:
            return True
        return classroom_id in self.classroom_ids


def _parse_roles(raw: Any) -> frozenset[str]:
    # Accepts ["admin"] or [{"role": "admin", ...}]
    roles = set()
    for entry in raw or []:
        if isinstance(entry, str):
            roles.add(entry)
        elif isinstance(entry, dict) and isinstance(entry.get("role"), str):
            roles.add(entry["role"])
    return frozenset(roles)


def verify_admin_access_token(token: str, config: AdminAuthConfig) -> AdminPrincipal | None:
    """
    Verify an admin access token.

    Args:
        token: Bearer token from the request
        config: Verification settings

    Returns:
        AdminPrincipal, or None if the token is invalid or expired
    """
    if not token or not config.jwt_secret:
        return None

    options: dict[str, Any] = {"require": ["exp", "sub"]}
    kwargs: dict[str, Any] = {}
    if config.audience:
        kwargs["audience"] = config.audience
    else:
        options["verify_aud"] = False
    if config.issuer:
        kwargs["issuer"] = config.issuer

    try:
        claims = jwt.decode(
            token,
            config.jwt_secret,
            algorithms=config.algorithms,
            options=options,
            **kwargs,
        )
    except jwt.PyJWTError as e:
        logger.debug("Admin access token rejected: %s", e)
        return None

    # Enrollment tickets share the signing key; they are not admin sessions
    if claims.get("typ") == "enroll":
        return None

    classroom_ids = claims.get("classroomIds")
    return AdminPrincipal(
        subject=str(claims["sub"]),
        roles=_parse_roles(claims.get("roles")),
        classroom_ids=frozenset(classroom_ids) if isinstance(classroom_ids, list) else None,
    )
