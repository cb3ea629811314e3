"""
ClassGate error taxonomy.

Every error maps onto one HTTP status at the API boundary. Messages are
returned to clients as-is, so they never carry tokens or secrets.
"""

from __future__ import annotations

from typing import Any


class ClassGateError(Exception):
    """Base exception for all ClassGate errors."""

    status_code = 500
    headers: dict[str, str] | None = None

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class AuthMissing(ClassGateError):
    """No credential was presented."""

    status_code = 401
    headers = {"WWW-Authenticate": "Bearer"}


class AuthInvalid(ClassGateError):
    """A credential was presented but is unknown or expired."""

    status_code = 401
    headers = {"WWW-Authenticate": "Bearer"}


class PermissionDenied(ClassGateError):
    """Credential is wrong for this operation, or scoped to something else."""

    status_code = 403


class NotFound(ClassGateError):
    """A referenced classroom, group, device or file does not exist."""

    status_code = 404


class ValidationFailed(ClassGateError):
    """Request input is missing or malformed."""

    status_code = 400


class NotConfigured(ClassGateError):
    """A server-side secret or resource required by the operation is unset."""

    status_code = 500


class RateLimited(ClassGateError):
    """Client exceeded its request budget."""

    status_code = 429

    def __init__(self, remaining: int = 0, retry_after: int = 60) -> None:
        super().__init__("Rate limit exceeded")
        self.headers = {
            "X-RateLimit-Remaining": str(remaining),
            "Retry-After": str(retry_after),
        }
