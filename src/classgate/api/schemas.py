"""
Pydantic schemas for API request/response validation.

Wire field names are camelCase, as expected by the deployed agents and
enrollment scripts; Python attributes stay snake_case.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model serialized with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ============================================================================
# Registration Schemas
# ============================================================================


class RegisterResponse(CamelModel):
    """Successful device registration."""

    success: bool = True
    whitelist_url: str
    classroom_name: str
    classroom_id: str


class RotateResponse(CamelModel):
    """Successful download token rotation."""

    success: bool = True
    whitelist_url: str


# ============================================================================
# Manifest Schemas
# ============================================================================


class ManifestFile(CamelModel):
    """Single file entry in a release manifest."""

    path: str
    sha256: str = Field(..., min_length=64, max_length=64, pattern=r"^[0-9a-f]{64}$")
    size: int = Field(..., ge=0)


class ManifestResponse(CamelModel):
    """Release manifest."""

    success: bool = True
    version: str
    files: list[ManifestFile] = Field(default_factory=list)


# ============================================================================
# Enrollment Schemas
# ============================================================================


class TicketResponse(CamelModel):
    """Freshly issued enrollment ticket."""

    success: bool = True
    enrollment_token: str
    classroom_id: str
    classroom_name: str
    expires_at: datetime


# ============================================================================
# Setup Schemas
# ============================================================================


class SetupStatus(CamelModel):
    """Installation setup state."""

    has_registration_token: bool


class RegistrationTokenResponse(CamelModel):
    """Current registration token (admin only)."""

    success: bool = True
    registration_token: str


class ValidateTokenResponse(CamelModel):
    """Registration token check result."""

    valid: bool


# ============================================================================
# System Schemas
# ============================================================================


class HealthCheck(CamelModel):
    """Health check response."""

    status: str = "ok"
    service: str = "classgate"
    version: str
    uptime_seconds: float


class ErrorResponse(CamelModel):
    """Error body returned for every failed request."""

    success: bool = False
    error: str
