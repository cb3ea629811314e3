"""
Token Issuer.

Credential chain: registration token -> enrollment ticket -> device token,
plus the operator shared secret.
"""

from classgate.tokens.admin import AdminPrincipal, verify_admin_access_token
from classgate.tokens.issuer import (
    DeviceCredential,
    EnrollmentCheck,
    EnrollmentStatus,
    EnrollmentTicket,
    TokenIssuer,
    generate_registration_token,
    hash_device_token,
)

__all__ = [
    "AdminPrincipal",
    "verify_admin_access_token",
    "DeviceCredential",
    "EnrollmentCheck",
    "EnrollmentStatus",
    "EnrollmentTicket",
    "TokenIssuer",
    "generate_registration_token",
    "hash_device_token",
]
