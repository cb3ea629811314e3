"""
Device Registry.

Persistent store of device identity and installation-wide settings.
"""

from classgate.registry.database import DeviceRegistry, create_registry, normalize_hostname
from classgate.registry.models import (
    REGISTRATION_TOKEN_KEY,
    Base,
    Device,
    InstallationSetting,
)

__all__ = [
    "DeviceRegistry",
    "create_registry",
    "normalize_hostname",
    "REGISTRATION_TOKEN_KEY",
    "Base",
    "Device",
    "InstallationSetting",
]
