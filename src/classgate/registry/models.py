"""
Device registry models.

SQLAlchemy ORM models for device identity and installation settings.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import Column, DateTime, String, Text
from sqlalchemy.orm import DeclarativeBase


def _utc_now() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(timezone.utc)


def _new_device_id() -> str:
    return uuid.uuid4().hex


# Key under which the installation-wide registration token is stored
REGISTRATION_TOKEN_KEY = "registration_token"


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class Device(Base):
    """
    Registered classroom device.

    Identified internally by a generated id; hostname is a unique,
    mutable attribute used by the register/rotate operations. The bearer
    token itself is never stored: only the nonce it is derived from and
    its SHA-256 hash for lookups.
    """

    __tablename__ = "devices"

    id = Column(String(32), primary_key=True, default=_new_device_id)
    hostname = Column(String(255), unique=True, nullable=False, index=True)
    classroom_id = Column(String(64), nullable=False, index=True)
    installed_version = Column(String(64), nullable=True)
    registered_at = Column(DateTime, default=_utc_now, nullable=False)
    last_seen_at = Column(DateTime, default=_utc_now, nullable=True)
    token_nonce = Column(String(64), nullable=False)
    token_hash = Column(String(64), unique=True, nullable=False, index=True)
    token_rotated_at = Column(DateTime, nullable=True)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary (credential columns excluded)."""
        return {
            "id": self.id,
            "hostname": self.hostname,
            "classroom_id": self.classroom_id,
            "installed_version": self.installed_version,
            "registered_at": self.registered_at.isoformat() if self.registered_at else None,
            "last_seen_at": self.last_seen_at.isoformat() if self.last_seen_at else None,
            "token_rotated_at": (
                self.token_rotated_at.isoformat() if self.token_rotated_at else None
            ),
        }


class InstallationSetting(Base):
    """Installation-wide key/value settings (registration token)."""

    __tablename__ = "installation_settings"

    key = Column(String(64), primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=_utc_now, onupdate=_utc_now, nullable=False)
