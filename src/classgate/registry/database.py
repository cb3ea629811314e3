"""
Device Registry Operations.

The authoritative store of device identity, keyed by hostname. Every
write that decides which token is live (first registration, rotation)
is a single conditional statement, so two concurrent requests for the
same hostname can never leave two live tokens behind.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Generator

from sqlalchemy import create_engine, event, func, select, text, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session, sessionmaker

from classgate.registry.models import (
    REGISTRATION_TOKEN_KEY,
    Base,
    Device,
    InstallationSetting,
    _new_device_id,
)


logger = logging.getLogger(__name__)


def normalize_hostname(hostname: str) -> str:
    """Normalize a hostname for use as the device lookup key."""
    return hostname.strip().lower()


class DeviceRegistry:
    """
    High-level interface for device registry operations.

    Provides the atomic upsert and rotation primitives used by the
    registration endpoints, plus read access for token lookups.
    """

    def __init__(
        self,
        db_path: str | Path,
        wal_mode: bool = True,
        create_if_missing: bool = True,
    ) -> None:
        """
        Initialize the device registry.

        Args:
            db_path: Path to SQLite database file
            wal_mode: Enable WAL mode for better concurrency
            create_if_missing: Create database if it doesn't exist
        """
        self.db_path = Path(db_path)

        if create_if_missing:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self.engine = create_engine(
            f"sqlite:///{self.db_path}",
            echo=False,
            pool_pre_ping=True,
            connect_args={"check_same_thread": False, "timeout": 15},
        )

        @event.listens_for(self.engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            """Wait on concurrent writers instead of failing immediately."""
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA busy_timeout=15000")
            cursor.close()

        self.Session = sessionmaker(bind=self.engine)

        if create_if_missing or not self.db_path.exists():
            self._init_schema()

        if wal_mode:
            with self.engine.connect() as conn:
                conn.execute(text("PRAGMA journal_mode=WAL"))
                conn.commit()

    def _init_schema(self) -> None:
        """Initialize database schema."""
        Base.metadata.create_all(self.engine)
        logger.info("Registry schema initialized: %s", self.db_path)

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """
        Get a database session context manager.

        Yields:
            SQLAlchemy Session object
        """
        session = self.Session()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # =========================================================================
    # Device Operations
    # =========================================================================

    def upsert_device(
        self,
        hostname: str,
        classroom_id: str,
        token_nonce: str,
        token_hash: str,
        version: str | None = None,
    ) -> tuple[Device, bool]:
        """
        Insert a device or refresh an existing one, keyed on hostname.

        The token columns are only written when the row is created; an
        existing device keeps its live token.

        Args:
            hostname: Device hostname (normalized here)
            classroom_id: Classroom the device belongs to
            token_nonce: Nonce for a fresh token, used only on insert
            token_hash: Hash of the fresh token, used only on insert
            version: Installed agent version, if reported

        Returns:
            Tuple of (device, created)
        """
        hostname = normalize_hostname(hostname)
        now = datetime.now(timezone.utc)

        stmt = sqlite_insert(Device).values(
            id=_new_device_id(),
            hostname=hostname,
            classroom_id=classroom_id,
            installed_version=version,
            registered_at=now,
            last_seen_at=now,
            token_nonce=token_nonce,
            token_hash=token_hash,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[Device.hostname],
            set_={
                "classroom_id": stmt.excluded.classroom_id,
                "installed_version": func.coalesce(
                    stmt.excluded.installed_version, Device.installed_version
                ),
                "last_seen_at": stmt.excluded.last_seen_at,
            },
        )

        with self.session() as session:
            session.execute(stmt)
            device = session.scalars(
                select(Device).where(Device.hostname == hostname)
            ).one()
            session.expunge(device)

        created = device.token_hash == token_hash
        if created:
            logger.info("Registered new device: %s (classroom=%s)", hostname, classroom_id)
        else:
            logger.info("Refreshed device: %s (classroom=%s)", hostname, classroom_id)
        return device, created

    def rotate_token(
        self,
        hostname: str,
        token_nonce: str,
        token_hash: str,
    ) -> Device | None:
        """
        Replace a device's token in one conditional update.

        The previous hash stops matching in the same statement that makes
        the new one valid.

        Args:
            hostname: Device hostname
            token_nonce: Nonce of the new token
            token_hash: Hash of the new token

        Returns:
            Updated Device, or None if the hostname is unknown
        """
        hostname = normalize_hostname(hostname)

        with self.session() as session:
            result = session.execute(
                update(Device)
                .where(Device.hostname == hostname)
                .values(
                    token_nonce=token_nonce,
                    token_hash=token_hash,
                    token_rotated_at=datetime.now(timezone.utc),
                )
            )
            if result.rowcount == 0:
                return None

            device = session.scalars(
                select(Device).where(Device.hostname == hostname)
            ).one()
            session.expunge(device)

        logger.info("Rotated download token for device: %s", hostname)
        return device

    def get_device(self, hostname: str) -> Device | None:
        """
        Get a device by hostname.

        Args:
            hostname: Device hostname

        Returns:
            Device or None if not found
        """
        with self.session() as session:
            device = session.scalars(
                select(Device).where(Device.hostname == normalize_hostname(hostname))
            ).first()
            if device:
                session.expunge(device)
            return device

    def get_device_by_token_hash(self, token_hash: str) -> Device | None:
        """
        Get the device whose live token has the given hash.

        Args:
            token_hash: SHA-256 hex digest of a bearer token

        Returns:
            Device or None if no device holds that token
        """
        with self.session() as session:
            device = session.scalars(
                select(Device).where(Device.token_hash == token_hash)
            ).first()
            if device:
                session.expunge(device)
            return device

    def touch_last_seen(self, hostname: str) -> bool:
        """Refresh a device's last-seen timestamp."""
        with self.session() as session:
            result = session.execute(
                update(Device)
                .where(Device.hostname == normalize_hostname(hostname))
                .values(last_seen_at=datetime.now(timezone.utc))
            )
            return result.rowcount > 0

    def list_devices(
        self,
        filters: dict[str, Any] | None = None,
        offset: int = 0,
        limit: int | None = 50,
    ) -> tuple[list[Device], int]:
        """
        List devices with filters and pagination.

        Args:
            filters: Dictionary of filter conditions (classroom_id, hostname)
            offset: Number of results to skip
            limit: Maximum number of results

        Returns:
            Tuple of (list of devices, total count)
        """
        filters = filters or {}

        with self.session() as session:
            query = session.query(Device)

            if "classroom_id" in filters:
                query = query.filter(Device.classroom_id == filters["classroom_id"])
            if "hostname" in filters:
                query = query.filter(Device.hostname.ilike(f"%{filters['hostname']}%"))

            total = query.count()

            query = query.order_by(Device.hostname)
            if offset:
                query = query.offset(offset)
            if limit:
                query = query.limit(limit)

            devices = query.all()
            for d in devices:
                session.expunge(d)

            return devices, total

    # =========================================================================
    # Installation Settings
    # =========================================================================

    def get_setting(self, key: str) -> str | None:
        """Get an installation setting value."""
        with self.session() as session:
            setting = session.get(InstallationSetting, key)
            return setting.value if setting else None

    def set_setting(self, key: str, value: str) -> None:
        """Create or replace an installation setting."""
        stmt = sqlite_insert(InstallationSetting).values(
            key=key, value=value, updated_at=datetime.now(timezone.utc)
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[InstallationSetting.key],
            set_={"value": stmt.excluded.value, "updated_at": stmt.excluded.updated_at},
        )
        with self.session() as session:
            session.execute(stmt)

    def insert_setting_if_absent(self, key: str, value: str) -> str:
        """
        Store a setting only if it does not exist yet.

        Args:
            key: Setting key
            value: Value to store when absent

        Returns:
            The value now stored, which is the existing one if present
        """
        stmt = (
            sqlite_insert(InstallationSetting)
            .values(key=key, value=value, updated_at=datetime.now(timezone.utc))
            .on_conflict_do_nothing(index_elements=[InstallationSetting.key])
        )
        with self.session() as session:
            session.execute(stmt)
            return session.get(InstallationSetting, key).value

    def get_registration_token(self) -> str | None:
        """Get the installation's current registration token."""
        return self.get_setting(REGISTRATION_TOKEN_KEY)

    def close(self) -> None:
        """Close database connections."""
        self.engine.dispose()


def create_registry(db_path: str | Path) -> DeviceRegistry:
    """
    Create and initialize a new device registry.

    Args:
        db_path: Path for database file

    Returns:
        Initialized DeviceRegistry
    """
    return DeviceRegistry(db_path, create_if_missing=True)
