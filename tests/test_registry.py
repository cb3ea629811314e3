"""
Tests for the Device Registry module.
"""

from __future__ import annotations

import hashlib
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

from classgate.registry import DeviceRegistry, create_registry, normalize_hostname


def credential(seed: str) -> tuple[str, str]:
    """Build a (nonce, token_hash) pair for tests."""
    nonce = hashlib.sha256(f"nonce-{seed}".encode()).hexdigest()
    token_hash = hashlib.sha256(f"token-{seed}".encode()).hexdigest()
    return nonce, token_hash


class TestDeviceRegistry:
    """Tests for DeviceRegistry class."""

    def test_create_registry(self, temp_dir: Path) -> None:
        """Test registry creation."""
        db_path = temp_dir / "nested" / "registry.db"
        registry = create_registry(db_path)

        assert db_path.exists()
        registry.close()

    def test_normalize_hostname(self) -> None:
        """Test hostname normalization."""
        assert normalize_hostname("  PC-Lab-01 ") == "pc-lab-01"

    def test_upsert_creates_device(self, registry: DeviceRegistry) -> None:
        """Test first registration inserts a device."""
        nonce, token_hash = credential("a")
        device, created = registry.upsert_device(
            "PC-01", "room-1", nonce, token_hash, version="4.2.0"
        )

        assert created is True
        assert device.hostname == "pc-01"
        assert device.classroom_id == "room-1"
        assert device.installed_version == "4.2.0"
        assert device.token_nonce == nonce
        assert device.token_hash == token_hash
        assert len(device.id) == 32
        assert device.registered_at is not None

    def test_upsert_keeps_existing_token(self, registry: DeviceRegistry) -> None:
        """Test re-registration does not replace the live token."""
        first_nonce, first_hash = credential("a")
        registry.upsert_device("pc-01", "room-1", first_nonce, first_hash)

        second_nonce, second_hash = credential("b")
        device, created = registry.upsert_device("PC-01", "room-2", second_nonce, second_hash)

        assert created is False
        assert device.token_nonce == first_nonce
        assert device.token_hash == first_hash
        assert device.classroom_id == "room-2"
        assert registry.list_devices()[1] == 1

    def test_upsert_keeps_version_when_omitted(self, registry: DeviceRegistry) -> None:
        """Test a missing version does not erase the stored one."""
        registry.upsert_device("pc-01", "room-1", *credential("a"), version="4.1.0")
        device, _ = registry.upsert_device("pc-01", "room-1", *credential("b"))
        assert device.installed_version == "4.1.0"

        device, _ = registry.upsert_device("pc-01", "room-1", *credential("c"), version="4.2.0")
        assert device.installed_version == "4.2.0"

    def test_upsert_keeps_device_id(self, registry: DeviceRegistry) -> None:
        """Test the internal id survives re-registration."""
        first, _ = registry.upsert_device("pc-01", "room-1", *credential("a"))
        second, _ = registry.upsert_device("pc-01", "room-2", *credential("b"))
        assert first.id == second.id

    def test_rotate_token(self, registry: DeviceRegistry) -> None:
        """Test token rotation replaces nonce and hash."""
        _, old_hash = credential("a")
        registry.upsert_device("pc-01", "room-1", *credential("a"))

        new_nonce, new_hash = credential("rotated")
        device = registry.rotate_token("PC-01", new_nonce, new_hash)

        assert device is not None
        assert device.token_nonce == new_nonce
        assert device.token_hash == new_hash
        assert device.token_rotated_at is not None
        assert registry.get_device_by_token_hash(old_hash) is None
        assert registry.get_device_by_token_hash(new_hash).hostname == "pc-01"

    def test_rotate_unknown_device(self, registry: DeviceRegistry) -> None:
        """Test rotating an unknown hostname."""
        assert registry.rotate_token("ghost", *credential("x")) is None
        assert registry.list_devices()[1] == 0

    def test_get_device(self, registry: DeviceRegistry) -> None:
        """Test retrieving a device by hostname."""
        registry.upsert_device("pc-01", "room-1", *credential("a"))

        assert registry.get_device("PC-01 ").hostname == "pc-01"
        assert registry.get_device("pc-02") is None

    def test_get_device_by_token_hash(self, registry: DeviceRegistry) -> None:
        """Test token hash lookup."""
        _, token_hash = credential("a")
        registry.upsert_device("pc-01", "room-1", *credential("a"))

        assert registry.get_device_by_token_hash(token_hash).hostname == "pc-01"
        assert registry.get_device_by_token_hash("0" * 64) is None

    def test_touch_last_seen(self, registry: DeviceRegistry) -> None:
        """Test last-seen refresh."""
        device, _ = registry.upsert_device("pc-01", "room-1", *credential("a"))

        assert registry.touch_last_seen("pc-01") is True
        assert registry.get_device("pc-01").last_seen_at >= device.last_seen_at
        assert registry.touch_last_seen("ghost") is False

    def test_list_devices(self, registry: DeviceRegistry) -> None:
        """Test listing with filters and pagination."""
        for i in range(5):
            registry.upsert_device(f"pc-{i:02d}", "room-1", *credential(str(i)))
        registry.upsert_device("lab-01", "room-2", *credential("lab"))

        devices, total = registry.list_devices()
        assert total == 6
        assert devices[0].hostname == "lab-01"

        devices, total = registry.list_devices(filters={"classroom_id": "room-1"}, limit=2)
        assert total == 5
        assert [d.hostname for d in devices] == ["pc-00", "pc-01"]

        devices, total = registry.list_devices(filters={"hostname": "lab"})
        assert total == 1

        devices, _ = registry.list_devices(filters={"classroom_id": "room-1"}, offset=4)
        assert [d.hostname for d in devices] == ["pc-04"]

    def test_to_dict_excludes_credentials(self, registry: DeviceRegistry) -> None:
        """Test serialized devices never carry token material."""
        device, _ = registry.upsert_device("pc-01", "room-1", *credential("a"))
        data = device.to_dict()

        assert data["hostname"] == "pc-01"
        assert "token_hash" not in data
        assert "token_nonce" not in data


class TestConcurrentRegistration:
    """Tests for simultaneous registrations of one hostname."""

    def test_one_live_token_per_hostname(self, registry: DeviceRegistry) -> None:
        """Racing registrations leave one row holding one token."""

        def register(seed: int) -> tuple[str, bool]:
            device, created = registry.upsert_device("pc-race", "room-1", *credential(f"race-{seed}"))
            return device.token_hash, created

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(register, range(16)))

        hashes = {token_hash for token_hash, _ in results}
        devices, total = registry.list_devices()

        assert total == 1
        assert len(hashes) == 1
        assert sum(created for _, created in results) == 1
        assert devices[0].token_hash in hashes
        assert registry.get_device_by_token_hash(hashes.pop()).hostname == "pc-race"


class TestInstallationSettings:
    """Tests for installation-wide settings."""

    def test_missing_setting(self, registry: DeviceRegistry) -> None:
        assert registry.get_setting("nope") is None
        assert registry.get_registration_token() is None

    def test_set_setting_replaces(self, registry: DeviceRegistry) -> None:
        registry.set_setting("k", "one")
        registry.set_setting("k", "two")
        assert registry.get_setting("k") == "two"

    def test_insert_if_absent(self, registry: DeviceRegistry) -> None:
        assert registry.insert_setting_if_absent("k", "first") == "first"
        assert registry.insert_setting_if_absent("k", "second") == "first"
        assert registry.get_setting("k") == "first"

    @pytest.mark.parametrize("value", ["cgr_abc", "cgr_" + "x" * 64])
    def test_registration_token_key(self, registry: DeviceRegistry, value: str) -> None:
        registry.set_setting("registration_token", value)
        assert registry.get_registration_token() == value
