"""
Tests for the command line interface.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest
import yaml

from classgate.cli import main
from classgate.config import DEFAULT_AGENT_FILES, DEFAULT_BOOTSTRAP_FILES
from classgate.registry.database import DeviceRegistry
from conftest import AGENT_VERSION


class TestCLI:
    """Tests for CLI commands."""

    def test_no_command(self, capsys: pytest.CaptureFixture) -> None:
        """Test running without a command prints help."""
        assert main([]) == 0
        assert "classgate" in capsys.readouterr().out

    def test_version(self, capsys: pytest.CaptureFixture) -> None:
        with pytest.raises(SystemExit) as exc_info:
            main(["--version"])
        assert exc_info.value.code == 0
        assert "classgate" in capsys.readouterr().out

    def test_setup_is_idempotent(self, sample_config: Path, capsys: pytest.CaptureFixture) -> None:
        """Test setup creates the token once and then shows it."""
        assert main(["-c", str(sample_config), "--json", "setup"]) == 0
        first = json.loads(capsys.readouterr().out)

        assert main(["-c", str(sample_config), "--json", "setup"]) == 0
        second = json.loads(capsys.readouterr().out)

        assert first["created"] is True
        assert second["created"] is False
        assert first["registration_token"] == second["registration_token"]

    def test_regenerate_token(self, sample_config: Path, capsys: pytest.CaptureFixture) -> None:
        main(["-c", str(sample_config), "--json", "setup"])
        original = json.loads(capsys.readouterr().out)["registration_token"]

        assert main(["-c", str(sample_config), "--json", "regenerate-token"]) == 0
        regenerated = json.loads(capsys.readouterr().out)["registration_token"]

        assert regenerated != original
        assert regenerated.startswith("cgr_")

    def test_devices_list_empty(self, sample_config: Path, capsys: pytest.CaptureFixture) -> None:
        assert main(["-c", str(sample_config), "devices", "list"]) == 0
        out = capsys.readouterr().out
        assert "0 total" in out
        assert "No devices found." in out

    def test_devices_list_and_rotate(
        self, sample_config: Path, temp_dir: Path, capsys: pytest.CaptureFixture
    ) -> None:
        """Test listing a device and rotating its download token."""
        registry = DeviceRegistry(temp_dir / "registry.db")
        registry.upsert_device("pc-01", "room-1", "ab" * 32, "cd" * 32, version="4.2.0")
        registry.close()

        assert main(["-c", str(sample_config), "--json", "devices", "list"]) == 0
        devices = json.loads(capsys.readouterr().out)
        assert [d["hostname"] for d in devices] == ["pc-01"]

        assert main(["-c", str(sample_config), "--json", "devices", "rotate", "PC-01"]) == 0
        rotated = json.loads(capsys.readouterr().out)
        assert rotated["hostname"] == "pc-01"
        assert rotated["whitelist_url"].startswith("https://filter.school.example/w/")
        assert rotated["whitelist_url"].endswith("/whitelist.txt")

        registry = DeviceRegistry(temp_dir / "registry.db")
        try:
            assert registry.get_device("pc-01").token_hash != "cd" * 32
        finally:
            registry.close()

    def test_devices_rotate_unknown(self, sample_config: Path, capsys: pytest.CaptureFixture) -> None:
        assert main(["-c", str(sample_config), "devices", "rotate", "ghost"]) == 1
        assert "Device not found: ghost" in capsys.readouterr().out

    def test_manifest_json(self, sample_config: Path, capsys: pytest.CaptureFixture) -> None:
        assert main(["-c", str(sample_config), "--json", "manifest"]) == 0
        manifest = json.loads(capsys.readouterr().out)

        assert manifest["version"] == AGENT_VERSION
        assert [f["path"] for f in manifest["files"]] == DEFAULT_AGENT_FILES

    def test_manifest_bootstrap(self, sample_config: Path, capsys: pytest.CaptureFixture) -> None:
        assert main(["-c", str(sample_config), "manifest", "--bootstrap"]) == 0
        out = capsys.readouterr().out

        assert out.startswith(f"Bootstrap manifest {AGENT_VERSION} ({len(DEFAULT_BOOTSTRAP_FILES)} files)")
        assert "lib/ClassGate.Firewall.psm1" not in out

    def test_manifest_reports_missing_files(
        self, sample_config: Path, agent_root: Path, capsys: pytest.CaptureFixture
    ) -> None:
        (agent_root / "Uninstall-ClassGate.ps1").unlink()

        assert main(["-c", str(sample_config), "manifest"]) == 0
        out = capsys.readouterr().out
        assert "Missing files:" in out
        assert "  - Uninstall-ClassGate.ps1" in out

    def test_catalog_validate(self, sample_config: Path, capsys: pytest.CaptureFixture) -> None:
        """Test validating a catalog with only warnings."""
        assert main(["-c", str(sample_config), "catalog", "validate"]) == 0
        out = capsys.readouterr().out

        assert "Catalog valid: 4 classrooms, 3 groups loaded" in out
        assert "Warning: Classroom Room3 has no group assigned" in out

    def test_catalog_validate_errors(
        self, sample_config: Path, sample_catalog: Path, capsys: pytest.CaptureFixture
    ) -> None:
        with open(sample_catalog, "w") as f:
            yaml.dump({"classrooms": [{"id": "room-1", "name": "Room1", "default_group": "gone"}]}, f)

        assert main(["-c", str(sample_config), "catalog", "validate"]) == 1
        assert "unknown default group gone" in capsys.readouterr().out

    def test_catalog_validate_unparseable(
        self, sample_config: Path, sample_catalog: Path, capsys: pytest.CaptureFixture
    ) -> None:
        sample_catalog.write_text("classrooms: [{id: room-1}]\n")

        assert main(["-c", str(sample_config), "catalog", "validate"]) == 1
        assert "Catalog validation failed" in capsys.readouterr().out

    def test_missing_config_file(self, temp_dir: Path) -> None:
        with pytest.raises(FileNotFoundError):
            main(["-c", str(temp_dir / "missing.yaml"), "setup"])
