"""
Tests for release manifests and file delivery.
"""

from __future__ import annotations

import hashlib
import os
from pathlib import Path

import pytest

from classgate.config import DEFAULT_AGENT_FILES, DEFAULT_BOOTSTRAP_FILES
from classgate.delivery import (
    DeliveryService,
    FileNotAllowed,
    ManifestBuilder,
    hash_file,
    normalize_manifest_path,
)
from classgate.errors import NotFound
from conftest import AGENT_VERSION


def sha256_of(path: Path) -> str:
    return hashlib.sha256(path.read_bytes()).hexdigest()


class TestHelpers:
    """Tests for hashing and path helpers."""

    def test_hash_file(self, temp_dir: Path) -> None:
        path = temp_dir / "blob.bin"
        data = b"x" * 200_000
        path.write_bytes(data)

        digest, size = hash_file(path)

        assert digest == hashlib.sha256(data).hexdigest()
        assert size == 200_000

    def test_normalize_manifest_path(self) -> None:
        assert normalize_manifest_path(" lib\\ClassGate.DNS.psm1 ") == "lib/ClassGate.DNS.psm1"


class TestManifestBuilder:
    """Tests for ManifestBuilder."""

    @pytest.fixture
    def builder(self, agent_root: Path) -> ManifestBuilder:
        return ManifestBuilder("agent", agent_root, list(DEFAULT_AGENT_FILES), AGENT_VERSION)

    def test_build(self, builder: ManifestBuilder, agent_root: Path) -> None:
        """Test manifest entries carry path, digest and size."""
        manifest = builder.build()

        assert manifest.version == AGENT_VERSION
        assert [e.path for e in manifest.files] == DEFAULT_AGENT_FILES

        entry = manifest.get("lib/ClassGate.DNS.psm1")
        full = agent_root / "lib" / "ClassGate.DNS.psm1"
        assert entry.sha256 == sha256_of(full)
        assert entry.size == full.stat().st_size

    def test_to_dict(self, builder: ManifestBuilder) -> None:
        data = builder.build().to_dict()
        assert data["version"] == AGENT_VERSION
        assert set(data["files"][0]) == {"path", "sha256", "size"}

    def test_missing_file_is_omitted(self, builder: ManifestBuilder, agent_root: Path) -> None:
        """Test a listed file absent on disk is left out."""
        (agent_root / "Uninstall-ClassGate.ps1").unlink()

        paths = [e.path for e in builder.build().files]

        assert "Uninstall-ClassGate.ps1" not in paths
        assert len(paths) == len(DEFAULT_AGENT_FILES) - 1

    def test_memoized(self, builder: ManifestBuilder) -> None:
        """Test an unchanged tree reuses the same manifest object."""
        assert builder.build() is builder.build()

    def test_rebuilt_when_file_changes(self, builder: ManifestBuilder, agent_root: Path) -> None:
        """Test a changed file produces a new digest."""
        before = builder.build().get("Install-ClassGate.ps1")

        (agent_root / "Install-ClassGate.ps1").write_text("Write-Host 'new release with more text'\n")
        after = builder.build().get("Install-ClassGate.ps1")

        assert after.sha256 != before.sha256
        assert after.sha256 == sha256_of(agent_root / "Install-ClassGate.ps1")

    def test_rebuilt_when_version_changes(self, builder: ManifestBuilder) -> None:
        first = builder.build()
        builder.version = "4.3.0"
        second = builder.build()

        assert second is not first
        assert second.version == "4.3.0"

    def test_read_file(self, builder: ManifestBuilder, agent_root: Path) -> None:
        entry, content = builder.read_file("scripts/Update-ClassGate.ps1")

        assert content == (agent_root / "scripts" / "Update-ClassGate.ps1").read_bytes()
        assert entry.sha256 == hashlib.sha256(content).hexdigest()

    def test_read_file_backslash_path(self, builder: ManifestBuilder) -> None:
        entry, _ = builder.read_file("lib\\ClassGate.Common.psm1")
        assert entry.path == "lib/ClassGate.Common.psm1"

    @pytest.mark.parametrize(
        "path",
        [
            "secret.txt",
            "../classgate.yaml",
            "lib/../../registry.db",
            "/etc/passwd",
            "",
        ],
    )
    def test_read_file_not_allowed(self, builder: ManifestBuilder, path: str) -> None:
        with pytest.raises(FileNotAllowed):
            builder.read_file(path)

    def test_unlisted_file_on_disk_not_served(self, builder: ManifestBuilder, agent_root: Path) -> None:
        """Test files next to the release are not reachable."""
        (agent_root / "notes.txt").write_text("internal")

        with pytest.raises(FileNotAllowed):
            builder.read_file("notes.txt")

    def test_read_file_removed_after_build(self, builder: ManifestBuilder, agent_root: Path) -> None:
        builder.build()
        (agent_root / "Install-ClassGate.ps1").unlink()

        with pytest.raises(FileNotAllowed):
            builder.read_file("Install-ClassGate.ps1")

    def test_read_file_rewritten_with_same_stamp(self, builder: ManifestBuilder, agent_root: Path) -> None:
        """Test a same-size rewrite within one mtime tick is served with its own digest."""
        path = agent_root / "Install-ClassGate.ps1"
        builder.build()

        stat = path.stat()
        original = path.read_text()
        path.write_text(original.replace(AGENT_VERSION, "4.2.1"))
        os.utime(path, ns=(stat.st_atime_ns, stat.st_mtime_ns))
        assert path.stat().st_size == stat.st_size

        entry, content = builder.read_file("Install-ClassGate.ps1")

        assert b"4.2.1" in content
        assert entry.sha256 == hashlib.sha256(content).hexdigest()
        assert entry.size == len(content)
        assert builder.build().get("Install-ClassGate.ps1").sha256 == entry.sha256

    def test_file_not_allowed_is_not_found(self) -> None:
        error = FileNotAllowed("x")
        assert isinstance(error, NotFound)
        assert error.status_code == 404

    @pytest.mark.parametrize("path", ["../outside.ps1", "/abs/file.ps1", "lib/../../x"])
    def test_configured_path_must_be_relative(self, agent_root: Path, path: str) -> None:
        with pytest.raises(ValueError):
            ManifestBuilder("agent", agent_root, [path], AGENT_VERSION)


class TestDeliveryService:
    """Tests for DeliveryService."""

    def test_bootstrap_is_subset(self, delivery: DeliveryService) -> None:
        agent = {e.path: e.sha256 for e in delivery.agent.build().files}
        bootstrap = delivery.bootstrap.build()

        assert [e.path for e in bootstrap.files] == DEFAULT_BOOTSTRAP_FILES
        for entry in bootstrap.files:
            assert agent[entry.path] == entry.sha256

    def test_bootstrap_refuses_agent_only_files(self, delivery: DeliveryService) -> None:
        delivery.agent.read_file("lib/ClassGate.Firewall.psm1")
        with pytest.raises(FileNotAllowed):
            delivery.bootstrap.read_file("lib/ClassGate.Firewall.psm1")
