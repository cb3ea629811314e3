"""
Update Manifest Builder.

Serves a fixed, named set of release files with their SHA-256 digests
and sizes. The same builder backs both the full agent release (device
token) and the reduced bootstrap set (enrollment ticket); only the file
list and the credential differ.
"""

from __future__ import annotations

import hashlib
import logging
import threading
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Any

from classgate.errors import NotFound

if TYPE_CHECKING:
    from classgate.config import DeliveryConfig


logger = logging.getLogger(__name__)

HASH_CHUNK_SIZE = 64 * 1024


class FileNotAllowed(NotFound):
    """Requested path is not an entry of the manifest."""

    def __init__(self, path: str) -> None:
        super().__init__("File not found", details={"path": path})
        self.path = path


@dataclass(frozen=True)
class ManifestEntry:
    """One file in a manifest."""

    path: str
    sha256: str
    size: int

    def to_dict(self) -> dict[str, Any]:
        return {"path": self.path, "sha256": self.sha256, "size": self.size}


@dataclass(frozen=True)
class Manifest:
    """Immutable snapshot of a release file set."""

    version: str
    files: tuple[ManifestEntry, ...]

    def get(self, path: str) -> ManifestEntry | None:
        """Look up an entry by its relative path."""
        for entry in self.files:
            if entry.path == path:
                return entry
        return None

    def to_dict(self) -> dict[str, Any]:
        return {"version": self.version, "files": [f.to_dict() for f in self.files]}


def hash_file(path: Path) -> tuple[str, int]:
    """
    Hash a file in chunks.

    Args:
        path: File to hash

    Returns:
        Tuple of (SHA-256 hex digest, size in bytes)
    """
    hasher = hashlib.sha256()
    size = 0
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(HASH_CHUNK_SIZE), b""):
            hasher.update(chunk)
            size += len(chunk)
    return hasher.hexdigest(), size


def normalize_manifest_path(path: str) -> str:
    """Normalize a client-supplied path to manifest form (forward slashes)."""
    return path.strip().replace("\\", "/")


def _validate_relative(path: str) -> str:
    pure = PurePosixPath(normalize_manifest_path(path))
    if pure.is_absolute() or ".." in pure.parts or not pure.parts:
        raise ValueError(f"Manifest paths must be relative and inside the root: {path}")
    return str(pure)


class ManifestBuilder:
    """
    Builds and serves a hashed, allowlisted file set.

    Manifests are memoized on the version and the (mtime, size) of every
    file, so a release rebuilt on disk is picked up on the next request.
    Each manifest is published as one immutable object under a lock;
    concurrent readers see either the old or the new one, never a mix.
    """

    def __init__(
        self,
        name: str,
        root: str | Path,
        files: list[str],
        version: str,
    ) -> None:
        """
        Initialize the builder.

        Args:
            name: Label for logs (e.g. "agent", "bootstrap")
            root: Directory the relative paths are resolved against
            files: Relative paths making up the file set
            version: Release version reported in the manifest
        """
        self.name = name
        self.root = Path(root)
        self.files = [_validate_relative(p) for p in files]
        self.version = version
        self._lock = threading.Lock()
        self._manifest: Manifest | None = None
        self._stamp: tuple | None = None

    def _current_stamp(self) -> tuple:
        stamp = [self.version]
        for rel in self.files:
            try:
                st = (self.root / rel).stat()
                stamp.append((rel, st.st_mtime_ns, st.st_size))
            except FileNotFoundError:
                stamp.append((rel, None, None))
        return tuple(stamp)

    def build(self) -> Manifest:
        """
        Get the manifest for the files currently on disk.

        Files listed but missing are logged and left out.

        Returns:
            Manifest snapshot
        """
        stamp = self._current_stamp()
        with self._lock:
            if self._manifest is not None and stamp == self._stamp:
                return self._manifest

            entries = []
            for rel in self.files:
                full = self.root / rel
                if not full.is_file():
                    logger.warning("%s manifest: missing file %s", self.name, rel)
                    continue
                digest, size = hash_file(full)
                entries.append(ManifestEntry(path=rel, sha256=digest, size=size))

            self._manifest = Manifest(version=self.version, files=tuple(entries))
            self._stamp = stamp
            logger.info(
                "Built %s manifest %s (%d files)", self.name, self.version, len(entries)
            )
            return self._manifest

    def read_file(self, path: str) -> tuple[ManifestEntry, bytes]:
        """
        Read a file that is an entry of the current manifest.

        Args:
            path: Relative path as listed in the manifest

        Returns:
            Tuple of (manifest entry, file content)

        Raises:
            FileNotAllowed: If the path is not in the manifest
        """
        requested = normalize_manifest_path(path)
        manifest = self.build()
        entry = manifest.get(requested)
        if entry is None:
            raise FileNotAllowed(requested)

        # Resolved from the allowlisted entry, never from the raw request
        try:
            content = (self.root / entry.path).read_bytes()
        except FileNotFoundError:
            logger.warning("%s manifest: %s removed since build", self.name, entry.path)
            raise FileNotAllowed(requested)
        digest = hashlib.sha256(content).hexdigest()
        if digest != entry.sha256:
            # Rewritten without a visible stamp change; the served entry describes these bytes
            logger.info("%s manifest: %s changed since build", self.name, entry.path)
            self.invalidate()
            entry = ManifestEntry(path=entry.path, sha256=digest, size=len(content))
        return entry, content

    def invalidate(self) -> None:
        """Drop the memoized manifest so the next build rehashes every file."""
        with self._lock:
            self._manifest = None
            self._stamp = None


class DeliveryService:
    """
    The two file sets served to Windows devices.

    ``agent`` is the full release for registered devices; ``bootstrap``
    is the installer subset for devices holding an enrollment ticket.
    """

    def __init__(
        self,
        root: str | Path,
        version: str,
        agent_files: list[str],
        bootstrap_files: list[str],
    ) -> None:
        self.agent = ManifestBuilder("agent", root, agent_files, version)
        self.bootstrap = ManifestBuilder("bootstrap", root, bootstrap_files, version)

    @classmethod
    def from_config(cls, config: DeliveryConfig) -> "DeliveryService":
        """Create the service from delivery settings."""
        return cls(
            root=config.agent_root,
            version=config.agent_version,
            agent_files=config.agent_files,
            bootstrap_files=config.bootstrap_files,
        )
