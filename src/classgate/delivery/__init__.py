"""
Content delivery.

Conditional GET handling, hashed release manifests, enrollment scripts
and the device event stream.
"""

from classgate.delivery.etag import compute_etag, conditional_response, etag_matches
from classgate.delivery.events import (
    KEEP_ALIVE_FRAME,
    DeviceEventStreamer,
    DeviceState,
    StreamEvent,
    StreamEventType,
)
from classgate.delivery.manifest import (
    DeliveryService,
    FileNotAllowed,
    Manifest,
    ManifestBuilder,
    ManifestEntry,
    hash_file,
    normalize_manifest_path,
)
from classgate.delivery.scripts import (
    POWERSHELL_MEDIA_TYPE,
    SHELL_MEDIA_TYPE,
    EnrollmentScriptContext,
    bash_quote,
    powershell_quote,
    render_linux_script,
    render_windows_script,
)

__all__ = [
    # ETag
    "compute_etag",
    "conditional_response",
    "etag_matches",
    # Events
    "KEEP_ALIVE_FRAME",
    "DeviceEventStreamer",
    "DeviceState",
    "StreamEvent",
    "StreamEventType",
    # Manifest
    "DeliveryService",
    "FileNotAllowed",
    "Manifest",
    "ManifestBuilder",
    "ManifestEntry",
    "hash_file",
    "normalize_manifest_path",
    # Scripts
    "POWERSHELL_MEDIA_TYPE",
    "SHELL_MEDIA_TYPE",
    "EnrollmentScriptContext",
    "bash_quote",
    "powershell_quote",
    "render_linux_script",
    "render_windows_script",
]
