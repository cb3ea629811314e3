"""
Policy Resolver.

Renders the rule group currently in force for a device (or a group
looked up by public name) into the plaintext whitelist format consumed
by the DNS agents, and fingerprints it for conditional GETs.

Whenever the device cannot be identified, or anything goes wrong while
resolving, the resolver hands out the deny-all sentinel instead of an
error: the agent must always receive a parseable document.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Callable

from classgate.delivery.etag import compute_etag
from classgate.policy.models import Group, RuleType
from classgate.tokens.issuer import hash_device_token

if TYPE_CHECKING:
    from classgate.policy.parser import CatalogStore
    from classgate.registry.database import DeviceRegistry


logger = logging.getLogger(__name__)

# Marker understood by agents as "filtering disabled, no access"
DISABLED_MARKER = "#DESACTIVADO"
SENTINEL_DOCUMENT = f"{DISABLED_MARKER}\n"

# Section headers in rendering order
SECTION_HEADERS = (
    (RuleType.WHITELIST, "## WHITELIST"),
    (RuleType.BLOCKED_SUBDOMAIN, "## BLOCKED-SUBDOMAINS"),
    (RuleType.BLOCKED_PATH, "## BLOCKED-PATHS"),
)

# Device tokens are 43-char base64url strings; anything far off is malformed
MAX_TOKEN_LENGTH = 256


@dataclass(frozen=True)
class PolicyDocument:
    """
    A rendered policy document.

    Attributes:
        body: Document text
        etag: Content fingerprint; None for the sentinel
        sentinel: True when this is the deny-all fallback
    """

    body: str
    etag: str | None = None
    sentinel: bool = False

    @classmethod
    def deny_all(cls) -> "PolicyDocument":
        return cls(body=SENTINEL_DOCUMENT, etag=None, sentinel=True)

    @classmethod
    def rendered(cls, body: str) -> "PolicyDocument":
        return cls(body=body, etag=compute_etag(body), sentinel=False)


def render_group(group: Group) -> str:
    """
    Render a group into whitelist text.

    Args:
        group: Group to render

    Returns:
        Document text, always ending in a single newline
    """
    content = ""
    if not group.enabled:
        content = f"{DISABLED_MARKER}\n\n"

    for rule_type, header in SECTION_HEADERS:
        rules = group.rules_of(rule_type)
        if rules:
            content += header + "\n"
            content += "".join(f"{rule.value}\n" for rule in rules)
            content += "\n"

    return content.strip() + "\n"


class PolicyResolver:
    """
    Resolves policy documents for devices and public group exports.
    """

    def __init__(
        self,
        registry: DeviceRegistry,
        catalog_store: CatalogStore,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        """
        Initialize the resolver.

        Args:
            registry: Device registry for token lookups
            catalog_store: Source of classroom/group/rule data
            clock: Local-time clock used for schedule resolution
        """
        self.registry = registry
        self.catalog_store = catalog_store
        self.clock = clock

    def resolve_whitelist(self, token: str | None) -> PolicyDocument:
        """
        Resolve the policy document for a device token.

        Never raises; every failure path yields the sentinel.

        Args:
            token: Bearer token from the whitelist URL, possibly absent

        Returns:
            Rendered document with ETag, or the deny-all sentinel
        """
        try:
            return self._resolve_whitelist(token)
        except Exception:
            logger.exception("Error serving tokenized whitelist")
            return PolicyDocument.deny_all()

    def _resolve_whitelist(self, token: str | None) -> PolicyDocument:
        if not token or len(token) > MAX_TOKEN_LENGTH:
            return PolicyDocument.deny_all()

        device = self.registry.get_device_by_token_hash(hash_device_token(token))
        if device is None:
            return PolicyDocument.deny_all()

        catalog = self.catalog_store.catalog
        classroom = catalog.get_classroom(device.classroom_id)
        if classroom is None:
            logger.warning(
                "Device %s references unknown classroom %s",
                device.hostname, device.classroom_id,
            )
            return PolicyDocument.deny_all()

        group_id = classroom.active_group_id(self.clock())
        group = catalog.get_group(group_id) if group_id else None
        if group is None:
            logger.debug("No active group for classroom %s", classroom.name)
            return PolicyDocument.deny_all()

        self.registry.touch_last_seen(device.hostname)
        return PolicyDocument.rendered(render_group(group))

    def export_group(self, name: str) -> PolicyDocument | None:
        """
        Resolve the public export of a group by name.

        Args:
            name: Public group name

        Returns:
            Rendered document, None if no group has that name, or the
            sentinel if resolution failed
        """
        try:
            group = self.catalog_store.catalog.get_group_by_name(name)
            if group is None:
                return None
            if not group.enabled:
                return PolicyDocument.rendered(
                    f'# Group "{group.display_name}" is currently disabled\n'
                )
            return PolicyDocument.rendered(render_group(group))
        except Exception:
            logger.exception("Error exporting group %s", name)
            return PolicyDocument.deny_all()
