"""
Policy Resolver.

Catalog of classrooms, groups and rules, and rendering of the group in
force into whitelist documents.
"""

from classgate.policy.models import Catalog, Classroom, Group, Rule, RuleType, Schedule
from classgate.policy.parser import (
    CatalogParseError,
    CatalogStore,
    load_catalog,
    parse_catalog,
    validate_catalog,
)
from classgate.policy.resolver import (
    DISABLED_MARKER,
    SENTINEL_DOCUMENT,
    PolicyDocument,
    PolicyResolver,
    render_group,
)

__all__ = [
    # Models
    "Catalog",
    "Classroom",
    "Group",
    "Rule",
    "RuleType",
    "Schedule",
    # Parser
    "CatalogParseError",
    "CatalogStore",
    "load_catalog",
    "parse_catalog",
    "validate_catalog",
    # Resolver
    "DISABLED_MARKER",
    "SENTINEL_DOCUMENT",
    "PolicyDocument",
    "PolicyResolver",
    "render_group",
]
