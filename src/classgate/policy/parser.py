"""
Catalog file parser.

Parses YAML catalog files into Catalog objects.

Example::

    groups:
      - id: g-primary
        name: primaria
        rules:
          whitelist: [wikipedia.org, khanacademy.org]
          blocked_subdomain: [ads.wikipedia.org]
    classrooms:
      - id: room-1
        name: Room1
        default_group: g-primary
        schedules:
          - {day: 1, start: "09:00", end: "10:00", group: g-exam}
"""

from __future__ import annotations

import logging
import threading
from datetime import time
from pathlib import Path
from typing import Any

import yaml

from classgate.policy.models import Catalog, Classroom, Group, Rule, RuleType, Schedule


logger = logging.getLogger(__name__)


class CatalogParseError(Exception):
    """Error parsing catalog file."""

    pass


def load_catalog(path: str | Path) -> Catalog:
    """
    Load catalog from YAML file.

    Args:
        path: Path to catalog YAML file

    Returns:
        Catalog object with parsed classrooms and groups

    Raises:
        FileNotFoundError: If file doesn't exist
        CatalogParseError: If file contains an invalid catalog
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Catalog file not found: {path}")

    with open(path) as f:
        data = yaml.safe_load(f)

    if data is None:
        return Catalog()

    return parse_catalog(data)


def parse_catalog(data: dict[str, Any]) -> Catalog:
    """
    Parse catalog from dictionary.

    Args:
        data: Dictionary with catalog data

    Returns:
        Catalog object
    """
    if not isinstance(data, dict):
        raise CatalogParseError("Catalog must be a dictionary")

    groups_data = data.get("groups", [])
    classrooms_data = data.get("classrooms", [])
    if not isinstance(groups_data, list):
        raise CatalogParseError("'groups' must be a list")
    if not isinstance(classrooms_data, list):
        raise CatalogParseError("'classrooms' must be a list")

    groups = []
    for i, group_data in enumerate(groups_data):
        try:
            groups.append(parse_group(group_data))
        except Exception as e:
            raise CatalogParseError(f"Error parsing group {i}: {e}") from e

    classrooms = []
    for i, classroom_data in enumerate(classrooms_data):
        try:
            classrooms.append(parse_classroom(classroom_data))
        except Exception as e:
            raise CatalogParseError(f"Error parsing classroom {i}: {e}") from e

    return Catalog(classrooms=classrooms, groups=groups)


def parse_group(data: dict[str, Any]) -> Group:
    """
    Parse a single group from dictionary.

    Rules may be given as a mapping of rule type to values, or as a list
    of ``{type, value, comment}`` entries.
    """
    if not isinstance(data, dict):
        raise CatalogParseError("Group must be a dictionary")
    if not data.get("name"):
        raise CatalogParseError("Group must have 'name' field")

    name = str(data["name"])
    rules_data = data.get("rules") or []
    rules: list[Rule] = []

    if isinstance(rules_data, dict):
        for type_name, values in rules_data.items():
            rule_type = _parse_rule_type(type_name)
            for value in values or []:
                rules.append(Rule(type=rule_type, value=_clean_value(value)))
    elif isinstance(rules_data, list):
        for entry in rules_data:
            if not isinstance(entry, dict) or "value" not in entry:
                raise CatalogParseError("Rule must be a dictionary with 'value'")
            rules.append(
                Rule(
                    type=_parse_rule_type(entry.get("type", "whitelist")),
                    value=_clean_value(entry["value"]),
                    comment=entry.get("comment", ""),
                )
            )
    else:
        raise CatalogParseError("'rules' must be a mapping or a list")

    return Group(
        id=str(data.get("id", name)),
        name=name,
        display_name=data.get("display_name", ""),
        enabled=bool(data.get("enabled", True)),
        rules=rules,
    )


def parse_classroom(data: dict[str, Any]) -> Classroom:
    """Parse a single classroom from dictionary."""
    if not isinstance(data, dict):
        raise CatalogParseError("Classroom must be a dictionary")
    if not data.get("name"):
        raise CatalogParseError("Classroom must have 'name' field")

    name = str(data["name"])
    schedules = [parse_schedule(s) for s in data.get("schedules") or []]

    return Classroom(
        id=str(data.get("id", name)),
        name=name,
        display_name=data.get("display_name", ""),
        default_group_id=data.get("default_group"),
        schedules=schedules,
    )


def parse_schedule(data: dict[str, Any]) -> Schedule:
    """Parse a schedule slot."""
    if not isinstance(data, dict):
        raise CatalogParseError("Schedule must be a dictionary")

    day = data.get("day")
    if not isinstance(day, int) or not 1 <= day <= 5:
        raise CatalogParseError("Schedule 'day' must be between 1 (Monday) and 5 (Friday)")

    start = _parse_time(data.get("start"))
    end = _parse_time(data.get("end"))
    if start >= end:
        raise CatalogParseError(f"Schedule start {start} must be before end {end}")

    if not data.get("group"):
        raise CatalogParseError("Schedule must have 'group' field")

    return Schedule(day_of_week=day, start=start, end=end, group_id=str(data["group"]))


def _parse_rule_type(name: str) -> RuleType:
    try:
        return RuleType(str(name).lower().replace("-", "_"))
    except ValueError:
        raise CatalogParseError(f"Invalid rule type: {name}")


def _parse_time(value: Any) -> time:
    if not isinstance(value, str):
        raise CatalogParseError(f"Invalid time: {value!r}")
    try:
        hours, minutes = value.split(":")
        return time(int(hours), int(minutes))
    except ValueError:
        raise CatalogParseError(f"Invalid time: {value!r}")


def _clean_value(value: Any) -> str:
    return str(value).strip().lower()


def validate_catalog(catalog: Catalog) -> list[str]:
    """
    Validate a catalog and return list of errors/warnings.

    Args:
        catalog: Catalog to validate

    Returns:
        List of error/warning messages
    """
    errors: list[str] = []

    group_ids = [g.id for g in catalog.groups]
    group_names = [g.name for g in catalog.groups]
    for label, values in (("group id", group_ids), ("group name", group_names)):
        seen: set[str] = set()
        for value in values:
            if value in seen:
                errors.append(f"Duplicate {label}: {value}")
            seen.add(value)

    classroom_ids: set[str] = set()
    classroom_names: set[str] = set()
    for classroom in catalog.classrooms:
        if classroom.id in classroom_ids:
            errors.append(f"Duplicate classroom id: {classroom.id}")
        if classroom.name in classroom_names:
            errors.append(f"Duplicate classroom name: {classroom.name}")
        classroom_ids.add(classroom.id)
        classroom_names.add(classroom.name)

        if classroom.default_group_id is None and not classroom.schedules:
            errors.append(f"Warning: Classroom {classroom.name} has no group assigned")
        if classroom.default_group_id and classroom.default_group_id not in group_ids:
            errors.append(
                f"Classroom {classroom.name}: unknown default group {classroom.default_group_id}"
            )
        for slot in classroom.schedules:
            if slot.group_id not in group_ids:
                errors.append(f"Classroom {classroom.name}: unknown scheduled group {slot.group_id}")

    return errors


class CatalogStore:
    """
    Catalog loaded from a YAML file.

    Reloads the file when its modification time changes, so edits made by
    the administration tooling are picked up without a restart. A file that
    fails to parse or cannot be read keeps the previous catalog in place.
    ``generation`` counts successful loads.
    """

    def __init__(self, path: str | Path, hot_reload: bool = True) -> None:
        self.path = Path(path)
        self.hot_reload = hot_reload
        self.generation = 0
        self._lock = threading.Lock()
        self._catalog = Catalog()
        self._mtime_ns: int | None = None
        self.reload()

    @classmethod
    def from_catalog(cls, catalog: Catalog) -> "CatalogStore":
        """Wrap an in-memory catalog (no backing file)."""
        store = cls.__new__(cls)
        store.path = None
        store.hot_reload = False
        store.generation = 0
        store._lock = threading.Lock()
        store._catalog = catalog
        store._mtime_ns = None
        return store

    def reload(self) -> Catalog:
        """Load the catalog file unconditionally."""
        stat = self.path.stat()
        catalog = load_catalog(self.path)
        with self._lock:
            self._catalog = catalog
            self._mtime_ns = stat.st_mtime_ns
            self.generation += 1
        return catalog

    @property
    def catalog(self) -> Catalog:
        """Current catalog, reloaded first if the file changed."""
        if self.hot_reload and self.path is not None:
            try:
                mtime_ns = self.path.stat().st_mtime_ns
            except OSError:
                return self._catalog
            if mtime_ns != self._mtime_ns:
                try:
                    self.reload()
                except (CatalogParseError, yaml.YAMLError) as e:
                    logger.error("Catalog reload failed, keeping previous: %s", e)
                    self._mtime_ns = mtime_ns
                except OSError as e:
                    # Retried on the next access
                    logger.error("Catalog unreadable, keeping previous: %s", e)
        return self._catalog
