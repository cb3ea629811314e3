"""
Catalog data models.

Read-only view of the classroom, group and rule data the resolver
renders into policy documents.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, time
from enum import Enum


class RuleType(Enum):
    """Kind of entry in a rule group."""

    WHITELIST = "whitelist"
    BLOCKED_SUBDOMAIN = "blocked_subdomain"
    BLOCKED_PATH = "blocked_path"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class Rule:
    """A single allow or deny entry."""

    type: RuleType
    value: str
    comment: str = ""


@dataclass
class Group:
    """
    Named rule group.

    Rules keep catalog order; rendering groups them by type.
    """

    id: str
    name: str
    display_name: str = ""
    enabled: bool = True
    rules: list[Rule] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.display_name:
            self.display_name = self.name

    def rules_of(self, rule_type: RuleType) -> list[Rule]:
        """Get rules of one type, in catalog order."""
        return [r for r in self.rules if r.type == rule_type]


@dataclass(frozen=True)
class Schedule:
    """
    Weekly time slot during which a classroom uses a specific group.

    Slots are half-open: ``start <= now < end``.
    """

    day_of_week: int  # 1 = Monday ... 5 = Friday
    start: time
    end: time
    group_id: str

    def covers(self, moment: datetime) -> bool:
        """Check if the slot covers a moment (local time)."""
        if moment.isoweekday() != self.day_of_week:
            return False
        now = moment.time().replace(second=0, microsecond=0)
        return self.start <= now < self.end


@dataclass
class Classroom:
    """Classroom with a default group and optional schedule."""

    id: str
    name: str
    display_name: str = ""
    default_group_id: str | None = None
    schedules: list[Schedule] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.display_name:
            self.display_name = self.name

    def active_group_id(self, moment: datetime) -> str | None:
        """
        Get the group in force at a moment.

        A schedule slot covering the moment wins; otherwise the default
        group applies. Weekends only ever use the default group.
        """
        for slot in self.schedules:
            if slot.covers(moment):
                return slot.group_id
        return self.default_group_id


@dataclass
class Catalog:
    """Complete catalog: all classrooms and groups."""

    classrooms: list[Classroom] = field(default_factory=list)
    groups: list[Group] = field(default_factory=list)

    def get_classroom(self, classroom_id: str) -> Classroom | None:
        """Look up a classroom by id."""
        for classroom in self.classrooms:
            if classroom.id == classroom_id:
                return classroom
        return None

    def get_classroom_by_name(self, name: str) -> Classroom | None:
        """Look up a classroom by name."""
        for classroom in self.classrooms:
            if classroom.name == name:
                return classroom
        return None

    def get_group(self, group_id: str) -> Group | None:
        """Look up a group by id."""
        for group in self.groups:
            if group.id == group_id:
                return group
        return None

    def get_group_by_name(self, name: str) -> Group | None:
        """Look up a group by its public name."""
        for group in self.groups:
            if group.name == name:
                return group
        return None
