"""Domain models for persisted tasks."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

TASK_ID_PATTERN = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


def from_iso(value: str) -> datetime:
    """Parse ISO datetime and ensure timezone-aware UTC fallback."""

    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    BLOCKED = "blocked"
    COMPLETED = "completed"
    FAILED = "failed"
    ARCHIVED = "archived"


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.ARCHIVED})
SATISFIED_DEPENDENCY_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.ARCHIVED})


@dataclass(slots=True)
class Task:
    """Unit of work: proposal, checklist, spec deltas and dependencies."""

    id: str
    title: str
    status: TaskStatus
    proposal: str
    checklist: str
    design: str | None = None
    specs: dict[str, str] = field(default_factory=dict)
    dependencies: frozenset[str] = frozenset()
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    archived_at: datetime | None = None
    status_reason: str | None = None

    @property
    def is_archived(self) -> bool:
        return self.status == TaskStatus.ARCHIVED


@dataclass(slots=True)
class TaskDraft:
    """Input payload for creating a task; missing content falls back to templates."""

    title: str | None = None
    proposal: str | None = None
    checklist: str | None = None
    design: str | None = None
    specs: dict[str, str] = field(default_factory=dict)
    dependencies: frozenset[str] = frozenset()


@dataclass(slots=True)
class TaskPatch:
    """Partial update; ``None`` leaves a field untouched.

    ``expected_status`` turns the status change into a compare-and-set: the
    update fails if the persisted status differs.
    """

    title: str | None = None
    status: TaskStatus | None = None
    proposal: str | None = None
    checklist: str | None = None
    design: str | None = None
    specs: dict[str, str] | None = None
    dependencies: frozenset[str] | None = None
    status_reason: str | None = None
    expected_status: TaskStatus | None = None


@dataclass(slots=True)
class TaskFilter:
    """Listing filter for task store queries."""

    statuses: frozenset[TaskStatus] | None = None
    include_archived: bool = False
    ids: frozenset[str] | None = None

    def matches(self, task: Task) -> bool:
        if task.is_archived and not self.include_archived:
            return False
        if self.statuses is not None and task.status not in self.statuses:
            return False
        return self.ids is None or task.id in self.ids


@dataclass(slots=True)
class ValidationReport:
    """Validation result: errors block completion and archiving, warnings do not."""

    task_id: str
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors
