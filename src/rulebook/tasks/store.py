"""File-backed task store.

Layout under the store root::

    tasks/<id>/proposal.md
    tasks/<id>/tasks.md
    tasks/<id>/design.md            (optional)
    tasks/<id>/specs/<capability>/spec.md
    tasks/<id>/.metadata.json
    archive/<id>/...                (same layout, archived tasks only)
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
from dataclasses import replace
from pathlib import Path
from typing import Any

from rulebook.errors import (
    AlreadyExistsError,
    InvalidStateTransition,
    NotFoundError,
    ValidationError,
)
from rulebook.tasks.graph import TaskGraph
from rulebook.tasks.locking import TaskLockManager
from rulebook.tasks.models import (
    TASK_ID_PATTERN,
    Task,
    TaskDraft,
    TaskFilter,
    TaskPatch,
    TaskStatus,
    ValidationReport,
    from_iso,
    utc_now,
)
from rulebook.tasks.validator import validate_task

logger = logging.getLogger(__name__)

PROPOSAL_FILE = "proposal.md"
CHECKLIST_FILE = "tasks.md"
DESIGN_FILE = "design.md"
SPECS_DIR = "specs"
SPEC_FILE = "spec.md"
METADATA_FILE = ".metadata.json"

PROPOSAL_TEMPLATE = """\
# Proposal: {title}

## Why
[Explain why this change is needed - minimum 20 characters]

## What Changes
[Describe what will change]

## Impact
- Affected specs: [list capabilities]
- Affected code: [list modules]
"""

CHECKLIST_TEMPLATE = """\
## 1. Implementation
- [ ] 1.1 Describe the first implementation step
"""


class TaskStore:
    """Durable task records with per-task write locks."""

    def __init__(self, *, tasks_dir: Path, archive_dir: Path, locks: TaskLockManager) -> None:
        self.tasks_dir = tasks_dir
        self.archive_dir = archive_dir
        self.locks = locks

    def create(self, task_id: str, draft: TaskDraft | None = None) -> Task:
        """Create a new pending task; fails if the id is taken in either area."""

        _require_valid_id(task_id)
        draft = draft or TaskDraft()
        if task_id in draft.dependencies:
            raise ValidationError(
                f"Task {task_id!r} cannot depend on itself.",
                task_id=task_id,
            )

        with self.locks.write(task_id):
            if (self.tasks_dir / task_id).exists() or (self.archive_dir / task_id).exists():
                raise AlreadyExistsError(f"Task {task_id!r} already exists.", task_id=task_id)
            self._graph().with_dependencies(task_id, draft.dependencies).detect_cycles()

            now = utc_now()
            title = draft.title or _title_from_id(task_id)
            task = Task(
                id=task_id,
                title=title,
                status=TaskStatus.PENDING,
                proposal=draft.proposal if draft.proposal is not None else PROPOSAL_TEMPLATE.format(title=title),
                checklist=draft.checklist if draft.checklist is not None else CHECKLIST_TEMPLATE,
                design=draft.design,
                specs=dict(draft.specs),
                dependencies=frozenset(draft.dependencies),
                created_at=now,
                updated_at=now,
            )
            self._write_task(self.tasks_dir / task_id, task)

        logger.info("Created task %s", task_id)
        return task

    def read(self, task_id: str) -> Task:
        task_dir = self._locate(task_id)
        if task_dir is None:
            raise NotFoundError(f"Task {task_id!r} not found.", task_id=task_id)
        return _read_task(task_dir, task_id)

    def exists(self, task_id: str) -> bool:
        return self._locate(task_id) is not None

    def list(self, task_filter: TaskFilter | None = None) -> list[Task]:
        """Return matching tasks sorted by id."""

        task_filter = task_filter or TaskFilter()
        found: list[Task] = []
        areas = [self.tasks_dir]
        if task_filter.include_archived:
            areas.append(self.archive_dir)
        for area in areas:
            if not area.is_dir():
                continue
            for task_dir in sorted(area.iterdir()):
                if not (task_dir / METADATA_FILE).is_file():
                    continue
                task = _read_task(task_dir, task_dir.name)
                if task_filter.matches(task):
                    found.append(task)
        return sorted(found, key=lambda task: task.id)

    def snapshot(self) -> list[Task]:
        """Every task, archived included, for building a dependency graph."""

        return self.list(TaskFilter(include_archived=True))

    def update(self, task_id: str, patch: TaskPatch) -> Task:
        """Apply a partial update under the task's write lock."""

        with self.locks.write(task_id):
            current = self.read(task_id)
            if current.is_archived:
                raise InvalidStateTransition(
                    f"Task {task_id!r} is archived and cannot be modified.",
                    task_id=task_id,
                    current=current.status.value,
                )
            if patch.expected_status is not None and current.status != patch.expected_status:
                raise InvalidStateTransition(
                    f"Task {task_id!r} is {current.status.value}, "
                    f"expected {patch.expected_status.value}.",
                    task_id=task_id,
                    current=current.status.value,
                    target=patch.status.value if patch.status else None,
                )
            if patch.status == TaskStatus.ARCHIVED:
                raise InvalidStateTransition(
                    "Use archive() to archive a task.",
                    task_id=task_id,
                    current=current.status.value,
                    target=TaskStatus.ARCHIVED.value,
                )
            if patch.dependencies is not None:
                if task_id in patch.dependencies:
                    raise ValidationError(
                        f"Task {task_id!r} cannot depend on itself.",
                        task_id=task_id,
                    )
                self._graph().with_dependencies(task_id, patch.dependencies).detect_cycles()

            updated = _apply_patch(current, patch)
            self._write_task(self.tasks_dir / task_id, updated)
        return updated

    def archive(self, task_id: str, *, skip_validation: bool = False) -> Task:
        """Move the task into the archive area and stamp ``archived_at``."""

        with self.locks.write(task_id):
            current = self.read(task_id)
            if current.is_archived:
                raise InvalidStateTransition(
                    f"Task {task_id!r} is already archived.",
                    task_id=task_id,
                    current=current.status.value,
                    target=TaskStatus.ARCHIVED.value,
                )
            if not skip_validation:
                report = self.validate(task_id)
                if not report.valid:
                    raise ValidationError(
                        f"Task {task_id!r} has {len(report.errors)} validation error(s).",
                        task_id=task_id,
                        errors=tuple(report.errors),
                    )

            target = self.archive_dir / task_id
            if target.exists():
                raise AlreadyExistsError(
                    f"Archive entry for {task_id!r} already exists.",
                    task_id=task_id,
                )
            self.archive_dir.mkdir(parents=True, exist_ok=True)
            os.replace(self.tasks_dir / task_id, target)

            now = utc_now()
            archived = replace(
                current,
                status=TaskStatus.ARCHIVED,
                archived_at=now,
                updated_at=now,
                status_reason=None,
            )
            _write_metadata(target, archived)

        logger.info("Archived task %s", task_id)
        return archived

    def validate(self, task_id: str) -> ValidationReport:
        """Report content problems; a missing task is reported, not raised."""

        task_dir = self._locate(task_id)
        if task_dir is None:
            return ValidationReport(task_id=task_id, errors=[f"Task {task_id!r} not found."])
        task = _read_task(task_dir, task_id)
        known_ids = {other.id for other in self.snapshot()}
        return validate_task(task, known_ids=known_ids)

    def delete(self, task_id: str) -> None:
        """Operator-only removal of a non-archived task."""

        with self.locks.write(task_id):
            task = self.read(task_id)
            if task.is_archived:
                raise InvalidStateTransition(
                    f"Task {task_id!r} is archived and cannot be deleted.",
                    task_id=task_id,
                    current=task.status.value,
                )
            shutil.rmtree(self.tasks_dir / task_id)
        logger.info("Deleted task %s", task_id)

    def _graph(self) -> TaskGraph:
        return TaskGraph.build(self.snapshot())

    def _locate(self, task_id: str) -> Path | None:
        if not TASK_ID_PATTERN.match(task_id):
            return None
        for area in (self.tasks_dir, self.archive_dir):
            candidate = area / task_id
            if (candidate / METADATA_FILE).is_file():
                return candidate
        return None

    def _write_task(self, task_dir: Path, task: Task) -> None:
        task_dir.mkdir(parents=True, exist_ok=True)
        _write_atomic(task_dir / PROPOSAL_FILE, task.proposal)
        _write_atomic(task_dir / CHECKLIST_FILE, task.checklist)
        design_path = task_dir / DESIGN_FILE
        if task.design:
            _write_atomic(design_path, task.design)
        elif design_path.exists():
            design_path.unlink()

        specs_dir = task_dir / SPECS_DIR
        if specs_dir.exists():
            for capability_dir in specs_dir.iterdir():
                if capability_dir.name not in task.specs:
                    shutil.rmtree(capability_dir)
        for capability, text in task.specs.items():
            _write_atomic(specs_dir / capability / SPEC_FILE, text)

        # Metadata goes last: its presence marks the directory as a complete task.
        _write_metadata(task_dir, task)


def _apply_patch(current: Task, patch: TaskPatch) -> Task:
    changes: dict[str, Any] = {"updated_at": utc_now()}
    for name in ("title", "proposal", "checklist", "design", "dependencies"):
        value = getattr(patch, name)
        if value is not None:
            changes[name] = value
    if patch.specs is not None:
        changes["specs"] = dict(patch.specs)
    if patch.status is not None:
        changes["status"] = patch.status
        changes["status_reason"] = patch.status_reason
    return replace(current, **changes)


def _read_task(task_dir: Path, task_id: str) -> Task:
    metadata = json.loads((task_dir / METADATA_FILE).read_text("utf-8"))
    if not isinstance(metadata, dict):
        raise TypeError(f"Expected JSON object in {task_dir / METADATA_FILE}")

    specs: dict[str, str] = {}
    specs_dir = task_dir / SPECS_DIR
    if specs_dir.is_dir():
        for capability_dir in sorted(specs_dir.iterdir()):
            spec_path = capability_dir / SPEC_FILE
            if spec_path.is_file():
                specs[capability_dir.name] = spec_path.read_text("utf-8")

    archived_at = metadata.get("archived_at")
    return Task(
        id=task_id,
        title=str(metadata.get("title") or _title_from_id(task_id)),
        status=TaskStatus(metadata["status"]),
        proposal=_read_optional(task_dir / PROPOSAL_FILE) or "",
        checklist=_read_optional(task_dir / CHECKLIST_FILE) or "",
        design=_read_optional(task_dir / DESIGN_FILE),
        specs=specs,
        dependencies=frozenset(metadata.get("dependencies", [])),
        created_at=from_iso(metadata["created_at"]),
        updated_at=from_iso(metadata["updated_at"]),
        archived_at=from_iso(archived_at) if archived_at else None,
        status_reason=metadata.get("status_reason"),
    )


def _write_metadata(task_dir: Path, task: Task) -> None:
    payload = {
        "id": task.id,
        "title": task.title,
        "status": task.status.value,
        "dependencies": sorted(task.dependencies),
        "created_at": task.created_at.isoformat(),
        "updated_at": task.updated_at.isoformat(),
        "archived_at": task.archived_at.isoformat() if task.archived_at else None,
        "status_reason": task.status_reason,
    }
    _write_atomic(
        task_dir / METADATA_FILE,
        json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True),
    )


def _write_atomic(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def _read_optional(path: Path) -> str | None:
    if not path.is_file():
        return None
    return path.read_text("utf-8")


def _require_valid_id(task_id: str) -> None:
    if not TASK_ID_PATTERN.match(task_id):
        raise ValidationError(
            f"Invalid task id {task_id!r}: use lowercase kebab-case, for example 'add-user-auth'.",
            task_id=task_id,
            hint="Task ids are lowercase letters and digits separated by single hyphens.",
        )


def _title_from_id(task_id: str) -> str:
    return task_id.replace("-", " ").capitalize()
