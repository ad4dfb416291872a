"""Controllers for task management CLI commands."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from rulebook.config import Settings
from rulebook.services import TaskServices, build_task_services
from rulebook.tasks.graph import TaskGraph
from rulebook.tasks.models import Task, TaskDraft, TaskFilter, TaskPatch, TaskStatus


@dataclass(slots=True)
class TaskCreateCommand:
    """CLI input for task creation."""

    root: Path | None
    task_id: str
    title: str | None
    dependencies: tuple[str, ...]
    proposal_file: Path | None = None
    checklist_file: Path | None = None


@dataclass(slots=True)
class TaskListCommand:
    root: Path | None
    status: str | None
    include_archived: bool


@dataclass(slots=True)
class TaskRefCommand:
    """CLI input for commands addressing one task."""

    root: Path | None
    task_id: str


@dataclass(slots=True)
class TaskUpdateCommand:
    root: Path | None
    task_id: str
    title: str | None
    add_dependencies: tuple[str, ...]
    remove_dependencies: tuple[str, ...]


@dataclass(slots=True)
class TaskArchiveCommand:
    root: Path | None
    task_id: str
    skip_validation: bool


@dataclass(slots=True)
class ValidationOutcome:
    lines: list[str]
    success: bool


class TasksCliController:
    """Task store operations exposed to the CLI; every method returns output lines."""

    def create(self, command: TaskCreateCommand) -> list[str]:
        services = _services(command.root)
        task = services.store.create(
            command.task_id,
            TaskDraft(
                title=command.title,
                proposal=_read_text(command.proposal_file),
                checklist=_read_text(command.checklist_file),
                dependencies=frozenset(command.dependencies),
            ),
        )
        return [
            f"Task created: {task.id} status={task.status.value}",
            f"Directory: {services.settings.tasks_dir / task.id}",
        ]

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        services = _services(command.root)
        statuses = frozenset({TaskStatus(command.status)}) if command.status else None
        include_archived = command.include_archived or command.status == TaskStatus.ARCHIVED.value
        tasks = services.store.list(TaskFilter(statuses=statuses, include_archived=include_archived))
        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            deps = ",".join(sorted(task.dependencies)) or "-"
            lines.append(f"  {task.id} status={task.status.value} deps={deps} title={task.title}")
        return lines

    def show(self, command: TaskRefCommand) -> list[str]:
        services = _services(command.root)
        task = services.store.read(command.task_id)
        runs = services.log.runs(task.id)
        return [
            *_describe(task),
            f"Runs: {len(runs)}",
            *(
                f"  {run.get('started_at')} {run.get('tool_name')} attempt={run.get('attempt')} "
                f"kind={run.get('kind')} outcome={run.get('outcome')}"
                for run in runs
            ),
        ]

    def validate(self, command: TaskRefCommand) -> ValidationOutcome:
        services = _services(command.root)
        report = services.store.validate(command.task_id)
        lines = [f"Validation for {report.task_id}: {'valid' if report.valid else 'invalid'}"]
        lines.extend(f"  error: {error}" for error in report.errors)
        lines.extend(f"  warning: {warning}" for warning in report.warnings)
        return ValidationOutcome(lines=lines, success=report.valid)

    def update(self, command: TaskUpdateCommand) -> list[str]:
        services = _services(command.root)
        current = services.store.read(command.task_id)
        dependencies = None
        if command.add_dependencies or command.remove_dependencies:
            dependencies = (current.dependencies | set(command.add_dependencies)) - set(
                command.remove_dependencies,
            )
        task = services.store.update(
            command.task_id,
            TaskPatch(title=command.title, dependencies=frozenset(dependencies) if dependencies is not None else None),
        )
        return [f"Task updated: {task.id}", *_describe(task)]

    def archive(self, command: TaskArchiveCommand) -> list[str]:
        services = _services(command.root)
        task = services.lifecycle.archive(command.task_id, skip_validation=command.skip_validation)
        services.log.close()
        archived_at = task.archived_at.isoformat() if task.archived_at else "-"
        return [f"Task archived: {task.id} archived_at={archived_at}"]

    def reset(self, command: TaskRefCommand) -> list[str]:
        services = _services(command.root)
        task = services.lifecycle.reset(command.task_id)
        services.log.close()
        return [f"Task reset: {task.id} status={task.status.value}"]

    def delete(self, command: TaskRefCommand) -> list[str]:
        services = _services(command.root)
        services.store.delete(command.task_id)
        return [f"Task deleted: {command.task_id}"]

    def order(self, command: TaskListCommand) -> list[str]:
        """Dependency order of all non-archived tasks."""

        services = _services(command.root)
        graph = TaskGraph.build(services.store.list(TaskFilter(include_archived=command.include_archived)))
        order = graph.topological_order()
        ready = set(graph.compute_ready())
        lines = [f"Order: {len(order)} task(s)"]
        for index, task_id in enumerate(order, start=1):
            marker = " (ready)" if task_id in ready else ""
            lines.append(f"  {index}. {task_id} [{graph.statuses[task_id].value}]{marker}")
        return lines


def _services(root: Path | None) -> TaskServices:
    settings = Settings.from_env(root=root)
    settings.validate()
    return build_task_services(settings)


def _describe(task: Task) -> list[str]:
    return [
        f"Task: {task.id}",
        f"Title: {task.title}",
        f"Status: {task.status.value}",
        f"Reason: {task.status_reason or '-'}",
        f"Dependencies: {', '.join(sorted(task.dependencies)) or '-'}",
        f"Specs: {', '.join(sorted(task.specs)) or '-'}",
        f"Created: {task.created_at.isoformat()}",
        f"Updated: {task.updated_at.isoformat()}",
        f"Archived: {task.archived_at.isoformat() if task.archived_at else '-'}",
    ]


def _read_text(path: Path | None) -> str | None:
    if path is None:
        return None
    return path.read_text("utf-8")
