"""Guarded task state transitions."""

from __future__ import annotations

import logging
from typing import Protocol

from rulebook.errors import InvalidStateTransition
from rulebook.tasks.graph import TaskGraph
from rulebook.tasks.locking import TaskLockManager
from rulebook.tasks.models import Task, TaskPatch, TaskStatus
from rulebook.tasks.store import TaskStore

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: frozenset[tuple[TaskStatus, TaskStatus]] = frozenset(
    {
        (TaskStatus.PENDING, TaskStatus.IN_PROGRESS),
        (TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED),
        (TaskStatus.IN_PROGRESS, TaskStatus.BLOCKED),
        (TaskStatus.IN_PROGRESS, TaskStatus.FAILED),
        (TaskStatus.COMPLETED, TaskStatus.ARCHIVED),
    },
)
RESETTABLE_STATUSES = frozenset({TaskStatus.FAILED, TaskStatus.BLOCKED})


class TransitionRecorder(Protocol):
    def record_transition(
        self,
        *,
        task_id: str,
        from_status: TaskStatus,
        to_status: TaskStatus,
        reason: str | None,
    ) -> None: ...


class TaskLifecycle:
    """Applies the transition table on top of :class:`TaskStore`.

    Each transition re-reads the task, checks the table and its guard, then
    writes with a compare-and-set on the status it read.
    """

    def __init__(
        self,
        store: TaskStore,
        *,
        recorder: TransitionRecorder | None = None,
        locks: TaskLockManager | None = None,
    ) -> None:
        self.store = store
        self.recorder = recorder
        self.locks = locks

    def start(self, task_id: str) -> Task:
        task = self._require(task_id, TaskStatus.IN_PROGRESS)
        self._require_dependencies_completed(task, TaskStatus.IN_PROGRESS)
        return self._move(task, TaskStatus.IN_PROGRESS, reason=None)

    def complete(self, task_id: str, *, run_succeeded: bool) -> Task:
        task = self._require(task_id, TaskStatus.COMPLETED)
        if not run_succeeded:
            raise self._guard_failed(task, TaskStatus.COMPLETED, "the last run did not succeed")
        self._require_dependencies_completed(task, TaskStatus.COMPLETED)
        report = self.store.validate(task_id)
        if not report.valid:
            raise self._guard_failed(
                task,
                TaskStatus.COMPLETED,
                f"validation reported {len(report.errors)} error(s): {report.errors[0]}",
                hint="Fix the task content, then reset and rerun the task.",
            )
        return self._move(task, TaskStatus.COMPLETED, reason=None)

    def block(self, task_id: str, *, reason: str) -> Task:
        task = self._require(task_id, TaskStatus.BLOCKED)
        if not reason.strip():
            raise self._guard_failed(task, TaskStatus.BLOCKED, "a blocking reason is required")
        return self._move(task, TaskStatus.BLOCKED, reason=reason.strip())

    def fail(self, task_id: str, *, attempts_exhausted: bool, reason: str) -> Task:
        task = self._require(task_id, TaskStatus.FAILED)
        if not attempts_exhausted:
            raise self._guard_failed(task, TaskStatus.FAILED, "retry budget is not exhausted")
        return self._move(task, TaskStatus.FAILED, reason=reason)

    def archive(self, task_id: str, *, skip_validation: bool = False) -> Task:
        task = self._require(task_id, TaskStatus.ARCHIVED)
        archived = self.store.archive(task_id, skip_validation=skip_validation)
        self._record(task, TaskStatus.ARCHIVED, reason=None)
        return archived

    def reset(self, task_id: str) -> Task:
        """Operator recovery: return a failed or blocked task to pending.

        An ``in-progress`` task can be reset only while no process holds its
        run lease, i.e. when the orchestrator that started it has died.
        """

        task = self.store.read(task_id)
        if task.status == TaskStatus.IN_PROGRESS and self.locks is not None:
            with self.locks.lease(task_id):
                return self._move(task, TaskStatus.PENDING, reason="operator reset of abandoned run")
        if task.status not in RESETTABLE_STATUSES:
            raise InvalidStateTransition(
                "Only failed, blocked or abandoned in-progress tasks can be reset; "
                f"{task_id!r} is {task.status.value}.",
                task_id=task_id,
                current=task.status.value,
                target=TaskStatus.PENDING.value,
            )
        return self._move(task, TaskStatus.PENDING, reason="operator reset")

    def _require(self, task_id: str, target: TaskStatus) -> Task:
        task = self.store.read(task_id)
        if (task.status, target) not in ALLOWED_TRANSITIONS:
            raise InvalidStateTransition(
                f"Transition {task.status.value} -> {target.value} is not allowed for {task_id!r}.",
                task_id=task_id,
                current=task.status.value,
                target=target.value,
            )
        return task

    def _require_dependencies_completed(self, task: Task, target: TaskStatus) -> None:
        graph = TaskGraph.build(self.store.snapshot())
        missing = graph.unsatisfied_dependencies(task.id)
        if missing:
            raise self._guard_failed(
                task,
                target,
                f"dependencies not completed: {', '.join(missing)}",
                hint="Complete the listed dependencies first.",
            )

    def _guard_failed(
        self,
        task: Task,
        target: TaskStatus,
        detail: str,
        *,
        hint: str | None = None,
    ) -> InvalidStateTransition:
        return InvalidStateTransition(
            f"Cannot move {task.id!r} from {task.status.value} to {target.value}: {detail}.",
            task_id=task.id,
            current=task.status.value,
            target=target.value,
            hint=hint,
        )

    def _move(self, task: Task, target: TaskStatus, *, reason: str | None) -> Task:
        updated = self.store.update(
            task.id,
            TaskPatch(status=target, status_reason=reason, expected_status=task.status),
        )
        self._record(task, target, reason=reason)
        return updated

    def _record(self, task: Task, target: TaskStatus, *, reason: str | None) -> None:
        logger.info("Task %s: %s -> %s", task.id, task.status.value, target.value)
        if self.recorder is not None:
            self.recorder.record_transition(
                task_id=task.id,
                from_status=task.status,
                to_status=target,
                reason=reason,
            )
