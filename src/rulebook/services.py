"""Wiring of store, lifecycle and execution log from a settings snapshot."""

from __future__ import annotations

from dataclasses import dataclass

from rulebook.config import Settings
from rulebook.engine.execution_log import ExecutionLog
from rulebook.tasks.lifecycle import TaskLifecycle
from rulebook.tasks.locking import TaskLockManager
from rulebook.tasks.store import TaskStore


@dataclass(slots=True)
class TaskServices:
    """Components sharing one settings snapshot and one execution log."""

    settings: Settings
    locks: TaskLockManager
    store: TaskStore
    log: ExecutionLog
    lifecycle: TaskLifecycle


def build_task_services(settings: Settings) -> TaskServices:
    locks = TaskLockManager(
        settings.locks_dir,
        timeout_seconds=settings.engine.lock_timeout_seconds,
    )
    store = TaskStore(
        tasks_dir=settings.tasks_dir,
        archive_dir=settings.archive_dir,
        locks=locks,
    )
    log = ExecutionLog(settings.logs_dir)
    return TaskServices(
        settings=settings,
        locks=locks,
        store=store,
        log=log,
        lifecycle=TaskLifecycle(store, recorder=log, locks=locks),
    )
