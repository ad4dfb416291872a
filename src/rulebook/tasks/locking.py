"""Per-task advisory locks backed by ``flock`` on lock files."""

from __future__ import annotations

import asyncio
import fcntl
import logging
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import IO

from rulebook.errors import LockUnavailableError

logger = logging.getLogger(__name__)


class TaskLockManager:
    """Hands out exclusive locks keyed by task id.

    ``write`` guards a single store mutation and waits up to the configured
    timeout.  ``lease`` guards a whole task execution and fails immediately
    when another process holds it.  The two use separate lock files so a
    lease holder can still perform store writes.
    """

    def __init__(
        self,
        locks_dir: Path,
        *,
        timeout_seconds: float = 10.0,
        poll_seconds: float = 0.05,
    ) -> None:
        self.locks_dir = locks_dir
        self.timeout_seconds = timeout_seconds
        self.poll_seconds = poll_seconds

    @contextmanager
    def write(self, task_id: str) -> Iterator[None]:
        handle = self._open(f"{task_id}.lock")
        try:
            deadline = time.monotonic() + self.timeout_seconds
            while not _try_lock(handle):
                if time.monotonic() >= deadline:
                    raise LockUnavailableError(
                        f"Timed out waiting for write lock on task {task_id!r}.",
                        task_id=task_id,
                    )
                time.sleep(self.poll_seconds)
            yield
        finally:
            _release(handle)

    async def wait_writable(self, task_id: str) -> bool:
        """Wait on the event loop until the write lock is free.

        :meth:`write` blocks the calling thread while it polls.  Coroutines
        await this first so a lock held by another process does not stall
        the other runs in flight.  Returns False when the timeout passes.
        """

        handle = self._open(f"{task_id}.lock")
        try:
            deadline = time.monotonic() + self.timeout_seconds
            while not _try_lock(handle):
                if time.monotonic() >= deadline:
                    return False
                await asyncio.sleep(self.poll_seconds)
            return True
        finally:
            _release(handle)

    @contextmanager
    def lease(self, task_id: str) -> Iterator[None]:
        handle = self._open(f"{task_id}.run.lock")
        try:
            if not _try_lock(handle):
                raise LockUnavailableError(
                    f"Task {task_id!r} is already being executed by another process.",
                    task_id=task_id,
                )
            handle.seek(0)
            handle.truncate()
            handle.write(f"{os.getpid()}\n")
            handle.flush()
            logger.debug("Acquired run lease for %s", task_id)
            yield
        finally:
            _release(handle)

    def _open(self, name: str) -> IO[str]:
        self.locks_dir.mkdir(parents=True, exist_ok=True)
        return (self.locks_dir / name).open("a+", encoding="utf-8")


def _try_lock(handle: IO[str]) -> bool:
    try:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError:
        return False
    return True


def _release(handle: IO[str]) -> None:
    try:
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
    finally:
        handle.close()
