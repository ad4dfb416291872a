"""Append-only JSONL audit trail of runs, events and task transitions."""

from __future__ import annotations

import json
import logging
import os
from collections import Counter
from datetime import datetime, timedelta
from pathlib import Path
from typing import IO, Any

from rulebook.engine.models import Event, Run
from rulebook.errors import ErrorReport
from rulebook.tasks.models import TaskStatus, utc_now

logger = logging.getLogger(__name__)

LOG_GLOB = "agent-*.jsonl"


class ExecutionLog:
    """Writes one JSON record per line and flushes each record to disk.

    A crash at any point leaves every previously written record parseable;
    at worst the final line is cut short, and :func:`read_records` skips it.
    """

    def __init__(self, logs_dir: Path) -> None:
        self.logs_dir = logs_dir
        self.path: Path | None = None
        self._handle: IO[str] | None = None

    def open(self) -> Path:
        if self._handle is not None and self.path is not None:
            return self.path
        self.logs_dir.mkdir(parents=True, exist_ok=True)
        stamp = utc_now().strftime("%Y%m%dT%H%M%S")
        self.path = self.logs_dir / f"agent-{stamp}-{os.getpid()}.jsonl"
        self._handle = self.path.open("a", encoding="utf-8")
        return self.path

    def close(self) -> None:
        if self._handle is None:
            return
        self.flush()
        self._handle.close()
        self._handle = None

    def flush(self) -> None:
        if self._handle is None:
            return
        self._handle.flush()
        os.fsync(self._handle.fileno())

    def __enter__(self) -> ExecutionLog:
        self.open()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def run_started(self, run: Run) -> None:
        self._append({"type": "run_started", "task_id": run.task_id, "run": run.to_record()})

    def event(self, run: Run, event: Event) -> None:
        self._append(
            {
                "type": "event",
                "task_id": run.task_id,
                "run_id": run.run_id,
                "event": event.to_record(),
            },
        )

    def run_finished(self, run: Run) -> None:
        self._append({"type": "run_finished", "task_id": run.task_id, "run": run.to_record()})

    def record_transition(
        self,
        *,
        task_id: str,
        from_status: TaskStatus,
        to_status: TaskStatus,
        reason: str | None,
    ) -> None:
        self._append(
            {
                "type": "transition",
                "task_id": task_id,
                "from": from_status.value,
                "to": to_status.value,
                "reason": reason,
            },
        )

    def record_error(self, report: ErrorReport) -> None:
        self._append(
            {
                "type": "error",
                "task_id": report.task_id,
                "kind": report.kind,
                "message": report.message,
                "hint": report.hint,
            },
        )

    def _append(self, record: dict[str, Any]) -> None:
        if self._handle is None:
            self.open()
        assert self._handle is not None
        payload = {"ts": utc_now().isoformat(), **record}
        self._handle.write(json.dumps(payload, ensure_ascii=False, default=str) + "\n")
        self.flush()

    def log_files(self) -> list[Path]:
        if not self.logs_dir.is_dir():
            return []
        return sorted(self.logs_dir.glob(LOG_GLOB))

    def records(self) -> list[dict[str, Any]]:
        """Every record from every log file, oldest file first."""

        collected: list[dict[str, Any]] = []
        for path in self.log_files():
            collected.extend(read_records(path))
        return collected

    def recent(self, limit: int = 50) -> list[dict[str, Any]]:
        if limit <= 0:
            return []
        return self.records()[-limit:]

    def task_records(self, task_id: str) -> list[dict[str, Any]]:
        return [record for record in self.records() if record.get("task_id") == task_id]

    def runs(self, task_id: str) -> list[dict[str, Any]]:
        """Finished runs for one task, in the order they ended."""

        return [
            record["run"]
            for record in self.task_records(task_id)
            if record.get("type") == "run_finished" and isinstance(record.get("run"), dict)
        ]

    def summary(self) -> dict[str, Any]:
        records = self.records()
        by_type = Counter(str(record.get("type")) for record in records)
        outcomes = Counter(
            str(record["run"].get("outcome"))
            for record in records
            if record.get("type") == "run_finished" and isinstance(record.get("run"), dict)
        )
        return {
            "files": len(self.log_files()),
            "records": len(records),
            "by_type": dict(sorted(by_type.items())),
            "run_outcomes": dict(sorted(outcomes.items())),
            "errors": by_type.get("error", 0),
        }

    def prune(self, retention_days: int, *, now: datetime | None = None) -> list[Path]:
        """Delete log files last modified before the retention window."""

        cutoff = (now or utc_now()) - timedelta(days=retention_days)
        removed: list[Path] = []
        for path in self.log_files():
            if path == self.path:
                continue
            modified = datetime.fromtimestamp(path.stat().st_mtime, tz=cutoff.tzinfo)
            if modified < cutoff:
                path.unlink()
                removed.append(path)
        if removed:
            logger.info("Pruned %d execution log file(s) older than %d days", len(removed), retention_days)
        return removed


def read_records(path: Path) -> list[dict[str, Any]]:
    """Parse a JSONL log, skipping a torn trailing line."""

    records: list[dict[str, Any]] = []
    with path.open(encoding="utf-8", errors="replace") as handle:
        for number, line in enumerate(handle, start=1):
            stripped = line.strip()
            if not stripped:
                continue
            try:
                record = json.loads(stripped)
            except json.JSONDecodeError:
                logger.warning("Skipping unparseable record %s:%d", path.name, number)
                continue
            if isinstance(record, dict):
                records.append(record)
    return records
