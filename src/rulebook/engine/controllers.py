"""Controllers for agent execution, tool detection and log CLI commands."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from pathlib import Path

from rulebook.config import Settings
from rulebook.engine.execution_log import ExecutionLog
from rulebook.engine.orchestrator import AgentOrchestrator
from rulebook.engine.registry import CLIToolRegistry


@dataclass(slots=True)
class AgentRunCommand:
    """CLI input for one orchestrator run."""

    root: Path | None
    task_ids: tuple[str, ...]
    tool: str | None
    dry_run: bool
    parallel: bool
    max_parallel: int | None
    max_iterations: int | None
    workdir: Path


@dataclass(slots=True)
class ToolsDetectCommand:
    root: Path | None


@dataclass(slots=True)
class LogsShowCommand:
    root: Path | None
    task_id: str | None
    limit: int
    summary: bool = False


@dataclass(slots=True)
class LogsPruneCommand:
    root: Path | None
    retention_days: int | None


@dataclass(slots=True)
class AgentRunResult:
    lines: list[str]
    success: bool


class AgentCliController:
    """Wires settings into the orchestrator and renders its summary."""

    def run_agent(self, command: AgentRunCommand) -> AgentRunResult:
        settings = Settings.from_env(root=command.root)
        if command.max_parallel is not None:
            settings = settings.with_engine(max_parallel_tasks=command.max_parallel)
        settings.validate()

        orchestrator = AgentOrchestrator.from_settings(settings, workdir=command.workdir)
        try:
            summary = asyncio.run(
                orchestrator.run(
                    list(command.task_ids) or None,
                    tool=command.tool,
                    dry_run=command.dry_run,
                    parallel=command.parallel,
                    max_iterations=command.max_iterations,
                ),
            )
        finally:
            orchestrator.log.close()
        return AgentRunResult(lines=summary.render_lines(), success=summary.ok)

    def detect_tools(self, command: ToolsDetectCommand) -> list[str]:
        settings = Settings.from_env(root=command.root)
        settings.validate()
        registry = CLIToolRegistry.from_settings(
            settings.tools,
            retry_budget=settings.engine.retry_budget,
        )
        detected = asyncio.run(registry.detect())

        lines = [f"Tools: {len(detected)}"]
        for name in registry.names:
            availability = detected[name]
            descriptor = registry.describe(name)
            status = "available" if availability.available else "missing"
            detail = availability.version or availability.error or "-"
            lines.append(
                f"  {name} {status} executable={descriptor.executable} "
                f"format={descriptor.output_format.value} timeout={descriptor.timeout_seconds}s "
                f"detail={detail}",
            )
        return lines

    def show_logs(self, command: LogsShowCommand) -> list[str]:
        log = _log(command.root)
        if command.summary:
            summary = log.summary()
            return [
                f"Log files: {summary['files']}",
                f"Records: {summary['records']}",
                f"Errors: {summary['errors']}",
                "Records by type: " + _render_counts(summary["by_type"]),
                "Run outcomes: " + _render_counts(summary["run_outcomes"]),
            ]

        records = log.task_records(command.task_id) if command.task_id else log.records()
        records = records[-command.limit :] if command.limit > 0 else []
        lines = [f"Records: {len(records)}"]
        lines.extend(_render_record(record) for record in records)
        return lines

    def prune_logs(self, command: LogsPruneCommand) -> list[str]:
        settings = Settings.from_env(root=command.root)
        settings.validate()
        retention = command.retention_days
        if retention is None:
            retention = settings.logs.retention_days
        removed = ExecutionLog(settings.logs_dir).prune(retention)
        return [f"Pruned log files: {len(removed)} (retention {retention} days)"]


def _log(root: Path | None) -> ExecutionLog:
    settings = Settings.from_env(root=root)
    settings.validate()
    return ExecutionLog(settings.logs_dir)


def _render_counts(counts: dict[str, int]) -> str:
    return ", ".join(f"{key}={value}" for key, value in counts.items()) or "-"


def _render_record(record: dict[str, object]) -> str:
    record_type = record.get("type")
    prefix = f"  {record.get('ts')} {record_type} task={record.get('task_id') or '-'}"
    if record_type == "event":
        event = record.get("event")
        if isinstance(event, dict):
            payload = event.get("payload")
            text = payload.get("text") if isinstance(payload, dict) else None
            return f"{prefix} kind={event.get('kind')} {str(text or '')[:120]}".rstrip()
    if record_type in {"run_started", "run_finished"}:
        run = record.get("run")
        if isinstance(run, dict):
            return (
                f"{prefix} tool={run.get('tool_name')} attempt={run.get('attempt')} "
                f"outcome={run.get('outcome') or '-'}"
            )
    if record_type == "transition":
        return f"{prefix} {record.get('from')} -> {record.get('to')} reason={record.get('reason') or '-'}"
    if record_type == "error":
        return f"{prefix} [{record.get('kind')}] {record.get('message')}"
    return f"{prefix} {json.dumps(record, ensure_ascii=False, default=str)}"
