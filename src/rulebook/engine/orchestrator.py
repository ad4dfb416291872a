"""Dependency-aware control loop driving tasks through CLI tool runs."""

from __future__ import annotations

import asyncio
import logging
import signal
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

from rulebook.config import EngineSettings, Settings
from rulebook.engine.bridge import CLIBridge
from rulebook.engine.execution_log import ExecutionLog
from rulebook.engine.models import BridgeResult, Outcome, ToolDescriptor
from rulebook.engine.prompts import build_task_prompt, summarize_result
from rulebook.engine.registry import CLIToolRegistry
from rulebook.errors import (
    CycleDetectedError,
    ErrorReport,
    InvalidStateTransition,
    NotFoundError,
    RulebookError,
)
from rulebook.services import build_task_services
from rulebook.tasks.graph import TaskGraph
from rulebook.tasks.lifecycle import TaskLifecycle
from rulebook.tasks.locking import TaskLockManager
from rulebook.tasks.models import Task, TaskStatus
from rulebook.tasks.store import TaskStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TaskRunReport:
    """What happened to one task during an orchestrator run."""

    task_id: str
    final_status: TaskStatus
    iterations: int = 0
    runs: int = 0
    reason: str | None = None


@dataclass(slots=True)
class PlannedCommand:
    task_id: str
    ready: bool
    waiting_on: list[str]
    command: str


@dataclass(slots=True)
class OrchestratorSummary:
    """Result of :meth:`AgentOrchestrator.run`; non-empty ``errors`` means failure."""

    dry_run: bool
    tool: str | None = None
    reports: list[TaskRunReport] = field(default_factory=list)
    planned: list[PlannedCommand] = field(default_factory=list)
    skipped: dict[str, str] = field(default_factory=dict)
    errors: list[ErrorReport] = field(default_factory=list)
    interrupted: bool = False
    log_path: Path | None = None

    @property
    def ok(self) -> bool:
        return not self.errors

    def render_lines(self) -> list[str]:
        lines: list[str] = []
        if self.tool:
            lines.append(f"Tool: {self.tool}")
        if self.dry_run:
            lines.append(f"Dry run: {len(self.planned)} task(s) planned, no state changed.")
            for planned in self.planned:
                state = "ready" if planned.ready else f"waiting on {', '.join(planned.waiting_on)}"
                lines.append(f"- {planned.task_id} ({state})")
                lines.append(f"  $ {planned.command}")
        for report in self.reports:
            line = (
                f"Task {report.task_id}: {report.final_status.value} "
                f"(iterations={report.iterations}, runs={report.runs})"
            )
            if report.reason:
                line += f" - {report.reason}"
            lines.append(line)
        for task_id, reason in sorted(self.skipped.items()):
            lines.append(f"Skipped {task_id}: {reason}")
        if not self.dry_run and not self.reports and not self.errors:
            lines.append("No ready tasks.")
        if self.interrupted:
            lines.append("Interrupted: in-flight tasks were stopped and marked blocked.")
        if self.log_path is not None:
            lines.append(f"Execution log: {self.log_path}")
        if self.errors:
            lines.append(f"Errors: {len(self.errors)}")
            lines.extend(f"  {error.render()}" for error in self.errors)
        return lines


class AgentOrchestrator:
    """Runs ready tasks through the bridge and moves them along the lifecycle.

    Only the orchestrator requests lifecycle transitions during a run.  Each
    task execution holds a run lease so another process cannot pick up the
    same task.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: TaskStore,
        lifecycle: TaskLifecycle,
        registry: CLIToolRegistry,
        bridge: CLIBridge,
        log: ExecutionLog,
        locks: TaskLockManager,
        settings: EngineSettings,
        workdir: Path,
        log_retention_days: int | None = None,
    ) -> None:
        self.store = store
        self.lifecycle = lifecycle
        self.registry = registry
        self.bridge = bridge
        self.log = log
        self.locks = locks
        self.settings = settings
        self.workdir = workdir
        self.log_retention_days = log_retention_days
        self.shutdown = bridge.shutdown or asyncio.Event()
        bridge.shutdown = self.shutdown

    @classmethod
    def from_settings(cls, settings: Settings, *, workdir: Path) -> AgentOrchestrator:
        services = build_task_services(settings)
        engine = settings.engine
        bridge = CLIBridge(
            retry_base_seconds=engine.retry_base_seconds,
            retry_max_seconds=engine.retry_max_seconds,
            grace_seconds=engine.grace_seconds,
            max_output_bytes=engine.max_output_bytes,
            continuation_enabled=engine.continuation_enabled,
            observer=services.log,
            shutdown=asyncio.Event(),
        )
        return cls(
            store=services.store,
            lifecycle=services.lifecycle,
            registry=CLIToolRegistry.from_settings(settings.tools, retry_budget=engine.retry_budget),
            bridge=bridge,
            log=services.log,
            locks=services.locks,
            settings=engine,
            workdir=workdir,
            log_retention_days=settings.logs.retention_days,
        )

    async def run(
        self,
        task_ids: list[str] | None = None,
        *,
        tool: str | None = None,
        dry_run: bool = False,
        parallel: bool = False,
        max_iterations: int | None = None,
    ) -> OrchestratorSummary:
        """Execute ready tasks (optionally restricted to ``task_ids``) until none remain."""

        summary = OrchestratorSummary(dry_run=dry_run)
        scope = self._resolve_scope(task_ids, summary)
        if task_ids and not scope:
            return summary

        if dry_run:
            self._plan(scope, tool, summary)
            return summary

        if self.log_retention_days is not None:
            self.log.prune(self.log_retention_days)

        try:
            descriptor = await self.registry.select(tool or self.settings.default_tool)
        except RulebookError as error:
            summary.errors.append(error.to_report())
            return summary
        summary.tool = descriptor.name
        iterations = max_iterations or self.settings.max_iterations

        summary.log_path = self.log.open()
        try:
            with self._signal_handlers():
                if parallel and self.settings.max_parallel_tasks > 1:
                    await self._run_parallel(scope, descriptor, iterations, summary)
                else:
                    await self._run_sequential(scope, descriptor, iterations, summary)
        finally:
            for error in summary.errors:
                self.log.record_error(error)
            self.log.flush()

        summary.interrupted = self.shutdown.is_set()
        self._collect_skipped(scope, summary)
        return summary

    async def run_task(
        self,
        task_id: str,
        descriptor: ToolDescriptor,
        *,
        max_iterations: int,
        summary: OrchestratorSummary,
    ) -> TaskRunReport:
        """Drive one task from pending to a terminal or blocked state."""

        try:
            with self.locks.lease(task_id):
                return await self._execute(task_id, descriptor, max_iterations, summary)
        except RulebookError as error:
            logger.error("Task %s: %s", task_id, error.message)
            summary.errors.append(error.to_report())
            return TaskRunReport(task_id=task_id, final_status=self._status_of(task_id), reason=error.message)

    async def _execute(
        self,
        task_id: str,
        descriptor: ToolDescriptor,
        max_iterations: int,
        summary: OrchestratorSummary,
    ) -> TaskRunReport:
        await self.locks.wait_writable(task_id)
        self.lifecycle.start(task_id)
        report = TaskRunReport(task_id=task_id, final_status=TaskStatus.IN_PROGRESS)
        previous_summary: str | None = None
        next_attempt = 1

        try:
            while report.iterations < max_iterations:
                report.iterations += 1
                task = self.store.read(task_id)
                prompt = build_task_prompt(
                    task,
                    iteration=report.iterations,
                    previous_summary=previous_summary,
                )
                result = await self.bridge.run(
                    descriptor,
                    prompt,
                    task_id=task_id,
                    cwd=self.workdir,
                    first_attempt=next_attempt,
                )
                report.runs += len(result.runs)
                next_attempt += len(result.runs)
                previous_summary = summarize_result(result) or previous_summary

                if result.outcome == Outcome.NEEDS_CONTINUATION and not (
                    result.cancelled or result.blocked_reason
                ):
                    continue
                await self.locks.wait_writable(task_id)
                return self._settle(task_id, result, report, summary)
        except asyncio.CancelledError:
            self._block(task_id, "interrupted while a tool run was in flight", report)
            raise
        except Exception as error:
            logger.exception("Task %s: unexpected error during execution", task_id)
            self._block(task_id, f"internal error: {error}", report)
            summary.errors.append(
                ErrorReport(
                    kind="internal_error",
                    task_id=task_id,
                    message=f"{type(error).__name__}: {error}",
                    hint="Fix the underlying problem, then `rulebook tasks reset` the task.",
                ),
            )
            return report

        await self.locks.wait_writable(task_id)
        reason = f"iteration budget of {max_iterations} exhausted without a completion signal"
        self._block(task_id, reason, report)
        summary.errors.append(
            ErrorReport(
                kind="iteration_budget_exhausted",
                task_id=task_id,
                message=reason,
                hint="Inspect the execution log, refine the task, then reset and rerun it.",
            ),
        )
        return report

    def _settle(
        self,
        task_id: str,
        result: BridgeResult,
        report: TaskRunReport,
        summary: OrchestratorSummary,
    ) -> TaskRunReport:
        if result.cancelled:
            self._block(task_id, "interrupted", report)
            summary.errors.append(
                ErrorReport(
                    kind="interrupted",
                    task_id=task_id,
                    message="Run interrupted before the tool finished.",
                    hint="Reset the task with `rulebook tasks reset` and run it again.",
                ),
            )
            return report

        if result.blocked_reason is not None:
            self._block(task_id, result.blocked_reason, report)
            summary.errors.append(
                ErrorReport(
                    kind="blocked",
                    task_id=task_id,
                    message=result.blocked_reason,
                    hint="Resolve the reported blocker, then `rulebook tasks reset` the task.",
                ),
            )
            return report

        if result.outcome == Outcome.SUCCESS:
            try:
                self.lifecycle.complete(task_id, run_succeeded=True)
            except InvalidStateTransition as error:
                self._block(task_id, error.message, report)
                summary.errors.append(error.to_report())
                return report
            report.final_status = TaskStatus.COMPLETED
            return report

        error = result.error(task_id)
        message = error.message if error is not None else f"outcome {result.outcome.value}"
        self.lifecycle.fail(task_id, attempts_exhausted=True, reason=message)
        report.final_status = TaskStatus.FAILED
        report.reason = message
        if error is not None:
            summary.errors.append(error.to_report())
        return report

    def _block(self, task_id: str, reason: str, report: TaskRunReport) -> None:
        self.lifecycle.block(task_id, reason=reason)
        report.final_status = TaskStatus.BLOCKED
        report.reason = reason

    async def _run_sequential(
        self,
        scope: set[str] | None,
        descriptor: ToolDescriptor,
        max_iterations: int,
        summary: OrchestratorSummary,
    ) -> None:
        handled: set[str] = set()
        reported_cycles: set[frozenset[str]] = set()
        while not self.shutdown.is_set():
            ready = self._ready(scope, handled, reported_cycles, summary)
            if not ready:
                return
            task_id = ready[0]
            handled.add(task_id)
            summary.reports.append(
                await self.run_task(task_id, descriptor, max_iterations=max_iterations, summary=summary),
            )

    async def _run_parallel(
        self,
        scope: set[str] | None,
        descriptor: ToolDescriptor,
        max_iterations: int,
        summary: OrchestratorSummary,
    ) -> None:
        handled: set[str] = set()
        reported_cycles: set[frozenset[str]] = set()
        in_flight: dict[asyncio.Task[TaskRunReport], str] = {}
        limit = self.settings.max_parallel_tasks

        try:
            while True:
                if not self.shutdown.is_set():
                    for task_id in self._ready(scope, handled, reported_cycles, summary):
                        if len(in_flight) >= limit:
                            break
                        handled.add(task_id)
                        worker = asyncio.create_task(
                            self.run_task(task_id, descriptor, max_iterations=max_iterations, summary=summary),
                            name=f"rulebook-task-{task_id}",
                        )
                        in_flight[worker] = task_id
                if not in_flight:
                    return
                done, _ = await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)
                for worker in done:
                    in_flight.pop(worker)
                    summary.reports.append(worker.result())
        finally:
            # Workers still running own subprocesses; stop them before leaving.
            for worker in in_flight:
                worker.cancel()
            if in_flight:
                await asyncio.gather(*in_flight, return_exceptions=True)

    def _ready(
        self,
        scope: set[str] | None,
        handled: set[str],
        reported_cycles: set[frozenset[str]],
        summary: OrchestratorSummary,
    ) -> list[str]:
        graph = TaskGraph.build(self.store.snapshot())
        for cycle in graph.find_cycles():
            key = frozenset(cycle)
            if key in reported_cycles:
                continue
            if scope is not None and not key & scope:
                continue
            reported_cycles.add(key)
            summary.errors.append(CycleDetectedError(cycle).to_report())
        return [
            task_id
            for task_id in graph.compute_ready()
            if task_id not in handled and (scope is None or task_id in scope)
        ]

    def _plan(self, scope: set[str] | None, tool: str | None, summary: OrchestratorSummary) -> None:
        """Dry run: describe what would be invoked, in dependency order."""

        snapshot = self.store.snapshot()
        graph = TaskGraph.build(snapshot)
        on_cycle = graph.cycle_members()
        for cycle in graph.find_cycles():
            if scope is None or set(cycle) & scope:
                summary.errors.append(CycleDetectedError(cycle).to_report())

        try:
            descriptor = self.registry.describe(tool or self.settings.default_tool or self.registry.names[0])
        except (RulebookError, IndexError) as error:
            summary.errors.append(
                ErrorReport(
                    kind="tool_not_available",
                    task_id=None,
                    message=str(error),
                    hint="Enable at least one tool via RULEBOOK_ENABLED_TOOLS.",
                ),
            )
            return
        summary.tool = descriptor.name

        tasks: dict[str, Task] = {task.id: task for task in snapshot}
        acyclic = TaskGraph.build(task for task in snapshot if task.id not in on_cycle)
        for task_id in acyclic.topological_order():
            task = tasks[task_id]
            if task.status != TaskStatus.PENDING or (scope is not None and task_id not in scope):
                continue
            waiting_on = graph.unsatisfied_dependencies(task_id)
            summary.planned.append(
                PlannedCommand(
                    task_id=task_id,
                    ready=not waiting_on,
                    waiting_on=waiting_on,
                    command=descriptor.render_command(
                        build_task_prompt(task, iteration=1, previous_summary=None),
                    ),
                ),
            )

    def _resolve_scope(self, task_ids: list[str] | None, summary: OrchestratorSummary) -> set[str] | None:
        if not task_ids:
            return None
        scope: set[str] = set()
        for task_id in task_ids:
            if self.store.exists(task_id):
                scope.add(task_id)
            else:
                summary.errors.append(
                    NotFoundError(f"Task {task_id!r} not found.", task_id=task_id).to_report(),
                )
        return scope

    def _collect_skipped(self, scope: set[str] | None, summary: OrchestratorSummary) -> None:
        if scope is None:
            return
        attempted = {report.task_id for report in summary.reports}
        graph = TaskGraph.build(self.store.snapshot())
        for task_id in sorted(scope - attempted):
            status = graph.statuses.get(task_id)
            if status == TaskStatus.PENDING:
                waiting = graph.unsatisfied_dependencies(task_id)
                summary.skipped[task_id] = (
                    f"waiting on {', '.join(waiting)}" if waiting else "not dispatched"
                )
            elif status is not None:
                summary.skipped[task_id] = f"status is {status.value}"

    def _status_of(self, task_id: str) -> TaskStatus:
        try:
            return self.store.read(task_id).status
        except NotFoundError:
            return TaskStatus.PENDING

    def _request_stop(self, signal_name: str) -> None:
        logger.warning("Received %s, stopping in-flight tool runs", signal_name)
        self.shutdown.set()

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        loop = asyncio.get_running_loop()
        installed: list[signal.Signals] = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._request_stop, sig.name)
            except (NotImplementedError, RuntimeError, ValueError):
                # Only the main thread of a Unix event loop can install handlers.
                logger.debug("Signal handler for %s not installed", sig.name)
                continue
            installed.append(sig)
        try:
            yield
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)
