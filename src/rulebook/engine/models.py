"""Domain models for CLI tool invocation and normalized output."""

from __future__ import annotations

import os
import shlex
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from rulebook.errors import (
    RulebookError,
    SubprocessFailureError,
    SubprocessTimeoutError,
    ToolNotAvailableError,
)
from rulebook.tasks.models import utc_now


class EventKind(str, Enum):
    """Canonical event kinds every tool's output is normalized into."""

    SYSTEM_INIT = "system_init"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL_CALL_STARTED = "tool_call_started"
    TOOL_CALL_COMPLETED = "tool_call_completed"
    TOOL_CALL_FAILED = "tool_call_failed"
    THINKING = "thinking"
    ERROR = "error"
    DONE = "done"
    UNKNOWN = "unknown"
    TRUNCATED = "truncated"
    WARNING = "warning"


TERMINAL_EVENT_KINDS = frozenset({EventKind.DONE, EventKind.ERROR})


class Outcome(str, Enum):
    """Result of one tool invocation or of a bridge run."""

    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"
    NEEDS_CONTINUATION = "needs-continuation"


class OutputFormat(str, Enum):
    """How a tool writes its stdout."""

    LINE_DELIMITED_STRUCTURED = "line-delimited-structured"
    LITERAL_MARKER_TEXT = "literal-marker-text"


class RunKind(str, Enum):
    INITIAL = "initial"
    RETRY = "retry"
    CONTINUATION = "continuation"


@dataclass(slots=True, frozen=True)
class Event:
    """One normalized output record; ``payload`` keeps the raw source."""

    kind: EventKind
    payload: dict[str, Any]
    timestamp: datetime = field(default_factory=utc_now)

    @property
    def text(self) -> str:
        value = self.payload.get("text")
        return value if isinstance(value, str) else ""

    def to_record(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(slots=True, frozen=True)
class MarkerRule:
    """Literal substring mapped to an event kind for marker-text tools."""

    marker: str
    kind: EventKind


COMPLETION_MARKER = "TASK COMPLETE"
BLOCKED_MARKER = "BLOCKED:"

DEFAULT_MARKERS: tuple[MarkerRule, ...] = (
    MarkerRule("🤔", EventKind.THINKING),
    MarkerRule("Thinking...", EventKind.THINKING),
    MarkerRule("thinking...", EventKind.THINKING),
    MarkerRule("🔧", EventKind.TOOL_CALL_STARTED),
    MarkerRule("Tool:", EventKind.TOOL_CALL_STARTED),
    MarkerRule("Executing:", EventKind.TOOL_CALL_STARTED),
    MarkerRule("✅", EventKind.DONE),
    MarkerRule(COMPLETION_MARKER, EventKind.DONE),
    MarkerRule("❌", EventKind.ERROR),
    MarkerRule(BLOCKED_MARKER, EventKind.ERROR),
    MarkerRule("Error:", EventKind.ERROR),
    MarkerRule("Failed:", EventKind.ERROR),
)


@dataclass(slots=True, frozen=True)
class ToolDescriptor:
    """Static description of one external CLI tool."""

    name: str
    executable: str
    command_template: str
    output_format: OutputFormat
    timeout_seconds: int
    retry_budget: int = 3
    probe_args: tuple[str, ...] = ("--version",)
    markers: tuple[MarkerRule, ...] = DEFAULT_MARKERS

    @property
    def probe_command(self) -> list[str]:
        return [self.executable, *self.probe_args]

    def build_argv(self, prompt: str) -> list[str]:
        """Render the command template into an argv list with the prompt quoted."""

        stripped = self.command_template.strip()
        if "{prompt}" not in stripped:
            raise ToolNotAvailableError(
                f"Command template for {self.name} must include {{prompt}}.",
            )
        try:
            rendered = stripped.format(prompt=shlex.quote(prompt))
        except (KeyError, IndexError) as error:
            raise ToolNotAvailableError(
                f"Unsupported command template placeholder for {self.name}: {error}",
            ) from error
        argv = shlex.split(rendered)
        if not argv:
            raise ToolNotAvailableError(f"Command template for {self.name} rendered empty.")
        return argv

    def render_command(self, prompt: str) -> str:
        """Shell-quoted command line, for dry runs and logs."""

        return shlex.join(self.build_argv(prompt))


@dataclass(slots=True, frozen=True)
class Run:
    """One tool invocation; finalized once via :meth:`finish`."""

    task_id: str
    tool_name: str
    attempt: int
    kind: RunKind
    started_at: datetime
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    ended_at: datetime | None = None
    outcome: Outcome | None = None
    exit_code: int | None = None
    event_count: int = 0
    truncated: bool = False
    detail: str | None = None

    def finish(  # noqa: PLR0913
        self,
        *,
        outcome: Outcome,
        exit_code: int | None,
        event_count: int,
        truncated: bool,
        detail: str | None = None,
    ) -> Run:
        return Run(
            task_id=self.task_id,
            tool_name=self.tool_name,
            attempt=self.attempt,
            kind=self.kind,
            started_at=self.started_at,
            run_id=self.run_id,
            ended_at=utc_now(),
            outcome=outcome,
            exit_code=exit_code,
            event_count=event_count,
            truncated=truncated,
            detail=detail,
        )

    def to_record(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "task_id": self.task_id,
            "tool_name": self.tool_name,
            "attempt": self.attempt,
            "kind": self.kind.value,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "outcome": self.outcome.value if self.outcome else None,
            "exit_code": self.exit_code,
            "event_count": self.event_count,
            "truncated": self.truncated,
            "detail": self.detail,
        }


@dataclass(slots=True)
class InvocationResult:
    """Result of exactly one subprocess invocation."""

    run: Run
    events: list[Event]
    outcome: Outcome
    exit_code: int | None
    timed_out: bool
    retryable: bool
    stderr_tail: str = ""
    continuation_reasons: tuple[str, ...] = ()
    cancelled: bool = False


@dataclass(slots=True)
class BridgeResult:
    """Aggregate of every invocation the bridge made for one prompt."""

    runs: list[Run]
    events: list[Event]
    outcome: Outcome
    retries_exhausted: bool = False
    cancelled: bool = False
    blocked_reason: str | None = None
    error_message: str | None = None

    @property
    def last_run(self) -> Run | None:
        return self.runs[-1] if self.runs else None

    def error(self, task_id: str) -> RulebookError | None:
        """Domain error describing a non-success outcome, if any."""

        if self.outcome in {Outcome.SUCCESS, Outcome.NEEDS_CONTINUATION}:
            return None
        message = self.error_message or f"Tool run ended with outcome {self.outcome.value}."
        last = self.last_run
        if self.outcome == Outcome.TIMEOUT:
            return SubprocessTimeoutError(message, task_id=task_id)
        return SubprocessFailureError(
            message,
            transient=False,
            task_id=task_id,
            exit_code=last.exit_code if last else None,
        )


def default_environment() -> dict[str, str]:
    env = os.environ.copy()
    env.setdefault("NO_COLOR", "1")
    return env
