"""Error taxonomy shared by the task store, lifecycle and execution engine.

Every error carries a machine-readable ``kind``, the task it concerns (when
there is one) and a remediation hint.  The orchestrator and CLI turn
unresolved errors into :class:`ErrorReport` rows for the final summary.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True, frozen=True)
class ErrorReport:
    """One row of the structured failure summary."""

    kind: str
    task_id: str | None
    message: str
    hint: str

    def render(self) -> str:
        scope = self.task_id or "-"
        return f"[{self.kind}] task={scope}: {self.message} (hint: {self.hint})"


class RulebookError(RuntimeError):
    """Base class for all domain errors."""

    kind = "error"
    default_hint = "Inspect the execution log for details."

    def __init__(
        self,
        message: str,
        *,
        task_id: str | None = None,
        hint: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.task_id = task_id
        self.hint = hint or self.default_hint

    def to_report(self) -> ErrorReport:
        return ErrorReport(
            kind=self.kind,
            task_id=self.task_id,
            message=self.message,
            hint=self.hint,
        )


class ValidationError(RulebookError):
    """Task content failed validation."""

    kind = "validation"
    default_hint = "Run `rulebook tasks validate <id>` and fix the reported errors."

    def __init__(
        self,
        message: str,
        *,
        task_id: str | None = None,
        errors: tuple[str, ...] = (),
        hint: str | None = None,
    ) -> None:
        super().__init__(message, task_id=task_id, hint=hint)
        self.errors = errors


class NotFoundError(RulebookError):
    kind = "not_found"
    default_hint = "Check the task id with `rulebook tasks list`."


class AlreadyExistsError(RulebookError):
    kind = "already_exists"
    default_hint = "Choose a different task id or delete the existing task."


class InvalidStateTransition(RulebookError):
    """Requested lifecycle transition is not allowed or its guard failed."""

    kind = "invalid_transition"
    default_hint = "Use `rulebook tasks reset <id>` to return failed or blocked tasks to pending."

    def __init__(
        self,
        message: str,
        *,
        task_id: str | None = None,
        current: str | None = None,
        target: str | None = None,
        hint: str | None = None,
    ) -> None:
        super().__init__(message, task_id=task_id, hint=hint)
        self.current = current
        self.target = target


class CycleDetectedError(RulebookError):
    """Dependency graph contains a cycle; ``path`` lists its members in order."""

    kind = "cycle_detected"
    default_hint = "Remove one of the dependencies on the reported path."

    def __init__(
        self,
        path: list[str],
        *,
        task_id: str | None = None,
        hint: str | None = None,
    ) -> None:
        rendered = " -> ".join([*path, path[0]]) if path else "<empty>"
        super().__init__(
            f"Dependency cycle detected: {rendered}",
            task_id=task_id or (path[0] if path else None),
            hint=hint,
        )
        self.path = list(path)


class ToolNotAvailableError(RulebookError):
    kind = "tool_not_available"
    default_hint = "Install one of the supported CLI tools or set RULEBOOK_ENABLED_TOOLS."


class SubprocessTimeoutError(RulebookError):
    kind = "subprocess_timeout"
    default_hint = "Raise the tool timeout via RULEBOOK_TOOL_TIMEOUTS or split the task."


class SubprocessFailureError(RulebookError):
    """Tool invocation failed; ``transient`` says whether a retry may help."""

    kind = "subprocess_failure"
    default_hint = "Check the tool's stderr in the execution log."

    def __init__(
        self,
        message: str,
        *,
        transient: bool,
        task_id: str | None = None,
        exit_code: int | None = None,
        hint: str | None = None,
    ) -> None:
        super().__init__(message, task_id=task_id, hint=hint)
        self.transient = transient
        self.exit_code = exit_code


class LockUnavailableError(RulebookError):
    kind = "lock_unavailable"
    default_hint = "Another rulebook process is working on this task; retry when it finishes."


class AmbiguousCompletionSignal(Exception):  # noqa: N818
    """Internal signal: the tool exited cleanly but its output looks unfinished.

    Raised and caught inside the bridge only; never reaches callers.
    """

    def __init__(self, reasons: tuple[str, ...]) -> None:
        super().__init__(", ".join(reasons))
        self.reasons = reasons
