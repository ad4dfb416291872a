"""Subprocess bridge to external CLI tools.

One :meth:`CLIBridge.invoke_once` call owns exactly one subprocess and
terminates it before returning on every path.  :meth:`CLIBridge.run` layers
the retry policy and the single smart-continue invocation on top.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from rulebook.engine.continuation import assess_outcome
from rulebook.engine.models import (
    COMPLETION_MARKER,
    BridgeResult,
    Event,
    EventKind,
    InvocationResult,
    Outcome,
    Run,
    RunKind,
    ToolDescriptor,
    default_environment,
)
from rulebook.engine.parsers import PARSERS, LineParser, blocked_reason
from rulebook.errors import AmbiguousCompletionSignal, RulebookError
from rulebook.tasks.models import utc_now

logger = logging.getLogger(__name__)

CONTINUATION_PROMPT = (
    "Continue the previous task from where you stopped. Finish every remaining "
    f"checklist item, then print {COMPLETION_MARKER} on its own line."
)
_READ_CHUNK_BYTES = 65_536
_STDERR_TAIL_BYTES = 8_192
_READER_DRAIN_SECONDS = 1.0


class RunObserver(Protocol):
    """Receives run boundaries and events as they happen."""

    def run_started(self, run: Run) -> None: ...

    def event(self, run: Run, event: Event) -> None: ...

    def run_finished(self, run: Run) -> None: ...


@dataclass(slots=True)
class _StreamState:
    events: list[Event] = field(default_factory=list)
    bytes_seen: int = 0
    truncated: bool = False


async def terminate_process(process: asyncio.subprocess.Process, *, grace_seconds: float) -> None:
    """Send a graceful stop signal, then kill once the grace period expires."""

    if process.returncode is not None:
        return
    try:
        process.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(process.wait(), timeout=grace_seconds)
    except TimeoutError:
        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()


class CLIBridge:
    """Invokes one tool per call and normalizes its output into events."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        retry_base_seconds: float = 2.0,
        retry_max_seconds: float = 60.0,
        grace_seconds: float = 2.0,
        max_output_bytes: int = 4_000_000,
        continuation_enabled: bool = True,
        observer: RunObserver | None = None,
        shutdown: asyncio.Event | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        env: dict[str, str] | None = None,
    ) -> None:
        self.retry_base_seconds = retry_base_seconds
        self.retry_max_seconds = retry_max_seconds
        self.grace_seconds = grace_seconds
        self.max_output_bytes = max_output_bytes
        self.continuation_enabled = continuation_enabled
        self.observer = observer
        self.shutdown = shutdown
        self._sleep = sleep
        self.env = env

    def retry_delay(self, retry_number: int) -> float:
        """Backoff before retry ``retry_number`` (1-based): doubling, capped."""

        return min(
            self.retry_max_seconds,
            self.retry_base_seconds * (2 ** max(retry_number - 1, 0)),
        )

    async def run(  # noqa: PLR0913
        self,
        descriptor: ToolDescriptor,
        prompt: str,
        *,
        task_id: str,
        cwd: Path,
        timeout_seconds: float | None = None,
        first_attempt: int = 1,
    ) -> BridgeResult:
        """Invoke the tool until it succeeds, fails for good, or is interrupted."""

        runs: list[Run] = []
        events: list[Event] = []
        attempt = first_attempt
        retries_used = 0
        continued = False
        current_prompt = prompt
        kind = RunKind.INITIAL

        while True:
            result = await self.invoke_once(
                descriptor,
                current_prompt,
                task_id=task_id,
                cwd=cwd,
                timeout_seconds=timeout_seconds,
                attempt=attempt,
                kind=kind,
            )
            runs.append(result.run)
            events.extend(result.events)

            if result.cancelled:
                return BridgeResult(
                    runs=runs,
                    events=events,
                    outcome=Outcome.FAILURE,
                    cancelled=True,
                    error_message="Interrupted before the tool finished.",
                )

            reason = _first_blocked_reason(result.events)
            if reason is not None:
                return BridgeResult(
                    runs=runs,
                    events=events,
                    outcome=Outcome.FAILURE,
                    blocked_reason=reason,
                    error_message=f"Agent reported blocked: {reason}",
                )

            try:
                _require_completion(result)
            except AmbiguousCompletionSignal as ambiguity:
                if self.continuation_enabled and not continued:
                    logger.info(
                        "Task %s: output looks unfinished (%s), sending continuation",
                        task_id,
                        ambiguity,
                    )
                    continued = True
                    current_prompt = CONTINUATION_PROMPT
                    kind = RunKind.CONTINUATION
                    attempt += 1
                    continue
                return BridgeResult(runs=runs, events=events, outcome=Outcome.NEEDS_CONTINUATION)

            if result.outcome == Outcome.SUCCESS:
                return BridgeResult(runs=runs, events=events, outcome=Outcome.SUCCESS)

            if result.retryable and retries_used < descriptor.retry_budget:
                retries_used += 1
                delay = self.retry_delay(retries_used)
                logger.warning(
                    "Task %s: %s run %d ended with %s, retry %d/%d in %.1fs",
                    task_id,
                    descriptor.name,
                    attempt,
                    result.outcome.value,
                    retries_used,
                    descriptor.retry_budget,
                    delay,
                )
                if await self._backoff(delay):
                    return BridgeResult(
                        runs=runs,
                        events=events,
                        outcome=Outcome.FAILURE,
                        cancelled=True,
                        error_message="Interrupted during retry backoff.",
                    )
                kind = RunKind.RETRY
                attempt += 1
                continue

            return BridgeResult(
                runs=runs,
                events=events,
                outcome=result.outcome,
                retries_exhausted=result.retryable,
                error_message=_failure_message(descriptor, result, timeout_seconds),
            )

    async def invoke_once(  # noqa: PLR0913
        self,
        descriptor: ToolDescriptor,
        prompt: str,
        *,
        task_id: str,
        cwd: Path,
        timeout_seconds: float | None = None,
        attempt: int = 1,
        kind: RunKind = RunKind.INITIAL,
    ) -> InvocationResult:
        """Run the tool once as a single subprocess."""

        timeout = timeout_seconds if timeout_seconds is not None else descriptor.timeout_seconds
        run = Run(
            task_id=task_id,
            tool_name=descriptor.name,
            attempt=attempt,
            kind=kind,
            started_at=utc_now(),
        )
        if self.observer is not None:
            self.observer.run_started(run)

        try:
            argv = descriptor.build_argv(prompt)
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(cwd),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.env or default_environment(),
            )
        except FileNotFoundError as error:
            return self._spawn_failed(run, f"Command not found: {error.filename or descriptor.executable}", False)
        except RulebookError as error:
            return self._spawn_failed(run, error.message, False)
        except OSError as error:
            return self._spawn_failed(run, f"Failed to start {descriptor.name}: {error}", True)

        logger.debug("Task %s: started %s pid=%s attempt=%d", task_id, descriptor.name, process.pid, attempt)
        state = _StreamState()
        stderr_tail: deque[bytes] = deque()
        stdout_reader = asyncio.create_task(self._consume_stdout(process, run, descriptor, state))
        stderr_reader = asyncio.create_task(_drain_tail(process.stderr, stderr_tail))
        shutdown_waiter = asyncio.create_task(self.shutdown.wait()) if self.shutdown is not None else None

        timed_out = False
        cancelled = False
        try:
            waiters: set[asyncio.Task] = {stdout_reader}
            if shutdown_waiter is not None:
                waiters.add(shutdown_waiter)
            done, _ = await asyncio.wait(
                waiters,
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if stdout_reader in done:
                await _wait_or_terminate(process, self.grace_seconds)
            elif shutdown_waiter is not None and shutdown_waiter in done:
                cancelled = True
                logger.warning("Task %s: shutdown requested, stopping %s", task_id, descriptor.name)
                await terminate_process(process, grace_seconds=self.grace_seconds)
            else:
                timed_out = True
                logger.warning(
                    "Task %s: %s exceeded %.0fs timeout, terminating",
                    task_id,
                    descriptor.name,
                    timeout,
                )
                await terminate_process(process, grace_seconds=self.grace_seconds)
        finally:
            if process.returncode is None:
                await terminate_process(process, grace_seconds=self.grace_seconds)
            if shutdown_waiter is not None:
                shutdown_waiter.cancel()
            await _settle_readers((stdout_reader, stderr_reader))

        stderr_text = b"".join(stderr_tail).decode("utf-8", errors="replace")
        exit_code = process.returncode
        if cancelled:
            finished = run.finish(
                outcome=Outcome.FAILURE,
                exit_code=exit_code,
                event_count=len(state.events),
                truncated=state.truncated,
                detail="interrupted",
            )
            self._notify_finished(finished)
            return InvocationResult(
                run=finished,
                events=state.events,
                outcome=Outcome.FAILURE,
                exit_code=exit_code,
                timed_out=False,
                retryable=False,
                stderr_tail=stderr_text,
                cancelled=True,
            )

        assessment = assess_outcome(
            state.events,
            exit_code=exit_code,
            timed_out=timed_out,
            prompt=prompt,
            stderr_tail=stderr_text,
        )
        finished = run.finish(
            outcome=assessment.outcome,
            exit_code=exit_code,
            event_count=len(state.events),
            truncated=state.truncated,
            detail=", ".join(assessment.reasons) or None,
        )
        self._notify_finished(finished)
        return InvocationResult(
            run=finished,
            events=state.events,
            outcome=assessment.outcome,
            exit_code=exit_code,
            timed_out=timed_out,
            retryable=assessment.retryable,
            stderr_tail=stderr_text,
            continuation_reasons=(
                assessment.reasons if assessment.outcome == Outcome.NEEDS_CONTINUATION else ()
            ),
        )

    async def _consume_stdout(
        self,
        process: asyncio.subprocess.Process,
        run: Run,
        descriptor: ToolDescriptor,
        state: _StreamState,
    ) -> None:
        stream = process.stdout
        if stream is None:
            return
        parser = PARSERS[descriptor.output_format]
        pending = b""
        while True:
            chunk = await stream.read(_READ_CHUNK_BYTES)
            if not chunk:
                break
            if state.truncated:
                continue
            pending += chunk
            *lines, pending = pending.split(b"\n")
            for raw in lines:
                if not self._accept(run, state, raw):
                    break
                self._emit_line(run, raw, parser, descriptor, state)
            # An unterminated line counts against the cap while it is buffered.
            if not state.truncated and state.bytes_seen + len(pending) > self.max_output_bytes:
                self._accept(run, state, pending)
            if state.truncated:
                pending = b""
        if pending and not state.truncated and self._accept(run, state, pending):
            self._emit_line(run, pending, parser, descriptor, state)

    def _accept(self, run: Run, state: _StreamState, raw: bytes) -> bool:
        state.bytes_seen += len(raw) + 1
        if state.bytes_seen <= self.max_output_bytes:
            return True
        state.truncated = True
        self._emit(
            run,
            state,
            Event(
                kind=EventKind.TRUNCATED,
                payload={"limit_bytes": self.max_output_bytes, "bytes_seen": state.bytes_seen},
            ),
        )
        return False

    def _emit_line(  # noqa: PLR0913
        self,
        run: Run,
        raw: bytes,
        parser: LineParser,
        descriptor: ToolDescriptor,
        state: _StreamState,
    ) -> None:
        line = raw.decode("utf-8", errors="replace")
        for event in parser(line, descriptor.markers):
            self._emit(run, state, event)

    def _emit(self, run: Run, state: _StreamState, event: Event) -> None:
        state.events.append(event)
        if self.observer is not None:
            self.observer.event(run, event)

    def _spawn_failed(self, run: Run, message: str, transient: bool) -> InvocationResult:
        logger.error("Task %s: %s", run.task_id, message)
        finished = run.finish(
            outcome=Outcome.FAILURE,
            exit_code=None,
            event_count=0,
            truncated=False,
            detail=message,
        )
        self._notify_finished(finished)
        return InvocationResult(
            run=finished,
            events=[],
            outcome=Outcome.FAILURE,
            exit_code=None,
            timed_out=False,
            retryable=transient,
            stderr_tail=message,
        )

    def _notify_finished(self, run: Run) -> None:
        if self.observer is not None:
            self.observer.run_finished(run)

    async def _backoff(self, delay: float) -> bool:
        """Sleep for ``delay``; return True if shutdown was requested meanwhile."""

        if self._sleep is not None:
            await self._sleep(delay)
            return self.shutdown is not None and self.shutdown.is_set()
        if self.shutdown is None:
            await asyncio.sleep(delay)
            return False
        try:
            await asyncio.wait_for(self.shutdown.wait(), timeout=delay)
        except TimeoutError:
            return False
        return True


async def _wait_or_terminate(process: asyncio.subprocess.Process, grace_seconds: float) -> None:
    # stdout closed; the process normally exits right after.
    try:
        await asyncio.wait_for(process.wait(), timeout=max(grace_seconds, 0.1))
    except TimeoutError:
        await terminate_process(process, grace_seconds=grace_seconds)


async def _drain_tail(stream: asyncio.StreamReader | None, tail: deque[bytes]) -> None:
    if stream is None:
        return
    size = 0
    while True:
        chunk = await stream.read(_READ_CHUNK_BYTES)
        if not chunk:
            return
        tail.append(chunk)
        size += len(chunk)
        while size > _STDERR_TAIL_BYTES and len(tail) > 1:
            size -= len(tail.popleft())


async def _settle_readers(readers: tuple[asyncio.Task, ...]) -> None:
    _, pending = await asyncio.wait(readers, timeout=_READER_DRAIN_SECONDS)
    for reader in pending:
        reader.cancel()
    for reader in pending:
        with contextlib.suppress(asyncio.CancelledError):
            await reader
    for reader in readers:
        if reader.cancelled():
            continue
        error = reader.exception()
        if error is not None:
            raise error


def _first_blocked_reason(events: list[Event]) -> str | None:
    for event in events:
        reason = blocked_reason(event)
        if reason is not None:
            return reason
    return None


def _require_completion(result: InvocationResult) -> None:
    if result.outcome == Outcome.NEEDS_CONTINUATION:
        raise AmbiguousCompletionSignal(result.continuation_reasons)


def _failure_message(
    descriptor: ToolDescriptor,
    result: InvocationResult,
    timeout_seconds: float | None,
) -> str:
    if result.outcome == Outcome.TIMEOUT:
        timeout = timeout_seconds if timeout_seconds is not None else descriptor.timeout_seconds
        return f"{descriptor.name} timed out after {timeout:g}s."
    detail = result.run.detail or "no detail"
    stderr = result.stderr_tail.strip().splitlines()
    suffix = f"; stderr: {stderr[-1][:200]}" if stderr else ""
    return f"{descriptor.name} failed (exit code {result.exit_code}, {detail}){suffix}."
