from __future__ import annotations

import asyncio
import json
import time
from pathlib import Path

import allure
import pytest

from rulebook.engine.bridge import CONTINUATION_PROMPT, CLIBridge
from rulebook.engine.models import (
    Event,
    EventKind,
    Outcome,
    OutputFormat,
    Run,
    RunKind,
    ToolDescriptor,
)
from rulebook.errors import SubprocessFailureError, SubprocessTimeoutError

pytestmark = [
    allure.epic("Execution Engine"),
    allure.feature("CLI Bridge"),
]

_PROMPT = "Implement the login endpoint and cover it with tests."


class _RecordingObserver:
    def __init__(self) -> None:
        self.started: list[Run] = []
        self.events: list[Event] = []
        self.finished: list[Run] = []

    def run_started(self, run: Run) -> None:
        self.started.append(run)

    def event(self, run: Run, event: Event) -> None:
        self.events.append(event)

    def run_finished(self, run: Run) -> None:
        self.finished.append(run)


def _bridge(sleeps: list[float] | None = None, **overrides) -> CLIBridge:
    async def _sleep(delay: float) -> None:
        if sleeps is not None:
            sleeps.append(delay)

    options = {
        "retry_base_seconds": 0.01,
        "retry_max_seconds": 0.03,
        "grace_seconds": 0.3,
        "sleep": _sleep,
    }
    options.update(overrides)
    return CLIBridge(**options)


@pytest.mark.asyncio
async def test_completion_marker_ends_run_after_one_invocation(
    tmp_path: Path,
    agent_script,
    stub_tool,
    played_prompts,
) -> None:
    script = agent_script({"lines": ["🔧 Tool: edit src/auth.py", "Added the endpoint.", "TASK COMPLETE"]})
    observer = _RecordingObserver()
    bridge = _bridge(observer=observer)

    result = await bridge.run(stub_tool(script), _PROMPT, task_id="add-user-auth", cwd=tmp_path)

    assert result.outcome == Outcome.SUCCESS
    assert len(result.runs) == 1
    assert result.runs[0].kind == RunKind.INITIAL
    assert result.runs[0].exit_code == 0
    assert [event.kind for event in result.events] == [
        EventKind.TOOL_CALL_STARTED,
        EventKind.ASSISTANT,
        EventKind.DONE,
    ]
    assert played_prompts(script) == [_PROMPT]
    assert [run.run_id for run in observer.started] == [run.run_id for run in observer.finished]
    assert len(observer.events) == 3
    assert result.error("add-user-auth") is None


@pytest.mark.asyncio
async def test_structured_output_is_parsed_line_by_line(tmp_path: Path, agent_script, stub_tool) -> None:
    script = agent_script(
        {
            "lines": [
                json.dumps({"type": "system", "subtype": "init", "session_id": "s-1"}),
                json.dumps({"type": "tool_call", "subtype": "started", "tool_call": {"writeToolCall": {}}}),
                "not json at all",
                json.dumps({"type": "result", "subtype": "success", "result": "done"}),
            ],
        },
    )
    descriptor = stub_tool(script, name="cursor-agent", output_format=OutputFormat.LINE_DELIMITED_STRUCTURED)

    result = await _bridge().run(descriptor, _PROMPT, task_id="add-user-auth", cwd=tmp_path)

    assert result.outcome == Outcome.SUCCESS
    assert [event.kind for event in result.events] == [
        EventKind.SYSTEM_INIT,
        EventKind.TOOL_CALL_STARTED,
        EventKind.WARNING,
        EventKind.DONE,
    ]


@pytest.mark.asyncio
async def test_timeout_terminates_process_within_grace(tmp_path: Path, agent_script, stub_tool) -> None:
    script = agent_script({"lines": ["Starting work"], "sleep": 30})
    descriptor = stub_tool(script, retry_budget=0)
    bridge = _bridge(grace_seconds=0.5)

    started = time.monotonic()
    result = await bridge.run(
        descriptor,
        _PROMPT,
        task_id="add-user-auth",
        cwd=tmp_path,
        timeout_seconds=1,
    )
    elapsed = time.monotonic() - started

    assert result.outcome == Outcome.TIMEOUT
    assert elapsed < 1 + 0.5 + 2.0
    assert result.runs[0].exit_code is not None
    assert result.retries_exhausted is True
    assert isinstance(result.error("add-user-auth"), SubprocessTimeoutError)


@pytest.mark.asyncio
async def test_transient_failures_retry_with_non_decreasing_backoff(
    tmp_path: Path,
    agent_script,
    stub_tool,
) -> None:
    script = agent_script({"lines": [], "stderr": "connection reset by peer", "exit_code": 1})
    sleeps: list[float] = []

    result = await _bridge(sleeps).run(stub_tool(script, retry_budget=3), _PROMPT, task_id="t", cwd=tmp_path)

    assert result.outcome == Outcome.FAILURE
    assert result.retries_exhausted is True
    assert len(result.runs) == 4
    assert [run.kind for run in result.runs] == [
        RunKind.INITIAL,
        RunKind.RETRY,
        RunKind.RETRY,
        RunKind.RETRY,
    ]
    assert [run.attempt for run in result.runs] == [1, 2, 3, 4]
    assert sleeps == [0.01, 0.02, 0.03]
    assert sleeps == sorted(sleeps)
    error = result.error("t")
    assert isinstance(error, SubprocessFailureError)
    assert "connection reset by peer" in error.message


@pytest.mark.asyncio
async def test_transient_failure_then_success(tmp_path: Path, agent_script, stub_tool) -> None:
    script = agent_script(
        {"stderr": "429 too many requests", "exit_code": 1},
        {"lines": ["🔧 Tool: edit", "TASK COMPLETE"]},
    )

    result = await _bridge().run(stub_tool(script), _PROMPT, task_id="t", cwd=tmp_path)

    assert result.outcome == Outcome.SUCCESS
    assert [run.outcome for run in result.runs] == [Outcome.FAILURE, Outcome.SUCCESS]


@pytest.mark.asyncio
async def test_network_failure_mentioning_auth_is_retried(tmp_path: Path, agent_script, stub_tool) -> None:
    script = agent_script(
        {"stderr": "connection reset while refreshing authentication", "exit_code": 1},
        {"lines": ["🔧 Tool: edit", "TASK COMPLETE"]},
    )
    sleeps: list[float] = []

    result = await _bridge(sleeps).run(stub_tool(script), _PROMPT, task_id="t", cwd=tmp_path)

    assert result.outcome == Outcome.SUCCESS
    assert [run.kind for run in result.runs] == [RunKind.INITIAL, RunKind.RETRY]
    assert sleeps == [0.01]


@pytest.mark.asyncio
async def test_permanent_failure_is_not_retried(tmp_path: Path, agent_script, stub_tool) -> None:
    script = agent_script({"stderr": "Quota exceeded for this project", "exit_code": 1})
    sleeps: list[float] = []

    result = await _bridge(sleeps).run(stub_tool(script), _PROMPT, task_id="t", cwd=tmp_path)

    assert result.outcome == Outcome.FAILURE
    assert len(result.runs) == 1
    assert result.retries_exhausted is False
    assert sleeps == []


@pytest.mark.asyncio
async def test_error_event_is_not_retried(tmp_path: Path, agent_script, stub_tool) -> None:
    script = agent_script({"lines": ["❌ tests failed"], "exit_code": 1})

    result = await _bridge().run(stub_tool(script), _PROMPT, task_id="t", cwd=tmp_path)

    assert result.outcome == Outcome.FAILURE
    assert len(result.runs) == 1


@pytest.mark.asyncio
async def test_ambiguous_exit_gets_exactly_one_continuation(
    tmp_path: Path,
    agent_script,
    stub_tool,
    played_prompts,
) -> None:
    script = agent_script(
        {"lines": ["🔧 Tool: edit", "I updated the handler and now I am"]},
        {"lines": ["🔧 Tool: edit", "Finished the remaining items.", "TASK COMPLETE"]},
    )

    result = await _bridge().run(stub_tool(script), _PROMPT, task_id="t", cwd=tmp_path)

    assert result.outcome == Outcome.SUCCESS
    assert [run.kind for run in result.runs] == [RunKind.INITIAL, RunKind.CONTINUATION]
    assert played_prompts(script) == [_PROMPT, CONTINUATION_PROMPT]


@pytest.mark.asyncio
async def test_second_ambiguous_exit_returns_needs_continuation(
    tmp_path: Path,
    agent_script,
    stub_tool,
) -> None:
    script = agent_script({"lines": ["🔧 Tool: edit", "still working on the"]})

    result = await _bridge().run(stub_tool(script), _PROMPT, task_id="t", cwd=tmp_path)

    assert result.outcome == Outcome.NEEDS_CONTINUATION
    assert len(result.runs) == 2
    assert result.error("t") is None


@pytest.mark.asyncio
async def test_continuation_does_not_consume_retry_budget(
    tmp_path: Path,
    agent_script,
    stub_tool,
) -> None:
    script = agent_script(
        {"lines": ["🔧 Tool: edit", "I updated the handler and now I am"]},
        {"stderr": "temporarily unavailable", "exit_code": 1},
        {"lines": ["TASK COMPLETE"]},
    )

    result = await _bridge().run(stub_tool(script, retry_budget=1), _PROMPT, task_id="t", cwd=tmp_path)

    assert result.outcome == Outcome.SUCCESS
    assert [run.kind for run in result.runs] == [RunKind.INITIAL, RunKind.CONTINUATION, RunKind.RETRY]


@pytest.mark.asyncio
async def test_continuation_can_be_disabled(tmp_path: Path, agent_script, stub_tool) -> None:
    script = agent_script({"lines": ["🔧 Tool: edit", "I updated the handler and now I am"]})

    result = await _bridge(continuation_enabled=False).run(
        stub_tool(script),
        _PROMPT,
        task_id="t",
        cwd=tmp_path,
    )

    assert result.outcome == Outcome.NEEDS_CONTINUATION
    assert len(result.runs) == 1


@pytest.mark.asyncio
async def test_blocked_marker_stops_without_retry(tmp_path: Path, agent_script, stub_tool) -> None:
    script = agent_script({"lines": ["Checked the config.", "BLOCKED: missing database credentials"]})

    result = await _bridge().run(stub_tool(script), _PROMPT, task_id="t", cwd=tmp_path)

    assert result.outcome == Outcome.FAILURE
    assert result.blocked_reason == "missing database credentials"
    assert len(result.runs) == 1


@pytest.mark.asyncio
async def test_output_over_limit_is_truncated_once(tmp_path: Path, agent_script, stub_tool) -> None:
    script = agent_script({"lines": [f"🔧 Tool: step {index}" for index in range(200)] + ["TASK COMPLETE"]})

    result = await _bridge(max_output_bytes=500).run(stub_tool(script), _PROMPT, task_id="t", cwd=tmp_path)

    kinds = [event.kind for event in result.events]
    assert kinds.count(EventKind.TRUNCATED) == 1
    assert kinds[-1] == EventKind.TRUNCATED
    assert EventKind.DONE not in kinds
    assert result.runs[0].truncated is True
    assert result.runs[0].exit_code == 0


class _StopOnTruncation(_RecordingObserver):
    def __init__(self, shutdown: asyncio.Event) -> None:
        super().__init__()
        self.shutdown = shutdown

    def event(self, run: Run, event: Event) -> None:
        super().event(run, event)
        if event.kind == EventKind.TRUNCATED:
            self.shutdown.set()


@pytest.mark.asyncio
async def test_unterminated_line_over_limit_is_truncated_while_streaming(
    tmp_path: Path,
    agent_script,
    stub_tool,
) -> None:
    script = agent_script({"partial": "x" * 2_000_000, "sleep": 30})
    shutdown = asyncio.Event()
    observer = _StopOnTruncation(shutdown)
    bridge = _bridge(max_output_bytes=500, observer=observer, shutdown=shutdown)

    started = time.monotonic()
    result = await bridge.run(stub_tool(script, timeout_seconds=20), _PROMPT, task_id="t", cwd=tmp_path)

    assert time.monotonic() - started < 10
    assert [event.kind for event in observer.events] == [EventKind.TRUNCATED]
    assert result.cancelled is True
    assert result.runs[0].truncated is True


@pytest.mark.asyncio
async def test_missing_executable_is_not_retryable(tmp_path: Path) -> None:
    descriptor = ToolDescriptor(
        name="gemini-cli",
        executable="rulebook-missing-tool",
        command_template="rulebook-missing-tool {prompt}",
        output_format=OutputFormat.LITERAL_MARKER_TEXT,
        timeout_seconds=5,
    )
    sleeps: list[float] = []

    result = await _bridge(sleeps).run(descriptor, _PROMPT, task_id="t", cwd=tmp_path)

    assert result.outcome == Outcome.FAILURE
    assert len(result.runs) == 1
    assert result.runs[0].exit_code is None
    assert "Command not found" in (result.runs[0].detail or "")
    assert sleeps == []


@pytest.mark.asyncio
async def test_shutdown_cancels_in_flight_run(tmp_path: Path, agent_script, stub_tool) -> None:
    script = agent_script({"lines": ["Starting work"], "sleep": 30})
    shutdown = asyncio.Event()
    bridge = _bridge(shutdown=shutdown)
    asyncio.get_running_loop().call_later(0.5, shutdown.set)

    started = time.monotonic()
    result = await bridge.run(stub_tool(script), _PROMPT, task_id="t", cwd=tmp_path)

    assert result.cancelled is True
    assert result.outcome == Outcome.FAILURE
    assert time.monotonic() - started < 5


def test_retry_delay_doubles_and_caps() -> None:
    bridge = CLIBridge(retry_base_seconds=2.0, retry_max_seconds=10.0)

    assert [bridge.retry_delay(n) for n in range(1, 6)] == [2.0, 4.0, 8.0, 10.0, 10.0]
