from __future__ import annotations

import asyncio
import sys

import allure
import pytest

from rulebook.config import ToolSettings
from rulebook.engine.models import OutputFormat, ToolDescriptor
from rulebook.engine.registry import DEFAULT_DESCRIPTORS, CLIToolRegistry, ToolAvailability
from rulebook.errors import ToolNotAvailableError

pytestmark = [
    allure.epic("Execution Engine"),
    allure.feature("Tool Registry"),
]


def _descriptor(name: str, executable: str, *, probe_args: tuple[str, ...] = ("--version",)) -> ToolDescriptor:
    return ToolDescriptor(
        name=name,
        executable=executable,
        command_template=f"{executable} {{prompt}}",
        output_format=OutputFormat.LITERAL_MARKER_TEXT,
        timeout_seconds=30,
        probe_args=probe_args,
    )


@pytest.mark.asyncio
async def test_detect_probes_each_tool() -> None:
    registry = CLIToolRegistry(
        (
            _descriptor("cursor-agent", "rulebook-missing-tool"),
            _descriptor("claude-code", sys.executable),
            _descriptor("gemini-cli", sys.executable, probe_args=("-c", "import sys; sys.exit(3)")),
        ),
    )

    detected = await registry.detect()

    assert detected["cursor-agent"].available is False
    assert detected["cursor-agent"].error
    assert detected["claude-code"].available is True
    assert (detected["claude-code"].version or "").startswith("Python")
    assert detected["gemini-cli"].available is False
    assert detected["gemini-cli"].error == "probe exited with 3"


@pytest.mark.asyncio
async def test_probe_timeout_marks_tool_unavailable() -> None:
    registry = CLIToolRegistry(
        (_descriptor("claude-code", sys.executable, probe_args=("-c", "import time; time.sleep(30)")),),
        probe_timeout_seconds=0.5,
    )

    detected = await registry.detect()

    assert detected["claude-code"].available is False
    assert "timed out" in (detected["claude-code"].error or "")


@pytest.mark.asyncio
async def test_detection_is_cached(monkeypatch) -> None:
    registry = CLIToolRegistry((_descriptor("claude-code", sys.executable),))
    calls: list[str] = []

    async def _probe(descriptor: ToolDescriptor) -> ToolAvailability:
        calls.append(descriptor.name)
        return ToolAvailability(name=descriptor.name, available=True, version="1.0")

    monkeypatch.setattr(registry, "_probe", _probe)

    await registry.detect()
    await registry.detect()
    await registry.select()

    assert calls == ["claude-code"]


def test_registry_can_be_reused_across_event_loops(monkeypatch) -> None:
    registry = CLIToolRegistry((_descriptor("claude-code", sys.executable),))
    calls: list[str] = []

    async def _probe(descriptor: ToolDescriptor) -> ToolAvailability:
        calls.append(descriptor.name)
        await asyncio.sleep(0.05)
        if len(calls) <= 2:
            raise RuntimeError("probe interrupted")
        return ToolAvailability(name=descriptor.name, available=True, version="1.0")

    monkeypatch.setattr(registry, "_probe", _probe)

    async def _detect_concurrently(*, return_exceptions: bool) -> list:
        return await asyncio.gather(
            registry.detect(),
            registry.detect(),
            return_exceptions=return_exceptions,
        )

    first = asyncio.run(_detect_concurrently(return_exceptions=True))
    second = asyncio.run(_detect_concurrently(return_exceptions=False))

    assert all(isinstance(result, RuntimeError) for result in first)
    assert [result["claude-code"].available for result in second] == [True, True]
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_select_prefers_requested_tool_then_falls_back() -> None:
    registry = CLIToolRegistry(
        (
            _descriptor("cursor-agent", sys.executable),
            _descriptor("claude-code", sys.executable),
            _descriptor("gemini-cli", "rulebook-missing-tool"),
        ),
    )

    assert (await registry.select()).name == "cursor-agent"
    assert (await registry.select("claude-code")).name == "claude-code"
    assert (await registry.select("gemini-cli")).name == "cursor-agent"


@pytest.mark.asyncio
async def test_select_without_available_tool_raises() -> None:
    registry = CLIToolRegistry((_descriptor("claude-code", "rulebook-missing-tool"),))

    with pytest.raises(ToolNotAvailableError):
        await registry.select()


@pytest.mark.asyncio
async def test_select_unknown_tool_raises() -> None:
    registry = CLIToolRegistry((_descriptor("claude-code", sys.executable),))

    with pytest.raises(ToolNotAvailableError, match="Unknown or disabled tool"):
        await registry.select("cursor-agent")


def test_default_priority_order() -> None:
    registry = CLIToolRegistry()

    assert registry.names == ("cursor-agent", "claude-code", "gemini-cli")
    assert registry.describe("cursor-agent").output_format == OutputFormat.LINE_DELIMITED_STRUCTURED
    assert registry.describe("claude-code").executable == "claude"


def test_from_settings_applies_overrides() -> None:
    settings = ToolSettings(
        enabled=("claude-code", "gemini-cli"),
        timeouts={"gemini-cli": 90},
        command_templates={"claude-code": "'/opt/claude code/bin/claude' -p {prompt}"},
    )

    registry = CLIToolRegistry.from_settings(settings, retry_budget=5, descriptors=DEFAULT_DESCRIPTORS)

    assert registry.names == ("claude-code", "gemini-cli")
    claude = registry.describe("claude-code")
    assert claude.executable == "/opt/claude code/bin/claude"
    assert claude.build_argv("fix it") == ["/opt/claude code/bin/claude", "-p", "fix it"]
    assert claude.retry_budget == 5
    assert registry.describe("gemini-cli").timeout_seconds == 90
    with pytest.raises(ToolNotAvailableError):
        registry.describe("cursor-agent")


def test_build_argv_quotes_prompt_as_single_argument() -> None:
    descriptor = DEFAULT_DESCRIPTORS[0]

    argv = descriptor.build_argv("Fix the bug; rm -rf / && echo 'done'")

    assert argv[0] == "cursor-agent"
    assert argv[-1] == "Fix the bug; rm -rf / && echo 'done'"
    assert "--output-format" in argv


def test_build_argv_requires_prompt_placeholder() -> None:
    descriptor = _descriptor("claude-code", "claude")
    broken = ToolDescriptor(
        name=descriptor.name,
        executable=descriptor.executable,
        command_template="claude --headless",
        output_format=descriptor.output_format,
        timeout_seconds=descriptor.timeout_seconds,
    )

    with pytest.raises(ToolNotAvailableError, match="must include"):
        broken.build_argv("hello")
