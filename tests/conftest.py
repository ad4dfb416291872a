"""Shared test fixtures."""

from __future__ import annotations

import json
import shlex
import sys
from collections.abc import Callable
from pathlib import Path

import pytest

from rulebook.config import EngineSettings, Settings
from rulebook.engine.bridge import CLIBridge
from rulebook.engine.models import OutputFormat, ToolDescriptor
from rulebook.engine.orchestrator import AgentOrchestrator
from rulebook.engine.registry import CLIToolRegistry
from rulebook.services import TaskServices, build_task_services
from rulebook.tasks.models import Task, TaskDraft

VALID_PROPOSAL = """\
# Proposal: Add user auth

## Why
Users need to sign in before they can manage their own projects.

## What Changes
- Add a login endpoint backed by the existing user table.
"""

VALID_CHECKLIST = """\
## 1. Implementation
- [ ] 1.1 Add login endpoint
- [ ] 1.2 Cover it with tests
"""

VALID_SPEC = """\
## ADDED Requirements

### Requirement: Login
The system SHALL authenticate users with email and password.

#### Scenario: Successful login
- **Given** a registered user
- **When** they submit valid credentials
- **Then** a session is created
"""

STUB_AGENT_MODULE = "rulebook.engine.backend.stub_agent"


def _stub_command(script: Path) -> str:
    return (
        f"{shlex.quote(sys.executable)} -m {STUB_AGENT_MODULE} "
        f"--script {shlex.quote(str(script))} {{prompt}}"
    )


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(root=tmp_path / ".rulebook")


@pytest.fixture()
def services(settings: Settings):
    built = build_task_services(settings)
    yield built
    built.log.close()


@pytest.fixture()
def make_task(services: TaskServices) -> Callable[..., Task]:
    """Create a task whose content passes validation."""

    def _make(task_id: str, *, dependencies: tuple[str, ...] = (), title: str | None = None) -> Task:
        return services.store.create(
            task_id,
            TaskDraft(
                title=title,
                proposal=VALID_PROPOSAL,
                checklist=VALID_CHECKLIST,
                specs={"auth": VALID_SPEC},
                dependencies=frozenset(dependencies),
            ),
        )

    return _make


@pytest.fixture()
def agent_script(tmp_path: Path) -> Callable[..., Path]:
    """Write a stub agent script; each entry of ``runs`` is played by one invocation."""

    counter = {"value": 0}

    def _write(*runs: dict) -> Path:
        counter["value"] += 1
        path = tmp_path / f"agent-script-{counter['value']}.json"
        path.write_text(json.dumps({"runs": list(runs)}), "utf-8")
        return path

    return _write


def _played_prompts(script: Path) -> list[str]:
    prompts_path = script.with_name(f"{script.name}.prompts.jsonl")
    if not prompts_path.exists():
        return []
    return [
        json.loads(line)["prompt"]
        for line in prompts_path.read_text("utf-8").splitlines()
        if line.strip()
    ]


@pytest.fixture()
def stub_tool() -> Callable[..., ToolDescriptor]:
    def _descriptor(
        script: Path,
        *,
        name: str = "claude-code",
        output_format: OutputFormat = OutputFormat.LITERAL_MARKER_TEXT,
        timeout_seconds: int = 20,
        retry_budget: int = 3,
    ) -> ToolDescriptor:
        return ToolDescriptor(
            name=name,
            executable=sys.executable,
            command_template=_stub_command(script),
            output_format=output_format,
            timeout_seconds=timeout_seconds,
            retry_budget=retry_budget,
        )

    return _descriptor


@pytest.fixture()
def make_orchestrator(services: TaskServices, tmp_path: Path) -> Callable[..., AgentOrchestrator]:
    """Orchestrator over the shared services with fast retries and a recording sleep."""

    def _make(
        descriptor: ToolDescriptor,
        *,
        max_iterations: int = 3,
        max_parallel_tasks: int = 1,
        continuation_enabled: bool = True,
        sleeps: list[float] | None = None,
    ) -> AgentOrchestrator:
        async def _sleep(delay: float) -> None:
            if sleeps is not None:
                sleeps.append(delay)

        bridge = CLIBridge(
            retry_base_seconds=0.01,
            retry_max_seconds=0.05,
            grace_seconds=0.5,
            max_output_bytes=1_000_000,
            continuation_enabled=continuation_enabled,
            observer=services.log,
            sleep=_sleep,
        )
        return AgentOrchestrator(
            store=services.store,
            lifecycle=services.lifecycle,
            registry=CLIToolRegistry((descriptor,)),
            bridge=bridge,
            log=services.log,
            locks=services.locks,
            settings=EngineSettings(
                max_iterations=max_iterations,
                max_parallel_tasks=max_parallel_tasks,
                retry_budget=descriptor.retry_budget,
            ),
            workdir=tmp_path,
        )

    return _make


@pytest.fixture()
def played_prompts() -> Callable[[Path], list[str]]:
    """Prompts the stub agent received for a script, in invocation order."""

    return _played_prompts


@pytest.fixture()
def stub_command() -> Callable[[Path], str]:
    """Command template that plays a script through the stub agent."""

    return _stub_command
