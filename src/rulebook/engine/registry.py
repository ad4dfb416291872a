"""Known CLI tools, availability probing and tool selection."""

from __future__ import annotations

import asyncio
import logging
import shlex
from dataclasses import dataclass, replace

from rulebook.config import ToolSettings
from rulebook.engine.bridge import terminate_process
from rulebook.engine.models import OutputFormat, ToolDescriptor
from rulebook.errors import ToolNotAvailableError

logger = logging.getLogger(__name__)

DEFAULT_DESCRIPTORS: tuple[ToolDescriptor, ...] = (
    ToolDescriptor(
        name="cursor-agent",
        executable="cursor-agent",
        command_template=(
            "cursor-agent -p --force --approve-mcps "
            "--output-format stream-json --stream-partial-output {prompt}"
        ),
        output_format=OutputFormat.LINE_DELIMITED_STRUCTURED,
        timeout_seconds=1_800,
    ),
    ToolDescriptor(
        name="claude-code",
        executable="claude",
        command_template="claude --headless {prompt}",
        output_format=OutputFormat.LITERAL_MARKER_TEXT,
        timeout_seconds=30,
    ),
    ToolDescriptor(
        name="gemini-cli",
        executable="gemini",
        command_template="gemini {prompt}",
        output_format=OutputFormat.LITERAL_MARKER_TEXT,
        timeout_seconds=30,
    ),
)


@dataclass(slots=True, frozen=True)
class ToolAvailability:
    """Probe result for one tool."""

    name: str
    available: bool
    version: str | None = None
    error: str | None = None


class CLIToolRegistry:
    """Fixed-priority catalogue of CLI tools with cached detection.

    Detection runs each descriptor's probe once; the result is reused for
    the lifetime of the registry.
    """

    def __init__(
        self,
        descriptors: tuple[ToolDescriptor, ...] = DEFAULT_DESCRIPTORS,
        *,
        probe_timeout_seconds: float = 5.0,
    ) -> None:
        self._descriptors = {descriptor.name: descriptor for descriptor in descriptors}
        self._priority = tuple(descriptor.name for descriptor in descriptors)
        self.probe_timeout_seconds = probe_timeout_seconds
        self._detected: dict[str, ToolAvailability] | None = None
        self._detect_lock: asyncio.Lock | None = None
        self._lock_loop: asyncio.AbstractEventLoop | None = None

    @classmethod
    def from_settings(
        cls,
        settings: ToolSettings,
        *,
        retry_budget: int,
        descriptors: tuple[ToolDescriptor, ...] = DEFAULT_DESCRIPTORS,
    ) -> CLIToolRegistry:
        """Apply enabled-tool, timeout and command template overrides."""

        resolved: list[ToolDescriptor] = []
        for descriptor in descriptors:
            if descriptor.name not in settings.enabled:
                continue
            template = settings.command_templates.get(descriptor.name, descriptor.command_template)
            resolved.append(
                replace(
                    descriptor,
                    command_template=template,
                    executable=_template_executable(template, descriptor.executable),
                    timeout_seconds=settings.timeouts.get(descriptor.name, descriptor.timeout_seconds),
                    retry_budget=retry_budget,
                ),
            )
        return cls(tuple(resolved), probe_timeout_seconds=settings.probe_timeout_seconds)

    @property
    def names(self) -> tuple[str, ...]:
        return self._priority

    def describe(self, name: str) -> ToolDescriptor:
        try:
            return self._descriptors[name]
        except KeyError as error:
            raise ToolNotAvailableError(
                f"Unknown or disabled tool {name!r}. Known tools: {', '.join(self._priority) or 'none'}.",
            ) from error

    async def detect(self) -> dict[str, ToolAvailability]:
        """Probe every tool concurrently; cached after the first call."""

        async with self._lock_for_running_loop():
            if self._detected is None:
                results = await asyncio.gather(
                    *(self._probe(self._descriptors[name]) for name in self._priority),
                )
                self._detected = {result.name: result for result in results}
                logger.info(
                    "Tool detection: %s",
                    ", ".join(f"{r.name}={'yes' if r.available else 'no'}" for r in results) or "none",
                )
        return dict(self._detected)

    def _lock_for_running_loop(self) -> asyncio.Lock:
        loop = asyncio.get_running_loop()
        if self._detect_lock is None or self._lock_loop is not loop:
            self._detect_lock = asyncio.Lock()
            self._lock_loop = loop
        return self._detect_lock

    async def select(self, preferred: str | None = None) -> ToolDescriptor:
        """Preferred tool when available, else the first available by priority."""

        detected = await self.detect()
        if preferred is not None:
            self.describe(preferred)
            if detected[preferred].available:
                return self._descriptors[preferred]
            logger.warning("Preferred tool %s is not available, falling back", preferred)
        for name in self._priority:
            if detected[name].available:
                return self._descriptors[name]
        raise ToolNotAvailableError("No supported CLI tool is available on this machine.")

    async def _probe(self, descriptor: ToolDescriptor) -> ToolAvailability:
        try:
            process = await asyncio.create_subprocess_exec(
                *descriptor.probe_command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as error:
            return ToolAvailability(name=descriptor.name, available=False, error=str(error))

        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), self.probe_timeout_seconds)
        except TimeoutError:
            await terminate_process(process, grace_seconds=1.0)
            return ToolAvailability(
                name=descriptor.name,
                available=False,
                error=f"probe timed out after {self.probe_timeout_seconds:g}s",
            )

        if process.returncode != 0:
            return ToolAvailability(
                name=descriptor.name,
                available=False,
                error=f"probe exited with {process.returncode}",
            )
        version = stdout.decode("utf-8", errors="replace").strip().splitlines()
        return ToolAvailability(
            name=descriptor.name,
            available=True,
            version=version[0] if version else None,
        )


def _template_executable(template: str, fallback: str) -> str:
    try:
        head = shlex.split(template)
    except ValueError:
        return fallback
    return head[0] if head else fallback
