"""Runtime configuration for the task store and execution engine."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path

KNOWN_TOOLS: tuple[str, ...] = ("cursor-agent", "claude-code", "gemini-cli")


@dataclass(slots=True, frozen=True)
class EngineSettings:
    """Orchestrator loop and retry policy settings."""

    max_parallel_tasks: int = 1
    max_iterations: int = 10
    retry_budget: int = 3
    retry_base_seconds: float = 2.0
    retry_max_seconds: float = 60.0
    grace_seconds: float = 2.0
    max_output_bytes: int = 4_000_000
    continuation_enabled: bool = True
    lock_timeout_seconds: float = 10.0
    default_tool: str | None = None


@dataclass(slots=True, frozen=True)
class ToolSettings:
    """CLI tool detection and invocation overrides."""

    enabled: tuple[str, ...] = KNOWN_TOOLS
    probe_timeout_seconds: float = 5.0
    timeouts: dict[str, int] = field(default_factory=dict)
    command_templates: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class LogSettings:
    """Execution log retention settings."""

    retention_days: int = 30


@dataclass(slots=True, frozen=True)
class Settings:
    """Immutable settings snapshot handed to every component at construction."""

    root: Path = Path(".rulebook")
    engine: EngineSettings = field(default_factory=EngineSettings)
    tools: ToolSettings = field(default_factory=ToolSettings)
    logs: LogSettings = field(default_factory=LogSettings)

    @property
    def tasks_dir(self) -> Path:
        return self.root / "tasks"

    @property
    def archive_dir(self) -> Path:
        return self.root / "archive"

    @property
    def logs_dir(self) -> Path:
        return self.root / "logs"

    @property
    def locks_dir(self) -> Path:
        return self.root / ".locks"

    @classmethod
    def from_env(cls, root: Path | None = None) -> Settings:
        """Load settings from environment with defaults suited for a local checkout."""

        default_tool = os.getenv("RULEBOOK_DEFAULT_TOOL", "").strip() or None
        return cls(
            root=resolve_root(root),
            engine=EngineSettings(
                max_parallel_tasks=int(os.getenv("RULEBOOK_MAX_PARALLEL_TASKS", "1")),
                max_iterations=int(os.getenv("RULEBOOK_MAX_ITERATIONS", "10")),
                retry_budget=int(os.getenv("RULEBOOK_RETRY_BUDGET", "3")),
                retry_base_seconds=float(os.getenv("RULEBOOK_RETRY_BASE_SECONDS", "2.0")),
                retry_max_seconds=float(os.getenv("RULEBOOK_RETRY_MAX_SECONDS", "60.0")),
                grace_seconds=float(os.getenv("RULEBOOK_GRACE_SECONDS", "2.0")),
                max_output_bytes=int(os.getenv("RULEBOOK_MAX_OUTPUT_BYTES", "4000000")),
                continuation_enabled=_env_bool("RULEBOOK_CONTINUATION_ENABLED", default=True),
                lock_timeout_seconds=float(os.getenv("RULEBOOK_LOCK_TIMEOUT_SECONDS", "10.0")),
                default_tool=default_tool,
            ),
            tools=ToolSettings(
                enabled=_collect_enabled_tools(),
                probe_timeout_seconds=float(os.getenv("RULEBOOK_PROBE_TIMEOUT_SECONDS", "5.0")),
                timeouts=_collect_tool_timeouts(),
                command_templates=_collect_command_templates(),
            ),
            logs=LogSettings(
                retention_days=int(os.getenv("RULEBOOK_LOG_RETENTION_DAYS", "30")),
            ),
        )

    def with_engine(self, **changes: object) -> Settings:
        """Return a new snapshot with engine fields replaced."""

        return replace(self, engine=replace(self.engine, **changes))

    def validate(self) -> None:
        """Raise configuration error naming the offending variable."""

        if self.engine.max_parallel_tasks < 1:
            raise ValueError("RULEBOOK_MAX_PARALLEL_TASKS must be >= 1.")
        if self.engine.max_iterations < 1:
            raise ValueError("RULEBOOK_MAX_ITERATIONS must be >= 1.")
        if self.engine.retry_budget < 0:
            raise ValueError("RULEBOOK_RETRY_BUDGET must be >= 0.")
        if self.engine.retry_base_seconds < 0:
            raise ValueError("RULEBOOK_RETRY_BASE_SECONDS must be >= 0.")
        if self.engine.retry_max_seconds < self.engine.retry_base_seconds:
            raise ValueError(
                "RULEBOOK_RETRY_MAX_SECONDS must be >= RULEBOOK_RETRY_BASE_SECONDS.",
            )
        if self.engine.grace_seconds < 0:
            raise ValueError("RULEBOOK_GRACE_SECONDS must be >= 0.")
        if self.engine.max_output_bytes <= 0:
            raise ValueError("RULEBOOK_MAX_OUTPUT_BYTES must be > 0.")
        if self.engine.default_tool is not None and self.engine.default_tool not in KNOWN_TOOLS:
            raise ValueError(
                f"RULEBOOK_DEFAULT_TOOL must be one of {', '.join(KNOWN_TOOLS)}.",
            )
        if self.tools.probe_timeout_seconds <= 0:
            raise ValueError("RULEBOOK_PROBE_TIMEOUT_SECONDS must be > 0.")
        if self.logs.retention_days < 0:
            raise ValueError("RULEBOOK_LOG_RETENTION_DAYS must be >= 0.")


def resolve_root(root: Path | None) -> Path:
    """Explicit root, else RULEBOOK_ROOT, else ``.rulebook`` in the working directory."""

    return root or Path(os.getenv("RULEBOOK_ROOT", ".rulebook"))


def _collect_enabled_tools() -> tuple[str, ...]:
    raw = os.getenv("RULEBOOK_ENABLED_TOOLS", "").strip()
    if not raw:
        return KNOWN_TOOLS

    enabled: list[str] = []
    for part in raw.split(","):
        name = part.strip()
        if not name:
            continue
        if name not in KNOWN_TOOLS:
            raise ValueError(
                f"Invalid RULEBOOK_ENABLED_TOOLS entry: {name!r}. "
                f"Expected one of {', '.join(KNOWN_TOOLS)}.",
            )
        if name not in enabled:
            enabled.append(name)
    return tuple(enabled)


def _collect_tool_timeouts() -> dict[str, int]:
    raw = os.getenv("RULEBOOK_TOOL_TIMEOUTS", "").strip()
    if not raw:
        return {}

    overrides: dict[str, int] = {}
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        if "|" not in token:
            raise ValueError(
                "Invalid RULEBOOK_TOOL_TIMEOUTS entry: "
                f"{token!r}. Expected format '<tool>|<seconds>'.",
            )
        tool, seconds_raw = token.rsplit("|", 1)
        tool = tool.strip()
        seconds_raw = seconds_raw.strip()
        if tool not in KNOWN_TOOLS:
            raise ValueError(f"Invalid RULEBOOK_TOOL_TIMEOUTS tool: {tool!r}")
        try:
            seconds = int(seconds_raw)
        except ValueError as error:
            raise ValueError(
                f"Invalid RULEBOOK_TOOL_TIMEOUTS value for {tool!r}: {seconds_raw!r}",
            ) from error
        if seconds <= 0:
            raise ValueError(
                f"Invalid RULEBOOK_TOOL_TIMEOUTS value for {tool!r}: {seconds!r} (must be > 0)",
            )
        overrides[tool] = seconds
    return overrides


def _collect_command_templates() -> dict[str, str]:
    templates: dict[str, str] = {}
    for tool in KNOWN_TOOLS:
        env_name = f"RULEBOOK_{tool.upper().replace('-', '_')}_COMMAND"
        value = os.getenv(env_name, "").strip()
        if not value:
            continue
        if "{prompt}" not in value:
            raise ValueError(f"{env_name} must include {{prompt}}.")
        templates[tool] = value
    return templates


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
