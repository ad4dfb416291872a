"""CLI entrypoint for rulebook."""

import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import rich_click as click

from rulebook import __version__
from rulebook.config import KNOWN_TOOLS, Settings, resolve_root
from rulebook.engine.controllers import (
    AgentCliController,
    AgentRunCommand,
    LogsPruneCommand,
    LogsShowCommand,
    ToolsDetectCommand,
)
from rulebook.errors import RulebookError
from rulebook.logging_setup import setup_logging, use_log_dir
from rulebook.tasks.controllers import (
    TaskArchiveCommand,
    TaskCreateCommand,
    TaskListCommand,
    TaskRefCommand,
    TasksCliController,
    TaskUpdateCommand,
)
from rulebook.tasks.models import TaskStatus

click.rich_click.USE_MARKDOWN = True
TASKS_CONTROLLER = TasksCliController()
AGENT_CONTROLLER = AgentCliController()


def _route_diagnostics(ctx: click.Context, param: click.Parameter, value: Path | None) -> Path | None:
    # Diagnostic records follow the data directory the command operates on.
    use_log_dir(Settings(root=resolve_root(value)).logs_dir)
    return value


_root_option = click.option(
    "--root",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    callback=_route_diagnostics,
    help="Rulebook data directory (defaults to RULEBOOK_ROOT or .rulebook).",
)


@click.group()
@click.version_option(version=__version__, prog_name="rulebook")
def rulebook() -> None:
    """Task lifecycle manager and orchestrator for CLI coding agents."""


@rulebook.group()
def tasks() -> None:
    """Create, inspect and manage tasks."""


@tasks.command("create")
@_root_option
@click.argument("task_id")
@click.option("--title", default=None, help="Human readable title.")
@click.option(
    "--depends-on",
    "dependencies",
    multiple=True,
    help="Id of a task this one depends on. Can be repeated.",
)
@click.option(
    "--proposal-file",
    type=click.Path(path_type=Path, dir_okay=False, exists=True),
    default=None,
    help="Initial proposal.md content.",
)
@click.option(
    "--checklist-file",
    type=click.Path(path_type=Path, dir_okay=False, exists=True),
    default=None,
    help="Initial tasks.md content.",
)
def tasks_create(  # noqa: PLR0913
    root: Path | None,
    task_id: str,
    title: str | None,
    dependencies: tuple[str, ...],
    proposal_file: Path | None,
    checklist_file: Path | None,
) -> None:
    """Create a pending task with proposal and checklist templates."""

    with _domain_errors():
        _emit_lines(
            TASKS_CONTROLLER.create(
                TaskCreateCommand(
                    root=root,
                    task_id=task_id,
                    title=title,
                    dependencies=dependencies,
                    proposal_file=proposal_file,
                    checklist_file=checklist_file,
                ),
            ),
        )


@tasks.command("list")
@_root_option
@click.option(
    "--status",
    type=click.Choice([status.value for status in TaskStatus]),
    default=None,
    help="Only show tasks in this status.",
)
@click.option("--archived", "include_archived", is_flag=True, help="Include archived tasks.")
def tasks_list(root: Path | None, status: str | None, include_archived: bool) -> None:
    """List tasks sorted by id."""

    with _domain_errors():
        _emit_lines(
            TASKS_CONTROLLER.list_tasks(
                TaskListCommand(root=root, status=status, include_archived=include_archived),
            ),
        )


@tasks.command("show")
@_root_option
@click.argument("task_id")
def tasks_show(root: Path | None, task_id: str) -> None:
    """Show one task and its recorded runs."""

    with _domain_errors():
        _emit_lines(TASKS_CONTROLLER.show(TaskRefCommand(root=root, task_id=task_id)))


@tasks.command("validate")
@_root_option
@click.argument("task_id")
def tasks_validate(root: Path | None, task_id: str) -> None:
    """Validate task content; exits non-zero when errors are found."""

    with _domain_errors():
        result = TASKS_CONTROLLER.validate(TaskRefCommand(root=root, task_id=task_id))
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException(f"Task {task_id} has validation errors.")


@tasks.command("update")
@_root_option
@click.argument("task_id")
@click.option("--title", default=None, help="New title.")
@click.option("--add-dependency", "add_dependencies", multiple=True, help="Dependency to add.")
@click.option(
    "--remove-dependency",
    "remove_dependencies",
    multiple=True,
    help="Dependency to remove.",
)
def tasks_update(
    root: Path | None,
    task_id: str,
    title: str | None,
    add_dependencies: tuple[str, ...],
    remove_dependencies: tuple[str, ...],
) -> None:
    """Change a task's title or dependencies."""

    with _domain_errors():
        _emit_lines(
            TASKS_CONTROLLER.update(
                TaskUpdateCommand(
                    root=root,
                    task_id=task_id,
                    title=title,
                    add_dependencies=add_dependencies,
                    remove_dependencies=remove_dependencies,
                ),
            ),
        )


@tasks.command("archive")
@_root_option
@click.argument("task_id")
@click.option("--skip-validation", is_flag=True, help="Archive even if validation reports errors.")
def tasks_archive(root: Path | None, task_id: str, skip_validation: bool) -> None:
    """Archive a completed task."""

    with _domain_errors():
        _emit_lines(
            TASKS_CONTROLLER.archive(
                TaskArchiveCommand(root=root, task_id=task_id, skip_validation=skip_validation),
            ),
        )


@tasks.command("reset")
@_root_option
@click.argument("task_id")
def tasks_reset(root: Path | None, task_id: str) -> None:
    """Return a failed or blocked task to pending."""

    with _domain_errors():
        _emit_lines(TASKS_CONTROLLER.reset(TaskRefCommand(root=root, task_id=task_id)))


@tasks.command("delete")
@_root_option
@click.argument("task_id")
@click.confirmation_option(prompt="Delete this task and all of its files?")
def tasks_delete(root: Path | None, task_id: str) -> None:
    """Delete a non-archived task."""

    with _domain_errors():
        _emit_lines(TASKS_CONTROLLER.delete(TaskRefCommand(root=root, task_id=task_id)))


@tasks.command("order")
@_root_option
@click.option("--archived", "include_archived", is_flag=True, help="Include archived tasks.")
def tasks_order(root: Path | None, include_archived: bool) -> None:
    """Print tasks in dependency order."""

    with _domain_errors():
        _emit_lines(
            TASKS_CONTROLLER.order(
                TaskListCommand(root=root, status=None, include_archived=include_archived),
            ),
        )


@rulebook.group()
def agent() -> None:
    """Drive CLI coding agents through ready tasks."""


@agent.command("run")
@_root_option
@click.argument("task_ids", nargs=-1)
@click.option(
    "--tool",
    type=click.Choice(KNOWN_TOOLS),
    default=None,
    help="Preferred tool; falls back to the first available one.",
)
@click.option("--dry-run", is_flag=True, help="Print the would-be commands without running them.")
@click.option("--parallel", is_flag=True, help="Run independent ready tasks concurrently.")
@click.option(
    "--max-parallel",
    type=click.IntRange(min=1),
    default=None,
    help="Concurrency limit for --parallel (defaults to RULEBOOK_MAX_PARALLEL_TASKS).",
)
@click.option(
    "--max-iterations",
    type=click.IntRange(min=1),
    default=None,
    help="Iteration budget per task (defaults to RULEBOOK_MAX_ITERATIONS).",
)
@click.option(
    "--workdir",
    type=click.Path(path_type=Path, file_okay=False, exists=True),
    default=None,
    help="Directory the tools run in (defaults to the current directory).",
)
def agent_run(  # noqa: PLR0913
    root: Path | None,
    task_ids: tuple[str, ...],
    tool: str | None,
    dry_run: bool,
    parallel: bool,
    max_parallel: int | None,
    max_iterations: int | None,
    workdir: Path | None,
) -> None:
    """Run ready tasks until each completes, fails or blocks."""

    with _domain_errors():
        result = AGENT_CONTROLLER.run_agent(
            AgentRunCommand(
                root=root,
                task_ids=task_ids,
                tool=tool,
                dry_run=dry_run,
                parallel=parallel,
                max_parallel=max_parallel,
                max_iterations=max_iterations,
                workdir=workdir or Path.cwd(),
            ),
        )
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Agent run finished with unresolved errors.")


@rulebook.group()
def tools() -> None:
    """CLI tool detection."""


@tools.command("detect")
@_root_option
def tools_detect(root: Path | None) -> None:
    """Probe every enabled tool with --version."""

    with _domain_errors():
        _emit_lines(AGENT_CONTROLLER.detect_tools(ToolsDetectCommand(root=root)))


@rulebook.group()
def logs() -> None:
    """Execution log queries and housekeeping."""


@logs.command("show")
@_root_option
@click.option("--task-id", default=None, help="Only records for this task.")
@click.option(
    "--limit",
    type=click.IntRange(min=1),
    default=50,
    show_default=True,
    help="How many latest records to display.",
)
@click.option("--summary", "show_summary", is_flag=True, help="Print aggregate counts instead.")
def logs_show(root: Path | None, task_id: str | None, limit: int, show_summary: bool) -> None:
    """Show recent execution log records."""

    with _domain_errors():
        _emit_lines(
            AGENT_CONTROLLER.show_logs(
                LogsShowCommand(root=root, task_id=task_id, limit=limit, summary=show_summary),
            ),
        )


@logs.command("prune")
@_root_option
@click.option(
    "--retention-days",
    type=click.IntRange(min=0),
    default=None,
    help="Override RULEBOOK_LOG_RETENTION_DAYS.",
)
def logs_prune(root: Path | None, retention_days: int | None) -> None:
    """Delete execution log files older than the retention window."""

    with _domain_errors():
        _emit_lines(
            AGENT_CONTROLLER.prune_logs(LogsPruneCommand(root=root, retention_days=retention_days)),
        )


def main() -> None:
    """Console script entry: configure diagnostic logging, then run the CLI."""

    level_name = os.getenv("RULEBOOK_LOG_LEVEL", "WARNING").strip().upper()
    setup_logging(
        log_dir=Settings(root=resolve_root(None)).logs_dir,
        console_level=logging.getLevelNamesMapping().get(level_name, logging.WARNING),
    )
    rulebook()


@contextmanager
def _domain_errors() -> Iterator[None]:
    try:
        yield
    except RulebookError as error:
        raise click.ClickException(error.to_report().render()) from error
    except ValueError as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    main()
