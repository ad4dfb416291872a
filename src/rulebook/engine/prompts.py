"""Prompt construction for task iterations."""

from __future__ import annotations

from rulebook.engine.continuation import trailing_text
from rulebook.engine.models import BLOCKED_MARKER, COMPLETION_MARKER, BridgeResult
from rulebook.tasks.models import Task

SUMMARY_MAX_CHARS = 1_200


def render_task_spec(task: Task) -> str:
    """Flatten task content into one markdown document."""

    sections = [f"# Task: {task.title} ({task.id})", "", task.proposal.strip()]
    if task.design:
        sections += ["", "## Design", "", task.design.strip()]
    if task.checklist.strip():
        sections += ["", "## Checklist", "", task.checklist.strip()]
    for capability, delta in sorted(task.specs.items()):
        sections += ["", f"## Spec delta: {capability}", "", delta.strip()]
    return "\n".join(sections).strip() + "\n"


def summarize_result(result: BridgeResult) -> str:
    """Short preview of what the agent said last, fed into the next iteration."""

    text = trailing_text(result.events)
    if len(text) > SUMMARY_MAX_CHARS:
        text = "..." + text[-SUMMARY_MAX_CHARS:]
    return text


def build_task_prompt(task: Task, *, iteration: int, previous_summary: str | None) -> str:
    lines = [
        "You are implementing the following task in this repository.",
        "",
        render_task_spec(task),
        "Instructions:",
        "- Work through the checklist items in order and tick them off in tasks.md.",
        "- Run the project's tests after making changes.",
        f"- When every item is done, print {COMPLETION_MARKER} on its own line.",
        f"- If you cannot proceed, print {BLOCKED_MARKER} followed by the reason.",
    ]
    if iteration > 1:
        lines += ["", f"This is iteration {iteration}."]
    if previous_summary:
        lines += ["", "Summary of your previous run:", previous_summary]
    return "\n".join(lines) + "\n"
