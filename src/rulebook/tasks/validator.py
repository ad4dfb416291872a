"""Content validation rules for task proposals, checklists and spec deltas."""

from __future__ import annotations

import re
from collections.abc import Collection

from rulebook.tasks.models import Task, ValidationReport

MIN_WHY_LENGTH = 20

_WHY_SECTION = re.compile(r"^##\s+Why\s*$(.*?)(?=^##\s|\Z)", re.MULTILINE | re.DOTALL)
_REQUIREMENT_HEADER = re.compile(r"^###\s+Requirement:\s*(.*)$", re.MULTILINE)
_SHALLOW_SCENARIO = re.compile(r"^###\s+Scenario:", re.MULTILINE)
_SCENARIO_BLOCK = re.compile(
    r"^####\s+Scenario:\s*(.*?)$(.*?)(?=^#{2,4}\s|\Z)",
    re.MULTILINE | re.DOTALL,
)
_NORMATIVE_KEYWORDS = ("SHALL", "MUST")
_SCENARIO_KEYWORDS = ("Given", "When", "Then")


def validate_task(task: Task, *, known_ids: Collection[str] = ()) -> ValidationReport:
    """Collect validation errors and warnings for one task."""

    report = ValidationReport(task_id=task.id)
    _check_proposal(task, report)
    _check_checklist(task, report)
    _check_specs(task, report)
    if known_ids:
        for dependency in sorted(task.dependencies):
            if dependency not in known_ids:
                report.warnings.append(f"Dependency {dependency!r} does not match any known task.")
    return report


def _check_proposal(task: Task, report: ValidationReport) -> None:
    if not task.proposal.strip():
        report.errors.append("Missing proposal.md.")
        return

    match = _WHY_SECTION.search(task.proposal)
    if match is None:
        report.errors.append("proposal.md has no '## Why' section.")
        return
    why = match.group(1).strip()
    if why.startswith("[") and why.endswith("]"):
        report.errors.append("'## Why' section still contains the template placeholder.")
    elif len(why) < MIN_WHY_LENGTH:
        report.errors.append(
            f"'## Why' section must be at least {MIN_WHY_LENGTH} characters (got {len(why)}).",
        )


def _check_checklist(task: Task, report: ValidationReport) -> None:
    if not task.checklist.strip():
        report.warnings.append("Missing tasks.md checklist.")


def _check_specs(task: Task, report: ValidationReport) -> None:
    if not task.specs:
        report.warnings.append("No spec deltas under specs/; consider adding one.")
        return

    for capability, text in sorted(task.specs.items()):
        prefix = f"specs/{capability}/spec.md"
        for requirement in _iter_requirements(text):
            title, body = requirement
            if not any(keyword in body for keyword in _NORMATIVE_KEYWORDS):
                report.errors.append(
                    f"{prefix}: requirement {title!r} must use SHALL or MUST.",
                )
        if _SHALLOW_SCENARIO.search(text):
            report.errors.append(
                f"{prefix}: scenarios must use '#### Scenario:' (four hashes), not three.",
            )
        for scenario_title, scenario_body in _SCENARIO_BLOCK.findall(text):
            missing = [
                keyword for keyword in _SCENARIO_KEYWORDS if keyword.lower() not in scenario_body.lower()
            ]
            if missing:
                report.warnings.append(
                    f"{prefix}: scenario {scenario_title.strip()!r} is missing {', '.join(missing)}.",
                )


def _iter_requirements(text: str) -> list[tuple[str, str]]:
    headers = list(_REQUIREMENT_HEADER.finditer(text))
    requirements: list[tuple[str, str]] = []
    for index, header in enumerate(headers):
        end = headers[index + 1].start() if index + 1 < len(headers) else len(text)
        body = text[header.end() : end]
        scenario_start = re.search(r"^#{3,4}\s+Scenario:", body, re.MULTILINE)
        if scenario_start is not None:
            body = body[: scenario_start.start()]
        requirements.append((header.group(1).strip(), f"{header.group(1)}\n{body}"))
    return requirements
