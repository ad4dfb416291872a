"""Outcome assessment for a finished invocation, including smart-continue heuristics."""

from __future__ import annotations

from dataclasses import dataclass

from rulebook.engine.failure_classifier import classify_exit_failure
from rulebook.engine.models import TERMINAL_EVENT_KINDS, Event, EventKind, Outcome

TRAILING_WINDOW = 5
NON_TRIVIAL_PROMPT_WORDS = 5
_SENTENCE_TERMINATORS = frozenset(".!?…)]}\"'`*")


@dataclass(slots=True, frozen=True)
class Assessment:
    """Outcome of one invocation plus the evidence behind it."""

    outcome: Outcome
    retryable: bool
    reasons: tuple[str, ...] = ()


def trailing_text(events: list[Event], window: int = TRAILING_WINDOW) -> str:
    """Joined text of the last ``window`` assistant events."""

    texts = [event.text for event in events if event.kind == EventKind.ASSISTANT and event.text.strip()]
    return "\n".join(texts[-window:]).strip()


def ends_with_question(events: list[Event]) -> bool:
    return trailing_text(events).endswith("?")


def ends_mid_sentence(events: list[Event]) -> bool:
    text = trailing_text(events)
    if not text:
        return False
    return text[-1] not in _SENTENCE_TERMINATORS


def no_tool_calls(events: list[Event], prompt: str) -> bool:
    if len(prompt.split()) < NON_TRIVIAL_PROMPT_WORDS:
        return False
    return not any(event.kind == EventKind.TOOL_CALL_STARTED for event in events)


def continuation_reasons(events: list[Event], prompt: str) -> tuple[str, ...]:
    """Names of every heuristic that flags the output as unfinished."""

    reasons: list[str] = []
    if ends_mid_sentence(events):
        reasons.append("ends_mid_sentence")
    if ends_with_question(events):
        reasons.append("ends_with_question")
    if no_tool_calls(events, prompt):
        reasons.append("no_tool_calls")
    return tuple(reasons)


def assess_outcome(
    events: list[Event],
    *,
    exit_code: int | None,
    timed_out: bool,
    prompt: str,
    stderr_tail: str = "",
) -> Assessment:
    """Decide the outcome of one invocation from its events and exit status."""

    kinds = {event.kind for event in events}
    has_done = EventKind.DONE in kinds
    has_error = EventKind.ERROR in kinds

    if timed_out and not kinds & TERMINAL_EVENT_KINDS:
        return Assessment(outcome=Outcome.TIMEOUT, retryable=True, reasons=("timeout",))
    if has_error and not has_done:
        return Assessment(outcome=Outcome.FAILURE, retryable=False, reasons=("error_event",))
    if exit_code is not None and exit_code != 0:
        if has_done:
            return Assessment(outcome=Outcome.SUCCESS, retryable=False, reasons=("done_event",))
        classification = classify_exit_failure(exit_code=exit_code, stderr=stderr_tail)
        return Assessment(
            outcome=Outcome.FAILURE,
            retryable=classification.retryable,
            reasons=(classification.describe(),),
        )
    if has_done:
        return Assessment(outcome=Outcome.SUCCESS, retryable=False, reasons=("done_event",))

    reasons = continuation_reasons(events, prompt)
    if reasons:
        return Assessment(outcome=Outcome.NEEDS_CONTINUATION, retryable=False, reasons=reasons)
    return Assessment(outcome=Outcome.SUCCESS, retryable=False, reasons=("clean_exit",))
