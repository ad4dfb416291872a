"""Pure output parsers: one stdout line in, zero or more events out.

Parsers never raise on tool output.  Malformed structured lines become a
``warning`` event and unrecognized record types become ``unknown`` events
carrying the record verbatim.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

from rulebook.engine.models import (
    BLOCKED_MARKER,
    DEFAULT_MARKERS,
    Event,
    EventKind,
    MarkerRule,
    OutputFormat,
)

_TOOL_CALL_KEYS: tuple[tuple[str, str], ...] = (
    ("writeToolCall", "write"),
    ("readToolCall", "read"),
    ("bashToolCall", "bash"),
)


def parse_structured_line(line: str, markers: tuple[MarkerRule, ...] = ()) -> list[Event]:
    """Map one line-delimited JSON record onto canonical events."""

    stripped = line.strip()
    if not stripped:
        return []
    try:
        record = json.loads(stripped)
    except json.JSONDecodeError as error:
        return [
            Event(
                kind=EventKind.WARNING,
                payload={"reason": "malformed_record", "error": str(error), "line": stripped},
            ),
        ]
    if not isinstance(record, dict):
        return [
            Event(
                kind=EventKind.WARNING,
                payload={"reason": "non_object_record", "line": stripped},
            ),
        ]

    record_type = record.get("type")
    subtype = record.get("subtype")

    if record_type == "system" and subtype == "init":
        return [
            Event(
                kind=EventKind.SYSTEM_INIT,
                payload={"session_id": record.get("session_id"), "raw": record},
            ),
        ]
    if record_type in {"user", "assistant"}:
        kind = EventKind.USER if record_type == "user" else EventKind.ASSISTANT
        return [Event(kind=kind, payload={"text": _message_text(record), "raw": record})]
    if record_type == "thinking":
        return [Event(kind=EventKind.THINKING, payload={"text": _message_text(record), "raw": record})]
    if record_type == "tool_call":
        return [_tool_call_event(record, subtype)]
    if record_type == "result":
        failed = bool(record.get("is_error")) or subtype == "error"
        kind = EventKind.ERROR if failed else EventKind.DONE
        payload: dict[str, Any] = {"raw": record}
        result_text = record.get("result")
        if isinstance(result_text, str):
            payload["text"] = result_text
        return [Event(kind=kind, payload=payload)]
    if record_type == "error":
        payload = {"text": str(record.get("message") or record.get("error") or ""), "raw": record}
        if record.get("blocked"):
            payload["blocked"] = True
        return [Event(kind=EventKind.ERROR, payload=payload)]

    return [Event(kind=EventKind.UNKNOWN, payload={"raw": record})]


def parse_marker_line(
    line: str,
    markers: tuple[MarkerRule, ...] = DEFAULT_MARKERS,
) -> list[Event]:
    """Classify one text line by the first matching literal marker."""

    text = line.rstrip("\r\n")
    if not text.strip():
        return []
    for rule in markers:
        if rule.marker in text:
            payload: dict[str, Any] = {"text": text, "marker": rule.marker}
            if rule.marker == BLOCKED_MARKER:
                payload["blocked"] = True
            return [Event(kind=rule.kind, payload=payload)]
    return [Event(kind=EventKind.ASSISTANT, payload={"text": text})]


LineParser = Callable[[str, tuple[MarkerRule, ...]], list[Event]]

PARSERS: dict[OutputFormat, LineParser] = {
    OutputFormat.LINE_DELIMITED_STRUCTURED: parse_structured_line,
    OutputFormat.LITERAL_MARKER_TEXT: parse_marker_line,
}


def blocked_reason(event: Event) -> str | None:
    """Reason text when the agent reported it cannot proceed."""

    if event.kind != EventKind.ERROR or not event.payload.get("blocked"):
        return None
    text = event.text
    if BLOCKED_MARKER in text:
        text = text.split(BLOCKED_MARKER, 1)[1]
    return text.strip() or "agent reported the task is blocked"


def _message_text(record: dict[str, Any]) -> str:
    message = record.get("message")
    if isinstance(message, dict):
        content = message.get("content")
        if isinstance(content, list):
            parts = [
                item["text"]
                for item in content
                if isinstance(item, dict) and item.get("type") == "text" and isinstance(item.get("text"), str)
            ]
            return "".join(parts)
        if isinstance(content, str):
            return content
    text = record.get("text")
    return text if isinstance(text, str) else ""


def _tool_call_event(record: dict[str, Any], subtype: object) -> Event:
    tool_call = record.get("tool_call")
    tool_name = "unknown"
    args: object = None
    result: object = None
    if isinstance(tool_call, dict):
        for key, name in _TOOL_CALL_KEYS:
            entry = tool_call.get(key)
            if isinstance(entry, dict):
                tool_name = name
                args = entry.get("args")
                result = entry.get("result")
                break
        else:
            if tool_call:
                tool_name = str(next(iter(tool_call)))

    payload: dict[str, Any] = {"tool": tool_name, "args": args, "raw": record}
    if subtype == "started":
        return Event(kind=EventKind.TOOL_CALL_STARTED, payload=payload)
    if subtype == "completed":
        if isinstance(result, dict) and result.get("error") is not None:
            payload["error"] = result.get("error")
            return Event(kind=EventKind.TOOL_CALL_FAILED, payload=payload)
        return Event(kind=EventKind.TOOL_CALL_COMPLETED, payload=payload)
    if subtype == "failed":
        return Event(kind=EventKind.TOOL_CALL_FAILED, payload=payload)
    return Event(kind=EventKind.UNKNOWN, payload={"raw": record})
