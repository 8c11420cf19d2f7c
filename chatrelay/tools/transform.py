"""Post-process tool traffic before storing a turn in history.

Stored history keeps only what the user saw: tool-role messages and
tool-call/tool-result parts are stripped. Optionally a plain-text
``[Tool calls]`` audit note summarises what happened so follow-up turns
still know which tools ran.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from chatrelay.schemas.messages import (
    ChatMessage,
    Role,
    TextPart,
    ToolCallPart,
    ToolResultOutput,
    ToolResultPart,
)


@dataclass
class _AuditEntry:
    call_id: str
    name: str
    inputs: list[Any] = field(default_factory=list)
    results: list[Any] = field(default_factory=list)


def _render(value: Any) -> str:
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, indent=2, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(value)


def _render_result(value: Any) -> str:
    if isinstance(value, ToolResultOutput):
        if value.type == "json":
            return _render(value.value)
        return "" if value.value is None else str(value.value)
    if isinstance(value, list):
        return _render([_result_value(v) for v in value])
    return _render(value)


def _result_value(value: Any) -> Any:
    return value.value if isinstance(value, ToolResultOutput) else value


def build_tool_audit_note(messages: list[ChatMessage]) -> str:
    """Summarise tool calls and results in ``messages``.

    Returns:
        A ``[Tool calls]`` block listing each call's name, id, input and
        result in first-seen order, or ``""`` when there were no tool calls.
    """
    order: list[_AuditEntry] = []
    by_id: dict[str, _AuditEntry] = {}

    def _entry(call_id: str, name: str) -> _AuditEntry:
        call_id = call_id or "unknown_tool_use_id"
        entry = by_id.get(call_id)
        if entry is None:
            entry = _AuditEntry(call_id=call_id, name=name or "unknown_tool")
            by_id[call_id] = entry
            order.append(entry)
        return entry

    for message in messages:
        for part in message.parts:
            if message.role == Role.ASSISTANT and isinstance(part, ToolCallPart):
                entry = _entry(part.tool_call_id, part.tool_name)
                if part.input is not None:
                    entry.inputs.append(part.input)
            elif message.role == Role.TOOL and isinstance(part, ToolResultPart):
                _entry(part.tool_call_id, part.tool_name).results.append(part.output)

    if not order:
        return ""

    lines = ["[Tool calls]"]
    for i, entry in enumerate(order, start=1):
        lines.append(f"{i}. {entry.name} ({entry.call_id})")
        if entry.inputs:
            value = entry.inputs[0] if len(entry.inputs) == 1 else entry.inputs
            lines.append(f"- input: {_render(value)}")
        else:
            lines.append("- input: <none>")
        if entry.results:
            value = entry.results[0] if len(entry.results) == 1 else entry.results
            lines.append(f"- result: {_render_result(value)}")
        else:
            lines.append("- result: <none>")
        lines.append("")
    return "\n".join(lines).strip()


def strip_tool_traffic(messages: list[ChatMessage]) -> list[ChatMessage]:
    """Drop tool messages and tool parts; drop assistant messages left empty."""
    out: list[ChatMessage] = []
    for message in messages:
        if message.role == Role.TOOL:
            continue
        if message.role != Role.ASSISTANT:
            out.append(message)
            continue
        kept = [
            part
            for part in message.parts
            if isinstance(part, TextPart) and part.text.strip()
        ]
        if kept:
            out.append(ChatMessage(role=Role.ASSISTANT, content=kept))
    return out


def append_audit_note(messages: list[ChatMessage], note: str) -> list[ChatMessage]:
    """Append ``note`` as a text part to the first message if it is the assistant's."""
    if not note or not messages or messages[0].role != Role.ASSISTANT:
        return messages
    first = messages[0]
    if isinstance(first.content, str):
        updated = ChatMessage(role=Role.ASSISTANT, content=f"{first.content}\n\n{note}")
    else:
        updated = ChatMessage(
            role=Role.ASSISTANT, content=[*first.content, TextPart(text=note)]
        )
    return [updated, *messages[1:]]
