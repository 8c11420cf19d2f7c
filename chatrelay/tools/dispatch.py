"""Tool dispatch loop for the inline tool-call protocol.

Drives repeated model calls for models that request tools by writing
``<tool-call>`` tags into their text. Each response is streamed through a
ToolCallScanner: plain text is forwarded downstream as it arrives, the first
complete tag is executed, and its call/result pair is appended to the turn
state before the model is invoked again. The loop ends when a response
contains no tag, when ``max_steps`` model calls have been made, or when the
caller cancels.

The loop owns its working copy of the turn state; the caller's message list
is never mutated.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncGenerator
from typing import Any

from pydantic import BaseModel

from chatrelay.providers.base import ChatStream, ModelProvider, StreamOutcome
from chatrelay.schemas.messages import (
    CallWarning,
    ChatMessage,
    FinishReason,
    Role,
    TextPart,
    TokenUsage,
    ToolCallPart,
    ToolResultOutput,
    ToolResultPart,
)
from chatrelay.tools.registry import ToolCallMetadata, ToolRegistry
from chatrelay.tools.scanner import (
    TagMatch,
    ToolCallScanner,
    maybe_yield_boundary_separator,
    try_parse_json,
)

logger = logging.getLogger(__name__)

TOOL_CALL_ID_PREFIX = "compatible-tool"
DEFAULT_MAX_STEPS = 10

_PROMPT_HEADER = (
    "Important rule to call tools:\n"
    "- If you want to call a tool, you MUST ONLY output the tool call syntax: "
    '<tool-call tool="{name}">{payload}</tool-call>\n'
    "- Examples:\n"
    '  - <tool-call tool="fetch">{"url":"https://example.com","max_length":10000,"raw":false}</tool-call>\n'
    '  - <tool-call tool="eval">{"code":"print(\'Hello World\')"}</tool-call>\n'
    "\nAvailable tools:\n"
)


def build_compatible_system_prompt(registry: ToolRegistry) -> ChatMessage:
    """System message describing the tag protocol and the enabled tools."""
    described = json.dumps(registry.describe(), indent=2, ensure_ascii=False)
    return ChatMessage(role=Role.SYSTEM, content=_PROMPT_HEADER + described)


def to_tool_result_output(output: Any) -> ToolResultOutput:
    """Convert a tool's return value into a typed result.

    Strings are text, ``None`` is empty text, pydantic models and other
    JSON-serialisable values are json; anything else is an error result.
    """
    if isinstance(output, str):
        return ToolResultOutput(type="text", value=output)
    if output is None:
        return ToolResultOutput(type="text", value="")
    if isinstance(output, BaseModel):
        output = output.model_dump(mode="json")
    try:
        json.dumps(output)
    except (TypeError, ValueError):
        return ToolResultOutput(type="error-text", value="Non-serializable tool output")
    return ToolResultOutput(type="json", value=output)


async def execute_tool_call(
    registry: ToolRegistry,
    match: TagMatch,
    call_id: str,
    messages: list[ChatMessage],
) -> ToolResultOutput:
    """Run the tool named by ``match``.

    Never raises for tool problems: a missing tool or a failing execution is
    reported as an ``error-text`` result the model can read.
    """
    tool = registry.get(match.tool_name)
    if tool is None or tool.execute is None:
        logger.warning("Tool not available: %s", match.tool_name)
        return ToolResultOutput(type="error-text", value=f"Tool not available: {match.tool_name}")

    logger.info("Executing tool %s", match.tool_name)
    try:
        result = await tool.invoke(
            try_parse_json(match.raw_payload),
            ToolCallMetadata(tool_call_id=call_id, messages=messages),
        )
    except Exception as e:
        logger.warning("Tool %s failed (%s)", match.tool_name, type(e).__name__)
        return ToolResultOutput(type="error-text", value=f"Tool execution failed: {e}")
    return to_tool_result_output(result)


class CompatibleToolLoop:
    """State for one streamed turn with inline tool calls.

    Use :func:`stream_with_compatible_tools` rather than instantiating this
    directly.
    """

    def __init__(
        self,
        provider: ModelProvider,
        messages: list[ChatMessage],
        registry: ToolRegistry,
        *,
        max_steps: int = DEFAULT_MAX_STEPS,
        cancel_event: asyncio.Event | None = None,
        call_options: dict[str, Any] | None = None,
    ) -> None:
        if not messages:
            raise ValueError("stream_with_compatible_tools requires at least one message")
        self._provider = provider
        self._registry = registry
        self._max_steps = max(1, max_steps)
        self._cancel_event = cancel_event
        self._call_options = call_options or {}
        self._working = [build_compatible_system_prompt(registry), *messages]

        self._responses: list[ChatMessage] = []
        self._warnings: list[CallWarning] = []
        self._usage = TokenUsage()
        self._finish = FinishReason.UNKNOWN
        self._text: list[str] = []
        self._last_char = ""
        self._at_seam = False
        self._call_count = 0

    @property
    def steps(self) -> int:
        """Number of model calls made so far."""
        return self._call_count

    def _cancelled(self) -> bool:
        return self._cancel_event is not None and self._cancel_event.is_set()

    def _next_call_id(self) -> str:
        return f"{TOOL_CALL_ID_PREFIX}-{self._call_count}"

    def _emit(self, text: str) -> str:
        """Prepare ``text`` for downstream, adding a separator at a tool seam."""
        if self._at_seam:
            text = maybe_yield_boundary_separator(self._last_char, text) + text
            self._at_seam = False
        self._text.append(text)
        self._last_char = text[-1]
        return text

    async def run(self, stream: ChatStream) -> AsyncGenerator[str, None]:
        """Text producer handed to ChatStream."""
        try:
            while True:
                self._call_count += 1
                call = self._provider.stream_chat(
                    self._working, cancel_event=self._cancel_event, **self._call_options
                )
                scanner = ToolCallScanner()
                match: TagMatch | None = None
                step_text: list[str] = []

                async for fragment in call.text_stream():
                    for event in scanner.feed(fragment):
                        if isinstance(event, TagMatch):
                            if match is None:
                                match = event
                            else:
                                logger.debug("Ignoring extra tool call %s", event.tool_name)
                            continue
                        step_text.append(event)
                        yield self._emit(event)
                for event in scanner.finalize():
                    step_text.append(event)
                    yield self._emit(event)

                outcome = await call.outcome()
                self._finish = outcome.finish_reason
                self._warnings.extend(outcome.warnings)
                self._usage = self._usage.add(outcome.usage)
                text = "".join(step_text)

                if match is None:
                    self._record_text(text)
                    break
                if self._call_count >= self._max_steps:
                    logger.warning(
                        "Tool step limit (%d) reached, not running %s",
                        self._max_steps, match.tool_name,
                    )
                    self._record_text(text)
                    break
                if self._cancelled():
                    self._record_text(text)
                    break

                call_id = self._next_call_id()
                content: list[TextPart | ToolCallPart] = [TextPart(text=text)] if text else []
                content.append(
                    ToolCallPart(
                        tool_call_id=call_id,
                        tool_name=match.tool_name,
                        input=match.arguments,
                    )
                )
                assistant = ChatMessage(role=Role.ASSISTANT, content=content)
                output = await execute_tool_call(self._registry, match, call_id, [assistant])

                if self._cancelled():
                    logger.info("Turn cancelled after tool %s, dropping its result", match.tool_name)
                    self._record_text(text)
                    break

                result = ChatMessage(
                    role=Role.TOOL,
                    content=[
                        ToolResultPart(
                            tool_call_id=call_id, tool_name=match.tool_name, output=output
                        )
                    ],
                )
                self._working.extend([assistant, result])
                self._responses.extend([assistant, result])
                self._at_seam = bool(self._last_char)
        except Exception:
            self._finish = FinishReason.ERROR
            raise
        finally:
            stream.resolve(
                StreamOutcome(
                    text="".join(self._text),
                    finish_reason=self._finish,
                    messages=list(self._responses),
                    warnings=list(self._warnings),
                    usage=self._usage,
                )
            )

    def _record_text(self, text: str) -> None:
        if text:
            self._responses.append(
                ChatMessage(role=Role.ASSISTANT, content=[TextPart(text=text)])
            )


def stream_with_compatible_tools(
    provider: ModelProvider,
    messages: list[ChatMessage],
    registry: ToolRegistry,
    *,
    max_steps: int = DEFAULT_MAX_STEPS,
    cancel_event: asyncio.Event | None = None,
    **call_options: Any,
) -> ChatStream:
    """Stream a turn, executing inline tool calls as they appear.

    Args:
        provider: Model to call.
        messages: Turn state (history plus the new user message).
        registry: Tools the model may call.
        max_steps: Maximum number of model calls.
        cancel_event: When set, the provider stops streaming and no further
            tool results are recorded.
        **call_options: Forwarded to ``provider.stream_chat``.

    Returns:
        A ChatStream over the display text of all responses. Its outcome
        carries the last finish reason, all warnings, summed usage and the
        response messages (tool traffic plus final assistant text).

    Raises:
        ValueError: If ``messages`` is empty.
    """
    loop = CompatibleToolLoop(
        provider,
        messages,
        registry,
        max_steps=max_steps,
        cancel_event=cancel_event,
        call_options=call_options,
    )
    return ChatStream(loop.run)
