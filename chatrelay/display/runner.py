"""Run one user turn end to end.

A stream attempt starts the model call (through the inline tool loop when
the model uses tools), feeds its text into a StreamAccumulator while a
ContentPusher mirrors it onto the display sink, then logs what the
provider reported and stores the turn in the conversation cache.
run_turn() wraps attempts in a retry loop.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from functools import partial

from chatrelay.display.pusher import (
    ContentPusher,
    DisplaySink,
    PushResult,
    StreamAccumulator,
    max_length_for,
)
from chatrelay.display.stats import build_stats_footer, build_stats_line
from chatrelay.history import ConversationCache
from chatrelay.providers.base import ChatStream, ModelProvider
from chatrelay.schemas.config import Settings
from chatrelay.schemas.messages import (
    CallWarning,
    ChatMessage,
    FinishReason,
    Role,
    TokenUsage,
)
from chatrelay.tools.dispatch import stream_with_compatible_tools
from chatrelay.tools.registry import ToolRegistry
from chatrelay.tools.transform import append_audit_note, build_tool_audit_note, strip_tool_traffic

logger = logging.getLogger(__name__)


class EmptyResponseError(RuntimeError):
    """The model finished without producing any text."""


@dataclass
class AttemptResult:
    """What a successful stream attempt produced."""

    text: str
    unit_ids: list[str] = field(default_factory=list)
    display_chunks: list[str] = field(default_factory=list)
    finish_reason: FinishReason = FinishReason.UNKNOWN
    usage: TokenUsage = field(default_factory=TokenUsage)
    stored: list[ChatMessage] = field(default_factory=list)
    ttft_seconds: float | None = None
    output_seconds: float | None = None

    @property
    def last_unit_id(self) -> str | None:
        return self.unit_ids[-1] if self.unit_ids else None


def log_stream_warnings(warnings: list[CallWarning] | None) -> None:
    """Log provider warnings, one line each."""
    for warning in warnings or []:
        if warning.type == "unsupported-setting":
            logger.warning(
                "Unsupported setting %s%s",
                warning.setting,
                f": {warning.details}" if warning.details else "",
            )
        elif warning.type == "unsupported-tool":
            logger.warning(
                "Unsupported tool %s%s",
                warning.tool,
                f": {warning.details}" if warning.details else "",
            )
        else:
            logger.warning("Provider warning: %s", warning.details or "<no details>")


def log_finish_reason(reason: FinishReason) -> None:
    """Log why the model stopped, at a level matching how bad it is."""
    match reason:
        case FinishReason.STOP | FinishReason.TOOL_CALLS:
            logger.info("Stream finished: %s", reason)
        case FinishReason.LENGTH:
            logger.warning("Stream stopped at the length limit (context too long)")
        case FinishReason.CONTENT_FILTER:
            logger.warning("Stream stopped by the provider content filter")
        case FinishReason.ERROR:
            logger.error("Stream finished with an error")
        case _:
            logger.info("Stream finished for another reason: %s", reason)


def build_turn_messages(
    settings: Settings,
    user_message: ChatMessage,
    *,
    history: ConversationCache | None = None,
    parent_id: str | None = None,
) -> list[ChatMessage]:
    """System prompt, cached history up to ``parent_id``, then the new message."""
    messages: list[ChatMessage] = []
    if settings.bot.system_prompt:
        messages.append(ChatMessage(role=Role.SYSTEM, content=settings.bot.system_prompt))
    if history is not None and parent_id is not None:
        messages.extend(history.history(parent_id, settings.bot.max_messages))
    messages.append(user_message)
    return messages


def _open_stream(
    provider: ModelProvider,
    messages: list[ChatMessage],
    settings: Settings,
    registry: ToolRegistry | None,
    cancel_event: asyncio.Event | None,
) -> ChatStream:
    if registry is not None and len(registry) and provider.config.use_tools:
        if not provider.config.compatible_tools:
            logger.warning(
                "Native tool calling is not available for %s, using inline tool calls",
                provider.config.key,
            )
        return stream_with_compatible_tools(
            provider,
            messages,
            registry,
            max_steps=settings.tools.max_steps,
            cancel_event=cancel_event,
        )
    return provider.stream_chat(messages, cancel_event=cancel_event)


async def _attach_footer(
    sink: DisplaySink, pushed: PushResult, footer: str, limit: int
) -> list[str]:
    """Put the stats footer under the last chunk, or in a unit of its own.

    Returns the unit ids of the response, including a footer unit if one
    was created.
    """
    last_chunk = pushed.display_chunks[-1] if pushed.display_chunks else ""
    combined = f"{last_chunk}\n\n{footer}"
    if len(combined) <= limit:
        await sink.replace(pushed.last_unit_id, combined, streaming=False)
        return pushed.unit_ids
    if len(footer) > limit:
        footer = footer[: limit - 4] + "...*"
    unit_id = await sink.create(footer, streaming=False)
    return [*pushed.unit_ids, unit_id]


async def run_stream_attempt(
    provider: ModelProvider,
    messages: list[ChatMessage],
    sink: DisplaySink,
    *,
    settings: Settings,
    registry: ToolRegistry | None = None,
    history: ConversationCache | None = None,
    parent_id: str | None = None,
    cancel_event: asyncio.Event | None = None,
) -> AttemptResult:
    """Stream one model response onto ``sink``.

    Raises:
        EmptyResponseError: If no text was produced. Units created during
            the attempt are deleted first.
        RuntimeError, TimeoutError: Provider transport failures.
    """
    bot = settings.bot
    plain = bot.use_plain_responses
    smart = bot.smart_splitting

    stream = _open_stream(provider, messages, settings, registry, cancel_event)
    if bot.debug_message:
        logger.debug("Outgoing messages: %s", [m.model_dump() for m in messages])

    accumulator = StreamAccumulator()
    pusher = ContentPusher(
        sink,
        accumulator,
        max_length=lambda streaming: max_length_for(
            settings.display, streaming=streaming, plain=plain, smart_splitting=smart
        ),
        smart_splitting=smart,
        edit_delay=settings.display.edit_delay,
    )

    request_start = time.perf_counter()
    first_token: float | None = None
    pusher_task = asyncio.create_task(pusher.run())
    try:
        async for fragment in stream.text_stream():
            if first_token is None:
                first_token = time.perf_counter()
            accumulator.append(fragment)
    finally:
        accumulator.mark_done()
        pushed = await pusher_task

    outcome = await stream.outcome()
    request_end = time.perf_counter()
    ttft = None if first_token is None else first_token - request_start
    output_seconds = None if first_token is None else request_end - first_token

    text = accumulator.text
    if not text:
        await asyncio.gather(*(sink.delete(unit_id) for unit_id in pushed.unit_ids))
        raise EmptyResponseError("No content generated")

    logger.info("Received total text length: %d", len(text))
    log_stream_warnings(outcome.warnings)
    log_finish_reason(outcome.finish_reason)

    unit_ids = pushed.unit_ids
    if bot.stats_for_nerds and not plain and pushed.last_unit_id is not None:
        footer = build_stats_footer(provider.config.key, outcome.usage, ttft, output_seconds)
        if footer:
            unit_ids = await _attach_footer(sink, pushed, footer, settings.display.embed_max_length)

    stored = strip_tool_traffic(outcome.messages)
    if settings.tools.include_summary:
        stored = append_audit_note(stored, build_tool_audit_note(outcome.messages))
    if messages and messages[-1].role == Role.USER:
        stored = [messages[-1], *stored]
    if history is not None and unit_ids:
        history.store(unit_ids, stored, parent_id=parent_id)

    if bot.stats_for_nerds:
        logger.info(build_stats_line(provider.config.key, outcome.usage, ttft, output_seconds))

    return AttemptResult(
        text=text,
        unit_ids=unit_ids,
        display_chunks=pushed.display_chunks,
        finish_reason=outcome.finish_reason,
        usage=outcome.usage,
        stored=stored,
        ttft_seconds=ttft,
        output_seconds=output_seconds,
    )


async def run_turn(
    provider: ModelProvider,
    user_message: ChatMessage,
    sink: DisplaySink,
    *,
    settings: Settings,
    registry: ToolRegistry | None = None,
    history: ConversationCache | None = None,
    parent_id: str | None = None,
    cancel_event: asyncio.Event | None = None,
) -> AttemptResult:
    """Answer ``user_message``, retrying hard failures up to ``bot.max_retry`` times.

    Raises:
        The last attempt's error once every attempt has failed, or at once
        when the turn was cancelled.
    """
    messages = build_turn_messages(settings, user_message, history=history, parent_id=parent_id)
    attempts = max(1, settings.bot.max_retry)
    run = partial(
        run_stream_attempt,
        provider,
        messages,
        sink,
        settings=settings,
        registry=registry,
        history=history,
        parent_id=parent_id,
        cancel_event=cancel_event,
    )

    for attempt in range(1, attempts):
        try:
            return await run()
        except (RuntimeError, TimeoutError) as e:
            if cancel_event is not None and cancel_event.is_set():
                raise
            logger.warning("Attempt %d/%d failed: %s", attempt, attempts, e)
    return await run()
