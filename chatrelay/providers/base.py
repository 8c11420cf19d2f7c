"""Abstract base class for all model providers.

Defines the ModelProvider interface every LLM adapter implements, and
ChatStream, the handle a streamed call returns. The dispatch loop and the
stream runner interact exclusively through these two types; they never
call provider SDKs directly.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncGenerator, AsyncIterator, Callable
from dataclasses import dataclass, field
from typing import Any

from chatrelay.schemas.config import ModelConfig
from chatrelay.schemas.messages import CallWarning, ChatMessage, FinishReason, TokenUsage


@dataclass
class StreamOutcome:
    """Everything known about a streamed call once it has finished."""

    text: str = ""
    finish_reason: FinishReason = FinishReason.UNKNOWN
    messages: list[ChatMessage] = field(default_factory=list)
    warnings: list[CallWarning] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)


class ChatStream:
    """A streamed model response.

    Wraps an async generator of text fragments. The generator receives the
    stream itself and must call resolve() once it knows the outcome
    (normally in a ``finally`` block). text_stream() may be consumed once;
    outcome() and its shortcuts wait until the stream is resolved.
    """

    def __init__(self, source: Callable[[ChatStream], AsyncGenerator[str, None]]) -> None:
        self._done = asyncio.Event()
        self._outcome: StreamOutcome | None = None
        self._consumed = False
        self._source = source(self)

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def resolve(self, outcome: StreamOutcome) -> None:
        """Publish the outcome. Only the first call has an effect."""
        if self._outcome is None:
            self._outcome = outcome
            self._done.set()

    async def text_stream(self) -> AsyncIterator[str]:
        """Yield text fragments as they arrive.

        Raises:
            RuntimeError: If the stream was already consumed.
        """
        if self._consumed:
            raise RuntimeError("ChatStream text already consumed")
        self._consumed = True
        try:
            async for fragment in self._source:
                yield fragment
        finally:
            await self._source.aclose()
            # A source closed before it started never reports back
            self.resolve(StreamOutcome(finish_reason=FinishReason.OTHER))

    async def outcome(self) -> StreamOutcome:
        """Wait for and return the final outcome."""
        await self._done.wait()
        assert self._outcome is not None
        return self._outcome

    async def finish_reason(self) -> FinishReason:
        return (await self.outcome()).finish_reason

    async def response(self) -> list[ChatMessage]:
        """Messages produced by the call (assistant text, tool traffic)."""
        return (await self.outcome()).messages

    async def warnings(self) -> list[CallWarning]:
        return (await self.outcome()).warnings

    async def usage(self) -> TokenUsage:
        return (await self.outcome()).usage

    async def consume(self) -> StreamOutcome:
        """Drain the text stream and return the outcome."""
        async for _ in self.text_stream():
            pass
        return await self.outcome()


class ModelProvider(ABC):
    """Abstract interface for any LLM that can answer a conversation turn.

    Initialized from a ModelConfig loaded from the TOML configuration.
    Exposes identity, capability and cost info, and a single stream_chat()
    method every provider must implement.
    """

    def __init__(self, config: ModelConfig) -> None:
        self._config = config

    # ── Identity ──────────────────────────────────────────────

    @property
    def provider_id(self) -> str:
        """Provider identifier (e.g. 'openai', 'x-ai', 'anthropic')."""
        return self._config.provider

    @property
    def model_id(self) -> str:
        """Model identifier within the provider."""
        return self._config.model

    @property
    def display_name(self) -> str:
        """Human-friendly model name for logs and CLI output."""
        return self._config.display_name or self._config.key

    @property
    def supports_vision(self) -> bool:
        return self._config.supports_vision

    @property
    def config(self) -> ModelConfig:
        """The full ModelConfig backing this provider."""
        return self._config

    # ── Core interface ────────────────────────────────────────

    @abstractmethod
    def stream_chat(
        self,
        messages: list[ChatMessage],
        *,
        cancel_event: asyncio.Event | None = None,
        timeout: int = 120,
        **options: Any,
    ) -> ChatStream:
        """Start a streamed completion for ``messages``.

        Args:
            messages: Conversation turn state, system messages included.
            cancel_event: Checked between fragments; when set the call stops.
            timeout: Timeout in seconds for the model call.
            **options: Extra call parameters, merged over the model's params.

        Returns:
            A ChatStream. Transport errors surface while iterating it:
            TimeoutError if every retry timed out, RuntimeError otherwise.
        """

    def calculate_cost(self, prompt_tokens: int, completion_tokens: int) -> float:
        """Calculate the USD cost for a given token count."""
        input_cost = (prompt_tokens / 1_000_000) * self._config.cost_input
        output_cost = (completion_tokens / 1_000_000) * self._config.cost_output
        return input_cost + output_cost
