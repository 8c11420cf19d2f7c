"""Universal LiteLLM adapter implementing the ModelProvider interface.

Routes streamed chat requests to any LLM provider via LiteLLM's unified API.
Handles message conversion, provider option merging, unsupported-parameter
warnings, token tracking, cost calculation, timeouts, and retry with
exponential backoff.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from collections.abc import AsyncGenerator
from typing import Any

import litellm

# Suppress LiteLLM's "Give Feedback / Get Help" and "Provider List" banners
litellm.suppress_debug_info = True

from chatrelay.providers.base import ChatStream, ModelProvider, StreamOutcome
from chatrelay.providers.registry import merge_provider_options, to_litellm_model
from chatrelay.schemas.config import ModelConfig, ProviderConfig
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

logger = logging.getLogger(__name__)

# Max retries for transient failures
_MAX_RETRIES = 3
_BASE_BACKOFF = 1.0  # seconds

# OpenAI parameters checked against litellm.get_supported_openai_params;
# anything else is passed through untouched
_OPENAI_PARAMS = frozenset({
    "temperature",
    "top_p",
    "max_tokens",
    "max_completion_tokens",
    "presence_penalty",
    "frequency_penalty",
    "seed",
    "stop",
    "n",
    "logit_bias",
    "reasoning_effort",
    "response_format",
})

_FINISH_REASONS: dict[str, FinishReason] = {
    "stop": FinishReason.STOP,
    "length": FinishReason.LENGTH,
    "content_filter": FinishReason.CONTENT_FILTER,
    "tool_calls": FinishReason.TOOL_CALLS,
    "function_call": FinishReason.TOOL_CALLS,
}


def _short_error_reason(error: Exception) -> str:
    """Extract a short, user-friendly reason from a LiteLLM error.

    Maps error types and status codes to concise descriptions instead
    of dumping full JSON error payloads.
    """
    error_str = str(error).lower()
    if "rate" in error_str or "429" in error_str:
        return "rate limit"
    if "overloaded" in error_str or "529" in error_str:
        return "overloaded"
    if "timeout" in error_str or isinstance(error, TimeoutError):
        return "timeout"
    if "503" in error_str or "unavailable" in error_str:
        return "service unavailable"
    if "500" in error_str or "internal" in error_str:
        return "server error"
    if "connection" in error_str:
        return "connection error"
    return str(error)[:80]


def map_finish_reason(raw: str | None) -> FinishReason:
    """Map an OpenAI-style finish reason onto FinishReason."""
    if not raw:
        return FinishReason.UNKNOWN
    return _FINISH_REASONS.get(raw, FinishReason.OTHER)


def _render_tool_input(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False)


def _render_tool_output(output: ToolResultOutput) -> str:
    if output.type == "json":
        return json.dumps(output.value, ensure_ascii=False)
    return "" if output.value is None else str(output.value)


def to_openai_messages(messages: list[ChatMessage]) -> list[dict[str, str]]:
    """Convert turn state to OpenAI chat format.

    Tool traffic is rendered back into the inline text protocol: tool-call
    parts become ``<tool-call>`` tags inside the assistant text and tool
    results are sent as user messages wrapped in ``<tool-result>``.
    """
    out: list[dict[str, str]] = []
    for message in messages:
        if isinstance(message.content, str):
            role = Role.USER if message.role == Role.TOOL else message.role
            out.append({"role": str(role), "content": message.content})
            continue

        pieces: list[str] = []
        for part in message.content:
            if isinstance(part, TextPart):
                pieces.append(part.text)
            elif isinstance(part, ToolCallPart):
                pieces.append(
                    f'<tool-call tool="{part.tool_name}">'
                    f"{_render_tool_input(part.input)}</tool-call>"
                )
            elif isinstance(part, ToolResultPart):
                pieces.append(
                    f'<tool-result tool="{part.tool_name}">'
                    f"{_render_tool_output(part.output)}</tool-result>"
                )
        role = Role.USER if message.role == Role.TOOL else message.role
        out.append({"role": str(role), "content": "".join(pieces)})
    return out


class LiteLLMProvider(ModelProvider):
    """Universal LLM adapter powered by LiteLLM.

    Routes calls to any provider (OpenAI, xAI, Anthropic, OpenAI-compatible
    gateways, etc.) through litellm.acompletion(). This is the ONLY place
    models are called in chatrelay.
    """

    def __init__(
        self, config: ModelConfig, provider_config: ProviderConfig | None = None
    ) -> None:
        super().__init__(config)
        self._provider_config = provider_config or ProviderConfig()
        # Resolve API key from environment
        env = self._provider_config.api_key_env
        self._api_key = os.environ.get(env, "") if env else ""

    def stream_chat(
        self,
        messages: list[ChatMessage],
        *,
        cancel_event: asyncio.Event | None = None,
        timeout: int = 120,
        **options: Any,
    ) -> ChatStream:
        """Start a streamed completion via LiteLLM.

        The request is only sent once the returned stream is iterated.
        """
        kwargs, warnings = self._build_stream_kwargs(messages, timeout, options)

        async def _produce(stream: ChatStream) -> AsyncGenerator[str, None]:
            parts: list[str] = []
            finish = FinishReason.UNKNOWN
            usage = TokenUsage()
            try:
                response = await self._call_streaming_with_retry(kwargs)
                async for chunk in response:
                    if cancel_event is not None and cancel_event.is_set():
                        logger.info("Stream for %s cancelled", self.display_name)
                        finish = FinishReason.OTHER
                        break

                    choice = chunk.choices[0] if chunk.choices else None
                    delta = ""
                    if choice is not None and choice.delta:
                        delta = choice.delta.content or ""
                    if choice is not None and getattr(choice, "finish_reason", None):
                        finish = map_finish_reason(choice.finish_reason)

                    chunk_usage = getattr(chunk, "usage", None)
                    if chunk_usage:
                        usage = self._build_token_usage(chunk_usage)

                    if delta:
                        parts.append(delta)
                        yield delta
            except Exception:
                finish = FinishReason.ERROR
                raise
            finally:
                text = "".join(parts)
                stream.resolve(
                    StreamOutcome(
                        text=text,
                        finish_reason=finish,
                        messages=(
                            [ChatMessage(role=Role.ASSISTANT, content=[TextPart(text=text)])]
                            if text
                            else []
                        ),
                        warnings=warnings,
                        usage=usage,
                    )
                )

        return ChatStream(_produce)

    def _build_stream_kwargs(
        self,
        messages: list[ChatMessage],
        timeout: int,
        options: dict[str, Any],
    ) -> tuple[dict[str, Any], list[CallWarning]]:
        """Build the kwargs dict for litellm.acompletion."""
        model = to_litellm_model(self._config)
        params, warnings = self._filter_params(
            model, merge_provider_options(self._config.params, options)
        )

        kwargs: dict[str, Any] = {
            **params,
            "model": model,
            "messages": to_openai_messages(messages),
            "timeout": float(timeout),
            "stream": True,
            "stream_options": {"include_usage": True},
        }

        # Set API key if available
        if self._api_key:
            kwargs["api_key"] = self._api_key

        # Set custom API base if configured
        if self._provider_config.api_base:
            kwargs["api_base"] = self._provider_config.api_base

        if self._provider_config.extra_headers:
            kwargs["extra_headers"] = dict(self._provider_config.extra_headers)
        if self._provider_config.extra_body:
            kwargs["extra_body"] = dict(self._provider_config.extra_body)

        return kwargs, warnings

    def _filter_params(
        self, model: str, params: dict[str, Any]
    ) -> tuple[dict[str, Any], list[CallWarning]]:
        """Drop OpenAI parameters the target model does not accept."""
        if not params:
            return {}, []
        try:
            supported = litellm.get_supported_openai_params(model=model)
        except (litellm.BadRequestError, ValueError) as e:
            logger.debug("No parameter support info for %s: %s", model, e)
            supported = None
        if not supported:
            return dict(params), []

        kept: dict[str, Any] = {}
        warnings: list[CallWarning] = []
        for key, value in params.items():
            if key in _OPENAI_PARAMS and key not in supported:
                warnings.append(
                    CallWarning(
                        type="unsupported-setting",
                        setting=key,
                        details=f"{key} is not supported by {model}",
                    )
                )
                continue
            kept[key] = value
        return kept, warnings

    async def _call_streaming_with_retry(self, kwargs: dict):
        """Call litellm.acompletion with stream=True and exponential backoff retry.

        Retries on transient errors (rate limits, server errors, timeouts).
        Non-retryable errors (auth, invalid request) are raised immediately.

        Raises:
            TimeoutError: If all retries time out.
            RuntimeError: If all retries fail with non-timeout errors.
        """
        last_error: Exception | None = None

        for attempt in range(_MAX_RETRIES):
            try:
                response = await litellm.acompletion(**kwargs)
                return response
            except TimeoutError:
                last_error = TimeoutError(
                    f"Streaming call timed out after {kwargs.get('timeout')}s "
                    f"(attempt {attempt + 1}/{_MAX_RETRIES})"
                )
            except litellm.AuthenticationError:
                raise RuntimeError(
                    f"Authentication failed for {self._config.key}. "
                    f"Check that {self._provider_config.api_key_env or 'the API key'} "
                    "is set correctly."
                ) from None
            except litellm.BadRequestError as e:
                raise RuntimeError(
                    f"Bad request to {self._config.key}: {e}"
                ) from e
            except (
                litellm.RateLimitError,
                litellm.ServiceUnavailableError,
                litellm.InternalServerError,
                litellm.APIConnectionError,
            ) as e:
                last_error = e

            if attempt < _MAX_RETRIES - 1:
                backoff = _BASE_BACKOFF * (2**attempt)
                logger.warning(
                    "Streaming retry %d/%d for %s (%s, backoff: %.1fs)",
                    attempt + 1, _MAX_RETRIES, self.display_name,
                    _short_error_reason(last_error), backoff,
                )
                await asyncio.sleep(backoff)

        if isinstance(last_error, TimeoutError):
            raise last_error
        raise RuntimeError(
            f"Streaming call to {self._config.key} failed after "
            f"{_MAX_RETRIES} retries: {last_error}"
        ) from last_error

    def _build_token_usage(self, usage: Any) -> TokenUsage:
        """Build TokenUsage from a LiteLLM usage block."""
        prompt_tokens = getattr(usage, "prompt_tokens", 0) or 0
        completion_tokens = getattr(usage, "completion_tokens", 0) or 0
        prompt_details = getattr(usage, "prompt_tokens_details", None)
        completion_details = getattr(usage, "completion_tokens_details", None)
        cached = getattr(prompt_details, "cached_tokens", None)
        reasoning = getattr(completion_details, "reasoning_tokens", None)

        return TokenUsage(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            cached_tokens=cached if isinstance(cached, int) else None,
            reasoning_tokens=reasoning if isinstance(reasoning, int) else None,
            cost=self.calculate_cost(prompt_tokens, completion_tokens),
        )


def build_provider(
    config: ModelConfig, providers: dict[str, ProviderConfig] | None = None
) -> LiteLLMProvider:
    """Create the provider for ``config`` using its ``[providers.<name>]`` entry."""
    return LiteLLMProvider(config, (providers or {}).get(config.provider))
