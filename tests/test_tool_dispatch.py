"""Tests for chatrelay.tools.dispatch — the inline tool-call loop."""

from __future__ import annotations

import asyncio

import pytest
from pydantic import BaseModel

from chatrelay.providers.base import ChatStream, ModelProvider, StreamOutcome
from chatrelay.schemas.config import ModelConfig
from chatrelay.schemas.messages import (
    ChatMessage,
    FinishReason,
    Role,
    TextPart,
    TokenUsage,
    ToolCallPart,
    ToolResultPart,
)
from chatrelay.tools.dispatch import (
    build_compatible_system_prompt,
    execute_tool_call,
    stream_with_compatible_tools,
    to_tool_result_output,
)
from chatrelay.tools.registry import Tool, ToolRegistry
from chatrelay.tools.scanner import TagMatch


# ── Factories ─────────────────────────────────────────────────


def _make_config() -> ModelConfig:
    return ModelConfig(key="test/scripted", provider="test", model="scripted")


class ScriptedProvider(ModelProvider):
    """Replays one scripted response per stream_chat() call.

    Each script entry is ``(fragments, finish_reason)``; an exception
    instance in place of the fragments is raised mid-stream.
    """

    def __init__(self, script):
        super().__init__(_make_config())
        self._script = list(script)
        self.calls: list[list[ChatMessage]] = []
        self.options: list[dict] = []

    def stream_chat(self, messages, *, cancel_event=None, timeout=120, **options):
        self.calls.append(list(messages))
        self.options.append(options)
        fragments, finish = self._script.pop(0)

        async def _produce(stream):
            reason = finish
            emitted: list[str] = []
            try:
                if isinstance(fragments, Exception):
                    reason = FinishReason.ERROR
                    raise fragments
                for fragment in fragments:
                    emitted.append(fragment)
                    yield fragment
            finally:
                stream.resolve(
                    StreamOutcome(
                        text="".join(emitted),
                        finish_reason=reason,
                        usage=TokenUsage(prompt_tokens=10, completion_tokens=5),
                    )
                )

        return ChatStream(_produce)


def _echo(params, metadata):
    return {"echo": params}


def _registry(*tools: Tool) -> ToolRegistry:
    return ToolRegistry(list(tools) or [Tool(name="echo", description="Echo input", execute=_echo)])


_USER = [ChatMessage(role=Role.USER, content="hi")]
_ECHO_CALL = '<tool-call tool="echo">{"x": 1}</tool-call>'


async def _collect(stream: ChatStream) -> str:
    return "".join([fragment async for fragment in stream.text_stream()])


# ── System prompt and result conversion ───────────────────────


class TestSystemPrompt:
    def test_lists_enabled_tools(self):
        prompt = build_compatible_system_prompt(_registry())
        assert prompt.role == Role.SYSTEM
        assert '<tool-call tool="{name}">{payload}</tool-call>' in prompt.text
        assert '"name": "echo"' in prompt.text
        assert '"jsonSchema"' in prompt.text

    def test_disabled_tools_hidden(self):
        registry = _registry()
        registry.disable("echo")
        assert '"echo"' not in build_compatible_system_prompt(registry).text


class _Point(BaseModel):
    x: int
    y: int


class TestToToolResultOutput:
    def test_string_is_text(self):
        out = to_tool_result_output("done")
        assert (out.type, out.value) == ("text", "done")

    def test_none_is_empty_text(self):
        out = to_tool_result_output(None)
        assert (out.type, out.value) == ("text", "")

    def test_dict_is_json(self):
        out = to_tool_result_output({"a": [1, 2]})
        assert (out.type, out.value) == ("json", {"a": [1, 2]})

    def test_pydantic_model_is_json(self):
        out = to_tool_result_output(_Point(x=1, y=2))
        assert (out.type, out.value) == ("json", {"x": 1, "y": 2})

    def test_non_serializable_is_error(self):
        out = to_tool_result_output(object())
        assert out.type == "error-text"
        assert out.value == "Non-serializable tool output"


class TestExecuteToolCall:
    @staticmethod
    def _match(name: str, payload: str) -> TagMatch:
        return TagMatch(tool_name=name, raw_payload=payload, match_start=0, match_end=1)

    @pytest.mark.asyncio
    async def test_sync_tool(self):
        out = await execute_tool_call(_registry(), self._match("echo", '{"x": 1}'), "id-1", [])
        assert (out.type, out.value) == ("json", {"echo": {"x": 1}})

    @pytest.mark.asyncio
    async def test_async_tool_receives_metadata(self):
        seen = {}

        async def _run(params, metadata):
            seen["id"] = metadata.tool_call_id
            return f"got {params}"

        registry = _registry(Tool(name="a", description="", execute=_run))
        out = await execute_tool_call(registry, self._match("a", "plain text"), "id-7", [])
        assert out.value == "got plain text"
        assert seen["id"] == "id-7"

    @pytest.mark.asyncio
    async def test_missing_tool(self):
        out = await execute_tool_call(_registry(), self._match("nope", ""), "id-1", [])
        assert out.type == "error-text"
        assert out.value == "Tool not available: nope"

    @pytest.mark.asyncio
    async def test_failing_tool(self):
        def _boom(params, metadata):
            raise ValueError("boom")

        registry = _registry(Tool(name="bad", description="", execute=_boom))
        out = await execute_tool_call(registry, self._match("bad", ""), "id-1", [])
        assert out.type == "error-text"
        assert out.value == "Tool execution failed: boom"

    @pytest.mark.asyncio
    async def test_invalid_input_reported(self):
        registry = _registry(
            Tool(name="pt", description="", execute=lambda p, m: p, input_model=_Point)
        )
        out = await execute_tool_call(registry, self._match("pt", '{"x": "a"}'), "id-1", [])
        assert out.type == "error-text"
        assert out.value.startswith("Tool execution failed:")

    @pytest.mark.asyncio
    async def test_validated_model_passed_to_tool(self):
        registry = _registry(
            Tool(name="pt", description="", execute=lambda p, m: p, input_model=_Point)
        )
        out = await execute_tool_call(registry, self._match("pt", '{"x": 1, "y": 2}'), "id-1", [])
        assert (out.type, out.value) == ("json", {"x": 1, "y": 2})


# ── The loop ──────────────────────────────────────────────────


class TestCompatibleToolLoop:
    @pytest.mark.asyncio
    async def test_plain_response_single_call(self):
        provider = ScriptedProvider([(["Hello ", "world"], FinishReason.STOP)])
        stream = stream_with_compatible_tools(provider, _USER, _registry())

        assert await _collect(stream) == "Hello world"
        outcome = await stream.outcome()
        assert outcome.finish_reason == FinishReason.STOP
        assert outcome.text == "Hello world"
        assert [m.role for m in outcome.messages] == [Role.ASSISTANT]
        assert outcome.messages[0].text == "Hello world"
        assert len(provider.calls) == 1
        assert provider.calls[0][0].role == Role.SYSTEM
        assert provider.calls[0][1:] == _USER

    @pytest.mark.asyncio
    async def test_tool_call_executed_and_fed_back(self):
        provider = ScriptedProvider([
            (["Checking. ", _ECHO_CALL], FinishReason.STOP),
            (["Done."], FinishReason.STOP),
        ])
        stream = stream_with_compatible_tools(provider, _USER, _registry())

        assert await _collect(stream) == "Checking. Done."
        outcome = await stream.outcome()
        assert [m.role for m in outcome.messages] == [Role.ASSISTANT, Role.TOOL, Role.ASSISTANT]

        call_msg, result_msg, final = outcome.messages
        text_part, call_part = call_msg.parts
        assert isinstance(text_part, TextPart) and text_part.text == "Checking. "
        assert isinstance(call_part, ToolCallPart)
        assert call_part.tool_call_id == "compatible-tool-1"
        assert call_part.tool_name == "echo"
        assert call_part.input == {"x": 1}

        (result_part,) = result_msg.parts
        assert isinstance(result_part, ToolResultPart)
        assert result_part.tool_call_id == "compatible-tool-1"
        assert result_part.output.value == {"echo": {"x": 1}}
        assert final.text == "Done."

        # Second call sees the call/result pair appended to the turn state
        assert [m.role for m in provider.calls[1]] == [
            Role.SYSTEM, Role.USER, Role.ASSISTANT, Role.TOOL,
        ]
        assert outcome.usage.prompt_tokens == 20
        assert outcome.usage.completion_tokens == 10

    @pytest.mark.asyncio
    async def test_call_ids_follow_call_count(self):
        provider = ScriptedProvider([
            ([_ECHO_CALL], FinishReason.STOP),
            ([_ECHO_CALL], FinishReason.STOP),
            (["ok"], FinishReason.STOP),
        ])
        stream = stream_with_compatible_tools(provider, _USER, _registry())
        await _collect(stream)
        ids = [
            p.tool_call_id
            for m in await stream.response()
            for p in m.parts
            if isinstance(p, ToolCallPart)
        ]
        assert ids == ["compatible-tool-1", "compatible-tool-2"]

    @pytest.mark.asyncio
    async def test_caller_messages_not_mutated(self):
        messages = list(_USER)
        provider = ScriptedProvider([
            ([_ECHO_CALL], FinishReason.STOP),
            (["ok"], FinishReason.STOP),
        ])
        await stream_with_compatible_tools(provider, messages, _registry()).consume()
        assert messages == _USER

    @pytest.mark.asyncio
    async def test_only_first_tag_per_response_runs(self):
        calls = []

        def _count(params, metadata):
            calls.append(params)
            return "ok"

        registry = _registry(Tool(name="count", description="", execute=_count))
        two = '<tool-call tool="count">1</tool-call><tool-call tool="count">2</tool-call>'
        provider = ScriptedProvider([
            ([two], FinishReason.STOP),
            (["end"], FinishReason.STOP),
        ])
        await stream_with_compatible_tools(provider, _USER, registry).consume()
        assert calls == [1]

    @pytest.mark.asyncio
    async def test_step_limit_stops_without_running_tool(self):
        calls = []
        registry = _registry(
            Tool(name="echo", description="", execute=lambda p, m: calls.append(p))
        )
        provider = ScriptedProvider([
            (["Before ", _ECHO_CALL, " after"], FinishReason.STOP),
        ])
        stream = stream_with_compatible_tools(provider, _USER, registry, max_steps=1)

        assert await _collect(stream) == "Before  after"
        assert calls == []
        assert len(provider.calls) == 1
        messages = await stream.response()
        assert [m.role for m in messages] == [Role.ASSISTANT]
        assert messages[0].text == "Before  after"

    @pytest.mark.asyncio
    async def test_step_limit_counts_model_calls(self):
        provider = ScriptedProvider([([_ECHO_CALL], FinishReason.STOP)] * 3)
        stream = stream_with_compatible_tools(provider, _USER, _registry(), max_steps=2)
        await stream.consume()
        assert len(provider.calls) == 2
        roles = [m.role for m in await stream.response()]
        assert roles == [Role.ASSISTANT, Role.TOOL]

    @pytest.mark.asyncio
    async def test_boundary_separator_between_segments(self):
        provider = ScriptedProvider([
            (["*", _ECHO_CALL], FinishReason.STOP),
            (["*bold*"], FinishReason.STOP),
        ])
        stream = stream_with_compatible_tools(provider, _USER, _registry())
        assert await _collect(stream) == "* *bold*"

    @pytest.mark.asyncio
    async def test_no_separator_for_plain_seam(self):
        provider = ScriptedProvider([
            (["a", _ECHO_CALL], FinishReason.STOP),
            (["b"], FinishReason.STOP),
        ])
        stream = stream_with_compatible_tools(provider, _USER, _registry())
        assert await _collect(stream) == "ab"

    @pytest.mark.asyncio
    async def test_missing_tool_result_fed_back(self):
        provider = ScriptedProvider([
            (['<tool-call tool="ghost">{}</tool-call>'], FinishReason.STOP),
            (["sorry"], FinishReason.STOP),
        ])
        stream = stream_with_compatible_tools(provider, _USER, _registry())
        await stream.consume()
        result = (await stream.response())[1].parts[0]
        assert result.output.type == "error-text"
        assert result.output.value == "Tool not available: ghost"

    @pytest.mark.asyncio
    async def test_failing_tool_does_not_end_turn(self):
        def _boom(params, metadata):
            raise RuntimeError("boom")

        provider = ScriptedProvider([
            (["Trying. ", '<tool-call tool="bad">{}</tool-call>'], FinishReason.STOP),
            (["That tool is broken."], FinishReason.STOP),
        ])
        registry = _registry(Tool(name="bad", description="", execute=_boom))
        stream = stream_with_compatible_tools(provider, _USER, registry)

        assert await _collect(stream) == "Trying. That tool is broken."
        outcome = await stream.outcome()
        assert outcome.finish_reason == FinishReason.STOP
        assert [m.role for m in outcome.messages] == [Role.ASSISTANT, Role.TOOL, Role.ASSISTANT]
        (result_part,) = outcome.messages[1].parts
        assert result_part.output.type == "error-text"
        assert result_part.output.value == "Tool execution failed: boom"
        assert outcome.messages[2].text == "That tool is broken."

    @pytest.mark.asyncio
    async def test_call_options_forwarded(self):
        provider = ScriptedProvider([(["ok"], FinishReason.STOP)])
        await stream_with_compatible_tools(
            provider, _USER, _registry(), temperature=0.2
        ).consume()
        assert provider.options == [{"temperature": 0.2}]

    @pytest.mark.asyncio
    async def test_cancel_during_tool_drops_result(self):
        cancel = asyncio.Event()

        def _cancel(params, metadata):
            cancel.set()
            return "late"

        registry = _registry(Tool(name="echo", description="", execute=_cancel))
        provider = ScriptedProvider([
            (["Working ", _ECHO_CALL], FinishReason.STOP),
            (["never"], FinishReason.STOP),
        ])
        stream = stream_with_compatible_tools(
            provider, _USER, registry, cancel_event=cancel
        )
        assert await _collect(stream) == "Working "
        assert len(provider.calls) == 1
        messages = await stream.response()
        assert [m.role for m in messages] == [Role.ASSISTANT]

    @pytest.mark.asyncio
    async def test_provider_error_finishes_with_error(self):
        provider = ScriptedProvider([(RuntimeError("upstream down"), FinishReason.STOP)])
        stream = stream_with_compatible_tools(provider, _USER, _registry())
        with pytest.raises(RuntimeError, match="upstream down"):
            await stream.consume()
        assert await stream.finish_reason() == FinishReason.ERROR

    def test_empty_messages_rejected(self):
        provider = ScriptedProvider([])
        with pytest.raises(ValueError, match="at least one message"):
            stream_with_compatible_tools(provider, [], _registry())
