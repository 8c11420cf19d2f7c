"""Tests for chatrelay.tools.registry and chatrelay.tools.builtin."""

from __future__ import annotations

import pytest
from pydantic import BaseModel, ValidationError

from chatrelay.tools.builtin import CURRENT_TIME_TOOL, CurrentTimeInput, current_time, default_registry
from chatrelay.tools.registry import Tool, ToolCallMetadata, ToolRegistry


class _Query(BaseModel):
    q: str
    limit: int = 5


def _meta() -> ToolCallMetadata:
    return ToolCallMetadata(tool_call_id="call-1")


# ── Tool ──────────────────────────────────────────────────────


class TestTool:
    def test_schema_without_model(self):
        tool = Tool(name="t", description="d")
        assert tool.input_schema() == {"type": "object", "properties": {}}

    def test_schema_from_model(self):
        schema = Tool(name="t", description="d", input_model=_Query).input_schema()
        assert schema["required"] == ["q"]
        assert set(schema["properties"]) == {"q", "limit"}

    @pytest.mark.asyncio
    async def test_invoke_validates_dict_input(self):
        tool = Tool(name="t", description="d", execute=lambda p, m: p, input_model=_Query)
        result = await tool.invoke({"q": "cats"}, _meta())
        assert result == _Query(q="cats", limit=5)

    @pytest.mark.asyncio
    async def test_invoke_passes_non_dict_through(self):
        tool = Tool(name="t", description="d", execute=lambda p, m: p, input_model=_Query)
        assert await tool.invoke("raw", _meta()) == "raw"

    @pytest.mark.asyncio
    async def test_invoke_rejects_bad_input(self):
        tool = Tool(name="t", description="d", execute=lambda p, m: p, input_model=_Query)
        with pytest.raises(ValidationError):
            await tool.invoke({"limit": 1}, _meta())

    @pytest.mark.asyncio
    async def test_invoke_awaits_coroutines(self):
        async def _run(params, metadata):
            return metadata.tool_call_id

        tool = Tool(name="t", description="d", execute=_run)
        assert await tool.invoke(None, _meta()) == "call-1"

    @pytest.mark.asyncio
    async def test_not_executable(self):
        with pytest.raises(RuntimeError, match="not executable"):
            await Tool(name="t", description="d").invoke(None, _meta())


# ── ToolRegistry ──────────────────────────────────────────────


class TestToolRegistry:
    def test_register_and_get(self):
        registry = ToolRegistry()
        tool = Tool(name="a", description="A")
        registry.register(tool)
        assert registry.get("a") is tool
        assert registry.get("b") is None
        assert "a" in registry
        assert len(registry) == 1

    def test_register_replaces(self):
        registry = ToolRegistry([Tool(name="a", description="old")])
        registry.register(Tool(name="a", description="new"))
        assert registry.get("a").description == "new"
        assert len(registry) == 1

    def test_disable_and_enable(self):
        registry = ToolRegistry([Tool(name="a", description=""), Tool(name="b", description="")])
        registry.disable("a")
        assert registry.names() == ["b"]
        assert registry.get("a") is None
        assert "a" not in registry
        registry.enable("a")
        assert registry.names() == ["a", "b"]

    def test_describe(self):
        registry = ToolRegistry([Tool(name="search", description="Find things", input_model=_Query)])
        (entry,) = registry.describe()
        assert entry["name"] == "search"
        assert entry["description"] == "Find things"
        assert entry["jsonSchema"]["properties"]["q"]["type"] == "string"

    def test_contains_non_string(self):
        assert 1 not in ToolRegistry([Tool(name="a", description="")])


# ── Built-in tools ────────────────────────────────────────────


class TestBuiltinTools:
    def test_default_registry(self):
        registry = default_registry()
        assert registry.names() == ["current_time"]
        assert registry.get("current_time") is CURRENT_TIME_TOOL

    def test_default_registry_disabled(self):
        assert len(default_registry(["current_time"])) == 0

    def test_current_time_default_utc(self):
        result = current_time(CurrentTimeInput(), _meta())
        assert result["timezone"] == "UTC"
        assert result["iso"].endswith("+00:00")

    def test_current_time_string_input(self):
        result = current_time("Asia/Tokyo", _meta())
        assert result["timezone"] == "Asia/Tokyo"
        assert result["iso"].endswith("+09:00")

    def test_current_time_unknown_zone(self):
        with pytest.raises(ValueError, match="Unknown time zone"):
            current_time(CurrentTimeInput(timezone="Mars/Olympus"), _meta())
