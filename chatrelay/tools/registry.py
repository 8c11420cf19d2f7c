"""Named tools available to the dispatch loop.

A Tool pairs a name and description with an optional pydantic input model
(whose JSON schema is shown to the model) and an ``execute`` callable that
may be sync or async. The registry is an explicit object: callers build one
per process or per conversation and pass it to the dispatch loop.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel

from chatrelay.schemas.messages import ChatMessage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolCallMetadata:
    """Context handed to a tool alongside its parsed input."""

    tool_call_id: str
    messages: list[ChatMessage] = field(default_factory=list)


@dataclass
class Tool:
    """A callable tool.

    ``execute(parsed_input, metadata)`` receives the validated input model
    instance when ``input_model`` is set and the payload is a JSON object,
    otherwise the parsed payload as is.
    """

    name: str
    description: str
    execute: Callable[..., Any] | None = None
    input_model: type[BaseModel] | None = None

    def input_schema(self) -> dict[str, Any]:
        """JSON schema describing the tool input."""
        if self.input_model is None:
            return {"type": "object", "properties": {}}
        return self.input_model.model_json_schema()

    async def invoke(self, parsed_input: Any, metadata: ToolCallMetadata) -> Any:
        """Validate the input and run the tool.

        Raises:
            RuntimeError: If the tool has no ``execute`` callable.
            pydantic.ValidationError: If the input does not match ``input_model``.
        """
        if self.execute is None:
            raise RuntimeError(f"Tool {self.name} is not executable")
        value = parsed_input
        if self.input_model is not None and isinstance(parsed_input, dict):
            value = self.input_model.model_validate(parsed_input)
        result = self.execute(value, metadata)
        if inspect.isawaitable(result):
            result = await result
        return result


class ToolRegistry:
    """Mapping from tool name to Tool, with per-name enable/disable."""

    def __init__(self, tools: list[Tool] | None = None) -> None:
        self._tools: dict[str, Tool] = {}
        self._disabled: set[str] = set()
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        """Add or replace a tool."""
        if tool.name in self._tools:
            logger.debug("Replacing tool %s", tool.name)
        self._tools[tool.name] = tool

    def disable(self, name: str) -> None:
        self._disabled.add(name)

    def enable(self, name: str) -> None:
        self._disabled.discard(name)

    def get(self, name: str) -> Tool | None:
        """Return the enabled tool called ``name``, or None."""
        if name in self._disabled:
            return None
        return self._tools.get(name)

    def names(self) -> list[str]:
        """Names of all enabled tools, in registration order."""
        return [name for name in self._tools if name not in self._disabled]

    def describe(self) -> list[dict[str, Any]]:
        """Name, description and JSON schema of every enabled tool."""
        return [
            {
                "name": tool.name,
                "description": tool.description,
                "jsonSchema": tool.input_schema(),
            }
            for tool in (self._tools[name] for name in self.names())
        ]

    def __len__(self) -> int:
        return len(self.names())

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.get(name) is not None
