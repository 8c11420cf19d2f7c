"""Message schemas for conversation turn state.

Defines the role-tagged message envelope (ChatMessage) exchanged with model
providers, its content parts (text, tool call, tool result), and the
supporting types reported back by a streamed model call: finish reasons,
provider warnings and token usage.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field


class Role(StrEnum):
    """Conversation roles understood by every provider."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class FinishReason(StrEnum):
    """Why a model call stopped producing tokens."""

    STOP = "stop"
    LENGTH = "length"
    CONTENT_FILTER = "content-filter"
    TOOL_CALLS = "tool-calls"
    ERROR = "error"
    OTHER = "other"
    UNKNOWN = "unknown"


class TextPart(BaseModel):
    """Plain text content."""

    type: Literal["text"] = "text"
    text: str = Field(description="The text content")


class ToolCallPart(BaseModel):
    """A tool invocation requested by the assistant."""

    type: Literal["tool-call"] = "tool-call"
    tool_call_id: str = Field(description="Identifier pairing this call with its result")
    tool_name: str = Field(description="Name of the requested tool")
    input: Any = Field(default=None, description="Parsed tool input (JSON value or raw string)")


class ToolResultOutput(BaseModel):
    """Typed output of a tool execution."""

    type: Literal["text", "json", "error-text"] = Field(
        description="How the value should be interpreted"
    )
    value: Any = Field(default=None, description="Text, JSON value or error message")


class ToolResultPart(BaseModel):
    """The result of a tool invocation, fed back to the model."""

    type: Literal["tool-result"] = "tool-result"
    tool_call_id: str = Field(description="Identifier of the call this result answers")
    tool_name: str = Field(description="Name of the executed tool")
    output: ToolResultOutput = Field(description="Typed tool output")


MessagePart = Annotated[
    TextPart | ToolCallPart | ToolResultPart, Field(discriminator="type")
]


class ChatMessage(BaseModel):
    """A single role-tagged entry of the conversation turn state."""

    role: Role = Field(description="Who produced this message")
    content: str | list[MessagePart] = Field(
        default="", description="Plain string or a list of typed parts"
    )

    @property
    def parts(self) -> list[TextPart | ToolCallPart | ToolResultPart]:
        """Content normalised to a list of parts."""
        if isinstance(self.content, str):
            return [TextPart(text=self.content)] if self.content else []
        return list(self.content)

    @property
    def text(self) -> str:
        """Concatenated text of all text parts."""
        return "".join(p.text for p in self.parts if isinstance(p, TextPart))


class CallWarning(BaseModel):
    """A non-fatal warning reported for a model call."""

    type: Literal["unsupported-setting", "unsupported-tool", "other"] = Field(
        description="Warning category"
    )
    setting: str = Field(default="", description="Offending setting name, if any")
    tool: str = Field(default="", description="Offending tool name, if any")
    details: str = Field(default="", description="Human-readable explanation")


class TokenUsage(BaseModel):
    """Token consumption and cost tracking for one or more model calls."""

    prompt_tokens: int = Field(default=0, ge=0, description="Number of input tokens consumed")
    completion_tokens: int = Field(
        default=0, ge=0, description="Number of output tokens generated"
    )
    cached_tokens: int | None = Field(
        default=None, ge=0, description="Input tokens served from a provider cache"
    )
    reasoning_tokens: int | None = Field(
        default=None, ge=0, description="Output tokens spent on hidden reasoning"
    )
    cost: float = Field(default=0.0, ge=0.0, description="Estimated cost in USD")

    def add(self, other: TokenUsage) -> TokenUsage:
        """Return the sum of two usage records."""

        def _opt(a: int | None, b: int | None) -> int | None:
            if a is None and b is None:
                return None
            return (a or 0) + (b or 0)

        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            cached_tokens=_opt(self.cached_tokens, other.cached_tokens),
            reasoning_tokens=_opt(self.reasoning_tokens, other.reasoning_tokens),
            cost=self.cost + other.cost,
        )
