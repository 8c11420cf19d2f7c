"""chatrelay schema definitions.

Pydantic v2 models for conversation turn state and configuration.
"""

from chatrelay.schemas.config import (
    BotConfig,
    CacheConfig,
    DisplayConfig,
    ModelConfig,
    ProviderConfig,
    Settings,
    ToolsConfig,
)
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

__all__ = [
    "BotConfig",
    "CacheConfig",
    "CallWarning",
    "ChatMessage",
    "DisplayConfig",
    "FinishReason",
    "ModelConfig",
    "ProviderConfig",
    "Role",
    "Settings",
    "TextPart",
    "TokenUsage",
    "ToolCallPart",
    "ToolResultOutput",
    "ToolResultPart",
    "ToolsConfig",
]
