"""chatrelay provider layer.

The provider layer is the only way models are called. All LLM interactions
go through LiteLLMProvider via the ModelProvider interface.
"""

from chatrelay.providers.base import ChatStream, ModelProvider, StreamOutcome
from chatrelay.providers.litellm_provider import LiteLLMProvider, build_provider
from chatrelay.providers.registry import (
    load_settings,
    merge_provider_options,
    parse_provider_model,
    resolve_model,
    to_litellm_model,
)

__all__ = [
    "ChatStream",
    "LiteLLMProvider",
    "ModelProvider",
    "StreamOutcome",
    "build_provider",
    "load_settings",
    "merge_provider_options",
    "parse_provider_model",
    "resolve_model",
    "to_litellm_model",
]
