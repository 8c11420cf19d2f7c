"""Configuration schemas for chatrelay.

Loaded from TOML by chatrelay.providers.registry. Every section has
defaults so a minimal config file only needs the models it routes to.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class ProviderConfig(BaseModel):
    """Connection settings for one provider (``[providers.<name>]``)."""

    api_base: str = Field(default="", description="Custom API base URL (empty = provider default)")
    api_key_env: str = Field(
        default="", description="Environment variable name holding the API key"
    )
    extra_headers: dict[str, str] = Field(
        default_factory=dict, description="Additional HTTP headers sent with every call"
    )
    extra_body: dict[str, Any] = Field(
        default_factory=dict, description="Additional request body fields"
    )


class ModelConfig(BaseModel):
    """Configuration for a single routable model (``[models."provider/model"]``).

    The registry key has the form ``provider/model`` with an optional
    ``:vision`` suffix. Keys that are not recognised fields are collected
    into ``params`` and passed through to the provider call.
    """

    key: str = Field(description="Registry key, e.g. 'openai/gpt-4o' or 'x-ai/grok-2:vision'")
    provider: str = Field(description="Provider identifier (e.g. 'openai', 'x-ai', 'ai-gateway')")
    model: str = Field(description="Model identifier within the provider")
    gateway_adapter: str = Field(
        default="", description="Upstream adapter for 'ai-gateway' routes"
    )
    display_name: str = Field(default="", description="Human-friendly model name for CLI output")
    supports_vision: bool = Field(default=False, description="Whether the model accepts images")
    use_tools: bool = Field(default=True, description="Whether tools are offered to this model")
    compatible_tools: bool = Field(
        default=True,
        description="Use the inline <tool-call> text protocol instead of native tool calling",
    )
    cost_input: float = Field(default=0.0, ge=0.0, description="Cost per 1M input tokens in USD")
    cost_output: float = Field(default=0.0, ge=0.0, description="Cost per 1M output tokens in USD")
    params: dict[str, Any] = Field(
        default_factory=dict, description="Provider call parameters (temperature, max_tokens, ...)"
    )


class DisplayConfig(BaseModel):
    """Display-unit limits and sync cadence."""

    embed_max_length: int = Field(default=4096, gt=0, description="Max characters per rich unit")
    plain_max_length: int = Field(default=4000, gt=0, description="Max characters per plain unit")
    edit_delay: float = Field(default=0.1, gt=0.0, description="Seconds between display sync ticks")


class ToolsConfig(BaseModel):
    """Tool availability and reporting."""

    include_summary: bool = Field(
        default=False, description="Append a [Tool calls] audit note to stored history"
    )
    disabled: list[str] = Field(default_factory=list, description="Tool names to hide")
    max_steps: int = Field(default=10, ge=1, description="Maximum model calls per turn")


class CacheConfig(BaseModel):
    """Bounds for the in-memory conversation cache."""

    max_entries: int = Field(default=512, ge=1, description="Maximum cached display units")
    ttl_seconds: float = Field(default=3600.0, gt=0.0, description="Entry lifetime in seconds")


class BotConfig(BaseModel):
    """Front-end behaviour (``[bot]``)."""

    log_level: str = Field(default="INFO", description="Root log level")
    default_model: str = Field(default="", description="Registry key used when none is given")
    system_prompt: str = Field(default="", description="System prompt prepended to every turn")
    max_retry: int = Field(default=3, ge=1, description="Attempts per turn on hard failures")
    max_messages: int = Field(default=25, ge=1, description="History messages sent per turn")
    use_plain_responses: bool = Field(
        default=False, description="Render plain text units instead of rich panels"
    )
    smart_splitting: bool = Field(
        default=True, description="Split on markdown-safe lexical boundaries"
    )
    stats_for_nerds: bool = Field(default=False, description="Log and show per-turn stats")
    debug_message: bool = Field(default=False, description="Log outgoing messages at debug level")


class Settings(BaseModel):
    """Complete chatrelay configuration."""

    bot: BotConfig = Field(default_factory=BotConfig)
    display: DisplayConfig = Field(default_factory=DisplayConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    providers: dict[str, ProviderConfig] = Field(default_factory=dict)
    models: dict[str, ModelConfig] = Field(default_factory=dict)
