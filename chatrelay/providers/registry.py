"""Model registry and TOML configuration loader.

Loads chatrelay settings from a TOML file (defaults ship in
chatrelay/config/defaults.toml), parses ``provider/model`` routing keys and
maps them to LiteLLM routes. Also provides the pure provider-option merge
used when per-call options are layered over configured ones.
"""

from __future__ import annotations

import tomllib
from pathlib import Path
from typing import Any

from chatrelay.schemas.config import ModelConfig, ProviderConfig, Settings

# Default config directory relative to the chatrelay package
_CONFIG_DIR = Path(__file__).parent.parent / "config"

# Providers LiteLLM knows natively; anything else is treated as OpenAI-compatible
_NATIVE_PROVIDERS: dict[str, str] = {
    "openai": "openai",
    "x-ai": "xai",
    "anthropic": "anthropic",
    "openrouter": "openrouter",
    "groq": "groq",
}

_MODEL_FIELDS = {
    "display_name",
    "use_tools",
    "compatible_tools",
    "cost_input",
    "cost_output",
}


def parse_provider_model(spec: str) -> tuple[str, str, str]:
    """Split a routing key into ``(provider, model, gateway_adapter)``.

    A trailing ``:vision`` marker is ignored. For ``ai-gateway`` routes the
    first path segment of the model is the upstream adapter.

    Raises:
        ValueError: If ``spec`` has no ``provider/`` prefix.
    """
    clean = spec[: -len(":vision")] if spec.lower().endswith(":vision") else spec
    provider, sep, model = clean.partition("/")
    if not sep or not provider or not model:
        raise ValueError(f"Model key must look like 'provider/model': {spec!r}")
    adapter = ""
    if provider == "ai-gateway":
        adapter = model.split("/", 1)[0]
    return provider, model, adapter


def to_litellm_model(config: ModelConfig) -> str:
    """LiteLLM route for a configured model."""
    native = _NATIVE_PROVIDERS.get(config.provider)
    if native:
        return f"{native}/{config.model}"
    # OpenAI-compatible endpoints (ai-gateway included) get the full model path
    return f"openai/{config.model}"


def merge_provider_options(*partials: dict[str, Any] | None) -> dict[str, Any]:
    """Shallow, last-writer-wins merge of option dicts.

    ``None`` partials and ``None`` values are skipped, so a later partial
    can never erase an earlier value by accident. The inputs are not
    modified.
    """
    merged: dict[str, Any] = {}
    for partial in partials:
        if not partial:
            continue
        for key, value in partial.items():
            if value is not None:
                merged[key] = value
    return merged


def _build_model(key: str, entry: dict[str, Any]) -> ModelConfig:
    provider, model, adapter = parse_provider_model(key)
    known = {k: v for k, v in entry.items() if k in _MODEL_FIELDS}
    params = {k: v for k, v in entry.items() if k not in _MODEL_FIELDS}
    return ModelConfig(
        key=key,
        provider=provider,
        model=model,
        gateway_adapter=adapter,
        supports_vision=key.lower().endswith(":vision"),
        params=params,
        **known,
    )


def load_settings(config_path: Path | None = None) -> Settings:
    """Load chatrelay settings from a TOML file.

    Args:
        config_path: Path to a settings file. Defaults to
            chatrelay/config/defaults.toml.

    Returns:
        A validated Settings instance.

    Raises:
        FileNotFoundError: If the config file does not exist.
        ValueError: If the TOML structure is invalid.
    """
    path = config_path or _CONFIG_DIR / "defaults.toml"
    if not path.exists():
        raise FileNotFoundError(f"Config not found: {path}")

    with open(path, "rb") as f:
        raw = tomllib.load(f)

    providers_section = raw.get("providers", {})
    models_section = raw.get("models", {})
    if not isinstance(providers_section, dict) or not isinstance(models_section, dict):
        raise ValueError(f"[providers] and [models] must be tables in {path}")

    providers = {
        name: ProviderConfig(**entry)
        for name, entry in providers_section.items()
        if isinstance(entry, dict)
    }
    models = {
        key: _build_model(key, dict(entry))
        for key, entry in models_section.items()
        if isinstance(entry, dict)
    }

    return Settings(
        bot=raw.get("bot", {}),
        display=raw.get("display", {}),
        tools=raw.get("tools", {}),
        cache=raw.get("cache", {}),
        providers=providers,
        models=models,
    )


def resolve_model(settings: Settings, key: str | None = None) -> ModelConfig:
    """Look up a configured model, falling back to ``bot.default_model``.

    Raises:
        KeyError: If the model is not configured.
    """
    key = key or settings.bot.default_model
    if key not in settings.models:
        raise KeyError(f"Model not configured: {key!r}")
    return settings.models[key]
