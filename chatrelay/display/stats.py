"""Per-turn "stats for nerds" line: model, tokens, time to first token, speed."""

from __future__ import annotations

import re

from chatrelay.schemas.messages import TokenUsage

_VISION_SUFFIX_RE = re.compile(r":vision$", re.IGNORECASE)
_MAX_FIELD_LENGTH = 1024


def _model_name(provider_model: str) -> str:
    clean = _VISION_SUFFIX_RE.sub("", provider_model)
    return clean.rsplit("/", 1)[-1]


def _fmt(value: int) -> str:
    return f"{value:,}"


def build_stats_line(
    provider_model: str,
    usage: TokenUsage | None,
    ttft_seconds: float | None,
    output_seconds: float | None,
) -> str:
    """Format a stats line.

    Example: ``[M]: gpt-4o; [T]: ↑1,200 (C: 800) ↓350; [TTFT]: 0.4s; [TPS]: 52.1``
    """
    parts = [f"[M]: {_model_name(provider_model)}"]

    if usage is not None:
        cached = f" (C: {_fmt(usage.cached_tokens)})" if usage.cached_tokens is not None else ""
        reasoning = (
            f" (R: {_fmt(usage.reasoning_tokens)})" if usage.reasoning_tokens is not None else ""
        )
        parts.append(
            f"[T]: ↑{_fmt(usage.prompt_tokens)}{cached} ↓{_fmt(usage.completion_tokens)}{reasoning}"
        )

    if ttft_seconds is not None:
        parts.append(f"[TTFT]: {ttft_seconds:.1f}s")

    if usage is not None and output_seconds:
        parts.append(f"[TPS]: {usage.completion_tokens / output_seconds:.1f}")

    return "; ".join(parts)


def build_stats_footer(
    provider_model: str,
    usage: TokenUsage | None,
    ttft_seconds: float | None,
    output_seconds: float | None,
) -> str | None:
    """Italic footer for a display unit, or None when there is nothing to show."""
    line = build_stats_line(provider_model, usage, ttft_seconds, output_seconds)
    if "; " not in line:
        return None
    value = f"*{line}*"
    if len(value) > _MAX_FIELD_LENGTH:
        value = value[: _MAX_FIELD_LENGTH - 3] + "...*"
    return value
