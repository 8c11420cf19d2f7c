"""Built-in tools shipped with chatrelay."""

from __future__ import annotations

from datetime import UTC, datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field

from chatrelay.tools.registry import Tool, ToolCallMetadata, ToolRegistry


class CurrentTimeInput(BaseModel):
    """Input for the current_time tool."""

    timezone: str = Field(default="UTC", description="IANA time zone name, e.g. 'Europe/Paris'")


def current_time(params: CurrentTimeInput | str | None, metadata: ToolCallMetadata) -> dict:
    """Return the current time in the requested time zone.

    Raises:
        ValueError: If the time zone is unknown.
    """
    if isinstance(params, CurrentTimeInput):
        zone_name = params.timezone
    elif isinstance(params, str) and params:
        zone_name = params
    else:
        zone_name = "UTC"
    try:
        zone = ZoneInfo(zone_name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValueError(f"Unknown time zone: {zone_name}") from e
    now = datetime.now(UTC).astimezone(zone)
    return {"timezone": zone_name, "iso": now.isoformat(timespec="seconds")}


CURRENT_TIME_TOOL = Tool(
    name="current_time",
    description="Get the current date and time in a given IANA time zone.",
    execute=current_time,
    input_model=CurrentTimeInput,
)


def default_registry(disabled: list[str] | None = None) -> ToolRegistry:
    """Registry holding the built-in tools, minus ``disabled`` names."""
    registry = ToolRegistry([CURRENT_TIME_TOOL])
    for name in disabled or []:
        registry.disable(name)
    return registry
