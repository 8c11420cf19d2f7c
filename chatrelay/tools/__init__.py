"""Inline tool-call protocol: tag scanning, registry and the dispatch loop."""

from chatrelay.tools.dispatch import stream_with_compatible_tools
from chatrelay.tools.registry import Tool, ToolCallMetadata, ToolRegistry
from chatrelay.tools.scanner import TagMatch, ToolCallScanner

__all__ = [
    "TagMatch",
    "Tool",
    "ToolCallMetadata",
    "ToolCallScanner",
    "ToolRegistry",
    "stream_with_compatible_tools",
]
