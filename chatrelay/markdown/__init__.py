"""Streaming-safe markdown: completion, unsafe zones, split points and chunking."""

from chatrelay.markdown.chunker import (
    ChunkOptions,
    MarkdownChunk,
    chunk_markdown,
    chunk_markdown_for_display,
)
from chatrelay.markdown.completer import complete, complete_at, complete_markdown, token_complete
from chatrelay.markdown.splitter import (
    LexicalSplitOptions,
    find_lexical_safe_split_point,
    find_safe_split_point,
)
from chatrelay.markdown.zones import CodeFenceRange, UnsafeZone, scan_unsafe_zones

__all__ = [
    "ChunkOptions",
    "CodeFenceRange",
    "LexicalSplitOptions",
    "MarkdownChunk",
    "UnsafeZone",
    "chunk_markdown",
    "chunk_markdown_for_display",
    "complete",
    "complete_at",
    "complete_markdown",
    "find_lexical_safe_split_point",
    "find_safe_split_point",
    "scan_unsafe_zones",
    "token_complete",
]
