"""Split growing markdown into stable, independently renderable chunks.

chunk_markdown() is re-run on the full accumulated text every display tick.
Each non-final chunk is decided from a fixed-size window of the text that
follows the previous chunk, so once a later chunk exists the earlier raw
spans never move. Raw spans tile the input: joining
``content[c.raw_start:c.raw_end]`` over all chunks reproduces ``content``.

Every chunk carries a ``prefix``: the reopening markers (``**``, ``````py\\n``,
...) inherited from a construct the previous chunk had to close early.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from chatrelay.markdown.completer import complete_at, complete_markdown
from chatrelay.markdown.splitter import LexicalSplitOptions, find_lexical_safe_split_point

logger = logging.getLogger(__name__)

_FENCED_RE = re.compile(r"^```", re.MULTILINE)
_SPLIT_OPTIONS = LexicalSplitOptions(max_backtrack=100, newline_backtrack=100, locale="en-US")
_MAX_ATTEMPTS = 10


@dataclass(frozen=True)
class ChunkOptions:
    """Length budgets for chunking.

    ``max_last_chunk_length`` is usually smaller than ``max_chunk_length``
    to leave room for a streaming indicator on the last chunk. ``None``
    means the same as ``max_chunk_length``.
    """

    max_chunk_length: int
    max_last_chunk_length: int | None = None
    smart_splitting: bool = True


@dataclass(frozen=True)
class MarkdownChunk:
    """One display unit of the chunked text.

    ``raw_start``/``raw_end`` delimit the slice of the input this chunk
    accounts for. ``content_start`` is where its displayed content begins
    (leading whitespace after a boundary is skipped). ``display_text`` is
    ready to render.
    """

    raw_start: int
    raw_end: int
    display_text: str
    content_start: int
    prefix: str = ""

    @property
    def raw_length(self) -> int:
        """Length of the text this chunk was cut from, prefix included."""
        return len(self.prefix) + self.raw_end - self.content_start


def _skip_whitespace(content: str, pos: int) -> int:
    while pos < len(content) and content[pos].isspace():
        pos += 1
    return pos


def _fixed_chunks(content: str, start: int, max_length: int) -> list[MarkdownChunk]:
    return [
        MarkdownChunk(
            raw_start=i,
            raw_end=min(i + max_length, len(content)),
            display_text=content[i:i + max_length],
            content_start=i,
        )
        for i in range(start, len(content), max_length)
    ]


def _smart_chunks(
    content: str, raw_start: int, content_start: int, prefix: str, max_length: int
) -> list[MarkdownChunk]:
    chunks: list[MarkdownChunk] = []
    pos = content_start
    end = len(content)

    while pos < end:
        remaining = prefix + content[pos:]
        if len(remaining) <= max_length:
            chunks.append(
                MarkdownChunk(raw_start, end, complete_markdown(remaining), pos, prefix)
            )
            break

        window = complete_at(remaining, max_length).completed
        split = find_lexical_safe_split_point(window, max_length, _SPLIT_OPTIONS)
        split = max(1, min(split, max_length), len(prefix) + 1)

        # Closing and reopening can leave the remainder no shorter (e.g. right
        # after a fence opener); walk forward until the remainder shrinks.
        attempt = split
        progressed = False
        for _ in range(_MAX_ATTEMPTS):
            result = complete_at(remaining, attempt)
            fenced = bool(_FENCED_RE.search(result.completed))
            next_remaining = result.overflow if fenced else result.overflow.lstrip()
            if len(next_remaining) < len(remaining):
                progressed = True
                break
            if attempt >= max_length:
                break
            attempt = min(max_length, attempt + 1)

        if progressed:
            display = result.completed if fenced else result.completed.rstrip()
            next_prefix = result.reopening
        else:
            attempt = max(max_length, len(prefix) + 1)
            logger.debug("Forcing hard cut at %d after %d attempts", attempt, _MAX_ATTEMPTS)
            display = remaining[:attempt]
            next_prefix = ""
            fenced = True

        raw_end = pos + attempt - len(prefix)
        next_pos = raw_end
        if not fenced and not next_prefix:
            next_pos = _skip_whitespace(content, raw_end)
        if next_pos >= end:
            raw_end = end

        chunks.append(MarkdownChunk(raw_start, raw_end, display, pos, prefix))
        raw_start, pos, prefix = raw_end, next_pos, next_prefix

    return chunks


def _chunk_tail(
    content: str,
    raw_start: int,
    content_start: int,
    prefix: str,
    max_length: int,
    smart_splitting: bool,
) -> list[MarkdownChunk]:
    if not smart_splitting:
        return _fixed_chunks(content, raw_start, max_length)
    return _smart_chunks(content, raw_start, content_start, prefix, max_length)


def chunk_markdown(content: str, options: ChunkOptions) -> list[MarkdownChunk]:
    """Chunk ``content`` into display units.

    Non-final chunks are at most ``max_chunk_length`` raw characters (plus
    synthesized closers). When the last chunk exceeds
    ``max_last_chunk_length`` only that chunk is chunked again with the
    smaller budget; earlier chunks are left untouched.

    Args:
        content: The full accumulated text.
        options: Length budgets and splitting mode.

    Returns:
        Chunks in display order; empty for empty content.
    """
    if not content:
        return []

    max_length = max(1, options.max_chunk_length)
    last_budget = options.max_last_chunk_length
    max_last = max(1, min(max_length if last_budget is None else last_budget, max_length))

    chunks = _chunk_tail(content, 0, 0, "", max_length, options.smart_splitting)
    if not chunks or max_last == max_length:
        return chunks

    last = chunks[-1]
    if last.raw_length <= max_last:
        return chunks

    rechunked = _chunk_tail(
        content,
        last.raw_start,
        last.content_start,
        last.prefix,
        max_last,
        options.smart_splitting,
    )
    return chunks[:-1] + rechunked


def chunk_markdown_for_display(content: str, options: ChunkOptions) -> list[str]:
    """Return only the display texts of chunk_markdown()."""
    return [chunk.display_text for chunk in chunk_markdown(content, options)]
