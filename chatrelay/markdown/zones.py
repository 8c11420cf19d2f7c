"""Locate offsets where a chunk boundary would break markdown rendering.

Block structure (fenced code, indented code, HTML blocks) comes from
markdown-it-py's token stream, mapped back to character offsets through the
token line maps. Inline structure is scanned directly because markdown-it
inline tokens carry no source offsets.

Zones are half-open ``[start, end)`` ranges; a split at ``pos`` is unsafe
when ``start < pos < end``. Emphasis, strong, strikethrough and inline code
contribute one zone per delimiter run (opening and closing). Links, images,
inline HTML, autolinks and bare URLs contribute a single zone over the whole
construct. A fenced code block contributes zones over its fence markers only,
plus a CodeFenceRange so splitters can apply line-only rules to its content.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from functools import lru_cache

from markdown_it import MarkdownIt

_LINK_RE = re.compile(r"!?\[(?:[^\[\]\n]|\[[^\[\]\n]*\])*\]\([^()\s]*(?:\s+\"[^\"\n]*\")?\s*\)")
_ANGLE_RE = re.compile(r"<(?:https?://[^\s<>]+|[A-Za-z][\w.+-]*@[\w.-]+|/?[A-Za-z][A-Za-z0-9-]*(?:\s[^<>]*)?/?)>")
_BARE_URL_RE = re.compile(r"https?://[^\s<>()\[\]]+[^\s<>()\[\].,;:!?'\"*_~]")
_BLANK_LINE_RE = re.compile(r"\n[ \t]*\n")


@dataclass(frozen=True)
class UnsafeZone:
    """A half-open offset range where splitting is forbidden."""

    start: int
    end: int

    def contains(self, pos: int) -> bool:
        return self.start < pos < self.end


@dataclass(frozen=True)
class CodeFenceRange:
    """Offsets of a fenced code block.

    ``content_start`` is the offset right after the newline ending the
    fence's opening line (or ``end`` when there is none).
    """

    start: int
    end: int
    content_start: int


@dataclass
class ZoneScan:
    """All unsafe zones and fenced code ranges of one source text."""

    zones: list[UnsafeZone] = field(default_factory=list)
    code_fences: list[CodeFenceRange] = field(default_factory=list)

    def is_safe(self, pos: int) -> bool:
        """True when ``pos`` is not strictly inside any zone."""
        return not any(zone.contains(pos) for zone in self.zones)


@lru_cache(maxsize=1)
def _parser() -> MarkdownIt:
    return MarkdownIt("commonmark").enable(["table", "strikethrough"])


def _line_starts(source: str) -> list[int]:
    starts = [0]
    for idx, ch in enumerate(source):
        if ch == "\n":
            starts.append(idx + 1)
    return starts


def _line_end(source: str, starts: list[int], line: int) -> int:
    """Offset of the end of ``line`` (before its newline)."""
    if line + 1 < len(starts):
        return starts[line + 1] - 1
    return len(source)


# ── Block structure ──────────────────────────────────────────────


def _scan_blocks(source: str, scan: ZoneScan) -> list[tuple[int, int]]:
    """Record block-level zones; return ranges excluded from inline scanning."""
    starts = _line_starts(source)
    excluded: list[tuple[int, int]] = []

    for token in _parser().parse(source):
        if token.map is None:
            continue
        first, last = token.map[0], token.map[1] - 1
        if first >= len(starts):
            continue
        last = min(last, len(starts) - 1)
        block_start = starts[first]
        block_end = _line_end(source, starts, last)

        if token.type == "fence":
            markup = token.markup or "```"
            opener_line = source[block_start:_line_end(source, starts, first)]
            start = block_start + max(0, opener_line.find(markup))
            header_end = _line_end(source, starts, first)
            content_start = min(header_end + 1, len(source))

            closing_line = source[starts[last]:block_end].strip().lstrip(">").strip()
            closed = (
                last > first
                and len(closing_line) >= len(markup)
                and set(closing_line) == {markup[0]}
            )
            if closed:
                end = starts[last] + source[starts[last]:block_end].rfind(markup[0]) + 1
            else:
                end = len(source)

            scan.zones.append(UnsafeZone(start, min(end, start + len(markup))))
            if closed:
                scan.zones.append(UnsafeZone(max(start, end - len(markup)), end))
            scan.code_fences.append(
                CodeFenceRange(start=start, end=end, content_start=min(content_start, end))
            )
            excluded.append((block_start, end))

        elif token.type == "code_block":
            excluded.append((block_start, block_end))

        elif token.type == "html_block":
            scan.zones.append(UnsafeZone(block_start, block_end))
            excluded.append((block_start, block_end))

    excluded.sort()
    return excluded


# ── Inline structure ─────────────────────────────────────────────


@dataclass
class _Delimiter:
    char: str
    run_start: int
    run_end: int
    remaining: int


def _flanking(ch: str, prev: str, nxt: str) -> tuple[bool, bool]:
    can_open = nxt != "" and not nxt.isspace()
    can_close = prev != "" and not prev.isspace()
    if ch == "_":
        can_open = can_open and not prev.isalnum()
        can_close = can_close and not nxt.isalnum()
    return can_open, can_close


def _scan_inline(source: str, start: int, end: int, scan: ZoneScan) -> None:
    """Scan ``source[start:end]`` (a run of non-code, non-HTML blocks)."""
    stack: list[_Delimiter] = []
    run_zones: set[tuple[int, int]] = set()
    i = start

    while i < end:
        ch = source[i]

        if ch == "\\":
            i += 2
            continue

        if ch == "\n":
            blank = _BLANK_LINE_RE.match(source, i)
            if blank and blank.end() <= end:
                # Paragraph boundary: emphasis never spans it
                stack.clear()
                i = blank.end()
                continue
            i += 1
            continue

        if ch == "`":
            j = i
            while j < end and source[j] == "`":
                j += 1
            size = j - i
            close = _find_backtick_run(source, j, end, size)
            if close is None:
                i = j
                continue
            scan.zones.append(UnsafeZone(i, i + size))
            scan.zones.append(UnsafeZone(close, close + size))
            i = close + size
            continue

        if ch in "![":
            match = _LINK_RE.match(source, i, end)
            if match:
                scan.zones.append(UnsafeZone(match.start(), match.end()))
                i = match.end()
                continue

        if ch == "<":
            match = _ANGLE_RE.match(source, i, end)
            if match:
                scan.zones.append(UnsafeZone(match.start(), match.end()))
                i = match.end()
                continue

        if ch == "h" and source.startswith(("http://", "https://"), i):
            match = _BARE_URL_RE.match(source, i, end)
            if match:
                scan.zones.append(UnsafeZone(match.start(), match.end()))
                i = match.end()
                continue

        if ch in "*_~":
            j = i
            while j < end and source[j] == ch:
                j += 1
            prev = source[i - 1] if i > 0 else ""
            nxt = source[j] if j < len(source) else ""
            can_open, can_close = _flanking(ch, prev, nxt)
            run = _Delimiter(ch, i, j, j - i)
            if can_close:
                _match_closer(stack, run, run_zones)
            if run.remaining and can_open:
                stack.append(run)
            i = j
            continue

        i += 1

    scan.zones.extend(UnsafeZone(s, e) for s, e in sorted(run_zones))


def _find_backtick_run(source: str, pos: int, end: int, size: int) -> int | None:
    while pos < end:
        idx = source.find("`", pos, end)
        if idx < 0:
            return None
        j = idx
        while j < end and source[j] == "`":
            j += 1
        if j - idx == size:
            return idx
        pos = j
    return None


def _match_closer(
    stack: list[_Delimiter], closer: _Delimiter, run_zones: set[tuple[int, int]]
) -> None:
    while closer.remaining:
        idx = next(
            (k for k in range(len(stack) - 1, -1, -1) if stack[k].char == closer.char),
            None,
        )
        if idx is None:
            return
        opener = stack[idx]
        if closer.char == "~":
            if opener.remaining != closer.remaining:
                return
            used = closer.remaining
        else:
            used = 2 if opener.remaining >= 2 and closer.remaining >= 2 else 1
        del stack[idx + 1:]
        opener.remaining -= used
        closer.remaining -= used
        run_zones.add((opener.run_start, opener.run_end))
        run_zones.add((closer.run_start, closer.run_end))
        if not opener.remaining:
            stack.pop()


# ── Public API ───────────────────────────────────────────────────


def scan_unsafe_zones(source: str) -> ZoneScan:
    """Parse ``source`` and collect its unsafe zones and fenced code ranges.

    Args:
        source: Markdown text (typically an already completed window).

    Returns:
        A ZoneScan with zones in no particular order.
    """
    scan = ZoneScan()
    if not source:
        return scan

    excluded = _scan_blocks(source, scan)
    cursor = 0
    for block_start, block_end in excluded:
        if block_start > cursor:
            _scan_inline(source, cursor, block_start, scan)
        cursor = max(cursor, block_end)
    if cursor < len(source):
        _scan_inline(source, cursor, len(source), scan)
    return scan


def is_position_safe(pos: int, zones: list[UnsafeZone]) -> bool:
    """True when ``pos`` is not strictly inside any of ``zones``."""
    return not any(zone.contains(pos) for zone in zones)
