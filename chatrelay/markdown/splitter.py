"""Choose split offsets that keep both sides of a boundary renderable.

find_safe_split_point() only avoids unsafe zones. find_lexical_safe_split_point()
additionally prefers, in order: a newline, a whitespace character, the end
of a word (Unicode default word boundaries via the ``regex`` package), and
finally the nearest markdown-safe offset. Inside fenced code content only
offsets right after a newline are accepted.
"""

from __future__ import annotations

from dataclasses import dataclass

import regex

from chatrelay.markdown.zones import ZoneScan, scan_unsafe_zones

_WORD_BOUNDARY = regex.compile(r"\b", flags=regex.WORD)


@dataclass(frozen=True)
class LexicalSplitOptions:
    """Search windows for find_lexical_safe_split_point().

    ``max_backtrack`` bounds both the whitespace/word search and the
    markdown-safe search (which also looks forward by the same amount).
    ``locale`` is kept for callers that pass one; word boundaries follow the
    locale-independent Unicode default rules.
    """

    max_backtrack: int = 100
    newline_backtrack: int = 100
    locale: str = "en-US"


def _nearest_safe(scan: ZoneScan, target: int, max_backtrack: int, length: int) -> int:
    for i in range(target, max(0, target - max_backtrack) - 1, -1):
        if scan.is_safe(i):
            return i
    for i in range(target + 1, min(length, target + max_backtrack)):
        if scan.is_safe(i):
            return i
    return target


def find_safe_split_point(source: str, target: int, max_backtrack: int = 100) -> int:
    """Find the closest offset at or before ``target`` outside every unsafe zone.

    Walks backwards up to ``max_backtrack`` characters, then reluctantly
    forwards, and returns ``target`` itself as a last resort.

    Args:
        source: The markdown text.
        target: Desired split offset (e.g. the length budget).
        max_backtrack: Search window in characters.

    Returns:
        A split offset; ``len(source)`` when ``target`` is past the end.
    """
    target = max(0, min(target, len(source)))
    if target >= len(source):
        return len(source)
    scan = scan_unsafe_zones(source)
    return _nearest_safe(scan, target, max_backtrack, len(source))


def _preferred_boundary(
    source: str, target: int, scan: ZoneScan, options: LexicalSplitOptions
) -> int | None:
    safe_target = min(target, len(source))
    start = max(0, safe_target - options.max_backtrack)

    active = next(
        (f for f in scan.code_fences if f.content_start < safe_target < f.end), None
    )
    if active is not None:
        # Skip the header newline: splitting there leaves an empty code block
        min_pos = max(active.content_start + 1, start)
        for i in range(safe_target, min_pos - 1, -1):
            if scan.is_safe(i) and source[i - 1] == "\n":
                return i
        return None

    newline_start = max(0, safe_target - options.newline_backtrack)
    for i in range(safe_target, newline_start - 1, -1):
        if i > 0 and scan.is_safe(i) and source[i - 1] == "\n":
            return i

    for i in range(safe_target, start - 1, -1):
        if i > 0 and scan.is_safe(i) and source[i - 1].isspace():
            return i

    best: int | None = None
    # One character of lookahead so the window edge is not taken for a word end
    window = source[start:min(len(source), safe_target + 1)]
    for match in _WORD_BOUNDARY.finditer(window):
        boundary = start + match.start()
        if boundary <= start or boundary > safe_target:
            continue
        if not scan.is_safe(boundary):
            continue
        if source[boundary - 1].isalnum():
            best = boundary
    return best


def find_lexical_safe_split_point(
    source: str, target: int, options: LexicalSplitOptions | None = None
) -> int:
    """Find a markdown-safe split offset that also reads naturally.

    Args:
        source: The markdown text (usually a completed window).
        target: Desired split offset.
        options: Search windows; defaults to LexicalSplitOptions().

    Returns:
        The preferred lexical boundary, or the nearest markdown-safe offset
        when no lexical boundary is available.
    """
    options = options or LexicalSplitOptions()
    target = max(0, min(target, len(source)))
    scan = scan_unsafe_zones(source)
    base = _nearest_safe(scan, target, options.max_backtrack, len(source))
    preferred = _preferred_boundary(source, base, scan, options)
    return base if preferred is None else preferred
