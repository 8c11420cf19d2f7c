"""Incremental scanner for the inline tool-call protocol.

Models without native function calling request tools by writing

    <tool-call tool="NAME">PAYLOAD</tool-call>

into their text. ToolCallScanner consumes the stream fragment by fragment
and separates plain text (emitted as soon as it provably cannot start a tag)
from complete tag matches. PAYLOAD is scanned non-greedily up to the first
closing literal; there is no nesting and no escaping.

Also home to the small helpers shared by the dispatch loop: JSON payload
parsing and the boundary separator that keeps two text segments joined
across a tool call from fusing markdown delimiters (``*`` + ``*`` -> ``**``).
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

OPEN_LITERAL = "<tool-call"
CLOSE_LITERAL = "</tool-call>"
TAG_RE = re.compile(r'<tool-call\s+tool="([^"]+)">([\s\S]*?)</tool-call>')

DEFAULT_MAX_PENDING = 65_536
_BOUNDARY_CHARS = frozenset("*_`~$")


class ScannerState(StrEnum):
    """Scanner lifecycle."""

    SCANNING = "scanning"
    BUFFERING = "buffering"
    CLOSED = "closed"


@dataclass(frozen=True)
class TagMatch:
    """A complete tool-call tag found in the stream.

    ``match_start``/``match_end`` are offsets into the concatenation of all
    fragments fed to the scanner.
    """

    tool_name: str
    raw_payload: str
    match_start: int
    match_end: int

    @property
    def arguments(self) -> Any:
        """The payload parsed as JSON, falling back to the stripped raw text."""
        return try_parse_json(self.raw_payload)


ScanEvent = str | TagMatch


def _could_open(buffer: str) -> bool:
    """True while ``buffer`` is still consistent with an opening tag."""
    size = len(OPEN_LITERAL)
    if len(buffer) <= size:
        return OPEN_LITERAL.startswith(buffer)
    return buffer.startswith(OPEN_LITERAL) and buffer[size].isspace()


class ToolCallScanner:
    """Split a fragment stream into plain text and tool-call tags.

    Usage::

        scanner = ToolCallScanner()
        for fragment in stream:
            for event in scanner.feed(fragment):
                ...  # str -> plain text, TagMatch -> tool call
        for event in scanner.finalize():
            ...      # leftover buffered text

    The pending buffer only ever holds text from a ``<`` that may begin a
    tag. Malformed tags and anything left when the stream ends are flushed
    back as plain text, never dropped.
    """

    def __init__(self, max_pending: int = DEFAULT_MAX_PENDING) -> None:
        self._max_pending = max_pending
        self._buffer = ""
        self._opened = False
        self._search_from = 0
        self._fed = 0
        self._state = ScannerState.SCANNING

    @property
    def state(self) -> ScannerState:
        return self._state

    @property
    def pending(self) -> str:
        """Text currently held back as a possible tag."""
        return self._buffer

    def feed(self, fragment: str) -> list[ScanEvent]:
        """Consume one fragment and return the events it completes.

        Raises:
            RuntimeError: If called after finalize().
        """
        if self._state is ScannerState.CLOSED:
            raise RuntimeError("ToolCallScanner already finalized")
        events: list[ScanEvent] = []
        if fragment:
            self._fed += len(fragment)
            self._scan(fragment, events)
        self._state = ScannerState.BUFFERING if self._buffer else ScannerState.SCANNING
        return events

    def finalize(self) -> list[ScanEvent]:
        """End of stream: flush any pending buffer as plain text."""
        events: list[ScanEvent] = []
        if self._state is not ScannerState.CLOSED:
            self._flush(events)
            self._state = ScannerState.CLOSED
        return events

    # ── Internals ─────────────────────────────────────────────

    def _emit(self, text: str, events: list[ScanEvent]) -> None:
        if not text:
            return
        if events and isinstance(events[-1], str):
            events[-1] += text
        else:
            events.append(text)

    def _flush(self, events: list[ScanEvent]) -> None:
        self._emit(self._buffer, events)
        self._buffer = ""
        self._opened = False
        self._search_from = 0

    def _scan(self, text: str, events: list[ScanEvent]) -> None:
        while text:
            if not self._buffer:
                idx = text.find("<")
                if idx < 0:
                    self._emit(text, events)
                    return
                self._emit(text[:idx], events)
                text = text[idx:]

            if not self._opened:
                text = self._match_opening(text, events)
                continue

            text = self._match_closing(text, events)

    def _match_opening(self, text: str, events: list[ScanEvent]) -> str:
        """Grow the buffer character by character while it can still open a tag."""
        for i, ch in enumerate(text):
            candidate = self._buffer + ch
            if not _could_open(candidate):
                if not self._buffer:
                    # A lone non-'<' character cannot start a tag
                    self._emit(ch, events)
                    return text[i + 1:]
                self._flush(events)
                return text[i:]
            self._buffer = candidate
            if len(candidate) > len(OPEN_LITERAL):
                self._opened = True
                return text[i + 1:]
        return ""

    def _match_closing(self, text: str, events: list[ScanEvent]) -> str:
        """Buffer tag body until the closing literal, then resolve the tag."""
        self._buffer += text
        end = self._buffer.find(CLOSE_LITERAL, self._search_from)
        if end < 0:
            self._search_from = max(0, len(self._buffer) - len(CLOSE_LITERAL) + 1)
            if len(self._buffer) > self._max_pending:
                self._flush(events)
            return ""

        full = self._buffer
        tag_end = end + len(CLOSE_LITERAL)
        tag_text, carry = full[:tag_end], full[tag_end:]
        # The buffer always ends at the last character fed
        buffer_start = self._fed - len(full)
        self._buffer = ""
        self._opened = False
        self._search_from = 0

        match = TAG_RE.fullmatch(tag_text)
        if match:
            events.append(
                TagMatch(
                    tool_name=match.group(1),
                    raw_payload=match.group(2),
                    match_start=buffer_start,
                    match_end=buffer_start + len(tag_text),
                )
            )
        else:
            self._emit(tag_text, events)
        return carry


# ── Helpers ──────────────────────────────────────────────────────


def try_parse_json(raw: str | None) -> Any:
    """Parse a tool payload.

    ``None`` stays ``None``; an empty or whitespace-only payload becomes
    ``""``; valid JSON is decoded; anything else is returned stripped.
    """
    if raw is None:
        return None
    trimmed = raw.strip()
    if not trimmed:
        return ""
    try:
        return json.loads(trimmed)
    except json.JSONDecodeError:
        return trimmed


def should_insert_boundary_separator(prev_char: str, next_char: str) -> bool:
    """True when joining ``prev_char`` and ``next_char`` would fuse a delimiter."""
    return prev_char == next_char and prev_char in _BOUNDARY_CHARS


def maybe_yield_boundary_separator(
    last_char: str, next_text: str, separator: str = " "
) -> str:
    """Return ``separator`` if ``next_text`` must not touch ``last_char``, else ``""``."""
    if not last_char or not next_text:
        return ""
    if should_insert_boundary_separator(last_char[-1], next_text[0]):
        return separator
    return ""
