"""Close unterminated inline markdown in a streamed prefix.

A model streams markdown one fragment at a time, so any prefix we display
may end inside ``**bold``, an inline code span or a ``$$`` math block. This
module closes those constructs with the minimal matching closers (innermost
first) and, for forced splits, computes the reopening prefix for the text
that follows the split.

Code is protected before any delimiter analysis: closed fences and inline
code spans are replaced by opaque placeholders and restored verbatim
afterwards, so ``response.*`` inside backticks never receives a stray closer.
Unclosed spans keep their opening marker visible and only hide their content.

Delimiters pair by count: a second ``**`` that cannot close by flanking
rules still cancels an open ``**``, so every completed prefix carries an
even number of each marker.

Fenced code blocks are deliberately *not* closed by complete(); only
complete_at() closes a fence, and only once its opening line is finished.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

_PLACEHOLDER = "\x00"

# Closed or unclosed fence: language, optional newline, content, closer
_FENCE_RE = re.compile(r"```(\w*)(\n?)([\s\S]*?)(```|\Z)")
# Closed or unclosed inline code span (fences already replaced)
_INLINE_RE = re.compile(r"`([^`\x00]+)(`|\Z)")
_RESTORE_RE = re.compile(r"\x00([FCIU])(\d+)\x00")
_FENCE_HEAD_RE = re.compile(r"```(\w*)(\n?)")

_EMPHASIS_CHARS = "*_~"


@dataclass(frozen=True)
class _Opener:
    marker: str
    block: bool = False


@dataclass
class _OpenState:
    stack: list[_Opener] = field(default_factory=list)
    code_span: bool = False
    # Text ends in a lone backtick that may still become a code span
    trailing_tick: bool = False
    fence_lang: str | None = None
    fence_header_done: bool = False


@dataclass(frozen=True)
class Completion:
    """Result of completing a markdown prefix."""

    text: str
    closers: list[str]


@dataclass(frozen=True)
class SplitCompletion:
    """Result of a forced split.

    ``completed`` is the text before the split with its open constructs
    closed; ``overflow`` is ``reopening`` followed by the text after the
    split (or empty when nothing follows). ``closing`` is exactly the
    suffix appended to the first part.
    """

    completed: str
    overflow: str
    closing: str
    reopening: str


# ── Code protection ──────────────────────────────────────────────


def _escape_code(text: str) -> tuple[str, list[str]]:
    """Replace code spans with placeholders.

    Returns the escaped text and the stored originals, indexed by the
    number embedded in each placeholder.
    """
    stored: list[str] = []

    def _fence(match: re.Match[str]) -> str:
        idx = len(stored)
        if match.group(4) == "```":
            stored.append(match.group(0))
            return f"{_PLACEHOLDER}F{idx}{_PLACEHOLDER}"
        stored.append(match.group(3))
        head = "```" + match.group(1) + match.group(2)
        return f"{head}{_PLACEHOLDER}C{idx}{_PLACEHOLDER}"

    def _inline(match: re.Match[str]) -> str:
        idx = len(stored)
        if match.group(2) == "`":
            stored.append(match.group(0))
            return f"{_PLACEHOLDER}I{idx}{_PLACEHOLDER}"
        stored.append(match.group(1))
        return f"`{_PLACEHOLDER}U{idx}{_PLACEHOLDER}"

    escaped = _FENCE_RE.sub(_fence, text)
    escaped = _INLINE_RE.sub(_inline, escaped)
    return escaped, stored


def _restore_code(text: str, stored: list[str]) -> str:
    return _RESTORE_RE.sub(lambda m: stored[int(m.group(2))], text)


# ── Delimiter analysis ───────────────────────────────────────────


def _handle_run(state: _OpenState, ch: str, run: int, prev: str, nxt: str) -> None:
    """Apply one run of ``*``, ``_`` or ``~`` to the opener stack."""
    if ch == "~" and run < 2:
        return

    at_end = nxt == ""
    can_open = not at_end and not nxt.isspace()
    # Closers hug the preceding text, except a run that ends the text
    can_close = prev != "" and (not prev.isspace() or at_end)
    if ch == "_":
        # Intraword underscores (snake_case) are literal
        can_open = can_open and not prev.isalnum()
        can_close = can_close and not nxt.isalnum()

    remaining = run
    if can_close:
        remaining = _close_run(state, ch, remaining)
    if remaining and can_open:
        if ch == "~":
            _push(state, "~~")
        elif remaining >= 3:
            _push(state, ch)
            _push(state, ch * 2)
        else:
            _push(state, ch * remaining)


def _push(state: _OpenState, marker: str) -> None:
    """Open ``marker``, or pair it with an identical opener already open.

    Markers pair by count (``**a **b`` is balanced), so the stack never
    holds the same marker twice.
    """
    for idx in range(len(state.stack) - 1, -1, -1):
        if state.stack[idx].marker == marker:
            del state.stack[idx]
            return
    state.stack.append(_Opener(marker))


def _close_run(state: _OpenState, ch: str, remaining: int) -> int:
    while remaining:
        idx = next(
            (
                i
                for i in range(len(state.stack) - 1, -1, -1)
                if state.stack[i].marker[0] == ch
            ),
            None,
        )
        if idx is None:
            break
        size = len(state.stack[idx].marker)
        if ch == "~":
            size = min(size, remaining)
        if size > remaining:
            break
        # Openers nested inside the matched one stay literal
        del state.stack[idx:]
        remaining -= size
    return remaining


def _analyze(escaped: str) -> _OpenState:
    """Scan escaped text and report the constructs still open at its end."""
    state = _OpenState()
    i = 0
    n = len(escaped)
    while i < n:
        ch = escaped[i]

        if ch == "\\":
            i += 2
            continue
        if ch == _PLACEHOLDER:
            close = escaped.find(_PLACEHOLDER, i + 1)
            i = n if close < 0 else close + 1
            continue

        in_math = bool(state.stack) and state.stack[-1].marker == "$$"
        if in_math:
            if escaped.startswith("$$", i):
                state.stack.pop()
                i += 2
            else:
                i += 1
            continue

        if escaped.startswith("```", i):
            head = _FENCE_HEAD_RE.match(escaped, i)
            state.fence_lang = head.group(1) if head else ""
            state.fence_header_done = bool(head and head.group(2))
            # A fence is a block boundary; nothing before it can be closed after it
            state.stack.clear()
            break
        if ch == "`":
            j = i
            while j < n and escaped[j] == "`":
                j += 1
            if j - i > 1:
                # Empty `` pair or a run with no content: literal
                i = j
                continue
            state.code_span = True
            state.trailing_tick = j == n
            break
        if escaped.startswith("$$", i):
            state.stack.append(_Opener("$$", block=escaped.startswith("\n", i + 2)))
            i += 2
            continue
        if ch in _EMPHASIS_CHARS:
            j = i
            while j < n and escaped[j] == ch:
                j += 1
            prev = escaped[i - 1] if i else ""
            nxt = escaped[j] if j < n else ""
            _handle_run(state, ch, j - i, prev, nxt)
            i = j
            continue
        i += 1
    return state


def _closers_for(state: _OpenState, text: str) -> list[str]:
    closers: list[str] = []
    if state.code_span:
        closers.append("`")
    for opener in reversed(state.stack):
        if opener.marker == "$$" and opener.block:
            tail = closers[-1] if closers else text
            closers.append("$$" if tail.endswith("\n") else "\n$$")
        else:
            closers.append(opener.marker)
    return closers


def _reopeners_for(state: _OpenState, *, with_fence: bool) -> list[str]:
    """Opening markers in document order (outermost first)."""
    reopen: list[str] = []
    if with_fence:
        reopen.append("```" + (state.fence_lang or "") + "\n")
        return reopen
    for opener in state.stack:
        if opener.marker == "$$" and opener.block:
            reopen.append("$$\n")
        else:
            reopen.append(opener.marker)
    if state.code_span:
        reopen.append("`")
    return reopen


# ── Public API ───────────────────────────────────────────────────


def complete(text: str) -> Completion:
    """Close every open inline construct at the end of ``text``.

    Args:
        text: Arbitrary, possibly truncated, markdown.

    Returns:
        A Completion whose ``text`` is ``text`` followed by the synthesized
        closers, and whose ``closers`` lists them in the order appended.
        Text ending inside a fenced code block, or right after a lone
        backtick, is returned unchanged.
    """
    if not text:
        return Completion(text="", closers=[])
    escaped, stored = _escape_code(text)
    state = _analyze(escaped)
    if state.fence_lang is not None or state.trailing_tick:
        return Completion(text=text, closers=[])
    closers = _closers_for(state, text)
    completed = _restore_code(escaped, stored) + "".join(closers)
    return Completion(text=completed, closers=closers)


def complete_markdown(text: str) -> str:
    """Return ``text`` with all open inline constructs closed."""
    return complete(text).text


def complete_at(text: str, position: int) -> SplitCompletion:
    """Force a split at ``position`` and make both sides self-contained.

    The part before the split gets its open constructs closed, including a
    fenced code block whose opening line is complete. The part after the
    split is prefixed with the minimal markers that reopen them.

    Args:
        text: The markdown to split.
        position: Split offset; clamped to ``[0, len(text)]``.

    Returns:
        A SplitCompletion. ``overflow`` is empty when nothing follows.
    """
    position = max(0, min(position, len(text)))
    first, rest = text[:position], text[position:]

    escaped, stored = _escape_code(first)
    state = _analyze(escaped)

    if state.fence_lang is not None:
        if state.fence_header_done:
            closing = "```" if first.endswith("\n") else "\n```"
            reopening = "".join(_reopeners_for(state, with_fence=True))
        else:
            closing = ""
            reopening = ""
        completed = first + closing
    else:
        closing = "".join(_closers_for(state, first))
        reopen = _reopeners_for(state, with_fence=False)
        # A reopener touching a run of the same character would fuse with it
        while reopen and rest and set(reopen[-1]) == {rest[0]}:
            reopen.pop()
        reopening = "".join(reopen)
        completed = _restore_code(escaped, stored) + closing

    return SplitCompletion(
        completed=completed,
        overflow=reopening + rest if rest else "",
        closing=closing,
        reopening=reopening,
    )


def token_complete(text: str, max_output: int) -> SplitCompletion:
    """Complete ``text`` for display, splitting at ``max_output`` if needed.

    When the completed text fits, it is returned whole with no overflow.
    Otherwise this is ``complete_at(text, max_output)``.
    """
    whole = complete(text)
    if len(whole.text) <= max_output:
        closing = "".join(whole.closers)
        return SplitCompletion(
            completed=whole.text, overflow="", closing=closing, reopening=""
        )
    return complete_at(text, max_output)
