"""Keep display units in sync with a growing response.

The content pusher polls a StreamAccumulator while a response streams in,
re-chunks the accumulated text and mirrors the chunks onto a DisplaySink:
new chunks create units, changed chunks replace them, unchanged chunks are
left alone. The last chunk shows a streaming indicator until the stream
ends. After the stream is done the pusher keeps syncing until a pass
changes nothing, so the final state is always rendered.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol

from chatrelay.markdown.chunker import ChunkOptions, chunk_markdown_for_display
from chatrelay.schemas.config import DisplayConfig

logger = logging.getLogger(__name__)

STREAMING_INDICATOR = " ⚪"
EDIT_DELAY_SECONDS = 0.1
# Room for closers when splitting markdown (worst case: **~~*` needs `*~~**)
CLOSING_TAG_BUFFER = 10

_BLOCK_CLOSERS = ("```", "$$")
EMPTY_PLACEHOLDER = "*<empty_string>*"


class StreamAccumulator:
    """Text shared between the stream consumer (writer) and the pusher (reader)."""

    def __init__(self) -> None:
        self._parts: list[str] = []
        self._text = ""
        self._dirty = False
        self._done = asyncio.Event()

    def append(self, text: str) -> None:
        if text:
            self._parts.append(text)
            self._dirty = True

    @property
    def text(self) -> str:
        if self._dirty:
            self._text = "".join(self._parts)
            self._parts = [self._text]
            self._dirty = False
        return self._text

    @property
    def last_char(self) -> str:
        text = self.text
        return text[-1] if text else ""

    def mark_done(self) -> None:
        self._done.set()

    @property
    def done(self) -> bool:
        return self._done.is_set()

    async def wait_done(self) -> None:
        await self._done.wait()


class DisplaySink(Protocol):
    """Something that shows text units and can edit or remove them."""

    async def create(self, text: str, *, streaming: bool) -> str:
        """Show a new unit after the previous one and return its id."""
        ...

    async def replace(self, unit_id: str, text: str, *, streaming: bool) -> None:
        """Replace the text of an existing unit."""
        ...

    async def delete(self, unit_id: str) -> None:
        """Remove a unit."""
        ...


@dataclass
class PushResult:
    """Final display state after the stream ended."""

    unit_ids: list[str] = field(default_factory=list)
    display_chunks: list[str] = field(default_factory=list)
    last_unit_id: str | None = None


def add_streaming_indicator(chunk: str) -> str:
    """Append the streaming indicator to ``chunk``.

    When the last non-blank line closes a block (a ``` or $$ line), the
    indicator goes on its own line so the block still renders.
    """
    for line in reversed(chunk.split("\n")):
        stripped = line.strip()
        if not stripped:
            continue
        if stripped in _BLOCK_CLOSERS:
            return chunk + "\n" + STREAMING_INDICATOR.lstrip()
        break
    return chunk + STREAMING_INDICATOR


def max_length_for(
    display: DisplayConfig,
    *,
    streaming: bool,
    plain: bool = False,
    smart_splitting: bool = True,
) -> int:
    """Character budget for one display unit.

    Rich units reserve room for the closing-tag buffer when smart splitting,
    and for the streaming indicator on the streaming (last) unit.
    """
    if plain:
        return display.plain_max_length
    budget = display.embed_max_length
    if smart_splitting:
        budget -= CLOSING_TAG_BUFFER
    if streaming:
        budget -= len(STREAMING_INDICATOR)
    return budget


class ContentPusher:
    """Mirror the chunked accumulator text onto a DisplaySink.

    Args:
        sink: Where units are created and edited.
        accumulator: Source of the text; its ``done`` flag ends streaming.
        max_length: ``max_length(streaming)`` returns the unit budget. The
            streaming budget is used for the last chunk even after the
            stream is done so chunk boundaries never shift at the end.
        smart_splitting: Split on markdown-safe lexical boundaries.
        edit_delay: Seconds between sync passes while streaming.
    """

    def __init__(
        self,
        sink: DisplaySink,
        accumulator: StreamAccumulator,
        *,
        max_length: Callable[[bool], int],
        smart_splitting: bool = True,
        edit_delay: float = EDIT_DELAY_SECONDS,
    ) -> None:
        self._sink = sink
        self._accumulator = accumulator
        self._max_length = max_length
        self._smart_splitting = smart_splitting
        self._edit_delay = edit_delay

        self._unit_ids: list[str] = []
        # Last state sent per unit, to avoid redundant edits
        self._sent: list[tuple[str, bool]] = []
        self._chunks: list[str] = []
        self._busy = False
        self._ticks = 0

    @property
    def unit_ids(self) -> list[str]:
        return list(self._unit_ids)

    @property
    def display_chunks(self) -> list[str]:
        """Display chunks of the last sync, without indicator."""
        return list(self._chunks)

    @property
    def busy(self) -> bool:
        return self._busy

    async def tick(self) -> bool:
        """Run one sync pass. Returns True if any unit was created or edited.

        A tick requested while the previous one is still running is skipped
        and returns False.
        """
        if self._busy:
            logger.debug("Skipping display tick, previous tick still running")
            return False
        self._busy = True
        try:
            self._ticks += 1
            return await self._sync(self._accumulator.text)
        finally:
            self._busy = False

    async def _sync(self, content: str) -> bool:
        streaming = not self._accumulator.done
        options = ChunkOptions(
            max_chunk_length=self._max_length(False),
            max_last_chunk_length=self._max_length(True),
            smart_splitting=self._smart_splitting,
        )
        chunks = chunk_markdown_for_display(content, options)
        self._chunks = chunks
        if not chunks:
            return False

        updated = False
        for i, chunk in enumerate(chunks):
            show_indicator = streaming and i == len(chunks) - 1
            text = add_streaming_indicator(chunk) if show_indicator else chunk
            text = text or EMPTY_PLACEHOLDER
            state = (text, show_indicator)

            if i >= len(self._unit_ids):
                unit_id = await self._sink.create(text, streaming=show_indicator)
                self._unit_ids.append(unit_id)
                self._sent.append(state)
                updated = True
                continue

            if self._sent[i] != state:
                await self._sink.replace(self._unit_ids[i], text, streaming=show_indicator)
                self._sent[i] = state
                updated = True

        return updated

    async def run(self) -> PushResult:
        """Sync until the stream is done and a final pass changes nothing."""
        while True:
            if self._busy:
                await asyncio.sleep(self._edit_delay)
                continue

            streaming = not self._accumulator.done
            updated = await self.tick()

            if not streaming:
                if not updated:
                    logger.debug(
                        "Pusher finished after %d ticks: %d chars, %d units",
                        self._ticks, len(self._accumulator.text), len(self._unit_ids),
                    )
                    break
                continue

            await asyncio.sleep(self._edit_delay)

        return PushResult(
            unit_ids=list(self._unit_ids),
            display_chunks=list(self._chunks),
            last_unit_id=self._unit_ids[-1] if self._unit_ids else None,
        )
