"""In-memory conversation cache keyed by display unit id.

Each stored turn (the user message plus the stripped assistant response)
is registered under every display unit that rendered it, with a link to the
unit the turn replied to. Walking those parent links reconstructs the
conversation for the next turn.

The cache is an explicit object with bounded size (least recently used
entries are evicted first) and bounded age (entries older than
``ttl_seconds`` are dropped on access).
"""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

from chatrelay.schemas.config import CacheConfig
from chatrelay.schemas.messages import ChatMessage

logger = logging.getLogger(__name__)


@dataclass
class CachedTurn:
    """Messages of one turn and the unit it replied to."""

    messages: list[ChatMessage]
    parent_id: str | None = None
    created_at: float = 0.0
    unit_ids: list[str] = field(default_factory=list)


class ConversationCache:
    """LRU + TTL mapping from display unit id to CachedTurn."""

    def __init__(
        self,
        max_entries: int = 512,
        ttl_seconds: float = 3600.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self._max_entries = max_entries
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: OrderedDict[str, CachedTurn] = OrderedDict()

    @classmethod
    def from_config(cls, config: CacheConfig) -> ConversationCache:
        return cls(config.max_entries, config.ttl_seconds)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, unit_id: object) -> bool:
        return isinstance(unit_id, str) and self.get(unit_id) is not None

    def store(
        self,
        unit_ids: Iterable[str],
        messages: list[ChatMessage],
        parent_id: str | None = None,
    ) -> CachedTurn:
        """Register ``messages`` under every id in ``unit_ids``."""
        turn = CachedTurn(
            messages=list(messages),
            parent_id=parent_id,
            created_at=self._clock(),
            unit_ids=list(unit_ids),
        )
        for unit_id in turn.unit_ids:
            self._entries[unit_id] = turn
            self._entries.move_to_end(unit_id)
        self._evict()
        return turn

    def get(self, unit_id: str) -> CachedTurn | None:
        """Return the turn rendered by ``unit_id``, refreshing its recency."""
        turn = self._entries.get(unit_id)
        if turn is None:
            return None
        if self._expired(turn):
            logger.debug("Cache entry %s expired", unit_id)
            del self._entries[unit_id]
            return None
        self._entries.move_to_end(unit_id)
        return turn

    def history(self, unit_id: str | None, max_messages: int = 25) -> list[ChatMessage]:
        """Messages of the chain ending at ``unit_id``, oldest first.

        At most ``max_messages`` of the newest messages are returned. The
        walk stops at a missing or expired link.
        """
        turns: list[CachedTurn] = []
        seen: set[int] = set()
        current = unit_id
        while current is not None:
            turn = self.get(current)
            if turn is None or id(turn) in seen:
                break
            seen.add(id(turn))
            turns.append(turn)
            current = turn.parent_id

        messages = [m for turn in reversed(turns) for m in turn.messages]
        if max_messages <= 0:
            return []
        return messages[-max_messages:]

    def remove(self, unit_id: str) -> bool:
        """Forget a single unit id."""
        return self._entries.pop(unit_id, None) is not None

    def remove_all(self, unit_id: str) -> int:
        """Forget the turn rendered by ``unit_id`` and every reply below it.

        Returns:
            Number of unit ids removed.
        """
        turn = self._entries.get(unit_id)
        doomed = set(turn.unit_ids) if turn is not None else set()
        doomed.add(unit_id)

        grew = True
        while grew:
            grew = False
            for key, entry in self._entries.items():
                if key not in doomed and entry.parent_id in doomed:
                    doomed.update(entry.unit_ids)
                    doomed.add(key)
                    grew = True

        removed = 0
        for key in doomed:
            if self._entries.pop(key, None) is not None:
                removed += 1
        return removed

    def prune(self) -> int:
        """Drop every expired entry. Returns the number removed."""
        expired = [key for key, turn in self._entries.items() if self._expired(turn)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def _expired(self, turn: CachedTurn) -> bool:
        return self._clock() - turn.created_at > self._ttl

    def _evict(self) -> None:
        while len(self._entries) > self._max_entries:
            key, _ = self._entries.popitem(last=False)
            logger.debug("Evicted cache entry %s", key)
