"""Tests for chatrelay.history — the in-memory conversation cache."""

from __future__ import annotations

import pytest

from chatrelay.history import ConversationCache
from chatrelay.schemas.config import CacheConfig
from chatrelay.schemas.messages import ChatMessage, Role


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _turn(question: str, answer: str) -> list[ChatMessage]:
    return [
        ChatMessage(role=Role.USER, content=question),
        ChatMessage(role=Role.ASSISTANT, content=answer),
    ]


def _texts(messages: list[ChatMessage]) -> list[str]:
    return [m.text for m in messages]


# ── Construction ──────────────────────────────────────────────


class TestConstruction:
    def test_rejects_bad_bounds(self):
        with pytest.raises(ValueError, match="max_entries"):
            ConversationCache(max_entries=0)
        with pytest.raises(ValueError, match="ttl_seconds"):
            ConversationCache(ttl_seconds=0)

    def test_from_config(self):
        cache = ConversationCache.from_config(CacheConfig(max_entries=3, ttl_seconds=10))
        cache.store(["a", "b", "c", "d"], _turn("q", "a"))
        assert len(cache) == 3


# ── Store and lookup ──────────────────────────────────────────


class TestStoreAndGet:
    def test_turn_registered_under_every_unit(self):
        cache = ConversationCache()
        turn = cache.store(["u1", "u2"], _turn("q", "a"))
        assert cache.get("u1") is turn
        assert cache.get("u2") is turn
        assert "u1" in cache
        assert "nope" not in cache

    def test_lru_eviction(self):
        cache = ConversationCache(max_entries=2)
        cache.store(["a"], _turn("1", "1"))
        cache.store(["b"], _turn("2", "2"))
        cache.get("a")
        cache.store(["c"], _turn("3", "3"))
        assert "a" in cache
        assert "b" not in cache
        assert "c" in cache

    def test_ttl_expiry(self):
        clock = FakeClock()
        cache = ConversationCache(ttl_seconds=60, clock=clock)
        cache.store(["a"], _turn("q", "a"))
        clock.now = 59
        assert cache.get("a") is not None
        clock.now = 61
        assert cache.get("a") is None
        assert len(cache) == 0

    def test_prune(self):
        clock = FakeClock()
        cache = ConversationCache(ttl_seconds=10, clock=clock)
        cache.store(["old"], _turn("q", "a"))
        clock.now = 8
        cache.store(["new"], _turn("q", "a"))
        clock.now = 15
        assert cache.prune() == 1
        assert "new" in cache


# ── History chains ────────────────────────────────────────────


class TestHistory:
    def test_chain_oldest_first(self):
        cache = ConversationCache()
        cache.store(["t1"], _turn("q1", "a1"))
        cache.store(["t2a", "t2b"], _turn("q2", "a2"), parent_id="t1")
        cache.store(["t3"], _turn("q3", "a3"), parent_id="t2b")
        assert _texts(cache.history("t3")) == ["q1", "a1", "q2", "a2", "q3", "a3"]

    def test_max_messages_keeps_newest(self):
        cache = ConversationCache()
        cache.store(["t1"], _turn("q1", "a1"))
        cache.store(["t2"], _turn("q2", "a2"), parent_id="t1")
        assert _texts(cache.history("t2", max_messages=3)) == ["a1", "q2", "a2"]
        assert cache.history("t2", max_messages=0) == []

    def test_unknown_or_none(self):
        cache = ConversationCache()
        assert cache.history(None) == []
        assert cache.history("missing") == []

    def test_walk_stops_at_missing_parent(self):
        cache = ConversationCache()
        cache.store(["t2"], _turn("q2", "a2"), parent_id="gone")
        assert _texts(cache.history("t2")) == ["q2", "a2"]

    def test_cycle_guard(self):
        cache = ConversationCache()
        cache.store(["a"], _turn("qa", "aa"), parent_id="b")
        cache.store(["b"], _turn("qb", "ab"), parent_id="a")
        assert _texts(cache.history("a")) == ["qb", "ab", "qa", "aa"]


# ── Removal ───────────────────────────────────────────────────


class TestRemoval:
    def test_remove_single(self):
        cache = ConversationCache()
        cache.store(["a", "b"], _turn("q", "a"))
        assert cache.remove("a") is True
        assert cache.remove("a") is False
        assert "b" in cache

    def test_remove_all_takes_subtree(self):
        cache = ConversationCache()
        cache.store(["t1"], _turn("q1", "a1"))
        cache.store(["t2a", "t2b"], _turn("q2", "a2"), parent_id="t1")
        cache.store(["t3"], _turn("q3", "a3"), parent_id="t2b")
        cache.store(["other"], _turn("x", "y"))
        assert cache.remove_all("t2a") == 3
        assert "t1" in cache
        assert "other" in cache
        assert "t3" not in cache

    def test_remove_all_unknown(self):
        assert ConversationCache().remove_all("nope") == 0
