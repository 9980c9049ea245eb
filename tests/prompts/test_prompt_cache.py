"""Tests for the engine's TTL cache."""

import pytest

from prompts.cache import PromptCache


class FakeTimer:
    def __init__(self):
        self.t = 1000.0

    def __call__(self):
        return self.t


class TestPromptCache:
    @pytest.fixture
    def timer(self):
        return FakeTimer()

    @pytest.fixture
    def cache(self, timer):
        return PromptCache(default_ttl=10, clock=timer)

    def test_set_and_get(self, cache):
        cache.set("k1", "value1", "pack-a")
        assert cache.get("k1") == "value1"

    def test_get_missing_returns_none(self, cache):
        assert cache.get("nonexistent") is None

    def test_expired_entry_returns_none(self, cache, timer):
        cache.set("k1", "value1", "pack-a")
        timer.t += 11
        assert cache.get("k1") is None
        assert len(cache) == 0

    def test_invalidate_only_drops_pack_entries(self, cache):
        cache.set("k1", 1, "pack-a")
        cache.set("k2", 2, "pack-a")
        cache.set("k3", 3, "pack-b")
        assert cache.invalidate("pack-a") == 2
        assert cache.get("k1") is None
        assert cache.get("k3") == 3

    def test_make_key_deterministic(self, cache):
        assert cache.make_key("next", "p", day="2026-10-19") == cache.make_key("next", "p", day="2026-10-19")

    def test_make_key_varies_by_params(self, cache):
        assert cache.make_key("next", "p", day="2026-10-19") != cache.make_key("next", "p", day="2026-10-20")
        assert cache.make_key("next", "p") != cache.make_key("stats", "p")

    def test_clear_expired(self, cache, timer):
        cache.set("old", 1, "p")
        timer.t += 20
        cache.set("new", 2, "p")
        cache.clear_expired()
        assert len(cache) == 1
        assert cache.get("new") == 2
