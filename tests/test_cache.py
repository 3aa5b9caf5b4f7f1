"""
Tests for the detect result cache.
"""

import pytest

from rivel_backend.cache import TTLCache, content_key


class TestContentKey:
    def test_same_bytes_same_key(self):
        assert content_key(b"abc") == content_key(b"abc")
        assert content_key(b"abc") != content_key(b"abd")

    def test_sha256_hex(self):
        """Keys are lowercase SHA-256 hex digests."""
        assert content_key(b"") == "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"


class TestTTLCache:
    """Tests for expiry and size bounds."""

    def test_miss_then_hit(self, clock):
        cache = TTLCache(ttl_ms=1000, clock=clock)
        assert cache.get("k") is None
        cache.set("k", {"label": "real"})
        assert cache.get("k") == {"label": "real"}

    def test_entry_expires_after_ttl(self, clock):
        """Entries are served up to their expiry and dropped after it."""
        cache = TTLCache(ttl_ms=1000, clock=clock)
        cache.set("k", 1)
        clock.advance(1000)
        assert cache.get("k") == 1
        clock.advance(1)
        assert cache.get("k") is None
        assert "k" not in cache

    def test_oldest_entry_evicted_when_full(self, clock):
        cache = TTLCache(ttl_ms=1000, max_items=2, clock=clock)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("c", 3)
        assert len(cache) == 2
        assert "a" not in cache
        assert cache.get("b") == 2 and cache.get("c") == 3

    def test_hit_refreshes_position(self, clock):
        """A read entry moves behind newer ones in the eviction order."""
        cache = TTLCache(ttl_ms=1000, max_items=2, clock=clock)
        cache.set("a", 1)
        cache.set("b", 2)
        assert cache.get("a") == 1
        cache.set("c", 3)
        assert "a" in cache
        assert "b" not in cache

    def test_overwrite_does_not_evict(self, clock):
        """Re-setting an existing key replaces it and renews its expiry."""
        cache = TTLCache(ttl_ms=1000, max_items=2, clock=clock)
        cache.set("a", 1)
        cache.set("b", 2)
        clock.advance(900)
        cache.set("a", 10)
        assert len(cache) == 2
        clock.advance(500)
        assert cache.get("a") == 10
        assert cache.get("b") is None

    def test_invalid_size(self):
        with pytest.raises(ValueError):
            TTLCache(max_items=0)
